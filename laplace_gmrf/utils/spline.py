"""
Basis and penalty helpers for spline smooths and random-effect factors.
"""
from typing import Optional, Tuple

import numpy as np
from scipy import sparse
from scipy.interpolate import BSpline

from laplace_gmrf.exceptions import StructuralError


def bspline_design(
    x,
    n_basis: int,
    degree: int = 3,
    boundary: Optional[Tuple[float, float]] = None
) -> sparse.csr_matrix:
    """
    B-spline design matrix with equally spaced knots (P-spline basis).

    Args:
        x: Covariate values (n,)
        n_basis: Number of basis functions (> degree)
        degree: Polynomial degree
        boundary: Covariate range covered by the basis (defaults to min/max of x)

    Returns:
        B: (n, n_basis) sparse design; each row sums to one

    Example:
        >>> B = bspline_design(x, n_basis=12)
        >>> S = difference_penalty(12, order=2)
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 1 or x.size == 0:
        raise StructuralError(f"x must be a non-empty 1-D array, got shape {x.shape}")
    if n_basis <= degree:
        raise StructuralError(f"n_basis ({n_basis}) must exceed the degree ({degree})")

    lo, hi = boundary if boundary is not None else (x.min(), x.max())
    if hi <= lo:
        raise StructuralError(f"empty covariate range [{lo}, {hi}]")
    if x.min() < lo or x.max() > hi:
        raise StructuralError("x lies outside the spline boundary")

    n_inner = n_basis - degree + 1
    step = (hi - lo) / (n_inner - 1)
    knots = lo + step * np.arange(-degree, n_inner + degree)
    # The last interval is half-open; pull the right boundary inside it
    x_eval = np.minimum(x, hi - 1e-12 * max(1.0, abs(hi)))
    return BSpline.design_matrix(x_eval, knots, degree).tocsr()


def difference_penalty(n: int, order: int = 2) -> sparse.csr_matrix:
    """
    Difference penalty S = D_r^T D_r of order r on n coefficients.

    S has rank n - r; its null space holds the polynomials of degree < r.
    """
    if order < 1 or n <= order:
        raise StructuralError(f"need n > order >= 1, got n={n}, order={order}")
    D = sparse.identity(n, format='csr')
    for _ in range(order):
        D = D[1:] - D[:-1]
    return (D.T @ D).tocsr()


def indicator_design(groups) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """
    Indicator (one-hot) matrix of a grouping factor.

    Args:
        groups: Group label of every observation (n,)

    Returns:
        Z: (n, n_levels) sparse 0/1 matrix
        levels: Sorted unique labels, one per column of Z
    """
    groups = np.asarray(groups)
    if groups.ndim != 1 or groups.size == 0:
        raise StructuralError(f"groups must be a non-empty 1-D array, got shape {groups.shape}")
    levels, index = np.unique(groups, return_inverse=True)
    Z = sparse.csr_matrix(
        (np.ones(len(groups)), (np.arange(len(groups)), index.ravel())),
        shape=(len(groups), len(levels))
    )
    return Z, levels


def absorb_sum_to_zero(basis, penalty) -> Tuple[np.ndarray, np.ndarray]:
    """
    Reparameterize a smooth so that its fitted values sum to zero.

    Without the constraint the constant in a penalty's null space is
    confounded with the intercept (B-spline rows sum to one). With
    c = 1^T B and Z an orthonormal basis of the null space of c, the
    constrained smooth uses B Z and Z^T S Z, one coefficient fewer.

    Args:
        basis: Design matrix B (n, k), dense or sparse
        penalty: Penalty matrix S (k, k), dense or sparse

    Returns:
        basis: B Z (n, k-1)
        penalty: Z^T S Z (k-1, k-1)
    """
    B = basis.toarray() if sparse.issparse(basis) else np.asarray(basis, dtype=np.float64)
    S = penalty.toarray() if sparse.issparse(penalty) else np.asarray(penalty, dtype=np.float64)
    if S.shape != (B.shape[1], B.shape[1]):
        raise StructuralError(f"penalty shape {S.shape} does not match basis width {B.shape[1]}")
    constraint = B.sum(axis=0)[:, None]
    Q, _ = np.linalg.qr(constraint, mode='complete')
    Z = Q[:, 1:]
    S_z = Z.T @ S @ Z
    return B @ Z, 0.5 * (S_z + S_z.T)

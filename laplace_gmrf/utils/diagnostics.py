"""
Diagnostic Utilities for latent Gaussian models.

"""
from typing import Dict

import numpy as np
from scipy import sparse


# ============================================================================
# Sparsity structure
# ============================================================================

def sparsity_pattern(matrix, tol: float = 0.0) -> sparse.csr_matrix:
    """
    Boolean sparsity pattern of a matrix.

    Args:
        matrix: scipy sparse matrix, dense array or PrecisionMatrix
        tol: Entries with |value| <= tol are treated as zero

    Returns:
        Boolean CSR matrix
    """
    if hasattr(matrix, 'pattern') and hasattr(matrix, 'to_scipy'):
        matrix = matrix.to_scipy()
    mat = sparse.csr_matrix(matrix, dtype=np.float64, copy=True)
    mat.data[np.abs(mat.data) <= tol] = 0.0
    mat.eliminate_zeros()
    return mat.astype(bool)


def pattern_union(*matrices) -> sparse.csr_matrix:
    """Union of the sparsity patterns of several same-shaped matrices."""
    if not matrices:
        raise ValueError("pattern_union needs at least one matrix")
    union = sparsity_pattern(matrices[0])
    for mat in matrices[1:]:
        other = sparsity_pattern(mat)
        if other.shape != union.shape:
            raise ValueError(f"Shape mismatch: {other.shape} vs {union.shape}")
        union = (union + other).astype(bool)
    return union


def is_symmetric(matrix, atol: float = 1e-12) -> bool:
    """Check |M - M^T| <= atol entrywise."""
    if hasattr(matrix, 'to_scipy'):
        matrix = matrix.to_scipy()
    mat = sparse.csr_matrix(matrix, dtype=np.float64)
    if mat.shape[0] != mat.shape[1]:
        return False
    diff = (mat - mat.T).tocoo()
    return bool(diff.nnz == 0 or np.abs(diff.data).max() <= atol)


# ============================================================================
# Model comparison
# ============================================================================

def compute_aic(marginal_nll: float, n_params: int) -> float:
    """
    Akaike information criterion from the Laplace marginal likelihood.

    AIC = 2 * marginal_nll + 2 * n_params, with n_params the number of
    outer (fixed-effect and hyper-) parameters.
    """
    return 2.0 * float(marginal_nll) + 2.0 * int(n_params)


def compare_models(fits: Dict) -> dict:
    """
    Compare fitted models using AIC.

    Args:
        fits: Dictionary of {name: fitted LaplaceApproximation}

    Returns:
        results: Dictionary with comparison results

    Example:
        >>> comparison = compare_models({'ricker': fit_r, 'bh': fit_bh})
        >>> print(comparison['ranking'])
    """
    results = {}

    for name, fit in fits.items():
        if fit.params is None:
            raise ValueError(f"model {name!r} has not been fitted")
        nll = fit.marginal_nll(fit.theta)
        k = fit.layout.size
        results[name] = {
            'ic': compute_aic(nll, k),
            'marginal_nll': nll,
            'n_params': k,
        }

    # Rank models
    ranking = sorted(results.items(), key=lambda x: x[1]['ic'])

    # Compute differences from best model
    best_ic = ranking[0][1]['ic']
    for name in results:
        results[name]['delta_ic'] = results[name]['ic'] - best_ic

    return {
        'results': results,
        'ranking': [(name, r['ic']) for name, r in ranking],
        'best_model': ranking[0][0],
    }

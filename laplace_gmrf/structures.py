"""
Structural matrix builders.

Each builder produces the hyperparameter-independent sparse pieces from
which a latent-field family assembles its precision matrix:

    - SPDE: lumped mass C, stiffness G1 and G2 = G1 C^{-1} G1 on a triangulation
    - Splines: block-diagonal collection of (possibly singular) penalty matrices
    - Random walk: implicit first-difference operator on a sequence
    - IID: independent random-effect groups

The outputs are immutable and are built once per model.
"""
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from scipy import sparse

from laplace_gmrf.exceptions import StructuralError


# ============================================================================
# SPDE (Matern field on a triangulated domain)
# ============================================================================

@dataclass(frozen=True, eq=False)
class SPDEStructure:
    """
    Finite element matrices of a second-order SPDE discretization.

    Attributes:
        c0: Lumped mass (diagonal of C), shape (n_vertices,)
        g1: Stiffness matrix G1 (n_vertices, n_vertices)
        g2: Second-order matrix G1 C^{-1} G1 (n_vertices, n_vertices)
        areas: Triangle areas, shape (n_triangles,)
    """
    c0: np.ndarray
    g1: sparse.csr_matrix
    g2: sparse.csr_matrix
    areas: np.ndarray

    @property
    def n_vertices(self) -> int:
        return len(self.c0)

    @property
    def C(self) -> sparse.csr_matrix:
        """Lumped mass matrix as a sparse diagonal matrix."""
        return sparse.diags(self.c0, format='csr')

    def matrices(self) -> Tuple[sparse.csr_matrix, sparse.csr_matrix, sparse.csr_matrix]:
        return self.C, self.g1, self.g2


def build_spde_structure(vertices, triangles) -> SPDEStructure:
    """
    Build the mass and stiffness matrices of linear finite elements.

    For each triangle with edges e_0, e_1, e_2 (edge e_i opposite vertex i)
    and area A, the local stiffness is G_ij = (e_i . e_j) / (4A) and each
    vertex receives A/3 of lumped mass.

    Args:
        vertices: Vertex coordinates, shape (n_vertices, 2)
        triangles: Vertex indices of each triangle, shape (n_triangles, 3)

    Returns:
        SPDEStructure with c0, g1 and g2

    Raises:
        StructuralError: On malformed arrays, out-of-range indices,
            zero-area triangles or vertices not covered by any triangle.

    Example:
        >>> vertices, triangles = regular_mesh(10, 10)
        >>> spde = build_spde_structure(vertices, triangles)
        >>> spde.g2.shape
        (100, 100)
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    triangles = np.asarray(triangles)

    if vertices.ndim != 2 or vertices.shape[1] != 2:
        raise StructuralError(f"vertices must have shape (n, 2), got {vertices.shape}")
    if triangles.ndim != 2 or triangles.shape[1] != 3 or len(triangles) == 0:
        raise StructuralError(f"triangles must have shape (m, 3) with m > 0, got {triangles.shape}")
    if not np.issubdtype(triangles.dtype, np.integer):
        raise StructuralError("triangles must hold integer vertex indices")
    if not np.all(np.isfinite(vertices)):
        raise StructuralError("vertices contain non-finite coordinates")

    n_vertices = len(vertices)
    if triangles.min() < 0 or triangles.max() >= n_vertices:
        raise StructuralError(
            f"triangle indices must lie in [0, {n_vertices}), "
            f"got range [{triangles.min()}, {triangles.max()}]"
        )

    p0 = vertices[triangles[:, 0]]
    p1 = vertices[triangles[:, 1]]
    p2 = vertices[triangles[:, 2]]

    # Edge opposite each local vertex, oriented cyclically
    edges = np.stack([p2 - p1, p0 - p2, p1 - p0], axis=1)  # (m, 3, 2)

    signed = (p1[:, 0] - p0[:, 0]) * (p2[:, 1] - p0[:, 1]) \
        - (p1[:, 1] - p0[:, 1]) * (p2[:, 0] - p0[:, 0])
    areas = 0.5 * np.abs(signed)

    extent = max(np.ptp(vertices[:, 0]), np.ptp(vertices[:, 1]))
    degenerate = areas <= 1e-12 * max(extent, 1e-300) ** 2
    if np.any(degenerate):
        first = int(np.flatnonzero(degenerate)[0])
        raise StructuralError(
            f"{int(degenerate.sum())} degenerate (zero-area) triangles, "
            f"first at index {first}: vertices {triangles[first].tolist()}"
        )

    rows, cols, data = [], [], []
    for i in range(3):
        for j in range(3):
            rows.append(triangles[:, i])
            cols.append(triangles[:, j])
            data.append(np.sum(edges[:, i] * edges[:, j], axis=1) / (4.0 * areas))
    g1 = sparse.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_vertices, n_vertices)
    ).tocsr()
    g1.sum_duplicates()

    c0 = np.bincount(
        triangles.ravel(),
        weights=np.repeat(areas / 3.0, 3),
        minlength=n_vertices
    )
    if np.any(c0 <= 0):
        unused = np.flatnonzero(c0 <= 0)
        raise StructuralError(
            f"{len(unused)} vertices belong to no triangle (first: {int(unused[0])})"
        )

    g2 = (g1 @ sparse.diags(1.0 / c0) @ g1).tocsr()
    # Enforce exact symmetry lost to floating point accumulation order
    g2 = ((g2 + g2.T) * 0.5).tocsr()

    return SPDEStructure(c0=c0, g1=g1, g2=g2, areas=areas)


# ============================================================================
# Spline penalties (GAM smooth terms)
# ============================================================================

@dataclass(frozen=True, eq=False)
class SplineStructure:
    """
    Block-diagonal collection of smoothing penalty matrices.

    Attributes:
        blocks: Penalty matrix S_i of each smooth term
        sizes: Dimension m_i of each block
        offsets: Start index of each block in the stacked coefficient vector
        ranks: Numerical rank of each S_i
        log_pdets: Log pseudo-determinant of each S_i
    """
    blocks: Tuple[sparse.csr_matrix, ...]
    sizes: Tuple[int, ...]
    offsets: Tuple[int, ...]
    ranks: Tuple[int, ...]
    log_pdets: Tuple[float, ...]

    @property
    def dim(self) -> int:
        return int(sum(self.sizes))

    @property
    def n_blocks(self) -> int:
        return len(self.blocks)

    def as_sparse(self) -> sparse.csr_matrix:
        """Unscaled block-diagonal penalty (no inter-block entries stored)."""
        return sparse.block_diag(self.blocks, format='csr')


def build_spline_structure(
    penalties: Sequence,
    rank_tol: float = 1e-9
) -> SplineStructure:
    """
    Collect per-term penalty matrices into a block-diagonal structure.

    Penalties may be rank-deficient (e.g. difference penalties leave
    polynomials unpenalized); positive-definiteness is not required.

    Args:
        penalties: Sequence of square symmetric matrices (dense or sparse)
        rank_tol: Relative eigenvalue threshold for the numerical rank

    Returns:
        SplineStructure

    Raises:
        StructuralError: If no penalties are given, or a penalty is not
            square, not symmetric, or has clearly negative eigenvalues.
    """
    if len(penalties) == 0:
        raise StructuralError("at least one penalty matrix is required")

    blocks, sizes, offsets, ranks, log_pdets = [], [], [], [], []
    offset = 0
    for k, S in enumerate(penalties):
        S = sparse.csr_matrix(S, dtype=np.float64)
        if S.shape[0] != S.shape[1] or S.shape[0] == 0:
            raise StructuralError(f"penalty {k} must be square and non-empty, got {S.shape}")
        dense = S.toarray()
        scale = np.abs(dense).max() if dense.size else 0.0
        if not np.all(np.isfinite(dense)):
            raise StructuralError(f"penalty {k} has non-finite entries")
        if np.abs(dense - dense.T).max() > 1e-10 * max(scale, 1.0):
            raise StructuralError(f"penalty {k} is not symmetric")

        eigenvalues = np.linalg.eigvalsh(dense)
        cutoff = rank_tol * max(eigenvalues.max(), 0.0)
        if eigenvalues.min() < -max(cutoff, 1e-12):
            raise StructuralError(
                f"penalty {k} is not positive semi-definite "
                f"(smallest eigenvalue {eigenvalues.min():.3g})"
            )
        positive = eigenvalues[eigenvalues > cutoff]

        blocks.append(S)
        sizes.append(S.shape[0])
        offsets.append(offset)
        ranks.append(int(len(positive)))
        log_pdets.append(float(np.sum(np.log(positive))))
        offset += S.shape[0]

    return SplineStructure(
        blocks=tuple(blocks),
        sizes=tuple(sizes),
        offsets=tuple(offsets),
        ranks=tuple(ranks),
        log_pdets=tuple(log_pdets),
    )


# ============================================================================
# Random walk (first differences over time)
# ============================================================================

@dataclass(frozen=True)
class RandomWalkStructure:
    """
    Implicit first-difference structure of a length-T sequence.

    The precision D^T D / sigma^2 is tridiagonal; it is never materialized
    during estimation, only on request for diagnostics.
    """
    n_steps: int

    @property
    def n_increments(self) -> int:
        return self.n_steps - 1

    def difference_indices(self) -> Tuple[np.ndarray, np.ndarray]:
        """Index pairs (t-1, t) of every increment."""
        current = np.arange(1, self.n_steps)
        return current - 1, current

    def difference_matrix(self) -> sparse.csr_matrix:
        """First-difference operator D, shape (T-1, T)."""
        previous, current = self.difference_indices()
        n = self.n_increments
        data = np.concatenate([-np.ones(n), np.ones(n)])
        rows = np.concatenate([np.arange(n), np.arange(n)])
        cols = np.concatenate([previous, current])
        return sparse.csr_matrix((data, (rows, cols)), shape=(n, self.n_steps))

    def structure_matrix(self) -> sparse.csr_matrix:
        """Unscaled tridiagonal D^T D."""
        D = self.difference_matrix()
        return (D.T @ D).tocsr()


def build_random_walk_structure(n_steps: int) -> RandomWalkStructure:
    """
    Build the implicit first-difference structure for T time steps.

    Raises:
        StructuralError: If fewer than two steps are requested.
    """
    n_steps = int(n_steps)
    if n_steps < 2:
        raise StructuralError(f"a random walk needs at least 2 steps, got {n_steps}")
    return RandomWalkStructure(n_steps=n_steps)


# ============================================================================
# Independent random effects
# ============================================================================

@dataclass(frozen=True)
class IIDStructure:
    """Sizes of independent random-effect groups (one per grouping factor)."""
    sizes: Tuple[int, ...]

    @property
    def dim(self) -> int:
        return int(sum(self.sizes))

    def group_index(self) -> np.ndarray:
        """Group number of every latent coordinate."""
        return np.repeat(np.arange(len(self.sizes)), self.sizes)


def build_iid_structure(sizes: Sequence[int]) -> IIDStructure:
    """
    Build the structure of independent random-effect groups.

    Raises:
        StructuralError: If no group is given or a group is empty.
    """
    sizes = tuple(int(s) for s in sizes)
    if not sizes or min(sizes) <= 0:
        raise StructuralError(f"group sizes must be positive, got {sizes}")
    return IIDStructure(sizes=sizes)

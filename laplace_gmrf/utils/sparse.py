"""
Sparse matrix helpers shared by the structural builders and the precision assembler.
"""
from typing import List, Tuple

import numpy as np
import torch
from scipy import sparse


def to_coo_triplets(
    matrix,
    dtype: torch.dtype = torch.float64
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Convert a scipy sparse (or dense) matrix to torch COO triplets.

    Duplicate entries are summed and explicit zeros removed, so the returned
    triplets are in canonical row-major order.

    Args:
        matrix: scipy sparse matrix or 2-D array
        dtype: Value dtype of the returned tensor

    Returns:
        rows: Row indices (nnz,)
        cols: Column indices (nnz,)
        values: Entry values (nnz,)
    """
    coo = sparse.coo_matrix(matrix)
    coo.sum_duplicates()
    coo.eliminate_zeros()
    rows = torch.as_tensor(coo.row.astype(np.int64))
    cols = torch.as_tensor(coo.col.astype(np.int64))
    values = torch.as_tensor(coo.data, dtype=dtype)
    return rows, cols, values


def align_to_union(*matrices) -> Tuple[np.ndarray, np.ndarray, List[np.ndarray]]:
    """
    Express several same-shaped sparse matrices on their common sparsity pattern.

    The union pattern is taken structurally (an entry belongs to it when any
    input stores a nonzero there), so numerical cancellation between the
    inputs never drops a position.

    Args:
        *matrices: scipy sparse matrices of identical shape

    Returns:
        rows: Row indices of the union pattern (nnz,)
        cols: Column indices of the union pattern (nnz,)
        values: One array (nnz,) per input matrix, zero where it has no entry

    Example:
        >>> rows, cols, (c, g) = align_to_union(C, G)
    """
    if not matrices:
        raise ValueError("align_to_union needs at least one matrix")
    shape = matrices[0].shape
    pattern = sparse.csr_matrix(shape, dtype=np.float64)
    for mat in matrices:
        if mat.shape != shape:
            raise ValueError(f"Shape mismatch: {mat.shape} vs {shape}")
        indicator = sparse.csr_matrix(mat, dtype=np.float64, copy=True)
        indicator.eliminate_zeros()
        indicator.data[:] = 1.0
        pattern = pattern + indicator
    pattern = pattern.tocoo()
    pattern.sum_duplicates()
    order = np.lexsort((pattern.col, pattern.row))
    rows = pattern.row[order].astype(np.int64)
    cols = pattern.col[order].astype(np.int64)

    values = []
    for mat in matrices:
        csr = sparse.csr_matrix(mat, dtype=np.float64)
        values.append(np.asarray(csr[rows, cols]).ravel())
    return rows, cols, values


def triplets_to_scipy(
    rows: torch.Tensor,
    cols: torch.Tensor,
    values: torch.Tensor,
    size: int
) -> sparse.csc_matrix:
    """Build a detached scipy CSC matrix from torch COO triplets."""
    return sparse.csc_matrix(
        (values.detach().cpu().numpy(), (rows.cpu().numpy(), cols.cpu().numpy())),
        shape=(size, size)
    )

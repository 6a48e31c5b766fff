"""
Precision matrix assembly.

A PrecisionMatrix is stored as COO triplets on a sparsity pattern fixed at
construction; hyperparameters only rescale the values. Each latent-field
family combines its structural matrices (see structures.py) with the current
hyperparameters:

    - SPDEPrecision:        Q = kappa^4 C + 2 kappa^2 G1 + G2
    - SplinePrecision:      Q = blockdiag(lambda_1 S_1, ..., lambda_k S_k)
    - RandomWalkPrecision:  Q = D^T D / sigma^2 (evaluated implicitly)
    - IIDPrecision:         Q = blockdiag(I / sigma_g^2)

Families never cache across hyperparameter values: every call rebuilds
the values from the (log-scale) parameters.
"""
import math
from typing import Dict, Optional

import numpy as np
import torch
import torch.nn as nn
from scipy import sparse

from laplace_gmrf.density import gmrf_nll, independent_gaussian_nll
from laplace_gmrf.exceptions import SingularPrecisionError
from laplace_gmrf.structures import (
    IIDStructure,
    RandomWalkStructure,
    SPDEStructure,
    SplineStructure,
)
from laplace_gmrf.utils.sparse import align_to_union, to_coo_triplets, triplets_to_scipy


class PrecisionMatrix:
    """
    Sparse symmetric precision matrix in COO form.

    Values may carry autograd history, so every operation below stays
    differentiable with respect to the hyperparameters that produced them.

    Args:
        rows: Row indices (nnz,)
        cols: Column indices (nnz,)
        values: Entry values (nnz,)
        size: Matrix dimension n
    """

    def __init__(self, rows: torch.Tensor, cols: torch.Tensor, values: torch.Tensor, size: int):
        self.rows = rows
        self.cols = cols
        self.values = values
        self.size = int(size)

    @property
    def nnz(self) -> int:
        return int(self.values.numel())

    def quadratic_form(self, x: torch.Tensor) -> torch.Tensor:
        """x^T Q x in O(nnz)."""
        return torch.sum(self.values * x[self.rows] * x[self.cols])

    def matvec(self, x: torch.Tensor) -> torch.Tensor:
        """Q x in O(nnz)."""
        out = torch.zeros(self.size, dtype=self.values.dtype, device=self.values.device)
        return out.index_add(0, self.rows, self.values * x[self.cols])

    def to_dense(self) -> torch.Tensor:
        dense = torch.zeros(self.size, self.size, dtype=self.values.dtype, device=self.values.device)
        return dense.index_put((self.rows, self.cols), self.values, accumulate=True)

    def to_sparse(self) -> torch.Tensor:
        """torch sparse COO tensor (coalesced)."""
        indices = torch.stack([self.rows, self.cols])
        return torch.sparse_coo_tensor(indices, self.values, (self.size, self.size)).coalesce()

    def to_scipy(self) -> sparse.csc_matrix:
        """Detached scipy copy (for external factorization or inspection)."""
        return triplets_to_scipy(self.rows, self.cols, self.values, self.size)

    def pattern(self) -> sparse.csr_matrix:
        """Boolean sparsity pattern, independent of the numeric values."""
        ones = np.ones(self.nnz, dtype=bool)
        return sparse.csr_matrix(
            (ones, (self.rows.cpu().numpy(), self.cols.cpu().numpy())),
            shape=(self.size, self.size)
        )

    def cholesky(self) -> torch.Tensor:
        """
        Lower Cholesky factor of Q.

        Raises:
            SingularPrecisionError: If Q is not positive-definite.
        """
        L, info = torch.linalg.cholesky_ex(self.to_dense())
        if int(info) != 0:
            raise SingularPrecisionError(
                f"precision matrix of size {self.size} is not positive-definite "
                f"(leading minor {int(info)} fails)"
            )
        return L

    def log_determinant(self) -> torch.Tensor:
        """log|Q| via Cholesky factorization."""
        L = self.cholesky()
        return 2.0 * torch.sum(torch.log(torch.diagonal(L)))

    def is_symmetric(self, atol: float = 0.0) -> bool:
        dense = self.to_dense().detach()
        return bool(torch.allclose(dense, dense.T, rtol=0.0, atol=atol))

    @staticmethod
    def block_diag(*matrices: 'PrecisionMatrix') -> 'PrecisionMatrix':
        """Block-diagonal combination of independent sub-field precisions."""
        rows, cols, values = [], [], []
        offset = 0
        for Q in matrices:
            rows.append(Q.rows + offset)
            cols.append(Q.cols + offset)
            values.append(Q.values)
            offset += Q.size
        return PrecisionMatrix(torch.cat(rows), torch.cat(cols), torch.cat(values), offset)

    def __repr__(self) -> str:
        return f"PrecisionMatrix(size={self.size}, nnz={self.nnz})"


class PrecisionFamily(nn.Module):
    """
    Base class for latent-field families.

    Subclasses store their structural matrices as buffers and implement
    parameter_spec() and precision(). prior_nll() defaults to the generic
    GMRF density; families with a closed-form determinant override it.

    Args:
        n_latent: Dimension of the latent field
    """

    def __init__(self, n_latent: int):
        super().__init__()
        self.n_latent = int(n_latent)

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        """Names and initial values of the family's (log-scale) hyperparameters."""
        raise NotImplementedError

    def precision(self, params: Dict[str, torch.Tensor]) -> PrecisionMatrix:
        raise NotImplementedError

    def log_determinant(self, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        return self.precision(params).log_determinant()

    def prior_nll(
        self,
        latent: torch.Tensor,
        params: Dict[str, torch.Tensor],
        include_normalizing_constant: bool = True
    ) -> torch.Tensor:
        Q = self.precision(params)
        return gmrf_nll(latent, Q, include_normalizing_constant)

    def report(
        self,
        params: Dict[str, torch.Tensor],
        tau: Optional[torch.Tensor] = None
    ) -> Dict[str, torch.Tensor]:
        """Family-specific derived quantities (natural-scale summaries)."""
        return {}


class SPDEPrecision(PrecisionFamily):
    """
    Matern field (operator order 2) from the SPDE discretization.

    Q(kappa) = kappa^4 C + 2 kappa^2 G1 + G2 on the union pattern of C, G1, G2.
    The marginal precision scale tau is not part of Q; it enters through
    the unscaled link convention (see link.py).

    Args:
        structure: SPDEStructure from build_spde_structure
        init_log_kappa: Initial value of log(kappa)
    """

    def __init__(self, structure: SPDEStructure, init_log_kappa: float = 0.0):
        super().__init__(structure.n_vertices)
        rows, cols, (c, g1, g2) = align_to_union(*structure.matrices())
        self.register_buffer('rows', torch.as_tensor(rows))
        self.register_buffer('cols', torch.as_tensor(cols))
        self.register_buffer('c_values', torch.as_tensor(c, dtype=torch.float64))
        self.register_buffer('g1_values', torch.as_tensor(g1, dtype=torch.float64))
        self.register_buffer('g2_values', torch.as_tensor(g2, dtype=torch.float64))
        self.init_log_kappa = init_log_kappa

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        return {'log_kappa': torch.tensor(self.init_log_kappa, dtype=torch.float64)}

    def precision(self, params: Dict[str, torch.Tensor]) -> PrecisionMatrix:
        kappa2 = torch.exp(2.0 * params['log_kappa'])
        values = kappa2 * kappa2 * self.c_values + 2.0 * kappa2 * self.g1_values + self.g2_values
        return PrecisionMatrix(self.rows, self.cols, values, self.n_latent)

    def report(self, params, tau=None):
        kappa = torch.exp(params['log_kappa'])
        out = {
            'kappa': kappa,
            # Distance at which correlation drops to about 0.13
            'range': math.sqrt(8.0) / kappa,
        }
        if tau is not None:
            out['sigma_marginal'] = 1.0 / torch.sqrt(4.0 * math.pi * kappa ** 2 * tau ** 2)
        return out


class SplinePrecision(PrecisionFamily):
    """
    Block-diagonal smoothing prior Q = blockdiag(lambda_i S_i).

    Smoothing penalties are usually rank-deficient, so by default the
    normalizing constant uses the pseudo-determinant
    sum_i rank_i log(lambda_i) + log|S_i|_+ and the rank in place of n.
    This departs from the other families: a rank-deficient Q does NOT raise
    SingularPrecisionError when the normalizing constant is requested, the
    null space of the penalty is treated as an improper flat prior instead.
    With pseudo_determinant=False the full Cholesky determinant is used and
    a singular Q raises SingularPrecisionError like any other family.

    Args:
        structure: SplineStructure from build_spline_structure
        pseudo_determinant: Use the closed-form pseudo-determinant
        init_log_lambda: Initial value of every log(lambda_i)
    """

    def __init__(
        self,
        structure: SplineStructure,
        pseudo_determinant: bool = True,
        init_log_lambda: float = 0.0
    ):
        super().__init__(structure.dim)
        rows, cols, values, block_of = [], [], [], []
        for k, (S, offset) in enumerate(zip(structure.blocks, structure.offsets)):
            r, c, v = to_coo_triplets(S)
            rows.append(r + offset)
            cols.append(c + offset)
            values.append(v)
            block_of.append(torch.full_like(r, k))
        self.register_buffer('rows', torch.cat(rows))
        self.register_buffer('cols', torch.cat(cols))
        self.register_buffer('base_values', torch.cat(values))
        self.register_buffer('block_of_entry', torch.cat(block_of))
        self.register_buffer('ranks', torch.tensor(structure.ranks, dtype=torch.float64))
        self.register_buffer('log_pdets', torch.tensor(structure.log_pdets, dtype=torch.float64))
        self.n_blocks = structure.n_blocks
        self.pseudo_determinant = pseudo_determinant
        self.init_log_lambda = init_log_lambda

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        return {'log_lambda': torch.full((self.n_blocks,), self.init_log_lambda, dtype=torch.float64)}

    def precision(self, params: Dict[str, torch.Tensor]) -> PrecisionMatrix:
        lam = torch.exp(params['log_lambda'])
        values = self.base_values * lam[self.block_of_entry]
        return PrecisionMatrix(self.rows, self.cols, values, self.n_latent)

    def log_determinant(self, params):
        if not self.pseudo_determinant:
            return super().log_determinant(params)
        return torch.sum(self.ranks * params['log_lambda']) + torch.sum(self.log_pdets)

    def prior_nll(self, latent, params, include_normalizing_constant=True):
        Q = self.precision(params)
        if not include_normalizing_constant or not self.pseudo_determinant:
            return gmrf_nll(latent, Q, include_normalizing_constant)
        return gmrf_nll(
            latent, Q, True,
            log_determinant=self.log_determinant(params),
            rank=int(self.ranks.sum().item())
        )

    def report(self, params, tau=None):
        return {'lambda': torch.exp(params['log_lambda'])}


class RandomWalkPrecision(PrecisionFamily):
    """
    First-order random walk x_t - x_{t-1} ~ N(0, sigma^2).

    The tridiagonal precision D^T D / sigma^2 is evaluated implicitly from the
    increments. The first state has no "before" term, so Q has rank T-1 and
    its normalizing constant is the closed-form density of the increments.

    Args:
        structure: RandomWalkStructure
        init_log_sigma: Initial value of log(sigma)
    """

    def __init__(self, structure: RandomWalkStructure, init_log_sigma: float = 0.0):
        super().__init__(structure.n_steps)
        previous, current = structure.difference_indices()
        self.register_buffer('previous', torch.as_tensor(previous))
        self.register_buffer('current', torch.as_tensor(current))
        rows, cols, values = to_coo_triplets(structure.structure_matrix())
        self.register_buffer('rows', rows)
        self.register_buffer('cols', cols)
        self.register_buffer('base_values', values)
        self.init_log_sigma = init_log_sigma

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        return {'log_sigma': torch.tensor(self.init_log_sigma, dtype=torch.float64)}

    def precision(self, params: Dict[str, torch.Tensor]) -> PrecisionMatrix:
        values = self.base_values * torch.exp(-2.0 * params['log_sigma'])
        return PrecisionMatrix(self.rows, self.cols, values, self.n_latent)

    def increments(self, latent: torch.Tensor) -> torch.Tensor:
        return latent[self.current] - latent[self.previous]

    def log_determinant(self, params):
        # Pseudo-determinant of D^T D / sigma^2 up to the constant log T
        return -2.0 * (self.n_latent - 1) * params['log_sigma']

    def prior_nll(self, latent, params, include_normalizing_constant=True):
        return independent_gaussian_nll(
            self.increments(latent), params['log_sigma'], include_normalizing_constant
        )

    def report(self, params, tau=None):
        return {'sigma': torch.exp(params['log_sigma'])}


class IIDPrecision(PrecisionFamily):
    """
    Independent random effects, one variance per group (crossed factors).

    Args:
        structure: IIDStructure with the size of each group
        init_log_sigma: Initial value of every log(sigma_g)
    """

    def __init__(self, structure: IIDStructure, init_log_sigma: float = 0.0):
        super().__init__(structure.dim)
        self.register_buffer('group', torch.as_tensor(structure.group_index()))
        self.n_groups = len(structure.sizes)
        self.init_log_sigma = init_log_sigma

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        return {'log_sigma': torch.full((self.n_groups,), self.init_log_sigma, dtype=torch.float64)}

    def precision(self, params: Dict[str, torch.Tensor]) -> PrecisionMatrix:
        idx = torch.arange(self.n_latent, device=self.group.device)
        values = torch.exp(-2.0 * params['log_sigma'])[self.group]
        return PrecisionMatrix(idx, idx, values, self.n_latent)

    def log_determinant(self, params):
        return -2.0 * torch.sum(params['log_sigma'][self.group])

    def prior_nll(self, latent, params, include_normalizing_constant=True):
        return independent_gaussian_nll(
            latent, params['log_sigma'][self.group], include_normalizing_constant
        )

    def report(self, params, tau=None):
        return {'sigma': torch.exp(params['log_sigma'])}

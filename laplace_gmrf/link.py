"""
Field interpolator / linker.

Maps a latent field defined on a reduced representation (mesh nodes,
spline coefficients, yearly states) to per-observation contributions of
the linear predictor through a fixed sparse matrix A.

Two conventions are supported:
    - direct:   field = A latent
    - unscaled: field = (A latent) / tau, with tau = exp(log_tau) a
      marginal precision scale kept out of the latent prior
"""
from enum import Enum
from typing import Optional, Union

import numpy as np
import torch
import torch.nn as nn
from scipy import sparse

from laplace_gmrf.exceptions import ConfigurationError, StructuralError
from laplace_gmrf.utils.sparse import to_coo_triplets


class FieldConvention(Enum):
    DIRECT = 'direct'
    UNSCALED = 'unscaled'


def _as_convention(convention: Union[str, FieldConvention]) -> FieldConvention:
    if isinstance(convention, FieldConvention):
        return convention
    try:
        return FieldConvention(convention)
    except ValueError:
        valid = [c.value for c in FieldConvention]
        raise ConfigurationError(
            f"Unknown field convention: {convention!r} (expected one of {valid})"
        ) from None


class LinkMap(nn.Module):
    """
    Fixed sparse map from latent coordinates to observations.

    Args:
        matrix: scipy sparse or dense (n_obs, n_latent) matrix; None means
            identity (one latent value per observation)
        n_latent: Latent dimension, required when matrix is None
        convention: 'direct' or 'unscaled'

    Example:
        >>> A = projector_matrix(vertices, triangles, obs_coords)
        >>> link = LinkMap(A, convention='unscaled')
        >>> field = link.apply(latent, tau=torch.tensor(2.0))
    """

    def __init__(
        self,
        matrix=None,
        n_latent: Optional[int] = None,
        convention: Union[str, FieldConvention] = FieldConvention.DIRECT
    ):
        super().__init__()
        self.convention = _as_convention(convention)

        if matrix is None:
            if n_latent is None:
                raise StructuralError("n_latent is required for an identity link")
            self.identity = True
            self.n_latent = int(n_latent)
            self.n_obs = int(n_latent)
            return

        if not sparse.issparse(matrix):
            matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float64))
        n_obs, n_cols = matrix.shape
        if n_latent is not None and n_cols != n_latent:
            raise StructuralError(
                f"link matrix has {n_cols} columns but the latent field has {n_latent} entries"
            )
        rows, cols, values = to_coo_triplets(matrix)
        if not torch.all(torch.isfinite(values)):
            raise StructuralError("link matrix contains non-finite weights")

        self.identity = False
        self.n_latent = int(n_cols)
        self.n_obs = int(n_obs)
        self.register_buffer('rows', rows)
        self.register_buffer('cols', cols)
        self.register_buffer('weights', values)

    @property
    def scaled(self) -> bool:
        """True when the owning component carries a log_tau parameter."""
        return self.convention is FieldConvention.UNSCALED

    def apply(self, latent: torch.Tensor, tau: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        Map latent values to the per-observation field in O(nnz).

        Args:
            latent: Latent values (n_latent,)
            tau: Marginal precision scale, required for the unscaled convention

        Returns:
            Field values at the observations (n_obs,)
        """
        if self.identity:
            field = latent
        else:
            out = torch.zeros(self.n_obs, dtype=latent.dtype, device=latent.device)
            field = out.index_add(0, self.rows, self.weights * latent[self.cols])

        if self.convention is FieldConvention.UNSCALED:
            if tau is None:
                raise ConfigurationError("the unscaled convention needs tau")
            field = field / tau
        return field

    def to_scipy(self) -> sparse.csr_matrix:
        if self.identity:
            return sparse.identity(self.n_latent, format='csr')
        return sparse.csr_matrix(
            (self.weights.cpu().numpy(), (self.rows.cpu().numpy(), self.cols.cpu().numpy())),
            shape=(self.n_obs, self.n_latent)
        )

    def extra_repr(self) -> str:
        kind = 'identity' if self.identity else f'{self.n_obs}x{self.n_latent}'
        return f"{kind}, convention={self.convention.value}"

"""
Joint density evaluator for Gaussian latent fields.

The negative log density of a zero-mean GMRF x with precision Q is

    -log N(x; 0, Q^{-1}) = 0.5 x^T Q x - 0.5 log|Q| + 0.5 n log(2 pi)

Only the quadratic form depends on x. During inner optimization the
log-determinant is a constant and is skipped, so no factorization is done
and a rank-deficient Q is acceptable there.
"""
import math
from typing import Optional

import torch

LOG_2PI = math.log(2.0 * math.pi)


def gmrf_nll(
    latent: torch.Tensor,
    precision,
    include_normalizing_constant: bool = True,
    mean: Optional[torch.Tensor] = None,
    log_determinant: Optional[torch.Tensor] = None,
    rank: Optional[int] = None
) -> torch.Tensor:
    """
    Negative log density of a latent field under a sparse precision matrix.

    Args:
        latent: Latent field values (n,)
        precision: PrecisionMatrix of size n
        include_normalizing_constant: If False, only 0.5 x^T Q x is returned
        mean: Optional prior mean (n,)
        log_determinant: Precomputed log|Q| (or log pseudo-determinant);
            computed by Cholesky factorization when omitted
        rank: Dimension used for the 2 pi constant (defaults to n); pass the
            rank of Q together with a pseudo-determinant

    Returns:
        Scalar negative log density

    Raises:
        SingularPrecisionError: If the normalizing constant is requested,
            no log_determinant is supplied and Q is not positive-definite.
    """
    x = latent if mean is None else latent - mean
    nll = 0.5 * precision.quadratic_form(x)

    if include_normalizing_constant:
        if log_determinant is None:
            log_determinant = precision.log_determinant()
        dim = precision.size if rank is None else rank
        nll = nll - 0.5 * log_determinant + 0.5 * dim * LOG_2PI

    return nll


def independent_gaussian_nll(
    residual: torch.Tensor,
    log_sigma: torch.Tensor,
    include_normalizing_constant: bool = True
) -> torch.Tensor:
    """
    Negative log density of independent N(0, sigma^2) residuals.

    This is the implicit form of a diagonal precision I / sigma^2: the
    log-determinant is available in closed form, no factorization needed.
    log_sigma is either a scalar or has the same shape as residual.
    """
    sigma = torch.exp(log_sigma)
    nll = 0.5 * torch.sum((residual / sigma) ** 2)
    if include_normalizing_constant:
        n = residual.numel()
        if log_sigma.dim() == 0:
            nll = nll + n * log_sigma
        else:
            nll = nll + torch.sum(log_sigma)
        nll = nll + 0.5 * n * LOG_2PI
    return nll

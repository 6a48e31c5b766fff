"""
Priors on hyperparameters and fixed effects.

Parameters are optimized on a transformed (usually log) scale while priors
are stated on the natural scale, so a change-of-variables term is needed:
for s = log(sigma) the log density of s is log p(exp(s)) + s.
"""
from typing import Dict

import torch
from torch import distributions as dist

from laplace_gmrf.exceptions import ConfigurationError

TRANSFORMS = ('log', 'identity')


class HyperPrior:
    """
    Prior for one named parameter.

    Args:
        distribution: torch distribution on the natural scale
        transform: Scale the parameter is optimized on ('log' or 'identity')
        jacobian: Add the Jacobian of the inverse transform (log only)

    Example:
        >>> prior = HyperPrior(dist.Exponential(1.0), transform='log')
        >>> prior.nll(torch.tensor(0.0))  # -log p(sigma=1) - log(1)
    """

    def __init__(
        self,
        distribution: dist.Distribution,
        transform: str = 'log',
        jacobian: bool = True
    ):
        if transform not in TRANSFORMS:
            raise ConfigurationError(
                f"Unknown prior transform: {transform!r} (expected one of {TRANSFORMS})"
            )
        self.distribution = distribution
        self.transform = transform
        self.jacobian = jacobian

    def nll(self, value: torch.Tensor) -> torch.Tensor:
        """Negative log prior density of the parameter on its optimization scale."""
        if self.transform == 'identity':
            return -torch.sum(self.distribution.log_prob(value))

        natural = torch.exp(value)
        out = -torch.sum(self.distribution.log_prob(natural))
        if self.jacobian:
            # d exp(s) / ds = exp(s)
            out = out - torch.sum(value)
        return out

    def __repr__(self) -> str:
        return (f"HyperPrior({self.distribution}, transform={self.transform!r}, "
                f"jacobian={self.jacobian})")


def total_prior_nll(
    priors: Dict[str, HyperPrior],
    params: Dict[str, torch.Tensor]
) -> torch.Tensor:
    """Sum of all hyperprior terms."""
    out = torch.zeros((), dtype=torch.float64)
    for name, prior in priors.items():
        out = out + prior.nll(params[name])
    return out

"""
State-space stock-recruitment process.

Yearly log-recruitment states x_t follow x_t ~ N(pred_t, sigma^2) where the
prior mean pred_t depends on the selected mode:

    - RandomWalk:    pred_t = x_{t-1}                     (t >= 1)
    - Ricker:        pred_t = alpha + log(SSB_t) - exp(beta) SSB_t
    - BevertonHolt:  pred_t = alpha + log(SSB_t) - log(1 + exp(beta) SSB_t)

Modes are selected once, at construction; an unknown mode is a
ConfigurationError and never falls back to a default.
"""
from typing import Dict, Optional, Union

import numpy as np
import torch
import torch.nn.functional as F

from laplace_gmrf.density import independent_gaussian_nll
from laplace_gmrf.exceptions import ConfigurationError
from laplace_gmrf.precision import PrecisionFamily, PrecisionMatrix
from laplace_gmrf.structures import build_random_walk_structure
from laplace_gmrf.utils.sparse import to_coo_triplets


class RecruitmentMode:
    """Base class of the prior-mean variants."""

    name = 'base'
    uses_ssb = False

    def stock_recruitment(
        self,
        log_ssb: torch.Tensor,
        ssb: torch.Tensor,
        alpha: torch.Tensor,
        beta: torch.Tensor
    ) -> torch.Tensor:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RandomWalk(RecruitmentMode):
    name = 'random_walk'


class Ricker(RecruitmentMode):
    """Overcompensating: predicted log recruitment falls for large SSB."""

    name = 'ricker'
    uses_ssb = True

    def stock_recruitment(self, log_ssb, ssb, alpha, beta):
        return alpha + log_ssb - torch.exp(beta) * ssb


class BevertonHolt(RecruitmentMode):
    """Compensating: predicted log recruitment tends to alpha - beta for large SSB."""

    name = 'beverton_holt'
    uses_ssb = True

    def stock_recruitment(self, log_ssb, ssb, alpha, beta):
        # log(1 + exp(beta) SSB) = softplus(beta + log SSB)
        return alpha + log_ssb - F.softplus(beta + log_ssb)


_MODES = {
    'random_walk': RandomWalk,
    'rw': RandomWalk,
    'ricker': Ricker,
    'beverton_holt': BevertonHolt,
    'bevertonholt': BevertonHolt,
    'bh': BevertonHolt,
}


def recruitment_mode(mode: Union[str, RecruitmentMode]) -> RecruitmentMode:
    """
    Resolve a mode name (or instance) to a RecruitmentMode.

    Raises:
        ConfigurationError: For unknown names or non-string selectors
            such as integer codes.
    """
    if isinstance(mode, RecruitmentMode):
        return mode
    if isinstance(mode, type) and issubclass(mode, RecruitmentMode):
        return mode()
    if not isinstance(mode, str) or mode.lower() not in _MODES:
        raise ConfigurationError(
            f"Unknown recruitment mode: {mode!r} "
            f"(expected 'random_walk', 'ricker' or 'beverton_holt')"
        )
    return _MODES[mode.lower()]()


class RecruitmentProcess(PrecisionFamily):
    """
    Latent log-recruitment process with a mode-dependent prior mean.

    Args:
        n_years: Number of years; required for the random walk, inferred
            from ssb otherwise
        ssb: Spawning stock biomass per year (strictly positive), required
            for Ricker and Beverton-Holt
        mode: 'random_walk', 'ricker', 'beverton_holt' or a RecruitmentMode
        init_log_sigma: Initial log process standard deviation
        init_alpha: Initial alpha (stock-recruitment modes)
        init_beta: Initial beta (stock-recruitment modes)

    Example:
        >>> process = RecruitmentProcess(ssb=ssb, mode='ricker')
        >>> process.parameter_spec().keys()
        dict_keys(['log_sigma', 'alpha', 'beta'])
    """

    def __init__(
        self,
        n_years: Optional[int] = None,
        ssb=None,
        mode: Union[str, RecruitmentMode] = 'random_walk',
        init_log_sigma: float = 0.0,
        init_alpha: float = 0.0,
        init_beta: float = 0.0
    ):
        mode = recruitment_mode(mode)

        if mode.uses_ssb:
            if ssb is None:
                raise ConfigurationError(f"{mode.name} recruitment needs ssb")
            ssb = np.asarray(ssb, dtype=np.float64)
            if ssb.ndim != 1 or ssb.size == 0:
                raise ConfigurationError(f"ssb must be a non-empty 1-D array, got shape {ssb.shape}")
            if not np.all(np.isfinite(ssb)) or np.any(ssb <= 0):
                raise ConfigurationError("ssb must be finite and strictly positive")
            if n_years is not None and int(n_years) != len(ssb):
                raise ConfigurationError(f"n_years={n_years} but ssb has {len(ssb)} entries")
            n_years = len(ssb)
        elif n_years is None:
            if ssb is None:
                raise ConfigurationError("random_walk recruitment needs n_years")
            n_years = len(np.asarray(ssb))

        super().__init__(int(n_years))
        self.mode = mode
        self.init_log_sigma = init_log_sigma
        self.init_alpha = init_alpha
        self.init_beta = init_beta

        if mode.uses_ssb:
            self.register_buffer('ssb', torch.as_tensor(ssb))
            self.register_buffer('log_ssb', torch.log(torch.as_tensor(ssb)))
        else:
            structure = build_random_walk_structure(self.n_latent)
            rows, cols, values = to_coo_triplets(structure.structure_matrix())
            self.register_buffer('rows', rows)
            self.register_buffer('cols', cols)
            self.register_buffer('base_values', values)

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        spec = {'log_sigma': torch.tensor(self.init_log_sigma, dtype=torch.float64)}
        if self.mode.uses_ssb:
            spec['alpha'] = torch.tensor(self.init_alpha, dtype=torch.float64)
            spec['beta'] = torch.tensor(self.init_beta, dtype=torch.float64)
        return spec

    def predicted(self, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        """Stock-recruitment prior mean of every year."""
        if not self.mode.uses_ssb:
            raise ConfigurationError("the random walk has no stock-recruitment curve")
        return self.mode.stock_recruitment(self.log_ssb, self.ssb, params['alpha'], params['beta'])

    def residuals(self, latent: torch.Tensor, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        if self.mode.uses_ssb:
            return latent - self.predicted(params)
        return latent[1:] - latent[:-1]

    def prior_nll(self, latent, params, include_normalizing_constant=True):
        return independent_gaussian_nll(
            self.residuals(latent, params), params['log_sigma'], include_normalizing_constant
        )

    def precision(self, params) -> PrecisionMatrix:
        inv_var = torch.exp(-2.0 * params['log_sigma'])
        if self.mode.uses_ssb:
            idx = torch.arange(self.n_latent, device=self.ssb.device)
            return PrecisionMatrix(idx, idx, inv_var.expand(self.n_latent), self.n_latent)
        return PrecisionMatrix(self.rows, self.cols, self.base_values * inv_var, self.n_latent)

    def log_determinant(self, params):
        n_terms = self.n_latent if self.mode.uses_ssb else self.n_latent - 1
        return -2.0 * n_terms * params['log_sigma']

    def report(self, params, tau=None):
        out = {'sigma': torch.exp(params['log_sigma'])}
        if self.mode.uses_ssb:
            out['predicted'] = self.predicted(params)
        return out

    def extra_repr(self) -> str:
        return f"n_years={self.n_latent}, mode={self.mode.name}"

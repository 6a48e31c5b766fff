"""
Observation likelihood evaluators.

Every family takes the per-observation linear predictor eta and returns
the summed negative log likelihood. Data are validated once, when the
family is constructed; evaluation never fails on finite inputs.
"""
import math
from typing import Dict, Optional

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from laplace_gmrf.density import independent_gaussian_nll
from laplace_gmrf.exceptions import ConfigurationError


def _as_vector(values, name: str) -> torch.Tensor:
    array = np.asarray(values, dtype=np.float64)
    if array.ndim != 1 or array.size == 0:
        raise ConfigurationError(f"{name} must be a non-empty 1-D array, got shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ConfigurationError(f"{name} contains non-finite values")
    return torch.as_tensor(array)


class ObservationFamily(nn.Module):
    """
    Base class for observation likelihoods.

    Subclasses register their data as buffers and implement nll().
    """

    name = 'base'

    def __init__(self, n_obs: int):
        super().__init__()
        self.n_obs = int(n_obs)

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        return {}

    def nll(self, eta: torch.Tensor, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        raise NotImplementedError

    def report(self, params: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        return {}

    def extra_repr(self) -> str:
        return f"n_obs={self.n_obs}"


class Gaussian(ObservationFamily):
    """
    y_i ~ N(eta_i, sigma^2) with parameter log_sigma.

    Args:
        y: Responses (n_obs,)
        init_log_sigma: Initial log(sigma); defaults to log of the sample sd
    """

    name = 'gaussian'

    def __init__(self, y, init_log_sigma: Optional[float] = None):
        y = _as_vector(y, 'y')
        super().__init__(len(y))
        self.register_buffer('y', y)
        if init_log_sigma is None:
            sd = float(y.std()) if len(y) > 1 else 1.0
            init_log_sigma = math.log(sd) if sd > 0 else 0.0
        self.init_log_sigma = init_log_sigma

    def parameter_spec(self):
        return {'log_sigma': torch.tensor(self.init_log_sigma, dtype=torch.float64)}

    def nll(self, eta, params):
        return independent_gaussian_nll(self.y - eta, params['log_sigma'])

    def report(self, params):
        return {'sigma': torch.exp(params['log_sigma'])}


class CensoredWeibull(ObservationFamily):
    """
    Right-censored Weibull survival times with rate lambda = exp(eta).

    S(t) = exp(-lambda t^w), f(t) = lambda w t^(w-1) S(t). Events contribute
    -log f(t), censored records -log S(t). Everything is evaluated on the log
    scale: lambda t^w = exp(eta + w log t).

    Args:
        times: Survival or censoring times, strictly positive (n_obs,)
        event: 1 where the event was observed, 0 where censored
            (defaults to all events)
        init_log_shape: Initial log(w)
    """

    name = 'weibull'

    def __init__(self, times, event=None, init_log_shape: float = 0.0):
        times = _as_vector(times, 'times')
        if torch.any(times <= 0):
            raise ConfigurationError("survival times must be strictly positive")
        if event is None:
            event = torch.ones_like(times)
        else:
            event = _as_vector(event, 'event')
            if event.shape != times.shape:
                raise ConfigurationError(
                    f"event has {len(event)} entries but times has {len(times)}"
                )
            if not torch.all((event == 0) | (event == 1)):
                raise ConfigurationError("event indicators must be 0 (censored) or 1 (event)")
        super().__init__(len(times))
        self.register_buffer('log_times', torch.log(times))
        self.register_buffer('event', event)
        self.init_log_shape = init_log_shape

    def parameter_spec(self):
        return {'log_shape': torch.tensor(self.init_log_shape, dtype=torch.float64)}

    def pointwise_nll(self, eta, params):
        log_shape = params['log_shape']
        shape = torch.exp(log_shape)
        cumulative_hazard = torch.exp(eta + shape * self.log_times)
        log_hazard = eta + log_shape + (shape - 1.0) * self.log_times
        return cumulative_hazard - self.event * log_hazard

    def nll(self, eta, params):
        return torch.sum(self.pointwise_nll(eta, params))

    def report(self, params):
        return {'shape': torch.exp(params['log_shape'])}


class Binomial(ObservationFamily):
    """
    Binomial counts with logit link (Bernoulli when trials is omitted).

    Uses softplus(eta) = log(1 + exp(eta)) so that large |eta| never overflows:
        -log p(y) = n softplus(eta) - y eta - log C(n, y)

    Args:
        y: Success counts (n_obs,)
        trials: Number of trials per observation (defaults to 1)
    """

    name = 'binomial'

    def __init__(self, y, trials=None):
        y = _as_vector(y, 'y')
        if trials is None:
            trials = torch.ones_like(y)
        else:
            trials = _as_vector(trials, 'trials')
            if trials.shape != y.shape:
                raise ConfigurationError(f"trials has {len(trials)} entries but y has {len(y)}")
        if torch.any(trials < 1) or torch.any(trials != torch.round(trials)):
            raise ConfigurationError("trials must be positive integers")
        if torch.any(y < 0) or torch.any(y > trials) or torch.any(y != torch.round(y)):
            raise ConfigurationError("binomial responses must be integers in [0, trials]")
        super().__init__(len(y))
        self.register_buffer('y', y)
        self.register_buffer('trials', trials)
        self.register_buffer(
            'log_binom',
            torch.lgamma(trials + 1) - torch.lgamma(y + 1) - torch.lgamma(trials - y + 1)
        )

    def nll(self, eta, params):
        return torch.sum(self.trials * F.softplus(eta) - self.y * eta - self.log_binom)


class Poisson(ObservationFamily):
    """Poisson counts with log link: -log p(y) = exp(eta) - y eta + log(y!)."""

    name = 'poisson'

    def __init__(self, y):
        y = _as_vector(y, 'y')
        if torch.any(y < 0) or torch.any(y != torch.round(y)):
            raise ConfigurationError("Poisson responses must be non-negative integers")
        super().__init__(len(y))
        self.register_buffer('y', y)
        self.register_buffer('log_factorial', torch.lgamma(y + 1))

    def nll(self, eta, params):
        return torch.sum(torch.exp(eta) - self.y * eta + self.log_factorial)


LIKELIHOODS = {
    'gaussian': Gaussian,
    'weibull': CensoredWeibull,
    'censored_weibull': CensoredWeibull,
    'binomial': Binomial,
    'bernoulli': Binomial,
    'poisson': Poisson,
}


def get_likelihood(name: str, **data) -> ObservationFamily:
    """
    Construct an observation family by name.

    Example:
        >>> lik = get_likelihood('weibull', times=t, event=notcens)

    Raises:
        ConfigurationError: If the family name is unknown.
    """
    try:
        cls = LIKELIHOODS[name.lower()]
    except (KeyError, AttributeError):
        raise ConfigurationError(
            f"Unknown likelihood family: {name!r} (expected one of {sorted(LIKELIHOODS)})"
        ) from None
    return cls(**data)

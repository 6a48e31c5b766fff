"""
Latent Gaussian model definitions.

A LatentGaussianModel is the explicit value object tying together the
observation likelihood, one or more latent components (each a precision
family plus a link map), an optional fixed-effect design matrix and optional
hyperpriors. Its objective() is a pure function of
(latent field, parameters) and is what the Laplace driver differentiates.

    objective = sum_k prior_nll_k(latent_k) + likelihood_nll(eta) + hyperprior_nll

    eta = offset + X beta + sum_k A_k latent_k            (direct convention)
                          + sum_k (A_k latent_k) / tau_k  (unscaled convention)
"""
from collections import OrderedDict
from enum import Enum
from typing import Callable, Dict, Optional, Sequence, Union

import numpy as np
import torch
import torch.nn as nn

from laplace_gmrf.exceptions import ConfigurationError, StructuralError
from laplace_gmrf.likelihoods import ObservationFamily
from laplace_gmrf.link import LinkMap
from laplace_gmrf.parameters import ParameterLayout
from laplace_gmrf.precision import PrecisionFamily
from laplace_gmrf.priors import HyperPrior, total_prior_nll


class EvaluationMode(Enum):
    """
    What objective() evaluates.

    FULL: prior + likelihood + hyperpriors.
    PRIOR_ONLY: latent prior terms with their normalizing constants only,
        returned before any likelihood work. This lets a caller treat the
        log-determinant as a function of the hyperparameters alone.
    """
    FULL = 'full'
    PRIOR_ONLY = 'prior_only'


def _as_mode(mode: Union[str, EvaluationMode]) -> EvaluationMode:
    if isinstance(mode, EvaluationMode):
        return mode
    try:
        return EvaluationMode(mode)
    except ValueError:
        valid = [m.value for m in EvaluationMode]
        raise ConfigurationError(
            f"Unknown evaluation mode: {mode!r} (expected one of {valid})"
        ) from None


def _local(params: Dict[str, torch.Tensor], prefix: str) -> Dict[str, torch.Tensor]:
    """Strip 'prefix.' from the matching parameter names."""
    start = prefix + '.'
    return {name[len(start):]: value for name, value in params.items() if name.startswith(start)}


class LatentComponent(nn.Module):
    """
    One latent sub-field: a precision family and the link to the observations.

    Args:
        name: Unique component name, used to prefix its parameters
        family: PrecisionFamily of the latent block
        link: LinkMap to the observations (identity when omitted)
        init_log_tau: Initial log(tau) for the unscaled convention
    """

    def __init__(
        self,
        name: str,
        family: PrecisionFamily,
        link: Optional[LinkMap] = None,
        init_log_tau: float = 0.0
    ):
        super().__init__()
        if not name or '.' in name:
            raise ConfigurationError(f"component name must be non-empty without dots, got {name!r}")
        if link is None:
            link = LinkMap(None, n_latent=family.n_latent)
        if link.n_latent != family.n_latent:
            raise StructuralError(
                f"component {name!r}: link expects {link.n_latent} latent values, "
                f"family has {family.n_latent}"
            )
        self.name = name
        self.family = family
        self.link = link
        self.init_log_tau = init_log_tau

    @property
    def n_latent(self) -> int:
        return self.family.n_latent

    def parameter_spec(self) -> Dict[str, torch.Tensor]:
        spec = OrderedDict(self.family.parameter_spec())
        if self.link.scaled:
            spec['log_tau'] = torch.tensor(self.init_log_tau, dtype=torch.float64)
        return spec

    def tau(self, local_params: Dict[str, torch.Tensor]) -> Optional[torch.Tensor]:
        if not self.link.scaled:
            return None
        return torch.exp(local_params['log_tau'])

    def field(self, latent: torch.Tensor, local_params: Dict[str, torch.Tensor]) -> torch.Tensor:
        return self.link.apply(latent, self.tau(local_params))

    def prior_nll(self, latent, local_params, include_normalizing_constant=True):
        return self.family.prior_nll(latent, local_params, include_normalizing_constant)

    def report(self, local_params: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        tau = self.tau(local_params)
        out = OrderedDict(self.family.report(local_params, tau))
        if tau is not None:
            out['tau'] = tau
        return out


class LatentGaussianModel(nn.Module):
    """
    Latent Gaussian regression model (the objective assembler).

    Args:
        likelihood: ObservationFamily holding the responses
        components: Latent components; their blocks are stacked in order
        design: Fixed-effect design matrix (n_obs, p); adds parameter 'beta'
        offset: Known offset added to the linear predictor (n_obs,)
        priors: Mapping from parameter name to HyperPrior (fully Bayesian
            configurations); parameters without a prior are left flat

    Example:
        >>> spde = build_spde_structure(vertices, triangles)
        >>> field = LatentComponent('spatial', SPDEPrecision(spde),
        ...                         LinkMap(A, convention='unscaled'))
        >>> model = LatentGaussianModel(CensoredWeibull(t, notcens), [field], design=X)
        >>> model.layout.names
        ['beta', 'spatial.log_kappa', 'spatial.log_tau', 'likelihood.log_shape']
    """

    def __init__(
        self,
        likelihood: ObservationFamily,
        components: Sequence[LatentComponent] = (),
        design=None,
        offset=None,
        priors: Optional[Dict[str, HyperPrior]] = None
    ):
        super().__init__()
        self.likelihood = likelihood
        self.components = nn.ModuleList(components)
        n_obs = likelihood.n_obs

        names = [c.name for c in self.components]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"component names must be unique, got {names}")
        if 'likelihood' in names or 'beta' in names:
            raise ConfigurationError("'likelihood' and 'beta' are reserved names")
        for comp in self.components:
            if comp.link.n_obs != n_obs:
                raise StructuralError(
                    f"component {comp.name!r} maps to {comp.link.n_obs} observations, "
                    f"likelihood has {n_obs}"
                )

        self.has_design = design is not None
        if self.has_design:
            X = torch.as_tensor(np.asarray(design, dtype=np.float64))
            if X.dim() == 1:
                X = X.unsqueeze(1)
            if X.shape[0] != n_obs:
                raise StructuralError(f"design has {X.shape[0]} rows, likelihood has {n_obs}")
            self.register_buffer('design', X)

        if offset is None:
            offset = torch.zeros(n_obs, dtype=torch.float64)
        else:
            offset = torch.as_tensor(np.asarray(offset, dtype=np.float64))
            if offset.shape != (n_obs,):
                raise StructuralError(f"offset must have shape ({n_obs},), got {tuple(offset.shape)}")
        self.register_buffer('offset', offset)

        # Parameter layout: fixed effects, latent hyperparameters, likelihood
        self.layout = ParameterLayout()
        if self.has_design:
            self.layout.add('beta', torch.zeros(self.design.shape[1], dtype=torch.float64))
        for comp in self.components:
            for name, init in comp.parameter_spec().items():
                self.layout.add(f"{comp.name}.{name}", init)
        for name, init in likelihood.parameter_spec().items():
            self.layout.add(f"likelihood.{name}", init)

        self.priors = dict(priors or {})
        unknown = [name for name in self.priors if name not in self.layout]
        if unknown:
            raise ConfigurationError(
                f"priors given for unknown parameters {unknown}; known: {self.layout.names}"
            )

        self._latent_slices = OrderedDict()
        offset_idx = 0
        for comp in self.components:
            self._latent_slices[comp.name] = slice(offset_idx, offset_idx + comp.n_latent)
            offset_idx += comp.n_latent
        self.n_latent = offset_idx

        self._reports = OrderedDict()

    # ------------------------------------------------------------------
    # Parameters and latent blocks
    # ------------------------------------------------------------------

    def initial_params(self) -> Dict[str, torch.Tensor]:
        return self.layout.unflatten(self.layout.initial_vector())

    def split_latent(self, latent: torch.Tensor) -> Dict[str, torch.Tensor]:
        if latent.shape != (self.n_latent,):
            raise StructuralError(
                f"latent field must have shape ({self.n_latent},), got {tuple(latent.shape)}"
            )
        return OrderedDict((name, latent[s]) for name, s in self._latent_slices.items())

    def fields(self, latent: torch.Tensor, params: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """Physical field of every component at the observations."""
        blocks = self.split_latent(latent)
        return OrderedDict(
            (comp.name, comp.field(blocks[comp.name], _local(params, comp.name)))
            for comp in self.components
        )

    def linear_predictor(self, latent: torch.Tensor, params: Dict[str, torch.Tensor]) -> torch.Tensor:
        eta = self.offset
        if self.has_design:
            eta = eta + self.design @ params['beta']
        for field in self.fields(latent, params).values():
            eta = eta + field
        return eta

    # ------------------------------------------------------------------
    # Objective
    # ------------------------------------------------------------------

    def prior_nll(
        self,
        latent: torch.Tensor,
        params: Dict[str, torch.Tensor],
        include_normalizing_constant: bool = True
    ) -> torch.Tensor:
        """Sum of the latent prior terms of all components."""
        blocks = self.split_latent(latent)
        nll = torch.zeros((), dtype=torch.float64)
        for comp in self.components:
            nll = nll + comp.prior_nll(
                blocks[comp.name], _local(params, comp.name), include_normalizing_constant
            )
        return nll

    def objective(
        self,
        latent: torch.Tensor,
        params: Dict[str, torch.Tensor],
        mode: Union[str, EvaluationMode] = EvaluationMode.FULL,
        include_normalizing_constant: bool = True
    ) -> torch.Tensor:
        """
        Negative log joint density of (latent field, data).

        Args:
            latent: Stacked latent field (n_latent,)
            params: Named parameters (see self.layout)
            mode: EvaluationMode.FULL or EvaluationMode.PRIOR_ONLY
            include_normalizing_constant: Include the log-determinant terms of
                the latent prior (ignored for PRIOR_ONLY, which always
                includes them)

        Returns:
            Scalar objective
        """
        mode = _as_mode(mode)
        if mode is EvaluationMode.PRIOR_ONLY:
            return self.prior_nll(latent, params, include_normalizing_constant=True)

        nll = self.prior_nll(latent, params, include_normalizing_constant)
        eta = self.linear_predictor(latent, params)
        nll = nll + self.likelihood.nll(eta, _local(params, 'likelihood'))
        if self.priors:
            nll = nll + total_prior_nll(self.priors, params)
        return nll

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def add_report(
        self,
        name: str,
        fn: Callable[[Dict[str, torch.Tensor], Dict[str, torch.Tensor]], torch.Tensor]
    ) -> None:
        """
        Register a derived quantity fn(latent_blocks, params) -> tensor.

        latent_blocks maps component names to their latent blocks. Standard
        errors of registered quantities are computed by the delta method in
        LaplaceApproximation.sdreport().
        """
        if name in self._reports:
            raise ConfigurationError(f"report {name!r} already registered")
        self._reports[name] = fn

    def report(self, latent: torch.Tensor, params: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """Evaluate built-in and registered derived quantities."""
        out = OrderedDict()
        for comp in self.components:
            for key, value in comp.report(_local(params, comp.name)).items():
                out[f"{comp.name}.{key}"] = value
        for key, value in self.likelihood.report(_local(params, 'likelihood')).items():
            out[f"likelihood.{key}"] = value

        # Natural scale of any remaining log-parameter
        for name in self.layout.names:
            prefix, _, local = name.rpartition('.')
            if local.startswith('log_'):
                natural = f"{prefix}.{local[4:]}" if prefix else local[4:]
                if natural not in out:
                    out[natural] = torch.exp(params[name])

        blocks = self.split_latent(latent)
        for key, fn in self._reports.items():
            out[key] = torch.as_tensor(fn(blocks, params))
        return out

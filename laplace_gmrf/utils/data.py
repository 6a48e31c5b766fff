"""
Data Generation Utilities for latent Gaussian models.

"""
from typing import Optional, Sequence

import numpy as np
import torch

from laplace_gmrf.precision import SPDEPrecision
from laplace_gmrf.recruitment import recruitment_mode
from laplace_gmrf.structures import build_spde_structure
from laplace_gmrf.utils.mesh import projector_matrix, regular_mesh


def sample_gmrf(Q: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw x ~ N(0, Q^{-1}) from a dense precision matrix: x = L^{-T} z."""
    L = np.linalg.cholesky(Q)
    z = rng.standard_normal(Q.shape[0])
    return np.linalg.solve(L.T, z)


def generate_survival_data(
    n_obs: int = 200,
    mesh_size: int = 8,
    beta: Sequence[float] = (-1.0, 0.5),
    kappa: float = 3.0,
    tau: float = 0.5,
    shape: float = 1.5,
    censoring_rate: float = 0.3,
    seed: Optional[int] = None
) -> dict:
    """
    Generate spatial survival data with a Matern (SPDE) frailty.

    Creates data from the model:
        t_i ~ Weibull(rate = exp(eta_i), shape)
        eta_i = beta_0 + beta_1 x_i + (A u)_i / tau
        u ~ N(0, Q(kappa)^{-1})
    with independent exponential right-censoring.

    Args:
        n_obs: Number of observations
        mesh_size: Vertices per side of the regular mesh on [0, 1]^2
        beta: Intercept and slope of the covariate
        kappa: SPDE scale parameter
        tau: Marginal precision scale of the field
        shape: Weibull shape
        censoring_rate: Rate of the exponential censoring times
        seed: Random seed for reproducibility

    Returns:
        Dictionary containing:
            - times: Observed times (n_obs,)
            - event: 1 for events, 0 for censored records
            - X: Design matrix (n_obs, 2)
            - coords: Observation locations (n_obs, 2)
            - vertices, triangles: The mesh
            - A: Projector matrix (n_obs, n_vertices)
            - u: True latent field at the vertices
            - beta, kappa, tau, shape: True parameters

    Example:
        >>> data = generate_survival_data(n_obs=100, seed=1)
        >>> data['times'].shape
        (100,)
    """
    rng = np.random.default_rng(seed)
    vertices, triangles = regular_mesh(mesh_size, mesh_size)
    spde = SPDEPrecision(build_spde_structure(vertices, triangles))
    Q = spde.precision({'log_kappa': torch.tensor(np.log(kappa), dtype=torch.float64)})
    u = sample_gmrf(Q.to_dense().numpy(), rng)

    coords = rng.uniform(0.0, 1.0, size=(n_obs, 2))
    A = projector_matrix(vertices, triangles, coords)
    X = np.column_stack([np.ones(n_obs), rng.standard_normal(n_obs)])
    beta = np.asarray(beta, dtype=np.float64)
    eta = X @ beta + (A @ u) / tau

    # Inverse of S(t) = exp(-exp(eta) t^shape)
    event_times = (-np.log(rng.uniform(size=n_obs)) / np.exp(eta)) ** (1.0 / shape)
    censor_times = rng.exponential(1.0 / censoring_rate, size=n_obs)
    times = np.minimum(event_times, censor_times)
    event = (event_times <= censor_times).astype(np.float64)

    return {
        'times': times,
        'event': event,
        'X': X,
        'coords': coords,
        'vertices': vertices,
        'triangles': triangles,
        'A': A,
        'u': u,
        'beta': beta,
        'kappa': kappa,
        'tau': tau,
        'shape': shape,
    }


def generate_spline_data(
    n_obs: int = 200,
    sigma: float = 0.3,
    intercept: float = 1.0,
    seed: Optional[int] = None
) -> dict:
    """
    Generate additive-model data with two smooth effects.

    y = intercept + sin(2 pi x1) + 2 (x2 - 0.5)^2 + eps,  eps ~ N(0, sigma^2)

    Returns:
        Dictionary with x1, x2, y, the true smooth functions f1, f2 and sigma
    """
    rng = np.random.default_rng(seed)
    x1 = rng.uniform(0.0, 1.0, n_obs)
    x2 = rng.uniform(0.0, 1.0, n_obs)
    f1 = np.sin(2.0 * np.pi * x1)
    f2 = 2.0 * (x2 - 0.5) ** 2
    f2 = f2 - f2.mean()
    y = intercept + f1 + f2 + sigma * rng.standard_normal(n_obs)
    return {'x1': x1, 'x2': x2, 'y': y, 'f1': f1, 'f2': f2, 'sigma': sigma}


def generate_recruitment_data(
    n_years: int = 30,
    mode: str = 'ricker',
    alpha: float = 1.0,
    beta: float = -7.0,
    sigma_process: float = 0.3,
    sigma_obs: float = 0.2,
    ssb_range: Sequence[float] = (200.0, 3000.0),
    seed: Optional[int] = None
) -> dict:
    """
    Generate a stock-recruitment time series.

    Latent log recruitment follows the selected mode with process noise
    sigma_process; observations are log recruitment with noise sigma_obs.
    For the random walk the series starts at log(1000).

    Returns:
        Dictionary with ssb, log_recruitment (latent), log_observed and the
        true parameters
    """
    rng = np.random.default_rng(seed)
    process = recruitment_mode(mode)
    ssb = rng.uniform(ssb_range[0], ssb_range[1], n_years)

    if process.uses_ssb:
        ssb_t = torch.as_tensor(ssb)
        pred = process.stock_recruitment(
            torch.log(ssb_t), ssb_t,
            torch.tensor(alpha, dtype=torch.float64), torch.tensor(beta, dtype=torch.float64)
        ).numpy()
        log_recruitment = pred + sigma_process * rng.standard_normal(n_years)
    else:
        steps = sigma_process * rng.standard_normal(n_years)
        steps[0] = np.log(1000.0)
        log_recruitment = np.cumsum(steps)

    log_observed = log_recruitment + sigma_obs * rng.standard_normal(n_years)
    return {
        'ssb': ssb,
        'log_recruitment': log_recruitment,
        'log_observed': log_observed,
        'mode': process.name,
        'alpha': alpha,
        'beta': beta,
        'sigma_process': sigma_process,
        'sigma_obs': sigma_obs,
    }


def generate_grouped_data(
    n_obs: int = 400,
    n_levels: Sequence[int] = (12, 8),
    sigmas: Sequence[float] = (0.8, 0.5),
    beta: Sequence[float] = (-0.3, 0.7),
    family: str = 'binomial',
    trials: int = 1,
    seed: Optional[int] = None
) -> dict:
    """
    Generate GLMM data with crossed random intercepts.

    eta = beta_0 + beta_1 x + sum_k b_k[group_k],  b_k ~ N(0, sigma_k^2)

    Args:
        n_obs: Number of observations
        n_levels: Number of levels of each grouping factor
        sigmas: Random-effect standard deviation of each factor
        beta: Intercept and slope
        family: 'binomial' or 'poisson'
        trials: Binomial trials per observation
        seed: Random seed for reproducibility

    Returns:
        Dictionary with y, X, groups (n_obs, n_factors), effects (one array
        per factor), trials and the true parameters
    """
    if family not in ('binomial', 'poisson'):
        raise ValueError(f"Unknown family: {family}")
    rng = np.random.default_rng(seed)
    X = np.column_stack([np.ones(n_obs), rng.standard_normal(n_obs)])
    beta = np.asarray(beta, dtype=np.float64)
    eta = X @ beta

    groups, effects = [], []
    for levels, sigma in zip(n_levels, sigmas):
        g = rng.integers(0, levels, n_obs)
        b = sigma * rng.standard_normal(levels)
        eta = eta + b[g]
        groups.append(g)
        effects.append(b)

    if family == 'binomial':
        y = rng.binomial(trials, 1.0 / (1.0 + np.exp(-eta))).astype(np.float64)
    else:
        y = rng.poisson(np.exp(eta)).astype(np.float64)

    return {
        'y': y,
        'X': X,
        'groups': np.column_stack(groups),
        'effects': effects,
        'trials': np.full(n_obs, float(trials)),
        'beta': beta,
        'sigmas': np.asarray(sigmas, dtype=np.float64),
        'family': family,
    }

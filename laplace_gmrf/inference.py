"""
Laplace approximation for latent Gaussian models.

This module provides the estimation engine: an inner Newton optimization of
the latent field for fixed parameters, an outer quasi-Newton optimization of
the Laplace-approximated marginal likelihood, and delta-method reporting of
standard errors from the joint (latent + parameter) Hessian.

Derivatives come from torch autograd; the outer optimizer is
scipy.optimize.minimize.
"""
import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import torch
from scipy import sparse, stats
from scipy.optimize import minimize

from laplace_gmrf.density import LOG_2PI
from laplace_gmrf.exceptions import (
    ConfigurationError,
    InnerConvergenceError,
    SingularPrecisionError,
)
from laplace_gmrf.models import LatentGaussianModel

logger = logging.getLogger(__name__)


# ============================================================================
# Derivative helpers
# ============================================================================

def _value_and_gradient(fn, x: torch.Tensor, create_graph: bool = False):
    value = fn(x)
    grad, = torch.autograd.grad(value, x, create_graph=create_graph)
    return value, grad


def _hessian_from_gradient(
    grad: torch.Tensor,
    x: torch.Tensor,
    create_graph: bool = False
) -> torch.Tensor:
    """Dense Hessian, one backward pass per row of a gradient built with create_graph."""
    rows = []
    for i in range(x.numel()):
        if not grad[i].requires_grad:
            rows.append(torch.zeros_like(x))
            continue
        row, = torch.autograd.grad(
            grad[i], x, retain_graph=True, create_graph=create_graph, allow_unused=True
        )
        rows.append(torch.zeros_like(x) if row is None else row)
    return torch.stack(rows)


def _logdet_spd(H: torch.Tensor, what: str) -> torch.Tensor:
    L, info = torch.linalg.cholesky_ex(H)
    if int(info) != 0:
        raise SingularPrecisionError(f"{what} is not positive-definite")
    return 2.0 * torch.sum(torch.log(torch.diagonal(L)))


def _damped_newton_step(H: torch.Tensor, g: torch.Tensor, max_tries: int = 40) -> torch.Tensor:
    """Solve (H + shift I) step = g with the smallest shift that makes it positive-definite."""
    eye = torch.eye(H.shape[0], dtype=H.dtype, device=H.device)
    base = 1e-8 * max(1.0, float(H.diagonal().abs().max()))
    shift = 0.0
    for _ in range(max_tries):
        L, info = torch.linalg.cholesky_ex(H + shift * eye)
        if int(info) == 0:
            return torch.cholesky_solve(g.unsqueeze(1), L).squeeze(1)
        shift = base if shift == 0.0 else 10.0 * shift
    raise InnerConvergenceError("Hessian could not be regularized to positive-definite")


# ============================================================================
# Report
# ============================================================================

@dataclass
class LaplaceReport:
    """
    Point estimates and standard errors from a fitted LaplaceApproximation.

    Attributes:
        par: Parameter estimates by name
        par_sd: Standard errors of the parameters
        cov_par: Covariance of the flat parameter vector
        labels: Label of every flat parameter entry
        latent: Conditional mode of the latent field
        latent_sd: Standard errors of the latent field (parameter uncertainty included)
        derived: Derived quantities by name
        derived_sd: Delta-method standard errors of the derived quantities
        marginal_nll: Laplace-approximated negative log marginal likelihood
        converged: Whether the outer optimizer reported success
        joint_hessian: Hessian of the objective w.r.t. (latent, parameters),
            when requested
    """
    par: Dict[str, np.ndarray]
    par_sd: Dict[str, np.ndarray]
    cov_par: np.ndarray
    labels: List[str]
    latent: np.ndarray
    latent_sd: np.ndarray
    derived: Dict[str, np.ndarray] = field(default_factory=dict)
    derived_sd: Dict[str, np.ndarray] = field(default_factory=dict)
    marginal_nll: float = float('nan')
    converged: bool = False
    joint_hessian: Optional[np.ndarray] = None

    def joint_precision_pattern(self, tol: float = 0.0) -> sparse.csr_matrix:
        """Sparsity pattern of the joint Hessian (entries with |h| > tol)."""
        if self.joint_hessian is None:
            raise ConfigurationError("call sdreport(joint_hessian=True) to keep the joint Hessian")
        return sparse.csr_matrix(np.abs(self.joint_hessian) > tol)

    def confint(self, name: str, level: float = 0.95) -> Tuple[np.ndarray, np.ndarray]:
        """Wald interval for a parameter or derived quantity."""
        z = stats.norm.ppf((1 + level) / 2)
        if name in self.par:
            value, sd = self.par[name], self.par_sd[name]
        elif name in self.derived:
            value, sd = self.derived[name], self.derived_sd[name]
        else:
            raise ConfigurationError(f"unknown quantity {name!r}")
        return value - z * sd, value + z * sd

    def summary(self) -> str:
        lines = [f"{'name':<32s} {'estimate':>12s} {'std.error':>12s}"]
        for title, values, sds in (('parameters', self.par, self.par_sd),
                                   ('derived', self.derived, self.derived_sd)):
            if not values:
                continue
            lines.append(f"-- {title}")
            for name, value in values.items():
                flat_v, flat_s = np.ravel(value), np.ravel(sds[name])
                for i, (v, s) in enumerate(zip(flat_v, flat_s)):
                    label = name if flat_v.size == 1 else f"{name}[{i}]"
                    lines.append(f"{label:<32s} {v:12.5g} {s:12.5g}")
        lines.append(f"marginal nll: {self.marginal_nll:.6f} (converged: {self.converged})")
        return "\n".join(lines)


# ============================================================================
# Driver
# ============================================================================

class LaplaceApproximation:
    """
    Laplace estimation driver for a LatentGaussianModel.

    The inner phase minimizes the objective over the latent field (without
    the prior normalizing constant) by damped Newton iterations. The outer
    phase minimizes

        f(u_hat) + 0.5 log|H| - 0.5 n log(2 pi)

    over all parameters with a gradient-based quasi-Newton method, where
    H is the Hessian of the objective w.r.t. the latent field at its mode
    u_hat. The gradient includes the implicit dependence of u_hat on the
    parameters through a one-step Newton correction kept in the autograd
    graph.

    Args:
        model: LatentGaussianModel to estimate
        inner_tol: Max-abs gradient tolerance of the inner phase
        inner_max_iter: Newton iteration limit of the inner phase
        perturbation_scale: Std of the random perturbation used for the
            single retry of a failed inner optimization
        reject_infeasible: Return +inf to the outer optimizer for trials with
            a singular precision or failed inner phase instead of raising
        seed: Seed of the perturbation generator

    Attributes:
        latent: Current latent field (warm start of the next inner phase)
        params: Fitted parameters (after fit)
        history: One dict per outer evaluation
        result: scipy OptimizeResult of the outer phase

    Example:
        >>> laplace = LaplaceApproximation(model)
        >>> history = laplace.fit(verbose=True)
        >>> rep = laplace.sdreport()
        >>> print(rep.summary())
    """

    def __init__(
        self,
        model: LatentGaussianModel,
        inner_tol: float = 1e-8,
        inner_max_iter: int = 100,
        perturbation_scale: float = 0.1,
        reject_infeasible: bool = True,
        seed: int = 0
    ):
        self.model = model
        self.layout = model.layout
        self.inner_tol = inner_tol
        self.inner_max_iter = inner_max_iter
        self.perturbation_scale = perturbation_scale
        self.reject_infeasible = reject_infeasible
        self._generator = torch.Generator().manual_seed(seed)

        self.latent = torch.zeros(model.n_latent, dtype=torch.float64)
        self.params = None
        self.theta = None
        self.result = None
        self.history = []
        self.n_inner_retries = 0
        self._last_inner_iterations = 0
        self._verbose = False
        self._print_every = 10

    # ------------------------------------------------------------------
    # Parameter handling
    # ------------------------------------------------------------------

    def _as_vector(self, params=None) -> torch.Tensor:
        """Flat parameter vector from None (initial values), a partial dict or an array."""
        if params is None:
            return self.layout.initial_vector()
        if isinstance(params, dict):
            full = {k: v.clone() for k, v in self.layout.unflatten(self.layout.initial_vector()).items()}
            for name, value in params.items():
                if name not in self.layout:
                    raise ConfigurationError(
                        f"unknown parameter {name!r}; known: {self.layout.names}"
                    )
                full[name] = torch.as_tensor(value, dtype=torch.float64).reshape(self.layout.shape(name))
            return self.layout.flatten(full)
        vector = torch.as_tensor(np.asarray(params, dtype=np.float64))
        if vector.shape != (self.layout.size,):
            raise ConfigurationError(f"expected {self.layout.size} parameter values, got {tuple(vector.shape)}")
        return vector

    def _as_params(self, params=None) -> Dict[str, torch.Tensor]:
        return self.layout.unflatten(self._as_vector(params))

    # ------------------------------------------------------------------
    # Inner phase
    # ------------------------------------------------------------------

    def _newton(
        self,
        params: Dict[str, torch.Tensor],
        start: torch.Tensor,
        include_normalizing_constant: bool
    ) -> Tuple[torch.Tensor, int]:
        def fn(u):
            return self.model.objective(
                u, params, include_normalizing_constant=include_normalizing_constant
            )

        u = start.detach().clone()
        grad_norm = float('nan')
        for iteration in range(self.inner_max_iter + 1):
            x = u.clone().requires_grad_(True)
            value, grad = _value_and_gradient(fn, x, create_graph=True)
            f0 = value.item()
            grad_norm = float(grad.detach().abs().max())
            if not np.isfinite(f0) or not np.isfinite(grad_norm):
                raise InnerConvergenceError(
                    "non-finite objective or gradient in the inner phase",
                    n_iterations=iteration, grad_norm=grad_norm
                )
            if grad_norm < self.inner_tol:
                return u, iteration
            if iteration == self.inner_max_iter:
                break

            H = _hessian_from_gradient(grad, x).detach()
            g = grad.detach()
            step = _damped_newton_step(H, g)
            slope = float(g @ step)

            # Backtracking line search (Armijo), with slack for rounding near the optimum
            t = 1.0
            slack = 1e-12 * max(1.0, abs(f0))
            with torch.no_grad():
                for _ in range(60):
                    candidate = u - t * step
                    f_new = float(fn(candidate))
                    if np.isfinite(f_new) and f_new <= f0 - 1e-4 * t * slope + slack:
                        break
                    t *= 0.5
                else:
                    raise InnerConvergenceError(
                        "line search failed in the inner phase",
                        n_iterations=iteration, grad_norm=grad_norm
                    )
            u = candidate

        raise InnerConvergenceError(
            f"inner phase did not converge in {self.inner_max_iter} iterations "
            f"(max |grad| = {grad_norm:.3e})",
            n_iterations=self.inner_max_iter, grad_norm=grad_norm
        )

    def inner_optimize(
        self,
        params=None,
        start: Optional[torch.Tensor] = None,
        include_normalizing_constant: bool = False
    ) -> torch.Tensor:
        """
        Conditional mode of the latent field for fixed parameters.

        A failed attempt is retried once from a randomly perturbed start;
        a second failure propagates as InnerConvergenceError.

        Args:
            params: Parameters (dict, flat vector or None for initial values)
            start: Starting latent field (defaults to the last mode found)
            include_normalizing_constant: Include the prior log-determinant
                (does not move the optimum, only costs factorizations)

        Returns:
            Latent mode (n_latent,)
        """
        if isinstance(params, dict) and set(params) == set(self.layout.names):
            params = {k: torch.as_tensor(v, dtype=torch.float64).detach() for k, v in params.items()}
        else:
            params = self._as_params(params)
        if self.model.n_latent == 0:
            return self.latent

        start = self.latent if start is None else torch.as_tensor(start, dtype=torch.float64)
        try:
            u, n_iter = self._newton(params, start, include_normalizing_constant)
        except InnerConvergenceError as err:
            self.n_inner_retries += 1
            logger.debug("inner phase failed (%s); retrying from a perturbed start", err)
            noise = torch.randn(
                self.model.n_latent, generator=self._generator, dtype=torch.float64
            ) * self.perturbation_scale
            u, n_iter = self._newton(params, start + noise, include_normalizing_constant)

        self._last_inner_iterations = n_iter
        self.latent = u.detach()
        return self.latent

    # ------------------------------------------------------------------
    # Outer phase
    # ------------------------------------------------------------------

    def _laplace_value(self, theta: torch.Tensor) -> torch.Tensor:
        """Laplace marginal nll as a differentiable function of the flat parameters."""
        params = self.layout.unflatten(theta)
        n = self.model.n_latent
        if n == 0:
            return self.model.objective(self.latent, params)

        u_hat = self.inner_optimize({k: v.detach() for k, v in params.items()})

        # First-order implicit dependence of the mode on the parameters
        u0 = u_hat.clone().requires_grad_(True)
        _, g0 = _value_and_gradient(
            lambda u: self.model.objective(u, params, include_normalizing_constant=False),
            u0, create_graph=True
        )
        H0 = _hessian_from_gradient(g0, u0).detach()
        L0, info = torch.linalg.cholesky_ex(H0)
        if int(info) != 0:
            raise SingularPrecisionError("Hessian of the latent field is not positive-definite at the mode")
        u_star = u_hat - torch.cholesky_solve(g0.unsqueeze(1), L0).squeeze(1)

        value, g_star = _value_and_gradient(
            lambda u: self.model.objective(u, params), u_star, create_graph=True
        )
        H = _hessian_from_gradient(g_star, u_star, create_graph=True)
        logdet = _logdet_spd(H, "Hessian of the latent field")
        return value + 0.5 * logdet - 0.5 * n * LOG_2PI

    def _value_and_grad(self, x) -> Tuple[float, np.ndarray]:
        theta = torch.as_tensor(np.asarray(x, dtype=np.float64)).clone().requires_grad_(True)
        value = self._laplace_value(theta)
        if not value.requires_grad:
            return value.item(), np.zeros(theta.numel())
        grad, = torch.autograd.grad(value, theta, allow_unused=True)
        grad = np.zeros(theta.numel()) if grad is None else grad.detach().numpy()
        return value.item(), grad

    def marginal_nll(self, params=None, return_grad: bool = False):
        """
        Laplace-approximated negative log marginal likelihood.

        Args:
            params: Parameters (dict, flat vector or None for initial values)
            return_grad: Also return the gradient w.r.t. the flat parameters

        Returns:
            value, or (value, gradient) when return_grad is True
        """
        value, grad = self._value_and_grad(self._as_vector(params).numpy())
        return (value, grad) if return_grad else value

    def _outer_objective(self, x: np.ndarray) -> Tuple[float, np.ndarray]:
        """Objective handed to the outer optimizer; records history."""
        evaluation = len(self.history)
        try:
            value, grad = self._value_and_grad(x)
            feasible = True
        except (SingularPrecisionError, InnerConvergenceError) as err:
            if not self.reject_infeasible:
                raise
            logger.debug("rejecting infeasible trial %d: %s", evaluation, err)
            value, grad = np.inf, np.zeros(len(x))
            feasible = False

        diagnostics = {
            'evaluation': evaluation,
            'marginal_nll': value,
            'grad_norm': float(np.max(np.abs(grad))) if len(grad) else 0.0,
            'inner_iterations': self._last_inner_iterations,
            'feasible': feasible,
            'params': np.array(x, copy=True),
        }
        self.history.append(diagnostics)

        if self._verbose and evaluation % self._print_every == 0:
            self._print_progress(evaluation, diagnostics)
        return value, grad

    def fit(
        self,
        init=None,
        method: str = 'L-BFGS-B',
        max_iter: int = 500,
        gtol: float = 1e-6,
        verbose: bool = False,
        print_every: int = 10,
        **options
    ) -> List[Dict]:
        """
        Estimate parameters by minimizing the Laplace marginal likelihood.

        Args:
            init: Starting parameters (partial dict, flat vector or None)
            method: scipy.optimize.minimize method (gradient-based)
            max_iter: Outer iteration limit
            gtol: Outer gradient tolerance
            verbose: Whether to print progress
            print_every: Print frequency (in outer evaluations)
            **options: Further solver options for scipy.optimize.minimize
                (e.g. ftol for L-BFGS-B)

        Returns:
            history: List of dictionaries with per-evaluation diagnostics
        """
        x0 = self._as_vector(init).numpy()
        self.history = []
        self._verbose = verbose
        self._print_every = max(1, int(print_every))

        if self.layout.size == 0:
            self.theta = torch.zeros(0, dtype=torch.float64)
            self.params = self.layout.unflatten(self.theta)
            self.inner_optimize(self.params)
            value = self.marginal_nll(self.theta)
            self.result = None
            self.history.append({'evaluation': 0, 'marginal_nll': value, 'grad_norm': 0.0,
                                 'inner_iterations': self._last_inner_iterations,
                                 'feasible': True, 'params': x0})
            return self.history

        self.result = minimize(
            self._outer_objective, x0, jac=True, method=method,
            options={'maxiter': max_iter, 'gtol': gtol, **options}
        )
        if not self.result.success:
            warnings.warn(f"outer optimization did not converge: {self.result.message}")

        self.theta = torch.as_tensor(self.result.x, dtype=torch.float64).clone()
        self.params = self.layout.unflatten(self.theta)
        self.inner_optimize(self.params)

        if verbose:
            print(f"\nOptimization complete! Marginal nll: {self.result.fun:.4f} "
                  f"({len(self.history)} evaluations, {self.n_inner_retries} inner retries)")
        return self.history

    def _print_progress(self, evaluation: int, diagnostics: dict):
        print(f"Eval {evaluation:4d} | -log L: {diagnostics['marginal_nll']:12.4f} | ", end="")
        print(f"|grad|: {diagnostics['grad_norm']:9.3e} | ", end="")
        if not diagnostics['feasible']:
            print("infeasible")
        else:
            print(f"inner: {diagnostics['inner_iterations']:3d}")

    def get_convergence_summary(self) -> dict:
        """
        Get summary of convergence diagnostics.

        Returns:
            Dictionary with convergence metrics
        """
        if not self.history:
            return {}

        feasible = [h['marginal_nll'] for h in self.history if h['feasible']]
        return {
            'final_marginal_nll': self.history[-1]['marginal_nll'],
            'best_marginal_nll': min(feasible) if feasible else float('inf'),
            'n_evaluations': len(self.history),
            'n_infeasible': len(self.history) - len(feasible),
            'n_inner_retries': self.n_inner_retries,
            'converged': bool(self.result.success) if self.result is not None else True,
        }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _parameter_hessian(self, step: float) -> np.ndarray:
        """Hessian of the marginal nll by central differences of its exact gradient."""
        x = self.theta.numpy()
        m = len(x)
        H = np.zeros((m, m))
        for j in range(m):
            h = step * max(1.0, abs(x[j]))
            forward, backward = x.copy(), x.copy()
            forward[j] += h
            backward[j] -= h
            _, g_plus = self._value_and_grad(forward)
            _, g_minus = self._value_and_grad(backward)
            H[:, j] = (g_plus - g_minus) / (2.0 * h)
        return 0.5 * (H + H.T)

    def sdreport(self, hessian_step: float = 1e-4, joint_hessian: bool = False) -> LaplaceReport:
        """
        Standard errors of parameters, latent field and derived quantities.

        Parameter covariance is the inverse Hessian of the marginal nll. The
        joint covariance of (latent, parameters) is

            [[H_uu^-1 + J S J^T, J S], [S J^T, S]],  J = -H_uu^-1 H_u,theta

        and every derived quantity r(latent, params) gets the delta-method
        variance grad(r)^T Cov grad(r).

        Args:
            hessian_step: Relative finite-difference step for the parameter Hessian
            joint_hessian: Keep the joint Hessian in the report (for
                inspecting its sparsity pattern)

        Returns:
            LaplaceReport
        """
        if self.params is None:
            raise ConfigurationError("fit() must be called before sdreport()")

        n, m = self.model.n_latent, self.layout.size
        u_hat = self.inner_optimize(self.params).clone()

        # Parameter covariance
        if m:
            H_theta = self._parameter_hessian(hessian_step)
            try:
                cov_theta = np.linalg.inv(H_theta)
                if np.any(np.diag(cov_theta) < 0):
                    raise np.linalg.LinAlgError("negative variances")
            except np.linalg.LinAlgError:
                warnings.warn("Hessian of the marginal likelihood is not positive-definite; "
                              "standard errors are unavailable")
                cov_theta = np.full((m, m), np.nan)
        else:
            cov_theta = np.zeros((0, 0))
        # Finite differences moved the warm start; restore the mode
        self.latent = u_hat
        cov_theta_t = torch.as_tensor(cov_theta)

        # Joint Hessian of the full objective at (u_hat, theta_hat)
        z = torch.cat([u_hat, self.theta]).clone().requires_grad_(True)

        def joint_fn(z_):
            return self.model.objective(z_[:n], self.layout.unflatten(z_[n:]))

        _, g = _value_and_gradient(joint_fn, z, create_graph=True)
        H_joint = _hessian_from_gradient(g, z).detach()

        if n:
            H_uu = H_joint[:n, :n]
            L, info = torch.linalg.cholesky_ex(H_uu)
            if int(info) != 0:
                raise SingularPrecisionError("Hessian of the latent field is not positive-definite at the mode")
            H_uu_inv = torch.cholesky_inverse(L)
            J = -H_uu_inv @ H_joint[:n, n:]
            cov_uu = H_uu_inv + J @ cov_theta_t @ J.T
            cov_ut = J @ cov_theta_t
            cov_joint = torch.cat([
                torch.cat([cov_uu, cov_ut], dim=1),
                torch.cat([cov_ut.T, cov_theta_t], dim=1),
            ])
        else:
            cov_joint = cov_theta_t
        latent_sd = torch.sqrt(torch.diagonal(cov_joint)[:n])

        # Delta method for derived quantities
        z = torch.cat([u_hat, self.theta]).clone().requires_grad_(True)
        derived = self.model.report(z[:n], self.layout.unflatten(z[n:]))
        derived_values, derived_sd = {}, {}
        for name, value in derived.items():
            flat = value.reshape(-1)
            grads = []
            for k in range(flat.numel()):
                if flat[k].requires_grad:
                    row, = torch.autograd.grad(flat[k], z, retain_graph=True, allow_unused=True)
                else:
                    row = None
                grads.append(torch.zeros(n + m, dtype=torch.float64) if row is None else row)
            R = torch.stack(grads) if grads else torch.zeros(0, n + m, dtype=torch.float64)
            variance = torch.einsum('ij,jk,ik->i', R, cov_joint, R)
            derived_values[name] = value.detach().numpy()
            derived_sd[name] = torch.sqrt(torch.clamp(variance, min=0.0)).reshape(value.shape).numpy()

        par_sd_flat = np.sqrt(np.clip(np.diag(cov_theta), 0.0, None))
        par_sd_flat[np.isnan(np.diag(cov_theta))] = np.nan
        par = {k: v.detach().numpy().copy() for k, v in self.params.items()}
        par_sd = {k: v.numpy() for k, v in self.layout.unflatten(torch.as_tensor(par_sd_flat)).items()}

        marginal = float(self.result.fun) if self.result is not None else self.marginal_nll(self.theta)
        return LaplaceReport(
            par=par,
            par_sd=par_sd,
            cov_par=cov_theta,
            labels=self.layout.labels(),
            latent=u_hat.numpy().copy(),
            latent_sd=latent_sd.numpy(),
            derived=derived_values,
            derived_sd=derived_sd,
            marginal_nll=marginal,
            converged=bool(self.result.success) if self.result is not None else True,
            joint_hessian=H_joint.numpy() if joint_hessian else None,
        )

"""Tests for the Laplace estimation driver."""

import math
import warnings

import numpy as np
import pytest
import torch
from scipy import optimize
from torch import distributions as dist

from laplace_gmrf.exceptions import (
    ConfigurationError,
    InnerConvergenceError,
    SingularPrecisionError,
)
from laplace_gmrf.inference import LaplaceApproximation, LaplaceReport
from laplace_gmrf.likelihoods import CensoredWeibull, Gaussian, Poisson
from laplace_gmrf.link import LinkMap
from laplace_gmrf.models import LatentComponent, LatentGaussianModel
from laplace_gmrf.precision import IIDPrecision, SPDEPrecision, SplinePrecision
from laplace_gmrf.priors import HyperPrior
from laplace_gmrf.recruitment import RecruitmentProcess
from laplace_gmrf.structures import build_iid_structure, build_spde_structure, build_spline_structure
from laplace_gmrf.utils.data import generate_recruitment_data, generate_survival_data
from laplace_gmrf.utils.mesh import projector_matrix
from laplace_gmrf.utils.spline import absorb_sum_to_zero, bspline_design, difference_penalty

LOG_2PI = math.log(2.0 * math.pi)


def reference_rw_nll(log_sigma_r, log_sigma_obs, y):
    """
    Exact negative log marginal likelihood of a random walk observed with noise.

    x_t - x_{t-1} ~ N(0, sigma_r^2) with a flat first state, y_t ~ N(x_t, sigma_obs^2).
    The joint nll is 0.5 x^T P x - b^T x + c, integrated in closed form.
    """
    n = len(y)
    var_r, var_obs = math.exp(2 * log_sigma_r), math.exp(2 * log_sigma_obs)
    D = np.diff(np.eye(n), axis=0)
    P = D.T @ D / var_r + np.eye(n) / var_obs
    b = y / var_obs
    c = (0.5 * y @ y / var_obs + n * log_sigma_obs + (n - 1) * log_sigma_r
         + 0.5 * (2 * n - 1) * LOG_2PI)
    return c - 0.5 * b @ np.linalg.solve(P, b) + 0.5 * np.linalg.slogdet(P)[1] - 0.5 * n * LOG_2PI


def reference_gam_nll(beta, log_lambda, log_sigma, y, B, S):
    """
    Exact negative log marginal likelihood of y = beta + B b + eps, b ~ N(0, (lambda S)^-).

    The improper prior is normalized with the pseudo-determinant of lambda S.
    """
    n, p = B.shape
    eigenvalues = np.linalg.eigvalsh(S)
    positive = eigenvalues[eigenvalues > 1e-8 * eigenvalues.max()]
    rank, log_pdet = len(positive), np.sum(np.log(positive))

    var, lam = math.exp(2 * log_sigma), math.exp(log_lambda)
    r = y - beta
    P = B.T @ B / var + lam * S
    c = B.T @ r / var
    at_mode = (0.5 * r @ r / var - 0.5 * c @ np.linalg.solve(P, c) + n * log_sigma + 0.5 * n * LOG_2PI
               - 0.5 * (rank * log_lambda + log_pdet) + 0.5 * rank * LOG_2PI)
    return at_mode + 0.5 * np.linalg.slogdet(P)[1] - 0.5 * p * LOG_2PI


def rw_model(y):
    process = RecruitmentProcess(n_years=len(y), mode='random_walk')
    return LatentGaussianModel(Gaussian(y), [LatentComponent('recruitment', process)])


def poisson_glmm():
    y = np.array([0.0, 2.0, 1.0, 4.0, 3.0, 6.0, 1.0, 0.0])
    Z = np.kron(np.eye(4), np.ones((2, 1)))
    effects = LatentComponent('groups', IIDPrecision(build_iid_structure([4])), LinkMap(Z))
    return LatentGaussianModel(Poisson(y), [effects], design=np.ones(8))


class TestGaussianStateSpace:
    """Laplace is exact for Gaussian models: compare with the closed-form integral."""

    @pytest.mark.parametrize("log_r,log_obs", [(-1.0, -1.5), (0.3, -2.0), (-3.0, -0.5)])
    def test_marginal_matches_reference(self, robs, log_r, log_obs):
        y = np.log(robs)
        laplace = LaplaceApproximation(rw_model(y))
        params = {'recruitment.log_sigma': log_r, 'likelihood.log_sigma': log_obs}
        value, grad = laplace.marginal_nll(params, return_grad=True)
        assert value == pytest.approx(reference_rw_nll(log_r, log_obs, y), rel=1e-9, abs=1e-9)

        h = 1e-6
        fd = [
            (reference_rw_nll(log_r + h, log_obs, y) - reference_rw_nll(log_r - h, log_obs, y)) / (2 * h),
            (reference_rw_nll(log_r, log_obs + h, y) - reference_rw_nll(log_r, log_obs - h, y)) / (2 * h),
        ]
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-6)

    def test_fit_matches_reference_optimum(self, robs):
        y = np.log(robs)
        laplace = LaplaceApproximation(rw_model(y))
        laplace.fit(init={'recruitment.log_sigma': -2.0, 'likelihood.log_sigma': -2.0}, ftol=1e-15)

        reference = optimize.minimize(
            lambda p: reference_rw_nll(p[0], p[1], y), x0=[-2.0, -2.0], method='Nelder-Mead',
            options={'xatol': 1e-10, 'fatol': 1e-14, 'maxiter': 20000}
        )
        fitted = [laplace.params['recruitment.log_sigma'].item(),
                  laplace.params['likelihood.log_sigma'].item()]
        assert laplace.result.fun == pytest.approx(reference.fun, abs=1e-8)
        np.testing.assert_allclose(fitted, reference.x, atol=1e-3)

    def test_fit_simulated_series(self):
        data = generate_recruitment_data(n_years=40, mode='random_walk', seed=3)
        y = data['log_observed']
        laplace = LaplaceApproximation(rw_model(y))
        laplace.fit(ftol=1e-15)

        # Nelder-Mead can stall on the sigma_obs -> 0 ridge; keep the best of several starts
        starts = [laplace.layout.initial_vector().numpy(), [-1.0, -1.0], [-2.0, -2.0], [-0.5, -3.0], [-3.0, -0.5]]
        reference = min(
            (optimize.minimize(lambda p: reference_rw_nll(p[0], p[1], y), x0=x0, method='Nelder-Mead',
                               options={'xatol': 1e-10, 'fatol': 1e-14, 'maxiter': 20000})
             for x0 in starts),
            key=lambda res: res.fun
        )
        assert laplace.result.fun <= reference.fun + 1e-8
        assert laplace.result.fun == pytest.approx(reference_rw_nll(*laplace.theta.numpy(), y), abs=1e-9)
        np.testing.assert_allclose(laplace.theta.numpy(), reference.x, atol=1e-3)

    def test_sdreport_latent_and_pattern(self, robs):
        y = np.log(robs)
        laplace = LaplaceApproximation(rw_model(y))
        laplace.fit(init={'recruitment.log_sigma': -2.0, 'likelihood.log_sigma': -2.0})
        rep = laplace.sdreport(joint_hessian=True)

        assert isinstance(rep, LaplaceReport)
        assert rep.latent.shape == (4,) and rep.latent_sd.shape == (4,)
        # Parameter uncertainty can only widen the conditional standard errors
        H = rep.joint_hessian[:4, :4]
        conditional_sd = np.sqrt(np.diag(np.linalg.inv(H)))
        assert np.all(rep.latent_sd >= conditional_sd - 1e-12)

        pattern = rep.joint_precision_pattern().toarray()
        assert pattern.shape == (6, 6)
        assert pattern[0, 1] and not pattern[0, 2]
        assert pattern[0, 5]  # every state depends on the observation noise


class TestPenalizedSpline:
    @pytest.fixture
    def gam(self):
        rng = np.random.default_rng(11)
        x = np.sort(rng.uniform(0.0, 1.0, 60))
        y = 0.5 + np.sin(2 * np.pi * x) + 0.2 * rng.standard_normal(60)
        B, S = absorb_sum_to_zero(bspline_design(x, 8), difference_penalty(8, 2))
        smooth = LatentComponent('smooth', SplinePrecision(build_spline_structure([S])), LinkMap(B))
        model = LatentGaussianModel(Gaussian(y), [smooth], design=np.ones((60, 1)))
        return model, y, B, S

    def test_marginal_matches_reference(self, gam):
        model, y, B, S = gam
        laplace = LaplaceApproximation(model)
        params = {'beta': [0.3], 'smooth.log_lambda': [0.5], 'likelihood.log_sigma': -1.2}
        expected = reference_gam_nll(0.3, 0.5, -1.2, y, B, S)
        assert laplace.marginal_nll(params) == pytest.approx(expected, rel=1e-9)

    def test_fit_and_smooth_report(self, gam):
        model, y, B, S = gam
        laplace = LaplaceApproximation(model)
        laplace.fit(ftol=1e-15)

        theta = laplace.theta.numpy()
        assert laplace.result.fun == pytest.approx(reference_gam_nll(*theta, y, B, S), abs=1e-8)
        h = 1e-5
        for j in range(3):
            step = np.zeros(3)
            step[j] = h
            slope = (reference_gam_nll(*(theta + step), y, B, S)
                     - reference_gam_nll(*(theta - step), y, B, S)) / (2 * h)
            assert abs(slope) < 1e-3

        grid = B[::6]
        model.add_report('f', lambda latent, params: LinkMap(grid).apply(latent['smooth']) + params['beta'][0])
        rep = laplace.sdreport(joint_hessian=True)

        p = B.shape[1]
        np.testing.assert_allclose(rep.derived['f'], grid @ rep.latent + rep.par['beta'][0], atol=1e-10)
        assert np.all(np.isfinite(rep.derived_sd['f'])) and np.all(rep.derived_sd['f'] > 0)
        # Parameter uncertainty can only widen the conditional band of the smooth
        conditional = np.sqrt(np.einsum('ij,jk,ik->i', grid, np.linalg.inv(rep.joint_hessian[:p, :p]), grid))
        assert np.all(rep.derived_sd['f'] >= conditional - 1e-10)


class TestStockRecruitmentFit:
    def test_known_observation_error_identifies_process_error(self):
        data = generate_recruitment_data(n_years=40, mode='ricker', seed=3)
        survey_error = HyperPrior(dist.LogNormal(torch.tensor(math.log(0.2), dtype=torch.float64),
                                                 torch.tensor(0.1, dtype=torch.float64)))
        process = RecruitmentProcess(ssb=data['ssb'], mode='ricker', init_alpha=1.0, init_beta=-7.0)
        model = LatentGaussianModel(Gaussian(data['log_observed'], init_log_sigma=-1.0),
                                    [LatentComponent('recruitment', process)],
                                    priors={'likelihood.log_sigma': survey_error})
        laplace = LaplaceApproximation(model)
        laplace.fit()
        with warnings.catch_warnings():
            warnings.filterwarnings("error", message=".*not positive-definite.*")
            rep = laplace.sdreport()

        assert all(np.all(np.isfinite(sd)) and np.all(sd > 0) for sd in rep.par_sd.values())
        assert rep.par['recruitment.beta'].item() == pytest.approx(-7.0, abs=1.0)


class TestInnerPhase:
    def test_no_scalar_conversion_warnings(self):
        laplace = LaplaceApproximation(poisson_glmm())
        with warnings.catch_warnings():
            warnings.filterwarnings("error", message=".*requires_grad.*")
            laplace.marginal_nll(return_grad=True)
            laplace.inner_optimize(start=torch.zeros(4, dtype=torch.float64))

    def test_optimum_invariant_to_normalizing_constant(self, small_mesh):
        vertices, triangles = small_mesh
        rng = np.random.default_rng(0)
        coords = rng.uniform(size=(40, 2))
        A = projector_matrix(vertices, triangles, coords)
        spatial = LatentComponent('spatial', SPDEPrecision(build_spde_structure(vertices, triangles)),
                                  LinkMap(A, convention='unscaled'))
        model = LatentGaussianModel(CensoredWeibull(rng.exponential(size=40), rng.integers(0, 2, 40)),
                                    [spatial], design=np.ones(40))
        params = {'beta': [0.2], 'spatial.log_kappa': 1.0, 'spatial.log_tau': 0.5,
                  'likelihood.log_shape': 0.1}

        laplace = LaplaceApproximation(model, inner_tol=1e-10)
        without = laplace.inner_optimize(params, start=torch.zeros(16, dtype=torch.float64)).clone()
        with_constant = laplace.inner_optimize(params, start=torch.zeros(16, dtype=torch.float64),
                                               include_normalizing_constant=True)
        np.testing.assert_allclose(with_constant.numpy(), without.numpy(), atol=1e-8)

    def test_second_failure_surfaces(self):
        laplace = LaplaceApproximation(poisson_glmm(), inner_max_iter=0)
        with pytest.raises(InnerConvergenceError) as info:
            laplace.inner_optimize()
        assert laplace.n_inner_retries == 1
        assert info.value.grad_norm > 0

    def test_warm_start(self):
        laplace = LaplaceApproximation(poisson_glmm())
        first = laplace.inner_optimize().clone()
        assert torch.equal(laplace.latent, first)
        again = laplace.inner_optimize()
        np.testing.assert_allclose(again.numpy(), first.numpy(), atol=1e-10)
        assert laplace._last_inner_iterations == 0


class TestOuterPhase:
    def test_gradient_matches_finite_differences(self):
        laplace = LaplaceApproximation(poisson_glmm(), inner_tol=1e-11)
        theta = np.array([0.4, -0.3])
        _, grad = laplace.marginal_nll(theta, return_grad=True)
        h = 1e-4
        fd = np.zeros(2)
        for j in range(2):
            step = np.zeros(2)
            step[j] = h
            fd[j] = (laplace.marginal_nll(theta + step) - laplace.marginal_nll(theta - step)) / (2 * h)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-6)

    def test_fit_history_and_summary(self, capsys):
        laplace = LaplaceApproximation(poisson_glmm())
        history = laplace.fit(verbose=True, print_every=1)
        assert len(history) == len(laplace.history) > 0
        assert {'evaluation', 'marginal_nll', 'grad_norm', 'inner_iterations', 'feasible'} <= set(history[0])
        summary = laplace.get_convergence_summary()
        assert summary['best_marginal_nll'] <= history[0]['marginal_nll']
        out = capsys.readouterr().out
        assert "Eval" in out and "Optimization complete" in out

    def test_infeasible_trial_rejected(self):
        family = SplinePrecision(build_spline_structure([np.diag([1.0, 0.0])]), pseudo_determinant=False)
        model = LatentGaussianModel(Gaussian([0.3, -0.2]), [LatentComponent('smooth', family)])
        x = model.layout.initial_vector().numpy()

        laplace = LaplaceApproximation(model)
        value, grad = laplace._outer_objective(x)
        assert value == np.inf and np.all(grad == 0)
        assert not laplace.history[-1]['feasible']

        strict = LaplaceApproximation(model, reject_infeasible=False)
        with pytest.raises(SingularPrecisionError):
            strict._outer_objective(x)

    def test_configuration_errors(self):
        laplace = LaplaceApproximation(poisson_glmm())
        with pytest.raises(ConfigurationError, match="unknown parameter"):
            laplace.marginal_nll({'spatial.log_kappa': 0.0})
        with pytest.raises(ConfigurationError):
            laplace.marginal_nll(np.zeros(5))
        with pytest.raises(ConfigurationError, match="fit"):
            laplace.sdreport()


class TestNoLatentModels:
    Y = np.array([0.5, -1.2, 0.3, 2.0, -0.7, 0.9, -0.1, 1.4])

    def _fit(self, priors=None):
        model = LatentGaussianModel(Gaussian(self.Y), priors=priors)
        laplace = LaplaceApproximation(model)
        laplace.fit(ftol=1e-15)
        return laplace

    @pytest.mark.parametrize("jacobian,denominator", [(True, 7), (False, 8)])
    def test_jacobian_shifts_the_mode(self, jacobian, denominator):
        # Flat prior on sigma: with the Jacobian the mode of log(sigma) is S / (n - 1)
        uniform = dist.Uniform(torch.tensor(0.0, dtype=torch.float64),
                               torch.tensor(100.0, dtype=torch.float64), validate_args=False)
        prior = HyperPrior(uniform, transform='log', jacobian=jacobian)
        laplace = self._fit({'likelihood.log_sigma': prior})
        variance = math.exp(2 * laplace.params['likelihood.log_sigma'].item())
        assert variance == pytest.approx(np.sum(self.Y ** 2) / denominator, rel=1e-5)

    def test_standard_errors(self):
        laplace = self._fit()
        rep = laplace.sdreport()
        n = len(self.Y)
        assert rep.par_sd['likelihood.log_sigma'].item() == pytest.approx(1.0 / math.sqrt(2 * n), rel=1e-4)
        sigma = rep.derived['likelihood.sigma'].item()
        assert sigma == pytest.approx(math.sqrt(np.mean(self.Y ** 2)), rel=1e-5)
        assert rep.derived_sd['likelihood.sigma'].item() == pytest.approx(sigma / math.sqrt(2 * n), rel=1e-4)
        assert rep.latent.shape == (0,)

        lo, hi = rep.confint('likelihood.sigma', level=0.95)
        assert lo < sigma < hi
        assert "likelihood.log_sigma" in rep.summary()


class TestSpatialSurvival:
    def test_fit_and_report(self):
        data = generate_survival_data(n_obs=80, mesh_size=4, seed=0)
        spde = build_spde_structure(data['vertices'], data['triangles'])
        spatial = LatentComponent('spatial', SPDEPrecision(spde), LinkMap(data['A'], convention='unscaled'))
        model = LatentGaussianModel(CensoredWeibull(data['times'], data['event']), [spatial], design=data['X'])

        laplace = LaplaceApproximation(model)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            laplace.fit(max_iter=100)
            rep = laplace.sdreport()

        assert np.isfinite(laplace.result.fun)
        assert all(np.all(np.isfinite(v)) for v in rep.par.values())
        assert {'spatial.kappa', 'spatial.range', 'spatial.tau', 'spatial.sigma_marginal',
                'likelihood.shape'} <= set(rep.derived)
        assert rep.latent.shape == (16,)

"""Tests for the observation likelihoods."""

import math

import numpy as np
import pytest
import torch
from scipy import stats

from laplace_gmrf.exceptions import ConfigurationError
from laplace_gmrf.likelihoods import (
    Binomial,
    CensoredWeibull,
    Gaussian,
    Poisson,
    get_likelihood,
)


def t(value):
    return torch.tensor(value, dtype=torch.float64)


class TestCensoredWeibull:
    def test_closed_form_values(self):
        # lambda = 1, shape = 2, t = 1: S = exp(-1), f = 2 exp(-1)
        lik = CensoredWeibull([1.0, 1.0], event=[0.0, 1.0])
        nll = lik.pointwise_nll(t([0.0, 0.0]), {'log_shape': t(math.log(2.0))})
        assert nll[0].item() == pytest.approx(1.0)
        assert nll[1].item() == pytest.approx(1.0 - math.log(2.0))
        assert nll[1].item() == pytest.approx(0.3069, abs=1e-4)

    def test_matches_scipy_weibull(self):
        # Rate lambda and shape w correspond to scale lambda^(-1/w)
        times = np.array([0.3, 1.7, 2.2, 0.9])
        event = np.array([1.0, 0.0, 1.0, 0.0])
        eta, shape = np.array([0.2, -0.5, 0.1, 0.7]), 1.6
        scale = np.exp(eta) ** (-1.0 / shape)
        dist = stats.weibull_min(shape, scale=scale)
        expected = -np.sum(np.where(event == 1, dist.logpdf(times), dist.logsf(times)))

        lik = CensoredWeibull(times, event)
        nll = lik.nll(t(eta), {'log_shape': t(math.log(shape))})
        assert nll.item() == pytest.approx(expected)

    def test_default_all_events(self):
        lik = CensoredWeibull([1.0, 2.0])
        assert torch.equal(lik.event, t([1.0, 1.0]))

    def test_large_eta_is_finite_gradient(self):
        lik = CensoredWeibull([1e-3, 50.0], event=[1.0, 0.0])
        eta = t([30.0, -30.0]).requires_grad_(True)
        nll = lik.nll(eta, {'log_shape': t(0.0)})
        grad, = torch.autograd.grad(nll, eta)
        assert torch.isfinite(nll) and torch.all(torch.isfinite(grad))

    @pytest.mark.parametrize("times,event", [
        ([1.0, 0.0], None),
        ([1.0, -2.0], None),
        ([1.0, 2.0], [1.0, 2.0]),
        ([1.0, 2.0], [1.0]),
        ([1.0, np.nan], None),
    ])
    def test_invalid_data(self, times, event):
        with pytest.raises(ConfigurationError):
            CensoredWeibull(times, event)


class TestGaussian:
    def test_matches_scipy(self):
        y = np.array([0.5, -1.0, 2.0])
        eta = np.array([0.0, 0.0, 1.0])
        lik = Gaussian(y)
        nll = lik.nll(t(eta), {'log_sigma': t(math.log(0.7))})
        assert nll.item() == pytest.approx(-stats.norm(eta, 0.7).logpdf(y).sum())

    def test_default_initial_sigma(self):
        y = np.array([1.0, 2.0, 4.0])
        lik = Gaussian(y)
        assert lik.parameter_spec()['log_sigma'].item() == pytest.approx(math.log(np.std(y, ddof=1)))


class TestBinomial:
    def test_matches_scipy(self):
        y, n = np.array([0.0, 3.0, 5.0]), np.array([4.0, 5.0, 5.0])
        eta = np.array([-1.0, 0.3, 2.0])
        lik = Binomial(y, n)
        expected = -stats.binom(n, 1.0 / (1.0 + np.exp(-eta))).logpmf(y).sum()
        assert lik.nll(t(eta), {}).item() == pytest.approx(expected)

    def test_bernoulli_extreme_eta(self):
        lik = Binomial([1.0, 0.0])
        nll = lik.nll(t([800.0, -800.0]), {})
        assert nll.item() == pytest.approx(0.0, abs=1e-12)

    @pytest.mark.parametrize("y,trials", [
        ([2.0], [1.0]),
        ([-1.0], None),
        ([0.5], None),
        ([1.0], [1.5]),
    ])
    def test_invalid_counts(self, y, trials):
        with pytest.raises(ConfigurationError):
            Binomial(y, trials)


class TestPoisson:
    def test_matches_scipy(self):
        y = np.array([0.0, 2.0, 7.0])
        eta = np.array([0.1, 0.5, 2.0])
        expected = -stats.poisson(np.exp(eta)).logpmf(y).sum()
        assert Poisson(y).nll(t(eta), {}).item() == pytest.approx(expected)

    def test_invalid_counts(self):
        with pytest.raises(ConfigurationError):
            Poisson([1.0, -1.0])


class TestFactory:
    def test_known_names(self):
        assert isinstance(get_likelihood('weibull', times=[1.0]), CensoredWeibull)
        assert isinstance(get_likelihood('Gaussian', y=[1.0, 2.0]), Gaussian)
        assert isinstance(get_likelihood('bernoulli', y=[1.0, 0.0]), Binomial)

    @pytest.mark.parametrize("name", ['lognormal', 3])
    def test_unknown_name(self, name):
        with pytest.raises(ConfigurationError):
            get_likelihood(name, y=[1.0])

"""Tests for the stock-recruitment process."""

import math

import numpy as np
import pytest
import torch
from scipy import stats

from laplace_gmrf.exceptions import ConfigurationError
from laplace_gmrf.recruitment import (
    BevertonHolt,
    RandomWalk,
    RecruitmentProcess,
    Ricker,
    recruitment_mode,
)


def t(value):
    return torch.tensor(value, dtype=torch.float64)


ALPHA, BETA = 1.5, math.log(1e-3)


def predicted(mode, ssb):
    process = RecruitmentProcess(ssb=ssb, mode=mode)
    return process.predicted({'log_sigma': t(0.0), 'alpha': t(ALPHA), 'beta': t(BETA)}).numpy()


class TestRecruitmentMode:
    @pytest.mark.parametrize("selector,expected", [
        ('random_walk', RandomWalk),
        ('Ricker', Ricker),
        ('beverton_holt', BevertonHolt),
        ('bh', BevertonHolt),
        (Ricker, Ricker),
        (BevertonHolt(), BevertonHolt),
    ])
    def test_resolution(self, selector, expected):
        assert isinstance(recruitment_mode(selector), expected)

    @pytest.mark.parametrize("selector", ['shepherd', 0, 1, 2, None])
    def test_unknown_mode_is_construction_error(self, selector):
        with pytest.raises(ConfigurationError, match="recruitment mode"):
            RecruitmentProcess(ssb=[1.0, 2.0], mode=selector)


class TestStockRecruitmentCurves:
    def test_ricker_overcompensates(self):
        ssb = np.logspace(4, 6, 20)  # beyond the maximum at 1 / exp(beta) = 1000
        pred = predicted('ricker', ssb)
        assert np.all(np.diff(pred) < 0)
        assert pred[-1] < pred[0] - 100

    def test_beverton_holt_asymptote(self):
        ssb = np.logspace(1, 9, 30)
        pred = predicted('beverton_holt', ssb)
        assert np.all(np.diff(pred) > 0)
        assert pred[-1] == pytest.approx(ALPHA - BETA, abs=1e-5)

    def test_closed_forms(self):
        ssb = np.array([50.0, 500.0, 5000.0])
        b = math.exp(BETA)
        np.testing.assert_allclose(predicted('ricker', ssb), ALPHA + np.log(ssb) - b * ssb)
        np.testing.assert_allclose(predicted('beverton_holt', ssb), ALPHA + np.log(ssb) - np.log1p(b * ssb))

    def test_beverton_holt_extreme_ssb_is_finite(self):
        pred = predicted('beverton_holt', np.array([1e-300, 1e300]))
        assert np.all(np.isfinite(pred))


class TestRecruitmentProcess:
    def test_random_walk_prior(self):
        process = RecruitmentProcess(n_years=4)
        x = t([6.0, 6.5, 6.2, 7.0])
        nll = process.prior_nll(x, {'log_sigma': t(math.log(0.3))})
        expected = -stats.norm(0, 0.3).logpdf(np.diff(x.numpy())).sum()
        assert nll.item() == pytest.approx(expected)
        assert list(process.parameter_spec()) == ['log_sigma']

    def test_ricker_prior_and_precision(self):
        ssb = np.array([100.0, 400.0])
        process = RecruitmentProcess(ssb=ssb, mode='ricker')
        params = {'log_sigma': t(math.log(0.5)), 'alpha': t(ALPHA), 'beta': t(BETA)}
        x = t([6.0, 7.0])
        pred = predicted('ricker', ssb)
        expected = -stats.norm(pred, 0.5).logpdf(x.numpy()).sum()
        assert process.prior_nll(x, params).item() == pytest.approx(expected)
        np.testing.assert_allclose(process.precision(params).to_dense().numpy(), 4.0 * np.eye(2))
        assert process.log_determinant(params).item() == pytest.approx(2 * math.log(4.0))
        assert set(process.report(params)) == {'sigma', 'predicted'}

    def test_random_walk_precision_matches_prior(self):
        process = RecruitmentProcess(n_years=5)
        params = {'log_sigma': t(math.log(0.4))}
        x = t([1.0, 1.2, 0.8, 1.1, 1.5])
        quad = process.precision(params).quadratic_form(x)
        assert process.prior_nll(x, params, False).item() == pytest.approx(0.5 * quad.item())

    @pytest.mark.parametrize("ssb", [[100.0, 0.0], [100.0, -5.0], [np.inf, 1.0], [[1.0, 2.0]]])
    def test_invalid_ssb(self, ssb):
        with pytest.raises(ConfigurationError, match="ssb"):
            RecruitmentProcess(ssb=ssb, mode='ricker')

    def test_missing_inputs(self):
        with pytest.raises(ConfigurationError):
            RecruitmentProcess(mode='beverton_holt')
        with pytest.raises(ConfigurationError):
            RecruitmentProcess(mode='random_walk')
        with pytest.raises(ConfigurationError):
            RecruitmentProcess(n_years=3, ssb=[1.0, 2.0], mode='ricker')

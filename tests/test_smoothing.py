"""Tests for the solver boundary."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from abundlib.core import TRIMDAYNO, FitFailure, FitSuccess, ModelFamily, add_trimmed_day
from abundlib.smoothing import (
    MIN_NB_ALPHA,
    estimate_nb_alpha,
    fit_offset_glm,
    fit_seasonal_smooth,
    season_smoother,
    site_design,
    unit_days,
)


@pytest.fixture
def year_data(season_table) -> pd.DataFrame:
    return add_trimmed_day(season_table.copy())


class TestSeasonSmoother:
    def test_shape(self):
        u = unit_days(pd.Series(np.arange(1, 101)))
        smoother = season_smoother(u, spline_df=8)
        assert smoother.basis.shape == (100, 7)  # constant left to the linear part

    def test_df_capped_by_distinct_days(self):
        u = unit_days(pd.Series([1, 2, 3, 4, 5] * 3))
        assert season_smoother(u, spline_df=10).basis.shape[1] == 4

    def test_unobserved_range_predictable(self):
        """Knots span [0, 1] even when the fitted days do not."""
        smoother = season_smoother(np.linspace(0.2, 0.8, 30), spline_df=6)
        assert np.isfinite(smoother.transform(np.array([0.0, 0.5, 1.0]))).all()

    def test_unit_days(self):
        np.testing.assert_allclose(unit_days(pd.Series([10, 15, 20])), [0.0, 0.5, 1.0])
        assert (unit_days(pd.Series([7, 7])) == 0).all()


class TestSiteDesign:
    def test_treatment_contrasts(self):
        X = site_design(pd.Series(["a", "b", "c", "a"]), intercept=True)
        assert X.shape == (4, 3)
        assert np.allclose(X[:, 0], 1.0)

    def test_indicators(self):
        X = site_design(pd.Series(["a", "b", "c", "a"]), intercept=False)
        np.testing.assert_array_equal(X.sum(axis=1), np.ones(4))
        assert X.shape == (4, 3)

    def test_single_site(self):
        for intercept in (True, False):
            X = site_design(pd.Series(["a"] * 5), intercept=intercept)
            assert X.shape == (5, 1)
            assert np.allclose(X, 1.0)


class TestFitSeasonalSmooth:
    @pytest.mark.parametrize("family", list(ModelFamily))
    def test_success(self, year_data, family):
        outcome = fit_seasonal_smooth(year_data, family)
        assert isinstance(outcome, FitSuccess)
        assert outcome.fitted.shape == (len(year_data),)
        assert np.isfinite(outcome.fitted).all()
        assert (outcome.fitted >= 0).all()

    def test_zero_edges_do_not_diverge(self, season_factory):
        """A narrow flight period leaves long runs of zero counts at both ends."""
        data = add_trimmed_day(season_factory(width=12.0))
        outcome = fit_seasonal_smooth(data, ModelFamily.POISSON)
        assert outcome.ok
        assert np.isfinite(outcome.model.params).all()

    def test_predicts_unobserved_rows(self, year_data):
        """Rows with a missing count still receive a fitted value."""
        outcome = fit_seasonal_smooth(year_data, ModelFamily.POISSON)
        unobserved = year_data["COUNT"].isna().to_numpy()
        assert unobserved.any()
        assert np.isfinite(outcome.fitted[unobserved]).all()

    def test_fast_mode_same_model(self, year_data):
        slow = fit_seasonal_smooth(year_data, ModelFamily.POISSON, fast=False)
        fast = fit_seasonal_smooth(year_data, ModelFamily.POISSON, fast=True)
        np.testing.assert_allclose(slow.fitted, fast.fitted, rtol=1e-3, atol=1e-4)

    def test_peak_near_true_peak(self, year_data):
        outcome = fit_seasonal_smooth(year_data, ModelFamily.POISSON)
        site = (year_data["SITE_ID"] == "S1").to_numpy()
        peak_day = year_data.loc[site, TRIMDAYNO].to_numpy()[np.argmax(outcome.fitted[site])]
        # true peak at day-of-year 170, window starts at 80
        assert abs(peak_day - 91) <= 10

    def test_stronger_penalty_is_smoother(self, year_data):
        site = (year_data["SITE_ID"] == "S1").to_numpy()
        rough = fit_seasonal_smooth(year_data, ModelFamily.POISSON)
        smooth = fit_seasonal_smooth(year_data, ModelFamily.POISSON, penalty=1e2)

        def wiggle(fitted):
            return np.abs(np.diff(np.log(fitted[site]), 2)).sum()

        assert wiggle(smooth.fitted) < wiggle(rough.fitted)

    def test_no_observations_is_failure(self, year_data):
        year_data["COUNT"] = np.nan
        outcome = fit_seasonal_smooth(year_data, ModelFamily.POISSON)
        assert isinstance(outcome, FitFailure)
        assert not outcome.ok


class TestEstimateNbAlpha:
    def test_overdispersed_counts(self):
        rng = np.random.default_rng(3)
        mu = np.full(4000, 5.0)
        alpha = 0.5
        y = rng.negative_binomial(1 / alpha, 1 / (1 + alpha * mu))
        assert estimate_nb_alpha(y, mu) == pytest.approx(alpha, rel=0.2)

    def test_positive_for_poisson_counts(self):
        rng = np.random.default_rng(4)
        mu = np.full(2000, 5.0)
        alpha = estimate_nb_alpha(rng.poisson(mu), mu)
        assert MIN_NB_ALPHA <= alpha < 0.05


class TestFitOffsetGlm:
    def _data(self, sites=("A", "B"), scale=(50.0, 10.0)):
        nm = np.array([0.05, 0.1, 0.2, 0.3, 0.2, 0.1, 0.05])
        rows = []
        for site, s in zip(sites, scale):
            for i, v in enumerate(nm):
                rows.append({"SITE_ID": site, "COUNT": s * v, "NM": v, "DAY": i})
        return pd.DataFrame(rows)

    def test_recovers_site_scale(self):
        """Counts exactly proportional to NM are fitted exactly."""
        data = self._data()
        outcome = fit_offset_glm(data, np.log(data["NM"].to_numpy()), ModelFamily.QUASIPOISSON)
        assert outcome.ok
        np.testing.assert_allclose(outcome.fitted, data["COUNT"].to_numpy(), rtol=1e-6)

    def test_iteration_cap_does_not_discard_fit(self):
        """A fit stopped by the iteration cap is kept when its coefficients are finite."""
        data = self._data()
        outcome = fit_offset_glm(
            data, np.log(data["NM"].to_numpy()), ModelFamily.POISSON, max_iterations=1
        )
        assert outcome.ok
        assert np.isfinite(outcome.fitted).all()

    def test_single_site_intercept(self):
        data = self._data(sites=("A",), scale=(40.0,))
        outcome = fit_offset_glm(data, np.log(data["NM"].to_numpy()), ModelFamily.QUASIPOISSON)
        assert outcome.ok
        np.testing.assert_allclose(outcome.fitted, data["COUNT"].to_numpy(), rtol=1e-6)

    def test_missing_counts_predicted(self):
        data = self._data()
        data.loc[[1, 3, 9], "COUNT"] = np.nan
        outcome = fit_offset_glm(data, np.log(data["NM"].to_numpy()), ModelFamily.POISSON)
        assert outcome.ok
        np.testing.assert_allclose(outcome.fitted[3], 50.0 * 0.3, rtol=1e-6)

    def test_negative_binomial_runs(self):
        data = self._data()
        data["COUNT"] = data["COUNT"].round()
        outcome = fit_offset_glm(data, data["NM"].to_numpy(), ModelFamily.NEGATIVE_BINOMIAL)
        assert outcome.ok
        assert np.isfinite(outcome.fitted).all()
        # one coefficient per site plus the estimated dispersion
        assert len(outcome.model.params) == 3
        assert outcome.model.params[-1] > 0

    def test_negative_binomial_single_site(self):
        """One site: a single site coefficient and the dispersion, no extra intercept."""
        data = self._data(sites=("A",), scale=(40.0,))
        data["COUNT"] = data["COUNT"].round()
        outcome = fit_offset_glm(data, data["NM"].to_numpy(), ModelFamily.NEGATIVE_BINOMIAL)
        assert outcome.ok
        assert len(outcome.model.params) == 2
        expected = np.exp(outcome.model.params[0] + data["NM"].to_numpy())
        np.testing.assert_allclose(outcome.fitted, expected, rtol=1e-8)

    def test_no_usable_rows(self):
        data = self._data()
        outcome = fit_offset_glm(data, np.full(len(data), np.nan), ModelFamily.POISSON)
        assert isinstance(outcome, FitFailure)

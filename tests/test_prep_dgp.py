"""
Tests for synthetic panel generation.
"""

import numpy as np
import pytest
from scipy import stats

from ecic.prep_dgp import generate_cic_data


class TestGenerateCicData:
    """Tests for generate_cic_data."""

    def test_columns(self):
        data = generate_cic_data(n_units_per_cohort=10, seed=0)
        assert list(data.columns) == [
            "unit", "period", "outcome", "first_treat", "treated", "true_effect",
        ]

    def test_balanced_cohorts(self):
        data = generate_cic_data(n_units_per_cohort=25, n_periods=6, seed=0)

        sizes = data.groupby("first_treat")["unit"].nunique()
        assert sizes.index.tolist() == [2, 3, 4, 5]
        assert sizes.tolist() == [25, 25, 25, 25]
        assert len(data) == 100 * 6

    def test_never_treated(self):
        data = generate_cic_data(n_units_per_cohort=10, n_never_treated=7, seed=0)
        never = data[data["first_treat"] == 0]

        assert never["unit"].nunique() == 7
        assert (never["treated"] == 0).all()

    def test_treatment_indicator(self):
        data = generate_cic_data(n_units_per_cohort=10, seed=1)
        expected = (data["period"] >= data["first_treat"]) & (data["first_treat"] > 0)
        assert (data["treated"] == expected.astype(int)).all()
        assert (data.loc[data["treated"] == 0, "true_effect"] == 0).all()

    def test_effect_growth(self):
        data = generate_cic_data(
            n_units_per_cohort=10, treatment_effect=1.0, effect_growth=0.5, seed=1
        )
        treated = data[data["treated"] == 1]
        expected = 1.0 + 0.5 * (treated["period"] - treated["first_treat"])
        np.testing.assert_allclose(treated["true_effect"], expected)

    def test_effect_dispersion(self):
        data = generate_cic_data(
            n_units_per_cohort=50, treatment_effect=2.0, effect_dispersion=1.0, seed=1
        )
        effects = data.loc[data["treated"] == 1, "true_effect"]

        assert effects.std() > 0
        assert effects.min() >= 1.0
        assert effects.max() <= 3.0

    def test_effect_dispersion_follows_normal_rank(self):
        """The effect scale is the normal CDF of the standardized untreated draw."""
        data = generate_cic_data(
            n_units_per_cohort=30, treatment_effect=2.0, effect_dispersion=1.0,
            cohort_gap=0.5, unit_fe_sd=1.0, time_trend=0.5, noise_sd=1.0, seed=4,
        )
        treated = data[data["treated"] == 1]
        cohort_index = treated["first_treat"] - 2
        untreated = treated["outcome"] - treated["true_effect"]
        z = (untreated - 10.0 - 0.5 * cohort_index - 0.5 * treated["period"]) / np.sqrt(2.0)

        expected = 2.0 * (1.0 + (stats.norm.cdf(z) - 0.5))
        np.testing.assert_allclose(treated["true_effect"], expected, rtol=1e-10)

    def test_reproducible(self):
        a = generate_cic_data(n_units_per_cohort=10, seed=9)
        b = generate_cic_data(n_units_per_cohort=10, seed=9)
        assert a.equals(b)

    def test_invalid_cohort_period(self):
        with pytest.raises(ValueError, match="Cohort period"):
            generate_cic_data(n_periods=4, cohort_periods=[2, 6])

    def test_too_few_periods(self):
        with pytest.raises(ValueError, match="n_periods"):
            generate_cic_data(n_periods=2)

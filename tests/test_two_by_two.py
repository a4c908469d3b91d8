"""
Tests for the single 2x2 changes-in-changes step.
"""

import numpy as np
import pandas as pd
import pytest

from ecic.combinations import CombinationSpec
from ecic.two_by_two import PanelArrays, counterfactual_outcomes, estimate_two_by_two

SPEC = CombinationSpec(treated_cohort=2, comparison_cohort=3, post_period=2, pre_period=1)


def make_panel(n_per_cell=50, seed=0, shift=1.0):
    """Cohorts 2 and 3 observed in periods 1 and 2."""
    rng = np.random.default_rng(seed)
    frames = []
    for cohort in (2, 3):
        for period in (1, 2):
            y = rng.normal(size=n_per_cell) + shift * (period - 1)
            frames.append(pd.DataFrame({"y": y, "g": cohort, "t": period}))
    return pd.concat(frames, ignore_index=True)


class TestCounterfactualOutcomes:
    """Tests for the rank-transformation imputation."""

    def test_maps_through_comparison_ranks(self):
        control_pre = np.array([1.0, 2.0, 3.0, 4.0])
        control_post = np.array([11.0, 12.0, 13.0, 14.0])
        treated_pre = np.array([2.5, 4.0, 0.0])

        imputed = counterfactual_outcomes(treated_pre, control_pre, control_post)
        np.testing.assert_array_equal(imputed, [12.0, 14.0, 11.0])

    def test_identical_arms_reproduce_post_distribution(self):
        """With identical pre-period samples the imputation is the comparison post sample."""
        rng = np.random.default_rng(5)
        pre = rng.normal(size=32)
        post = rng.normal(loc=3.0, size=32)

        imputed = counterfactual_outcomes(pre, pre, post)
        np.testing.assert_array_equal(np.sort(imputed), np.sort(post))


class TestEstimateTwoByTwo:
    """Tests for estimate_two_by_two."""

    def test_basic(self):
        df = make_panel()
        panel = PanelArrays.from_frame(df, "y", "g", "t")

        result, reason = estimate_two_by_two(panel, SPEC, n_min=40)

        assert reason is None
        assert result.spec == SPEC
        assert result.event_time == 0
        assert result.n1 == 100
        assert result.n0 == 100
        assert result.treated.n_obs == 50
        assert result.counterfactual.n_obs == 50

    def test_counterfactual_values_come_from_comparison_post(self):
        df = make_panel()
        panel = PanelArrays.from_frame(df, "y", "g", "t")
        result, _ = estimate_two_by_two(panel, SPEC, n_min=1)

        control_post = df.loc[(df["g"] == 3) & (df["t"] == 2), "y"].to_numpy()
        assert np.all(np.isin(result.counterfactual.support, control_post))

    def test_other_cohorts_ignored(self):
        df = make_panel()
        extra = pd.DataFrame({"y": 100.0, "g": [4] * 10, "t": [1] * 5 + [2] * 5})
        with_extra = pd.concat([df, extra], ignore_index=True)

        base, _ = estimate_two_by_two(PanelArrays.from_frame(df, "y", "g", "t"), SPEC, 1)
        other, _ = estimate_two_by_two(PanelArrays.from_frame(with_extra, "y", "g", "t"), SPEC, 1)

        np.testing.assert_array_equal(base.treated.support, other.treated.support)
        np.testing.assert_array_equal(base.counterfactual.cumprob, other.counterfactual.cumprob)

    def test_skip_small_treated_arm(self):
        df = make_panel(n_per_cell=10)
        panel = PanelArrays.from_frame(df, "y", "g", "t")

        result, reason = estimate_two_by_two(panel, SPEC, n_min=40)

        assert result is None
        assert "too small treatment group" in reason

    def test_skip_small_comparison_arm(self):
        df = make_panel(n_per_cell=30)
        df = df[~((df["g"] == 3) & (df.index % 3 == 0))]
        panel = PanelArrays.from_frame(df, "y", "g", "t")

        result, reason = estimate_two_by_two(panel, SPEC, n_min=60)

        assert result is None
        assert "too small comparison group" in reason

    def test_skip_empty_cell(self):
        df = make_panel()
        df = df[~((df["g"] == 2) & (df["t"] == 1))]
        panel = PanelArrays.from_frame(df, "y", "g", "t")

        result, reason = estimate_two_by_two(panel, SPEC, n_min=10)

        assert result is None
        assert reason == "empty treated pre-period cell"

    @pytest.mark.parametrize("quant_algo", [1, 4, 7, 9])
    def test_quant_algo(self, quant_algo):
        df = make_panel()
        panel = PanelArrays.from_frame(df, "y", "g", "t")

        result, reason = estimate_two_by_two(panel, SPEC, n_min=40, quant_algo=quant_algo)
        assert reason is None
        assert result.counterfactual.n_obs == 50

"""
Changes-in-changes estimation for a single 2x2 comparison.

Athey & Imbens (2006) construct the counterfactual distribution of the
treated arm in the post period by mapping each treated pre-period outcome
to its rank in the comparison arm's pre-period distribution, and then to
the comparison arm's post-period quantile at that rank.
"""

from typing import NamedTuple, Optional, Tuple

import numpy as np
import pandas as pd

from ecic.cic_results import CombinationResult
from ecic.combinations import CombinationSpec
from ecic.distributions import EmpiricalDistribution, quantile


class PanelArrays(NamedTuple):
    """Column arrays of a (resampled) panel, extracted once per replicate."""
    outcome: np.ndarray
    cohort: np.ndarray
    period: np.ndarray

    @classmethod
    def from_frame(
        cls, data: pd.DataFrame, outcome: str, cohort: str, period: str
    ) -> "PanelArrays":
        return cls(
            outcome=data[outcome].to_numpy(dtype=float),
            cohort=data[cohort].to_numpy(),
            period=data[period].to_numpy(),
        )


def counterfactual_outcomes(
    treated_pre: np.ndarray,
    control_pre: np.ndarray,
    control_post: np.ndarray,
    quant_algo: int = 1,
) -> np.ndarray:
    """
    Impute untreated post-period outcomes for the treated arm.

    Returns ``F_{01}^{-1}(F_{00}(y))`` for every treated pre-period outcome
    ``y``, where ``F_{00}`` and ``F_{01}`` are the comparison arm's
    pre- and post-period empirical CDFs and the inverse uses quantile rule
    ``quant_algo``.
    """
    ranks = EmpiricalDistribution.from_sample(control_pre).evaluate(treated_pre)
    return quantile(control_post, ranks, quant_algo)


def estimate_two_by_two(
    panel: PanelArrays,
    spec: CombinationSpec,
    n_min: int,
    quant_algo: int = 1,
) -> Tuple[Optional[CombinationResult], Optional[str]]:
    """
    Estimate treated and counterfactual distributions for one comparison.

    Parameters
    ----------
    panel : PanelArrays
        Replicate panel.
    spec : CombinationSpec
        The (c1, c2, t1, t0) comparison.
    n_min : int
        Minimum number of rows in each arm (both periods together).
    quant_algo : int, default=1
        Quantile rule used to invert the comparison arm's post-period CDF.

    Returns
    -------
    result : CombinationResult or None
        None when the comparison was skipped.
    reason : str or None
        Why the comparison was skipped.
    """
    in_cells = (
        np.isin(panel.cohort, [spec.treated_cohort, spec.comparison_cohort])
        & np.isin(panel.period, [spec.post_period, spec.pre_period])
    )
    y = panel.outcome[in_cells]
    treat = panel.cohort[in_cells] == spec.treated_cohort
    post = panel.period[in_cells] == spec.post_period

    n1 = int(np.sum(treat))
    n0 = int(np.sum(~treat))
    if n1 < n_min:
        return None, f"too small treatment group ({n1} < {n_min} observations)"
    if n0 < n_min:
        return None, f"too small comparison group ({n0} < {n_min} observations)"

    treated_post = y[treat & post]
    treated_pre = y[treat & ~post]
    control_post = y[~treat & post]
    control_pre = y[~treat & ~post]
    for label, cell in (
        ("treated post-period", treated_post),
        ("treated pre-period", treated_pre),
        ("comparison post-period", control_post),
        ("comparison pre-period", control_pre),
    ):
        if cell.size == 0:
            return None, f"empty {label} cell"

    imputed = counterfactual_outcomes(treated_pre, control_pre, control_post, quant_algo)

    return CombinationResult(
        spec=spec,
        treated=EmpiricalDistribution.from_sample(treated_post),
        counterfactual=EmpiricalDistribution.from_sample(imputed),
        n1=n1,
        n0=n0,
    ), None

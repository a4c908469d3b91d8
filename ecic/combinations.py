"""
Enumeration of the 2x2 cohort/period comparisons used by the estimator.
"""

from typing import Any, List, NamedTuple, Optional, Sequence

from ecic.errors import ValidationError


class CombinationSpec(NamedTuple):
    """
    One 2x2 comparison.

    Attributes
    ----------
    treated_cohort : any
        Cohort whose effect is estimated (c1).
    comparison_cohort : any
        Later-treated cohort used as the comparison arm (c2 > c1).
    post_period : any
        Period at which the effect is measured; c1 <= t1 < c2.
    pre_period : any
        Period before c1 in which both arms are untreated.
    """
    treated_cohort: Any
    comparison_cohort: Any
    post_period: Any
    pre_period: Any

    @property
    def event_time(self) -> Any:
        """Periods elapsed since the treated cohort adopted treatment."""
        return self.post_period - self.treated_cohort


def treated_cohort_candidates(cohorts: Sequence[Any]) -> List[Any]:
    """
    Cohorts that can serve as treated arm.

    The earliest cohort is never used as treated arm, even when it is
    treated after the first period. The last cohort has no later cohort to
    compare against. Both are excluded.

    Raises
    ------
    ValidationError
        If no cohort remains.
    """
    cohorts = sorted(cohorts)
    candidates = cohorts[1:-1]
    if len(candidates) == 0:
        raise ValidationError(
            f"Not enough cohorts / groups in the data set! Found {len(cohorts)} "
            "cohort(s); at least three are needed so that a treated cohort has "
            "both a pre-period and a later comparison cohort."
        )
    return candidates


def enumerate_combinations(
    cohorts: Sequence[Any],
    periods: Sequence[Any],
    max_event_time: Optional[int] = None,
) -> List[CombinationSpec]:
    """
    List every valid (c1, c2, t1, t0) comparison.

    Parameters
    ----------
    cohorts : sequence
        Distinct cohorts of the normalized panel.
    periods : sequence
        Distinct periods of the normalized panel.
    max_event_time : int, optional
        If given (event-study mode), keep only post periods with
        ``t1 - c1 <= max_event_time``.

    Returns
    -------
    list of CombinationSpec
        Ordered by treated cohort, comparison cohort, post period and pre
        period, all ascending.
    """
    cohorts = sorted(cohorts)
    periods = sorted(periods)
    last_cohort = cohorts[-1]

    combos = []
    for c1 in treated_cohort_candidates(cohorts):
        pre_periods = [t for t in periods if t < c1]
        for c2 in (c for c in cohorts if c > c1):
            # the comparison cohort must still be untreated at t1
            post_periods = [t for t in periods if c1 <= t <= last_cohort - 1 and t < c2]
            if max_event_time is not None:
                post_periods = [t for t in post_periods if t - c1 <= max_event_time]
            for t1 in post_periods:
                for t0 in pre_periods:
                    combos.append(CombinationSpec(c1, c2, t1, t0))
    return combos


def max_event_horizon(combinations: Sequence[CombinationSpec]) -> int:
    """Largest event time ``t1 - c1`` among ``combinations`` (0 if empty)."""
    if not combinations:
        return 0
    return int(max(spec.event_time for spec in combinations))

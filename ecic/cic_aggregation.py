"""
Aggregation of 2x2 distributions into quantile treatment effects.

Every CDF is evaluated on a shared imputation grid, the resulting vectors
are pooled with treated-cell-size weights, and the pooled CDFs are
inverted at the requested probability levels.
"""

import logging
from typing import Dict, List, Optional, Sequence, Union

import numpy as np

from ecic.cic_results import CombinationResult, QuantileTreatmentEffect
from ecic.distributions import EmpiricalDistribution, invert_cdf

logger = logging.getLogger(__name__)

WEIGHT_OPTIONS = ("n1", "n0")


def evaluate_on_grid(
    distributions: Sequence[EmpiricalDistribution],
    grid: np.ndarray,
) -> np.ndarray:
    """Stack CDF values on ``grid`` into a (n_distributions, n_grid) matrix."""
    if len(distributions) == 0:
        return np.empty((0, len(grid)))
    return np.vstack([dist.evaluate(grid) for dist in distributions])


def treated_size_weights(n1: Sequence[float]) -> np.ndarray:
    """Normalize treated-cell sizes so they sum to one."""
    n1 = np.asarray(n1, dtype=float)
    total = np.sum(n1)
    if total <= 0:
        raise ValueError("Cannot normalize weights: total treated-cell size is zero")
    return n1 / total


def pool_distributions(matrix: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """
    Weighted pointwise sum of CDF rows.

    With nonnegative weights summing to one the result is again a
    nondecreasing function bounded in [0, 1].
    """
    return np.sum(matrix * weights[:, np.newaxis], axis=0)


def invert_on_grid(
    grid: np.ndarray,
    pooled: np.ndarray,
    probs: np.ndarray,
) -> np.ndarray:
    """
    Smallest grid value whose pooled probability is >= each ``p``.

    Ties resolve to the smaller grid value; unreachable levels give NaN.
    """
    return np.atleast_1d(invert_cdf(grid, pooled, probs))


def _pool_and_invert(
    matrix: np.ndarray,
    weights: np.ndarray,
    grid: np.ndarray,
    probs: np.ndarray,
) -> np.ndarray:
    pooled = pool_distributions(matrix, weights)
    return invert_on_grid(grid, pooled, probs)


def aggregate_replicate(
    results: Sequence[CombinationResult],
    grid: np.ndarray,
    probs: np.ndarray,
    es: bool = False,
    horizon: Optional[int] = None,
    weight_n0: str = "n1",
    weight_n1: str = "n1",
) -> Union[QuantileTreatmentEffect, Dict[int, QuantileTreatmentEffect]]:
    """
    Aggregate one replicate's 2x2 results into QTE curve(s).

    The counterfactual distribution is pooled once over all combinations.
    Without event study the treated distribution is pooled the same way;
    with event study it is pooled separately for each event time
    ``0..horizon``, weights being renormalized within the bucket.

    Parameters
    ----------
    results : sequence of CombinationResult
        Non-skipped combinations of the replicate.
    grid : np.ndarray
        Imputation grid (sorted distinct outcome values).
    probs : np.ndarray
        Probability levels.
    es : bool, default=False
        Decompose by event time.
    horizon : int, optional
        Largest event time (required when ``es`` is True).
    weight_n0, weight_n1 : {"n1", "n0"}
        Weighting of the counterfactual and treated pools. Both pools are
        currently weighted by treated-cell size whichever option is given.

    Returns
    -------
    QuantileTreatmentEffect or dict
        A single curve, or ``{event_time: curve}`` in event-study mode.
    """
    if len(results) == 0:
        raise ValueError("No combinations to aggregate")
    for name, value in (("weight_n0", weight_n0), ("weight_n1", weight_n1)):
        if value not in WEIGHT_OPTIONS:
            raise ValueError(f"{name} must be 'n1' or 'n0', got '{value}'")
    if "n0" in (weight_n0, weight_n1):
        logger.debug("weight option 'n0' requested; pooling uses treated-cell sizes")

    probs = np.asarray(probs, dtype=float)
    weights = treated_size_weights([r.n1 for r in results])

    y0_matrix = evaluate_on_grid([r.counterfactual for r in results], grid)
    y0_quant = _pool_and_invert(y0_matrix, weights, grid, probs)
    del y0_matrix

    y1_matrix = evaluate_on_grid([r.treated for r in results], grid)

    if not es:
        y1_quant = _pool_and_invert(y1_matrix, weights, grid, probs)
        return QuantileTreatmentEffect(
            probs=probs,
            effects=y1_quant - y0_quant,
            treated_quantiles=y1_quant,
            counterfactual_quantiles=y0_quant,
        )

    if horizon is None:
        raise ValueError("horizon is required for event-study aggregation")

    event_times = np.array([r.event_time for r in results])
    weights_by_bucket = bucket_weights(results)
    curves: Dict[int, QuantileTreatmentEffect] = {}
    for e in range(int(horizon) + 1):
        if e in weights_by_bucket:
            y1_quant = _pool_and_invert(
                y1_matrix[event_times == e], weights_by_bucket[e], grid, probs
            )
        else:
            y1_quant = np.full(probs.shape, np.nan)
        curves[e] = QuantileTreatmentEffect(
            probs=probs,
            effects=y1_quant - y0_quant,
            treated_quantiles=y1_quant,
            counterfactual_quantiles=y0_quant,
            event_time=e,
        )
    return curves


def bucket_weights(results: Sequence[CombinationResult]) -> Dict[int, np.ndarray]:
    """Treated-size weights within each event-time bucket."""
    event_times = np.array([r.event_time for r in results])
    n1 = np.array([r.n1 for r in results], dtype=float)
    out: Dict[int, np.ndarray] = {}
    for e in np.unique(event_times):
        out[int(e)] = treated_size_weights(n1[event_times == e])
    return out


def used_event_times(results: Sequence[CombinationResult]) -> List[int]:
    """Sorted distinct event times among ``results``."""
    return sorted({int(r.event_time) for r in results})

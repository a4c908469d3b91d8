"""
Empirical distribution functions used by the changes-in-changes estimator.

An empirical CDF is stored as explicit data (ordered support and the
cumulative probability at each support point) rather than as a closure,
so it can be evaluated, inverted, pooled, and pickled without hidden state.
"""

from dataclasses import dataclass, field
from typing import Union

import numpy as np

from ecic.errors import ValidationError

# Hyndman & Fan (1996) sample quantile definitions 1-9, mapped to numpy's
# ``method`` names.
QUANTILE_METHODS = {
    1: "inverted_cdf",
    2: "averaged_inverted_cdf",
    3: "closest_observation",
    4: "interpolated_inverted_cdf",
    5: "hazen",
    6: "weibull",
    7: "linear",
    8: "median_unbiased",
    9: "normal_unbiased",
}

ArrayLike = Union[float, np.ndarray]


def validate_quant_algo(quant_algo) -> int:
    """
    Check that ``quant_algo`` is one of the nine supported rules.

    Returns
    -------
    int
        The rule number as a plain int.

    Raises
    ------
    ValidationError
        If ``quant_algo`` is not an integer in 1..9.
    """
    if isinstance(quant_algo, (bool, np.bool_)) or not isinstance(
        quant_algo, (int, np.integer)
    ):
        raise ValidationError(
            f"quant_algo must be an integer between 1 and 9, got {quant_algo!r}"
        )
    if int(quant_algo) not in QUANTILE_METHODS:
        raise ValidationError(
            f"Invalid quantile algorithm: quant_algo must be between 1 and 9, "
            f"got {quant_algo}"
        )
    return int(quant_algo)


def quantile(values: np.ndarray, probs: ArrayLike, quant_algo: int = 1) -> np.ndarray:
    """
    Sample quantiles of ``values`` at ``probs`` using rule ``quant_algo``.

    Parameters
    ----------
    values : np.ndarray
        Observed sample (non-empty).
    probs : float or np.ndarray
        Probability levels in [0, 1].
    quant_algo : int, default=1
        Hyndman-Fan rule number (1..9). Rule 1 inverts the empirical CDF.

    Returns
    -------
    np.ndarray
        Quantiles, same shape as ``probs``.
    """
    method = QUANTILE_METHODS[validate_quant_algo(quant_algo)]
    probs = np.clip(np.asarray(probs, dtype=float), 0.0, 1.0)
    return np.quantile(np.asarray(values, dtype=float), probs, method=method)


@dataclass(frozen=True, eq=False)
class EmpiricalDistribution:
    """
    Empirical CDF of a finite sample as (value, cumulative probability) pairs.

    Attributes
    ----------
    support : np.ndarray
        Sorted distinct sample values.
    cumprob : np.ndarray
        Proportion of the sample at or below each support value. Monotone
        nondecreasing, ending at 1.
    n_obs : int
        Sample size the distribution was built from.
    """
    support: np.ndarray = field(repr=False)
    cumprob: np.ndarray = field(repr=False)
    n_obs: int

    @classmethod
    def from_sample(cls, values: np.ndarray) -> "EmpiricalDistribution":
        """Build the empirical CDF of ``values`` (NaNs are not allowed)."""
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            raise ValueError("Cannot build an empirical distribution from an empty sample")
        if np.any(np.isnan(values)):
            raise ValueError("Sample contains NaN values")
        support, counts = np.unique(values, return_counts=True)
        cumprob = np.cumsum(counts) / values.size
        return cls(support=support, cumprob=cumprob, n_obs=int(values.size))

    def evaluate(self, x: ArrayLike) -> ArrayLike:
        """
        Evaluate the right-continuous step function at ``x``.

        Values below the smallest support point map to 0.
        """
        x = np.asarray(x, dtype=float)
        idx = np.searchsorted(self.support, x, side="right")
        padded = np.concatenate(([0.0], self.cumprob))
        out = padded[idx]
        if x.ndim == 0:
            return float(out)
        return out

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return self.evaluate(x)

    def inverse(self, p: ArrayLike) -> ArrayLike:
        """
        Generalized inverse: smallest support value with CDF >= ``p``.

        Returns NaN where ``p`` exceeds every cumulative probability.
        """
        return invert_cdf(self.support, self.cumprob, p)

    def __len__(self) -> int:
        return int(self.support.size)

    def to_pairs(self) -> np.ndarray:
        """Return a (k, 2) array of (value, cumulative probability) rows."""
        return np.column_stack([self.support, self.cumprob])


def invert_cdf(values: np.ndarray, cdf: np.ndarray, p: ArrayLike) -> ArrayLike:
    """
    Smallest entry of ``values`` whose cumulative probability is >= ``p``.

    ``values`` must be sorted ascending and ``cdf`` nondecreasing. When
    several values share the first qualifying probability the smallest one
    is returned. Probabilities that are never reached give NaN.
    """
    values = np.asarray(values, dtype=float)
    cdf = np.asarray(cdf, dtype=float)
    p = np.asarray(p, dtype=float)
    flat = np.atleast_1d(p)
    idx = np.searchsorted(cdf, flat, side="left")
    reachable = idx < values.size
    out = np.full(flat.shape, np.nan)
    out[reachable] = values[idx[reachable]]
    if p.ndim == 0:
        return float(out[0])
    return out.reshape(p.shape)

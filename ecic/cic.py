"""
Changes-in-changes estimator for staggered adoption designs.

Implements the Athey & Imbens (2006) changes-in-changes model for panels
with multiple treatment cohorts and periods: every valid 2x2 comparison
of an earlier- and a later-treated cohort yields a counterfactual outcome
distribution, and the pooled distributions give quantile treatment effects,
optionally by event time, with bootstrap replication for inference.
"""

import logging
import warnings
from contextlib import nullcontext
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from ecic.cic_aggregation import WEIGHT_OPTIONS
from ecic.cic_bootstrap import (
    BOOTSTRAP_METHODS,
    POOL_BACKENDS,
    BootstrapDriver,
    ReplicateContext,
    ReplicateStore,
    Resampler,
    WorkerPool,
    validate_n_jobs,
    validate_seed,
)
from ecic.cic_results import ResultCollection, assemble_results
from ecic.combinations import enumerate_combinations, max_event_horizon
from ecic.distributions import validate_quant_algo
from ecic.errors import ConfigurationWarning, EventStudyAdjustmentWarning, ValidationError
from ecic.prep import (
    ColumnId,
    ColumnSpec,
    build_imputation_grid,
    prepare_panel,
    validate_bool,
    validate_positive_int,
)

logger = logging.getLogger(__name__)

DEFAULT_PROBS = tuple(round(0.1 * k, 1) for k in range(1, 10))


def validate_probs(probs: Sequence[float]) -> np.ndarray:
    """Sorted distinct probability levels, all strictly inside (0, 1)."""
    try:
        arr = np.asarray(probs, dtype=float).ravel()
    except (TypeError, ValueError) as e:
        raise ValidationError(f"probs must be numeric, got {probs!r}") from e
    if arr.size == 0:
        raise ValidationError("probs must contain at least one probability level")
    if np.any(~np.isfinite(arr)) or np.any(arr <= 0) or np.any(arr >= 1):
        raise ValidationError(f"probs must lie strictly between 0 and 1, got {arr.tolist()}")
    return np.unique(arr)


class ChangesInChanges:
    """
    Changes-in-changes estimator with multiple periods and cohorts.

    For each treated cohort ``c1``, later cohort ``c2``, post period ``t1``
    (``c1 <= t1 < c2``) and pre period ``t0 < c1``, the untreated outcome
    distribution of cohort ``c1`` at ``t1`` is imputed by mapping its
    ``t0`` outcomes through the comparison cohort's rank transformation
    between ``t0`` and ``t1``. The distributions are pooled on a common
    grid with cohort-size weights and inverted to give quantile treatment
    effects.

    Parameters
    ----------
    probs : sequence of float, default=(0.1, ..., 0.9)
        Quantiles at which treatment effects are computed.
    n_min : int, default=40
        Minimum number of units per cohort, and minimum number of rows per
        arm of a 2x2 comparison. Smaller cohorts are dropped; smaller
        comparisons are skipped.
    bootstrap : str, default="no"
        Resampling scheme:
        - "no": a single estimate on the original data
        - "normal": resample rows with replacement
        - "weighted": resample rows with probability proportional to the
          size of their (cohort, period) cell
    n_reps : int, default=1
        Number of bootstrap replications. Set to 1 when bootstrap is "no".
    quant_algo : int, default=1
        Sample quantile rule (Hyndman & Fan types 1-9) used to invert the
        comparison cohort's post-period distribution.
    es : bool, default=False
        Event study: estimate a QTE curve for every event time
        ``0..periods_es`` instead of one pooled curve.
    periods_es : int, default=6
        Largest event time of the event study. Clamped to what the data
        support.
    n_digits : int, optional
        Round outcomes to this many digits when building the imputation
        grid. Reduces memory use on large data sets.
    short_output : bool, default=True
        Keep only the QTE curves and combination metadata, not the
        per-combination distributions.
    save_to_temp : bool, default=False
        Write each replicate's result to a temporary directory as soon as
        it finishes, reducing peak memory.
    weight_n0 : str, default="n1"
        Weights for pooling the counterfactual distributions ("n1" or "n0").
    weight_n1 : str, default="n1"
        Weights for pooling the treated distributions ("n1" or "n0").
    n_jobs : int, default=1
        Number of parallel workers for the replicates (-1 for all cores).
    backend : str, default="thread"
        Worker pool backend, "thread" or "process".
    seed : int, optional
        Base seed for the bootstrap draws.

    Attributes
    ----------
    results_ : ResultCollection
        Estimation results after calling fit().
    is_fitted_ : bool
        Whether the model has been fitted.

    Examples
    --------
    >>> from ecic import ChangesInChanges
    >>> from ecic.prep_dgp import generate_cic_data
    >>> data = generate_cic_data(seed=42)
    >>> model = ChangesInChanges(bootstrap="normal", n_reps=20, seed=1)
    >>> results = model.fit(data, outcome='outcome', cohort='first_treat',
    ...                     period='period', unit='unit')
    >>> results.to_dataframe().groupby('perc')['values'].mean()  # doctest: +SKIP

    Notes
    -----
    Both pools are weighted by treated-cell size; ``weight_n0`` and
    ``weight_n1`` are validated but "n0" is not applied differently.

    References
    ----------
    Athey, S., & Imbens, G. W. (2006). Identification and Inference in
    Nonlinear Difference-in-Differences Models. Econometrica, 74(2), 431-497.
    """

    def __init__(
        self,
        probs: Sequence[float] = DEFAULT_PROBS,
        n_min: int = 40,
        bootstrap: str = "no",
        n_reps: int = 1,
        quant_algo: int = 1,
        es: bool = False,
        periods_es: int = 6,
        n_digits: Optional[int] = None,
        short_output: bool = True,
        save_to_temp: bool = False,
        weight_n0: str = "n1",
        weight_n1: str = "n1",
        n_jobs: int = 1,
        backend: str = "thread",
        seed: Optional[int] = None,
    ):
        self.probs = probs
        self.n_min = n_min
        self.bootstrap = bootstrap
        self.n_reps = n_reps
        self.quant_algo = quant_algo
        self.es = es
        self.periods_es = periods_es
        self.n_digits = n_digits
        self.short_output = short_output
        self.save_to_temp = save_to_temp
        self.weight_n0 = weight_n0
        self.weight_n1 = weight_n1
        self.n_jobs = n_jobs
        self.backend = backend
        self.seed = seed

        self._validate_params()

        self.is_fitted_ = False
        self.results_: Optional[ResultCollection] = None

    def _validate_params(self) -> None:
        validate_probs(self.probs)
        validate_positive_int(self.n_min, "n_min")
        validate_positive_int(self.n_reps, "n_reps")
        validate_quant_algo(self.quant_algo)
        validate_bool(self.es, "es")
        validate_bool(self.short_output, "short_output")
        validate_bool(self.save_to_temp, "save_to_temp")
        validate_positive_int(self.periods_es, "periods_es")
        if self.n_digits is not None:
            validate_positive_int(self.n_digits, "n_digits", allow_zero=True)
        if self.bootstrap not in BOOTSTRAP_METHODS:
            raise ValidationError(
                f"bootstrap must be 'no', 'normal', or 'weighted', got '{self.bootstrap}'"
            )
        for name in ("weight_n0", "weight_n1"):
            if getattr(self, name) not in WEIGHT_OPTIONS:
                raise ValidationError(
                    f"{name} must be 'n1' or 'n0', got '{getattr(self, name)}'"
                )
        if self.backend not in POOL_BACKENDS:
            raise ValidationError(f"backend must be 'thread' or 'process', got '{self.backend}'")
        validate_n_jobs(self.n_jobs)
        validate_seed(self.seed)

    def fit(
        self,
        data: pd.DataFrame,
        outcome: ColumnId,
        cohort: ColumnId,
        period: ColumnId,
        unit: ColumnId,
    ) -> ResultCollection:
        """
        Fit the changes-in-changes model.

        Parameters
        ----------
        data : pd.DataFrame
            Long-format panel.
        outcome : str or int
            Outcome column (name or position).
        cohort : str or int
            Cohort column: the period in which a unit is first treated.
            Units whose cohort is not an observed period (e.g. 0 for
            never-treated) are excluded.
        period : str or int
            Time period column.
        unit : str or int
            Unit identifier column.

        Returns
        -------
        ResultCollection
            QTE curves for every replicate.

        Raises
        ------
        ValidationError
            If parameters or columns are invalid, or the cohort structure
            admits no 2x2 comparison.
        DataSufficiencyError
            If every cohort is smaller than ``n_min``, or a replicate has no
            usable comparison.
        """
        self._validate_params()
        probs = validate_probs(self.probs)
        quant_algo = validate_quant_algo(self.quant_algo)

        n_reps = int(self.n_reps)
        if self.bootstrap == "no" and n_reps != 1:
            warnings.warn(
                "n_reps > 1 but bootstrap is deactivated. n_reps is set to 1.",
                ConfigurationWarning,
                stacklevel=2,
            )
            n_reps = 1

        prepared = prepare_panel(
            data, ColumnSpec(outcome=outcome, cohort=cohort, period=period, unit=unit),
            n_min=self.n_min,
        )
        cols = prepared.columns

        combinations = enumerate_combinations(prepared.cohorts, prepared.periods)
        horizon = None
        if self.es:
            horizon = int(self.periods_es)
            max_es = max_event_horizon(combinations)
            if horizon > max_es:
                warnings.warn(
                    f"periods_es={horizon} exceeds what the data support. Only "
                    f"{max_es} post-treatment periods can be calculated "
                    "(plus contemporaneous).",
                    EventStudyAdjustmentWarning,
                    stacklevel=2,
                )
                horizon = max_es
            combinations = enumerate_combinations(
                prepared.cohorts, prepared.periods, max_event_time=horizon
            )

        grid = build_imputation_grid(prepared.data[cols.outcome], self.n_digits)

        if self.bootstrap == "no":
            logger.info(
                "Started a changes-in-changes model for %d groups and %d observations. "
                "No standard errors computed.",
                len(prepared.cohorts) - 1, prepared.n_obs,
            )
        else:
            logger.info(
                "Started a changes-in-changes model for %d groups and %d observations "
                "with %d (%s) bootstrap replications.",
                len(prepared.cohorts) - 1, prepared.n_obs, n_reps, self.bootstrap,
            )
        logger.debug(
            "%d 2x2 combinations, imputation grid of %d values", len(combinations), len(grid)
        )

        resampler = Resampler(self.bootstrap, self.seed)
        spill = ReplicateStore.temporary() if self.save_to_temp else nullcontext()
        with spill as store:
            context = ReplicateContext(
                data=prepared.data,
                columns=cols,
                combinations=combinations,
                grid=grid,
                probs=probs,
                n_min=int(self.n_min),
                quant_algo=quant_algo,
                resampler=resampler,
                es=bool(self.es),
                horizon=horizon,
                short_output=bool(self.short_output),
                weight_n0=self.weight_n0,
                weight_n1=self.weight_n1,
                store=store,
            )
            with WorkerPool(self.n_jobs, self.backend) as pool:
                outputs = BootstrapDriver(context, pool).run(n_reps)

            self.results_ = assemble_results(
                outputs,
                probs=probs,
                es=bool(self.es),
                store=store,
                bootstrap=self.bootstrap,
                period_offset=prepared.period_offset,
            )

        self.is_fitted_ = True
        return self.results_

    def get_params(self) -> Dict[str, Any]:
        """Get estimator parameters (sklearn-compatible)."""
        return {
            "probs": self.probs,
            "n_min": self.n_min,
            "bootstrap": self.bootstrap,
            "n_reps": self.n_reps,
            "quant_algo": self.quant_algo,
            "es": self.es,
            "periods_es": self.periods_es,
            "n_digits": self.n_digits,
            "short_output": self.short_output,
            "save_to_temp": self.save_to_temp,
            "weight_n0": self.weight_n0,
            "weight_n1": self.weight_n1,
            "n_jobs": self.n_jobs,
            "backend": self.backend,
            "seed": self.seed,
        }

    def set_params(self, **params) -> "ChangesInChanges":
        """Set estimator parameters (sklearn-compatible)."""
        for key, value in params.items():
            if key in self.get_params():
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        return self


def cic(
    data: pd.DataFrame,
    outcome: ColumnId,
    cohort: ColumnId,
    period: ColumnId,
    unit: ColumnId,
    **kwargs,
) -> ResultCollection:
    """
    Estimate a changes-in-changes model with multiple periods and cohorts.

    Convenience wrapper around :class:`ChangesInChanges`; keyword
    arguments are passed to its constructor.

    Examples
    --------
    >>> from ecic import cic
    >>> from ecic.prep_dgp import generate_cic_data
    >>> data = generate_cic_data(seed=0)
    >>> res = cic(data, 'outcome', 'first_treat', 'period', 'unit', es=True)  # doctest: +SKIP
    """
    return ChangesInChanges(**kwargs).fit(
        data, outcome=outcome, cohort=cohort, period=period, unit=unit
    )

"""
Bootstrap replication for the changes-in-changes estimator.

This module provides the row resampler, the worker pool that runs
replicates in parallel, the on-disk store used to spill replicate results,
and the driver that ties them together.
"""

import logging
import os
import tempfile
import warnings
from concurrent.futures import FIRST_EXCEPTION, Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from ecic.cic_aggregation import aggregate_replicate, used_event_times
from ecic.cic_results import (
    CombinationResult,
    ReplicateDiagnostic,
    ReplicateResult,
    ReplicateStatus,
    combinations_frame,
)
from ecic.combinations import CombinationSpec
from ecic.errors import (
    DataSufficiencyError,
    DataSufficiencyWarning,
    EventStudyAdjustmentWarning,
    ValidationError,
)
from ecic.prep import ColumnSpec
from ecic.two_by_two import PanelArrays, estimate_two_by_two

logger = logging.getLogger(__name__)

BOOTSTRAP_METHODS = ("no", "normal", "weighted")
POOL_BACKENDS = ("thread", "process")


def validate_seed(seed) -> Optional[int]:
    """Raise ValidationError unless ``seed`` is None or a non-negative integer."""
    if seed is None:
        return None
    if (
        isinstance(seed, (bool, np.bool_))
        or not isinstance(seed, (int, np.integer))
        or seed < 0
    ):
        raise ValidationError(f"seed must be a non-negative integer or None, got {seed!r}")
    return int(seed)


def validate_n_jobs(n_jobs) -> int:
    """Raise ValidationError unless ``n_jobs`` is a positive integer or -1."""
    if isinstance(n_jobs, (bool, np.bool_)) or not isinstance(n_jobs, (int, np.integer)):
        raise ValidationError(f"n_jobs must be an integer, got {n_jobs!r}")
    if n_jobs == 0 or n_jobs < -1:
        raise ValidationError(f"n_jobs must be a positive integer or -1, got {n_jobs}")
    return int(n_jobs)


# =============================================================================
# Resampling
# =============================================================================


class Resampler:
    """
    Draws the panel used by each bootstrap replicate.

    Parameters
    ----------
    method : str, default="no"
        - "no": every replicate uses the base panel unchanged
        - "normal": rows are drawn uniformly with replacement
        - "weighted": rows are drawn with replacement with probability
          proportional to the size of their (cohort, period) cell
    seed : int, optional
        Base seed. Replicate ``j`` draws from
        ``SeedSequence(seed, spawn_key=(j,))``, so a draw depends only on
        the seed and the replicate index. When None, fresh entropy is drawn
        once and shared by all replicates of the run.
    """

    def __init__(self, method: str = "no", seed: Optional[int] = None):
        if method not in BOOTSTRAP_METHODS:
            raise ValidationError(
                f"bootstrap must be 'no', 'normal', or 'weighted', got '{method}'"
            )
        seed = validate_seed(seed)
        self.method = method
        self.seed = seed if seed is not None else np.random.SeedSequence().entropy

    def __repr__(self) -> str:
        return f"Resampler(method='{self.method}', seed={self.seed})"

    def rng(self, replicate: int) -> np.random.Generator:
        """Random generator for replicate ``replicate``."""
        return np.random.default_rng(
            np.random.SeedSequence(self.seed, spawn_key=(int(replicate),))
        )

    def row_probabilities(
        self, data: pd.DataFrame, cohort: str, period: str
    ) -> Optional[np.ndarray]:
        """
        Sampling probability of each row (None for uniform or no resampling).

        In weighted mode a row's weight is the number of rows in its
        (cohort, period) cell, so denser cells are drawn more often.
        """
        if self.method != "weighted":
            return None
        cell_sizes = data.groupby([cohort, period])[cohort].transform("size")
        weights = cell_sizes.to_numpy(dtype=float)
        return weights / np.sum(weights)

    def draw(
        self,
        data: pd.DataFrame,
        replicate: int,
        probabilities: Optional[np.ndarray] = None,
    ) -> pd.DataFrame:
        """
        Resampled panel for replicate ``replicate``.

        Parameters
        ----------
        data : pd.DataFrame
            Base panel (not modified).
        replicate : int
            Replicate index.
        probabilities : np.ndarray, optional
            Row probabilities from :meth:`row_probabilities` (weighted mode).

        Returns
        -------
        pd.DataFrame
            Panel with as many rows as ``data``.
        """
        if self.method == "no":
            return data

        n = len(data)
        rng = self.rng(replicate)
        if self.method == "normal":
            idx = rng.choice(n, size=n, replace=True)
        elif self.method == "weighted":
            if probabilities is None:
                raise ValueError("Weighted resampling requires row probabilities")
            idx = rng.choice(n, size=n, replace=True, p=probabilities)
        else:
            raise ValueError(
                f"bootstrap must be 'no', 'normal', or 'weighted', got '{self.method}'"
            )
        return data.iloc[idx].reset_index(drop=True)


# =============================================================================
# Worker pool
# =============================================================================


class WorkerPool:
    """
    Fixed-size pool that runs replicates for one estimation run.

    ``n_jobs=1`` runs tasks sequentially in the calling thread. The thread
    backend suits the NumPy-heavy replicate loop without copying the panel
    to each worker; the process backend sidesteps the GIL at the cost of
    pickling the shared inputs for every task.

    Parameters
    ----------
    n_jobs : int, default=1
        Number of workers; -1 uses every available core.
    backend : str, default="thread"
        "thread" or "process".
    """

    def __init__(self, n_jobs: int = 1, backend: str = "thread"):
        n_jobs = validate_n_jobs(n_jobs)
        if backend not in POOL_BACKENDS:
            raise ValidationError(f"backend must be 'thread' or 'process', got '{backend}'")
        self.n_jobs = n_jobs
        self.backend = backend
        self._executor: Optional[Executor] = None

    @property
    def max_workers(self) -> int:
        return (os.cpu_count() or 1) if self.n_jobs == -1 else self.n_jobs

    def __enter__(self) -> "WorkerPool":
        if self.max_workers > 1:
            executor_cls = ThreadPoolExecutor if self.backend == "thread" else ProcessPoolExecutor
            self._executor = executor_cls(max_workers=self.max_workers)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(cancel=exc_type is not None)

    def shutdown(self, cancel: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=cancel)
            self._executor = None

    def map(self, func: Callable, args_list: Sequence[Tuple]) -> List[Any]:
        """
        Call ``func(*args)`` for every entry of ``args_list``.

        Results come back in the order of ``args_list``. The first task
        that raises cancels the tasks not yet started and its exception
        propagates.
        """
        if self._executor is None:
            return [func(*args) for args in args_list]

        futures = [self._executor.submit(func, *args) for args in args_list]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in done:
            if future.exception() is not None:
                for p in pending:
                    p.cancel()
                raise future.exception()
        return [future.result() for future in futures]


# =============================================================================
# Spill store
# =============================================================================


class ReplicateHandle(NamedTuple):
    """Reference to a replicate result written to a :class:`ReplicateStore`."""
    replicate: int
    key: str
    path: str


class ReplicateStore:
    """
    Writes replicate results to a run-scoped directory and reads them back.

    Use :meth:`temporary` to get a store whose directory is removed when
    the run ends.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def __repr__(self) -> str:
        return f"ReplicateStore('{self.directory}')"

    @classmethod
    @contextmanager
    def temporary(cls) -> Iterator["ReplicateStore"]:
        with tempfile.TemporaryDirectory(prefix="ecic_") as tmp:
            yield cls(tmp)

    def put(self, result: ReplicateResult) -> ReplicateHandle:
        key = f"replicate_{result.replicate:06d}"
        path = self.directory / f"{key}.pkl"
        pd.to_pickle(result, path)
        logger.debug("Spilled replicate %d to %s", result.replicate, path)
        return ReplicateHandle(replicate=result.replicate, key=key, path=str(path))

    def get(self, handle: ReplicateHandle) -> ReplicateResult:
        return pd.read_pickle(handle.path)


# =============================================================================
# Replicate runner
# =============================================================================


@dataclass
class ReplicateContext:
    """
    Inputs shared read-only by every replicate of a run.

    Attributes
    ----------
    data : pd.DataFrame
        Prepared base panel.
    columns : ColumnSpec
        Resolved column names.
    combinations : list of CombinationSpec
        Comparisons to estimate in every replicate.
    grid : np.ndarray
        Imputation grid.
    probs : np.ndarray
        Probability levels.
    n_min : int
        Minimum rows per arm of a comparison.
    quant_algo : int
        Quantile rule (1..9).
    resampler : Resampler
        Draws each replicate's panel.
    es : bool
        Event-study mode.
    horizon : int, optional
        Event horizon (event-study mode).
    short_output : bool
        Drop per-combination distributions from the result.
    weight_n0, weight_n1 : str
        Pool weighting options.
    store : ReplicateStore, optional
        Spill results to disk when set.
    """
    data: pd.DataFrame = field(repr=False)
    columns: ColumnSpec
    combinations: List[CombinationSpec] = field(repr=False)
    grid: np.ndarray = field(repr=False)
    probs: np.ndarray
    n_min: int
    quant_algo: int
    resampler: Resampler
    es: bool = False
    horizon: Optional[int] = None
    short_output: bool = True
    weight_n0: str = "n1"
    weight_n1: str = "n1"
    store: Optional[ReplicateStore] = None
    row_probabilities: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.row_probabilities is None:
            self.row_probabilities = self.resampler.row_probabilities(
                self.data, self.columns.cohort, self.columns.period
            )


def _format_spec(spec: CombinationSpec) -> str:
    return (
        f"cohort {spec.treated_cohort} vs {spec.comparison_cohort}, "
        f"period {spec.post_period} vs {spec.pre_period}"
    )


def estimate_combinations(
    context: ReplicateContext,
    replicate: int,
    panel: pd.DataFrame,
) -> Tuple[List[CombinationResult], List[ReplicateDiagnostic]]:
    """Run the 2x2 estimator on every combination of ``context``."""
    cols = context.columns
    arrays = PanelArrays.from_frame(panel, cols.outcome, cols.cohort, cols.period)
    results = []
    diagnostics = []
    for spec in context.combinations:
        result, reason = estimate_two_by_two(arrays, spec, context.n_min, context.quant_algo)
        if result is None:
            message = (
                f"Skipped a period-cohort group in bootstrap run {replicate} "
                f"({_format_spec(spec)}): {reason}."
            )
            logger.debug(message)
            diagnostics.append(
                ReplicateDiagnostic(DataSufficiencyWarning, message, replicate, spec)
            )
            continue
        results.append(result)
    return results, diagnostics


def run_replicate(
    context: ReplicateContext,
    replicate: int,
) -> Tuple[Union[ReplicateResult, ReplicateHandle], Tuple[ReplicateDiagnostic, ...]]:
    """
    Resample, estimate every combination, and aggregate one replicate.

    Returns
    -------
    output : ReplicateResult or ReplicateHandle
        The result, or a handle to it when ``context.store`` is set.
    diagnostics : tuple of ReplicateDiagnostic
        Warnings to re-emit in the calling thread.

    Raises
    ------
    DataSufficiencyError
        If no combination has enough observations.
    """
    panel = context.resampler.draw(context.data, replicate, context.row_probabilities)
    results, diagnostics = estimate_combinations(context, replicate, panel)
    del panel

    n_skipped = len(context.combinations) - len(results)
    if not results:
        raise DataSufficiencyError(
            f"Bootstrap run {replicate}: all {n_skipped} period-cohort groups "
            "were skipped (too few observations). You can lower `n_min` with caution."
        )
    status = ReplicateStatus.COMPLETED_WITH_SKIPS if n_skipped else ReplicateStatus.COMPLETED

    horizon = None
    if context.es:
        event_times = used_event_times(results)
        max_es = max(event_times)
        horizon = context.horizon
        if horizon > max_es:
            horizon = max_es
            diagnostics.append(ReplicateDiagnostic(
                EventStudyAdjustmentWarning,
                f"Bootstrap run {replicate}: Only {max_es} post-treatment periods "
                "can be calculated (plus contemporaneous).",
                replicate,
            ))
            status = ReplicateStatus.DEGRADED
        for e in range(horizon + 1):
            if e not in event_times:
                diagnostics.append(ReplicateDiagnostic(
                    DataSufficiencyWarning,
                    f"Bootstrap run {replicate}: no period-cohort group left for "
                    f"event time {e}; its effects are NaN.",
                    replicate,
                ))

    qte = aggregate_replicate(
        results,
        context.grid,
        context.probs,
        es=context.es,
        horizon=horizon,
        weight_n0=context.weight_n0,
        weight_n1=context.weight_n1,
    )

    output = ReplicateResult(
        replicate=replicate,
        qte=qte,
        combinations=combinations_frame(results),
        realized_horizon=horizon,
        status=status,
        n_skipped=n_skipped,
        diagnostics=tuple(diagnostics),
        combination_results=None if context.short_output else results,
    )
    logger.debug(
        "Bootstrap run %d finished: %d combinations, %d skipped, status %s",
        replicate, len(results), n_skipped, status.value,
    )

    if context.store is not None:
        return context.store.put(output), output.diagnostics
    return output, output.diagnostics


# =============================================================================
# Driver
# =============================================================================


def emit_diagnostics(diagnostics: Sequence[ReplicateDiagnostic]) -> None:
    """Re-issue replicate diagnostics as Python warnings."""
    for diag in diagnostics:
        warnings.warn(diag.message, diag.category, stacklevel=3)


class BootstrapDriver:
    """
    Runs every replicate of an estimation on a worker pool.

    Parameters
    ----------
    context : ReplicateContext
        Shared read-only inputs.
    pool : WorkerPool
        Pool the replicates are submitted to.
    """

    def __init__(self, context: ReplicateContext, pool: WorkerPool):
        self.context = context
        self.pool = pool

    def run(self, n_reps: int) -> List[Union[ReplicateResult, ReplicateHandle]]:
        """
        Run replicates ``1..n_reps`` and return their outputs by index.

        Diagnostics from all replicates are emitted as warnings once every
        replicate has finished, ordered by replicate.
        """
        args_list = [(self.context, j) for j in range(1, n_reps + 1)]
        outcomes = self.pool.map(run_replicate, args_list)
        outcomes.sort(key=lambda item: item[0].replicate)

        for _, diagnostics in outcomes:
            emit_diagnostics(diagnostics)
        return [output for output, _ in outcomes]

"""
Result containers for the changes-in-changes estimator.

This module provides dataclass containers for the per-combination
distributions, the quantile treatment effect curves of each bootstrap
replicate, and the result collection handed to summary and plotting code.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import numpy as np
import pandas as pd

from ecic.combinations import CombinationSpec
from ecic.distributions import EmpiricalDistribution

if TYPE_CHECKING:
    from ecic.cic_bootstrap import ReplicateHandle, ReplicateStore

logger = logging.getLogger(__name__)

COMBINATION_COLUMNS = [
    "i", "treated_cohort", "comparison_cohort", "post_period", "pre_period",
    "n1", "n0", "event_time",
]


@dataclass(eq=False)
class CombinationResult:
    """
    Distributions estimated for one 2x2 comparison.

    Attributes
    ----------
    spec : CombinationSpec
        The (c1, c2, t1, t0) comparison.
    treated : EmpiricalDistribution
        Observed outcome distribution of the treated arm at the post period.
    counterfactual : EmpiricalDistribution
        Imputed untreated outcome distribution of the treated arm at the
        post period.
    n1 : int
        Rows of the treated arm (both periods).
    n0 : int
        Rows of the comparison arm (both periods).
    """
    spec: CombinationSpec
    treated: EmpiricalDistribution
    counterfactual: EmpiricalDistribution
    n1: int
    n0: int

    @property
    def event_time(self) -> Any:
        return self.spec.event_time


@dataclass(eq=False)
class QuantileTreatmentEffect:
    """
    Quantile treatment effect curve.

    Attributes
    ----------
    probs : np.ndarray
        Probability levels.
    effects : np.ndarray
        ``treated_quantiles - counterfactual_quantiles``.
    treated_quantiles : np.ndarray
        Quantiles of the pooled treated distribution.
    counterfactual_quantiles : np.ndarray
        Quantiles of the pooled counterfactual distribution.
    event_time : int, optional
        Event-time bucket (event-study mode only).
    """
    probs: np.ndarray
    effects: np.ndarray
    treated_quantiles: np.ndarray = field(repr=False)
    counterfactual_quantiles: np.ndarray = field(repr=False)
    event_time: Optional[int] = None

    def __len__(self) -> int:
        return len(self.probs)

    def to_dataframe(self) -> pd.DataFrame:
        """Curve as a DataFrame with columns ``perc`` and ``values``."""
        return pd.DataFrame({
            "perc": self.probs,
            "values": self.effects,
            "treated": self.treated_quantiles,
            "counterfactual": self.counterfactual_quantiles,
        })


class ReplicateStatus(str, Enum):
    """Terminal state of a replicate."""
    COMPLETED = "completed"
    COMPLETED_WITH_SKIPS = "completed_with_skips"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ReplicateDiagnostic:
    """A warning raised inside a replicate, kept for re-emission."""
    category: type
    message: str
    replicate: int
    combination: Optional[CombinationSpec] = None


@dataclass(eq=False)
class ReplicateResult:
    """
    Output of one bootstrap replicate.

    Attributes
    ----------
    replicate : int
        Replicate index (1-based).
    qte : QuantileTreatmentEffect or dict
        Pooled curve, or ``{event_time: curve}`` in event-study mode.
    combinations : pd.DataFrame
        One row per combination used, with cell sizes and event time.
    realized_horizon : int, optional
        Largest event time aggregated (event-study mode only).
    status : ReplicateStatus
        Terminal state.
    n_skipped : int
        Combinations skipped for undersized cells.
    diagnostics : tuple of ReplicateDiagnostic
        Warnings raised while running the replicate.
    combination_results : list of CombinationResult, optional
        Per-combination distributions (dropped with ``short_output``).
    """
    replicate: int
    qte: Union[QuantileTreatmentEffect, Dict[int, QuantileTreatmentEffect]]
    combinations: pd.DataFrame = field(repr=False)
    realized_horizon: Optional[int] = None
    status: ReplicateStatus = ReplicateStatus.COMPLETED
    n_skipped: int = 0
    diagnostics: Tuple[ReplicateDiagnostic, ...] = field(default=(), repr=False)
    combination_results: Optional[List[CombinationResult]] = field(default=None, repr=False)

    @property
    def n1(self) -> np.ndarray:
        return self.combinations["n1"].to_numpy()

    @property
    def n0(self) -> np.ndarray:
        return self.combinations["n0"].to_numpy()

    def curves(self) -> List[QuantileTreatmentEffect]:
        """QTE curves of this replicate, ordered by event time."""
        if isinstance(self.qte, dict):
            return [self.qte[e] for e in sorted(self.qte)]
        return [self.qte]


def combinations_frame(
    results: Sequence[CombinationResult],
) -> pd.DataFrame:
    """Metadata table of the combinations used in a replicate."""
    rows = [
        {
            "i": i,
            "treated_cohort": r.spec.treated_cohort,
            "comparison_cohort": r.spec.comparison_cohort,
            "post_period": r.spec.post_period,
            "pre_period": r.spec.pre_period,
            "n1": r.n1,
            "n0": r.n0,
            "event_time": r.event_time,
        }
        for i, r in enumerate(results, start=1)
    ]
    return pd.DataFrame(rows, columns=COMBINATION_COLUMNS)


@dataclass(frozen=True, eq=False)
class ResultCollection:
    """
    Results of a changes-in-changes estimation across replicates.

    The collection is the only artifact handed to summary (standard
    errors across replicates) and plotting code.

    Attributes
    ----------
    replicates : tuple of ReplicateResult
        Per-replicate outputs sorted by replicate index.
    probs : np.ndarray
        Requested probability levels.
    es : bool
        Whether effects are decomposed by event time.
    periods_es : int, optional
        Largest event horizon realized across replicates (None unless
        ``es`` is True).
    bootstrap : str
        Resampling mode: "no", "normal" or "weighted".
    period_offset : float
        Amount subtracted from the original cohort and period values.
    """
    replicates: Tuple[ReplicateResult, ...] = field(repr=False)
    probs: np.ndarray
    es: bool
    periods_es: Optional[int]
    bootstrap: str = "no"
    period_offset: Any = 0

    @property
    def n_reps(self) -> int:
        return len(self.replicates)

    def __len__(self) -> int:
        return len(self.replicates)

    def __iter__(self) -> Iterator[ReplicateResult]:
        return iter(self.replicates)

    def __getitem__(self, idx: int) -> ReplicateResult:
        return self.replicates[idx]

    def __repr__(self) -> str:
        return (
            f"ResultCollection(n_reps={self.n_reps}, bootstrap='{self.bootstrap}', "
            f"es={self.es}, periods_es={self.periods_es}, n_probs={len(self.probs)})"
        )

    @property
    def coefs(self) -> List[Union[QuantileTreatmentEffect, Dict[int, QuantileTreatmentEffect]]]:
        """QTE curve(s) of every replicate, in replicate order."""
        return [rep.qte for rep in self.replicates]

    def to_dataframe(self) -> pd.DataFrame:
        """
        All QTE curves in long format.

        Columns: ``replicate``, ``event_time`` (event-study mode only),
        ``perc``, ``values``, ``treated``, ``counterfactual``.
        """
        frames = []
        for rep in self.replicates:
            for curve in rep.curves():
                df = curve.to_dataframe()
                if self.es:
                    df.insert(0, "event_time", curve.event_time)
                df.insert(0, "replicate", rep.replicate)
                frames.append(df)
        return pd.concat(frames, ignore_index=True)

    def combination_table(self) -> pd.DataFrame:
        """Combination metadata of every replicate, stacked."""
        frames = []
        for rep in self.replicates:
            df = rep.combinations.copy()
            df.insert(0, "replicate", rep.replicate)
            frames.append(df)
        return pd.concat(frames, ignore_index=True)


def assemble_results(
    outputs: Sequence[Union[ReplicateResult, "ReplicateHandle"]],
    probs: np.ndarray,
    es: bool,
    store: Optional["ReplicateStore"] = None,
    bootstrap: str = "no",
    period_offset: Any = 0,
) -> ResultCollection:
    """
    Merge replicate outputs into a :class:`ResultCollection`.

    Parameters
    ----------
    outputs : sequence
        In-memory :class:`ReplicateResult` objects, or handles returned by
        ``store`` when results were spilled to disk.
    probs : np.ndarray
        Requested probability levels.
    es : bool
        Event-study flag.
    store : ReplicateStore, optional
        Store used to read back spilled replicates.
    bootstrap : str
        Resampling mode, recorded as metadata.
    period_offset : float
        Period shift applied during preparation, recorded as metadata.

    Returns
    -------
    ResultCollection
    """
    replicates = []
    for out in outputs:
        if isinstance(out, ReplicateResult):
            replicates.append(out)
        else:
            if store is None:
                raise ValueError("A store is required to read back spilled replicates")
            replicates.append(store.get(out))
    replicates.sort(key=lambda r: r.replicate)

    if es:
        periods_es = max(
            (r.realized_horizon for r in replicates if r.realized_horizon is not None),
            default=None,
        )
    else:
        periods_es = None

    logger.debug("Assembled %d replicates (periods_es=%s)", len(replicates), periods_es)

    return ResultCollection(
        replicates=tuple(replicates),
        probs=np.asarray(probs, dtype=float),
        es=bool(es),
        periods_es=periods_es,
        bootstrap=bootstrap,
        period_offset=period_offset,
    )

"""
Panel preparation for changes-in-changes estimation.

Resolves column identifiers, drops never-eligible units and undersized
cohorts, and re-indexes cohorts and periods so the first period is 1.
"""

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Union

import numpy as np
import pandas as pd

from ecic.errors import DataSufficiencyError, DataSufficiencyWarning, ValidationError

logger = logging.getLogger(__name__)

ColumnId = Union[str, int]


def validate_bool(value: Any, name: str) -> bool:
    """Raise ValidationError unless ``value`` is a boolean."""
    if not isinstance(value, (bool, np.bool_)):
        raise ValidationError(f"`{name}` must be logical (True or False), got {value!r}")
    return bool(value)


def validate_positive_int(value: Any, name: str, allow_zero: bool = False) -> int:
    """Raise ValidationError unless ``value`` is a positive (or zero) integer."""
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise ValidationError(f"`{name}` must be an integer, got {value!r}")
    lower = 0 if allow_zero else 1
    if value < lower:
        kind = "a non-negative" if allow_zero else "a positive"
        raise ValidationError(f"`{name}` must be {kind} integer, got {value}")
    return int(value)


@dataclass(frozen=True)
class ColumnSpec:
    """
    Column identifiers for the outcome, cohort, period and unit fields.

    Each identifier is either a column name or an integer column position.
    Identifiers are resolved once against a DataFrame with :meth:`resolve`,
    which returns a spec holding column names only.

    Attributes
    ----------
    outcome : str or int
        Outcome (dependent) variable.
    cohort : str or int
        Treatment cohort, i.e. the period in which a unit adopts treatment.
    period : str or int
        Time period.
    unit : str or int
        Unit identifier. Only used to count unique units per cohort.
    """
    outcome: ColumnId
    cohort: ColumnId
    period: ColumnId
    unit: ColumnId

    def resolve(self, data: pd.DataFrame) -> "ColumnSpec":
        """
        Resolve every identifier to a column name of ``data``.

        Raises
        ------
        ValidationError
            If an identifier is missing, out of range, of the wrong type,
            or matches more than one column.
        """
        resolved = {}
        columns = list(data.columns)
        for role in ("outcome", "cohort", "period", "unit"):
            ident = getattr(self, role)
            if ident is None:
                raise ValidationError(f"A non-None `{role}` column is required.")
            if isinstance(ident, (bool, np.bool_)):
                raise ValidationError(f"`{role}` must be a column name or position, got {ident!r}")
            if isinstance(ident, (int, np.integer)):
                if not 0 <= ident < len(columns):
                    raise ValidationError(
                        f"`{role}` column position {ident} is out of range "
                        f"(data has {len(columns)} columns)."
                    )
                name = columns[int(ident)]
            elif isinstance(ident, str):
                name = ident
            else:
                raise ValidationError(
                    f"`{role}` must be a column name or position, got {type(ident).__name__}"
                )
            n_matches = columns.count(name)
            if n_matches == 0:
                raise ValidationError(f"Column '{name}' (`{role}`) not found in DataFrame.")
            if n_matches > 1:
                raise ValidationError(f"Column '{name}' (`{role}`) is ambiguous: {n_matches} columns share that name.")
            resolved[role] = name

        names = list(resolved.values())
        if len(set(names)) != len(names):
            raise ValidationError(f"Column identifiers must refer to distinct columns, got {resolved}")
        return replace(self, **resolved)


@dataclass
class PreparedPanel:
    """
    Normalized panel and the index sets derived from it.

    Attributes
    ----------
    data : pd.DataFrame
        Panel restricted to the four resolved columns, with cohort and
        period shifted so that the first period is 1.
    columns : ColumnSpec
        Resolved column names.
    cohorts : list
        Sorted distinct cohorts after normalization.
    periods : list
        Sorted distinct periods after normalization.
    last_cohort : float
        Largest cohort value; bounds the post-period search.
    cohort_sizes : pd.Series
        Unique units per cohort (normalized labels), including dropped cohorts.
    period_offset : float
        Amount subtracted from the original cohort and period values.
    dropped_cohorts : list
        Normalized labels of cohorts dropped as undersized.
    """
    data: pd.DataFrame = field(repr=False)
    columns: ColumnSpec
    cohorts: List[Any]
    periods: List[Any]
    last_cohort: Any
    cohort_sizes: pd.Series = field(repr=False)
    period_offset: Any = 0
    dropped_cohorts: List[Any] = field(default_factory=list)

    @property
    def n_obs(self) -> int:
        return len(self.data)

    @property
    def n_units(self) -> int:
        return int(self.data[self.columns.unit].nunique())


def compute_cohort_sizes(data: pd.DataFrame, cohort: str, unit: str) -> pd.Series:
    """
    Count unique units per cohort.

    Each unit is counted once, in the cohort of its first row.
    """
    first_rows = data.drop_duplicates(subset=unit)
    return first_rows.groupby(cohort).size().rename("N").sort_index()


def prepare_panel(
    data: pd.DataFrame,
    columns: ColumnSpec,
    n_min: int = 40,
) -> PreparedPanel:
    """
    Validate and normalize a staggered-adoption panel.

    Steps:

    1. Resolve column identifiers and check that outcome, cohort and
       period are numeric. Rows with missing values in those columns are
       dropped.
    2. Drop rows whose cohort value never occurs as a period (never
       eligible units, e.g. ``first_treat == 0``).
    3. Count unique units per cohort and drop cohorts with fewer than
       ``n_min`` units.
    4. Shift cohort and period by the same constant so that the first
       observed period is 1.

    Parameters
    ----------
    data : pd.DataFrame
        Long-format panel.
    columns : ColumnSpec
        Column identifiers.
    n_min : int, default=40
        Minimum number of unique units per cohort.

    Returns
    -------
    PreparedPanel

    Raises
    ------
    ValidationError
        If columns cannot be resolved or are not numeric.
    DataSufficiencyError
        If no eligible rows remain or every cohort is too small.
    """
    if not isinstance(data, pd.DataFrame):
        raise ValidationError(f"`data` must be a pandas DataFrame, got {type(data).__name__}")
    n_min = validate_positive_int(n_min, "n_min")
    cols = columns.resolve(data)

    for role in ("outcome", "cohort", "period"):
        name = getattr(cols, role)
        if not pd.api.types.is_numeric_dtype(data[name]):
            raise ValidationError(f"Column '{name}' (`{role}`) must be numeric.")

    df = data[[cols.outcome, cols.cohort, cols.period, cols.unit]].copy()

    n_missing = int(df.isna().any(axis=1).sum())
    if n_missing > 0:
        warnings.warn(
            f"Dropping {n_missing} rows with missing values in the outcome, "
            "cohort, period or unit column.",
            DataSufficiencyWarning,
            stacklevel=3,
        )
        df = df.dropna()

    # Units whose cohort is never observed as a period are never treated
    # inside the sample window.
    df = df[df[cols.cohort].isin(df[cols.period].unique())]
    if df.empty:
        raise DataSufficiencyError(
            "No eligible units: no cohort value matches an observed period."
        )

    group_sizes = compute_cohort_sizes(df, cols.cohort, cols.unit)
    too_small = group_sizes[group_sizes < n_min]
    if len(too_small) == len(group_sizes):
        raise DataSufficiencyError(
            f"All treated cohorts are too small (fewer than {n_min} units). "
            "You can lower `n_min` with caution."
        )
    dropped = list(too_small.index)
    if dropped:
        warnings.warn(
            f"You have {len(dropped)} ({round(100 * len(dropped) / len(group_sizes))}%) "
            f"too small groups (less than {n_min} units): cohorts {dropped}. "
            "They will be dropped.",
            DataSufficiencyWarning,
            stacklevel=3,
        )
        df = df[~df[cols.cohort].isin(dropped)]

    first_period = df[cols.period].min()
    offset = first_period - 1
    df[cols.period] = df[cols.period] - offset
    df[cols.cohort] = df[cols.cohort] - offset
    df = df.reset_index(drop=True)

    cohorts = sorted(df[cols.cohort].unique().tolist())
    periods = sorted(df[cols.period].unique().tolist())
    group_sizes.index = group_sizes.index - offset

    logger.debug(
        "Prepared panel: %d rows, %d cohorts, %d periods (offset %s, dropped %s)",
        len(df), len(cohorts), len(periods), offset, dropped,
    )

    return PreparedPanel(
        data=df,
        columns=cols,
        cohorts=cohorts,
        periods=periods,
        last_cohort=max(cohorts),
        cohort_sizes=group_sizes,
        period_offset=offset,
        dropped_cohorts=[c - offset for c in dropped],
    )


def build_imputation_grid(
    outcomes: np.ndarray,
    n_digits: Optional[int] = None,
) -> np.ndarray:
    """
    Sorted distinct outcome values on which CDFs are evaluated and pooled.

    Rounding to ``n_digits`` shrinks the grid (and the k x G matrices built
    on it) for large data sets.
    """
    values = np.asarray(outcomes, dtype=float)
    if n_digits is not None:
        values = np.round(values, int(n_digits))
    return np.unique(values)

"""
Exception and warning classes for the ecic package.

Errors abort an estimation before (or while) any replicate runs. Warnings
flag conditions that are corrected or contained locally; all of them
inherit from :class:`ECICWarning`, itself a :class:`UserWarning`, so they
can be filtered selectively:

>>> import warnings
>>> from ecic.errors import DataSufficiencyWarning
>>> warnings.filterwarnings('ignore', category=DataSufficiencyWarning)
"""


class ECICError(Exception):
    """Base exception class for all ecic errors."""
    pass


class ValidationError(ECICError, ValueError):
    """
    Raised when inputs fail validation before any computation.

    Triggers include unresolved column identifiers, non-boolean flags,
    an unsupported quantile algorithm, and a cohort structure that leaves
    no treated cohort with both a pre-period and a comparison cohort.
    """
    pass


class DataSufficiencyError(ECICError, ValueError):
    """
    Raised when the data cannot support estimation at all.

    Occurs when every cohort falls below the minimum size, or when a
    replicate ends up without a single usable 2x2 combination.
    """
    pass


class ECICWarning(UserWarning):
    """Base warning class for all ecic warnings."""
    pass


class DataSufficiencyWarning(ECICWarning):
    """
    Warning for groups or cells below the minimum size.

    Emitted when undersized cohorts are dropped from the panel and when a
    2x2 combination is skipped in a replicate because its treated or
    comparison arm is too small.
    """
    pass


class ConfigurationWarning(ECICWarning):
    """Warning for settings that were auto-corrected."""
    pass


class EventStudyAdjustmentWarning(ECICWarning):
    """
    Warning for event horizons clamped to what the data support.
    """
    pass

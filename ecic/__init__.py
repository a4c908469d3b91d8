"""
ecic: Changes-in-changes estimation with multiple periods and cohorts.

This library provides an sklearn-like estimator of quantile treatment
effects for staggered adoption designs, following Athey & Imbens (2006).
"""

from ecic.cic import (
    ChangesInChanges,
    cic,
)
from ecic.cic_results import (
    CombinationResult,
    QuantileTreatmentEffect,
    ReplicateResult,
    ReplicateStatus,
    ResultCollection,
)
from ecic.combinations import (
    CombinationSpec,
    enumerate_combinations,
)
from ecic.distributions import (
    EmpiricalDistribution,
)
from ecic.errors import (
    ConfigurationWarning,
    DataSufficiencyError,
    DataSufficiencyWarning,
    ECICError,
    ECICWarning,
    EventStudyAdjustmentWarning,
    ValidationError,
)
from ecic.prep import (
    ColumnSpec,
    prepare_panel,
)
from ecic.prep_dgp import (
    generate_cic_data,
)

__version__ = "0.1.0"
__all__ = [
    # Estimator
    "ChangesInChanges",
    "cic",
    # Results
    "CombinationResult",
    "QuantileTreatmentEffect",
    "ReplicateResult",
    "ReplicateStatus",
    "ResultCollection",
    # Building blocks
    "ColumnSpec",
    "CombinationSpec",
    "EmpiricalDistribution",
    "enumerate_combinations",
    "prepare_panel",
    # Data generation
    "generate_cic_data",
    # Errors and warnings
    "ECICError",
    "ValidationError",
    "DataSufficiencyError",
    "ECICWarning",
    "DataSufficiencyWarning",
    "ConfigurationWarning",
    "EventStudyAdjustmentWarning",
]

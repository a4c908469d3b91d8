"""
Pytest configuration and shared fixtures for ecic tests.

Panels are generated once per session; tests must not modify them in
place (use ``.copy()`` before editing).
"""

import numpy as np
import pytest

from ecic.prep_dgp import generate_cic_data


# =============================================================================
# Panel Fixtures
# =============================================================================

COLUMNS = dict(outcome="outcome", cohort="first_treat", period="period", unit="unit")


@pytest.fixture(scope="session")
def columns():
    """Column arguments matching the generated panels."""
    return dict(COLUMNS)


@pytest.fixture(scope="session")
def cic_data():
    """Four cohorts (2..5) over six periods, 100 units each, effect 1."""
    return generate_cic_data(n_units_per_cohort=100, n_periods=6, seed=42)


@pytest.fixture(scope="session")
def location_shift_data():
    """
    Cohorts 2, 3, 4 over four periods with a constant effect of 2.

    Only cohort 3 can be treated arm, against cohort 4, at period 3.
    """
    return generate_cic_data(
        n_units_per_cohort=500,
        n_periods=4,
        cohort_periods=[2, 3, 4],
        treatment_effect=2.0,
        seed=7,
    )


@pytest.fixture(scope="session")
def two_by_two_data():
    """
    Cohorts 1, 2, 3 over three periods: exactly one valid comparison.

    Cohort 2 is treated at period 2 and compared with cohort 3 using
    period 1 as pre-period.
    """
    return generate_cic_data(
        n_units_per_cohort=100,
        n_periods=3,
        cohort_periods=[1, 2, 3],
        treatment_effect=1.5,
        seed=3,
    )


@pytest.fixture(scope="session")
def event_study_data():
    """Cohorts 2..5 over five periods; the largest event time is 1."""
    return generate_cic_data(
        n_units_per_cohort=100,
        n_periods=5,
        cohort_periods=[2, 3, 4, 5],
        treatment_effect=1.0,
        effect_growth=1.0,
        seed=11,
    )


@pytest.fixture
def probs():
    return np.array([0.25, 0.5, 0.75])

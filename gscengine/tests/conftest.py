# tests/conftest.py
import pytest
import numpy as np
import pandas as pd
from typing import Optional, Sequence


def simulate_factor_panel(
    n_controls: int = 20,
    n_treated: int = 2,
    n_periods: int = 30,
    onset: int = 20,
    n_factors: int = 2,
    noise: float = 0.1,
    effect: float = 0.0,
    seed: int = 0,
    onsets: Optional[Sequence[int]] = None,
) -> pd.DataFrame:
    """Long panel from a two-way fixed effects plus latent factor model.

    Treated units are numbered 1..n_treated and come first; `onsets` (row
    indices, one per treated unit) overrides the common `onset`. A constant
    `effect` is added to every treated cell.
    """
    rng = np.random.default_rng(seed)
    n_units = n_treated + n_controls
    factors = rng.normal(size=(n_periods, n_factors))
    loadings = rng.normal(size=(n_units, n_factors))
    unit_fe = rng.normal(size=n_units)
    time_fe = np.linspace(0.0, 3.0, n_periods)
    untreated = (
        5.0
        + unit_fe[np.newaxis, :]
        + time_fe[:, np.newaxis]
        + factors @ loadings.T
        + noise * rng.normal(size=(n_periods, n_units))
    )

    treated_onsets = list(onsets) if onsets is not None else [onset] * n_treated
    treatment = np.zeros((n_periods, n_units), dtype=int)
    for position, start in enumerate(treated_onsets):
        treatment[start:, position] = 1
    outcomes = untreated + effect * treatment

    return pd.DataFrame({
        "unit": np.repeat(np.arange(1, n_units + 1), n_periods),
        "time": np.tile(np.arange(1, n_periods + 1), n_units),
        "y": outcomes.T.ravel(),
        "treated": treatment.T.ravel(),
    })


@pytest.fixture
def panel_factory():
    """Fixture returning the simulator so tests can vary its settings."""
    return simulate_factor_panel


@pytest.fixture
def factor_panel_df() -> pd.DataFrame:
    """Two treated units (from period 21) and 20 controls over 30 periods, two factors, no effect."""
    return simulate_factor_panel()


@pytest.fixture
def scenario_a_df() -> pd.DataFrame:
    """Five controls following 2 * f_t plus noise; one noiseless treated unit shifted by +10 from period 6."""
    rng = np.random.default_rng(11)
    factor = rng.normal(size=10)
    rows = []
    for unit in range(1, 7):
        treated_unit = unit == 6
        for period in range(1, 11):
            value = 2 * factor[period - 1]
            if treated_unit:
                treated = int(period >= 6)
                value += 10 * treated
            else:
                treated = 0
                value += rng.normal(scale=0.1)
            rows.append((unit, period, value, treated))
    return pd.DataFrame(rows, columns=["unit", "time", "y", "treated"])

import time

import pytest
import numpy as np

from gscengine.config_models import FactorModel
from gscengine.utils.datautils import dataprep
from gscengine.utils.factorutils import (
    two_way_demean,
    initial_factors,
    fit_factor_model,
    fitted_residuals,
)
from gscengine.exceptions import (
    GSCDataError,
    SingularMatrixError,
    ConvergenceError,
    ReplicateTimeoutError,
)


def _low_rank_matrix(n_periods=25, n_units=15, n_factors=2, noise=0.05, seed=3,
                     unit_effects=True, time_effects=True):
    rng = np.random.default_rng(seed)
    factors = rng.normal(size=(n_periods, n_factors))
    loadings = rng.normal(size=(n_units, n_factors))
    alpha = rng.normal(size=n_units) if unit_effects else np.zeros(n_units)
    xi = np.linspace(0, 2, n_periods) if time_effects else np.zeros(n_periods)
    signal = 1.0 + alpha[np.newaxis, :] + xi[:, np.newaxis] + factors @ loadings.T
    return signal + noise * rng.normal(size=signal.shape), signal


# ---------- two_way_demean ----------

def test_two_way_demean_centres_rows_and_columns():
    matrix = np.arange(12, dtype=float).reshape(3, 4) ** 1.5
    demeaned = two_way_demean(matrix)
    np.testing.assert_allclose(demeaned.mean(axis=0), 0.0, atol=1e-12)
    np.testing.assert_allclose(demeaned.mean(axis=1), 0.0, atol=1e-12)


def test_two_way_demean_invalid_input():
    with pytest.raises(GSCDataError, match="2D NumPy array"):
        two_way_demean(np.ones(3))
    with pytest.raises(GSCDataError, match="cannot be empty"):
        two_way_demean(np.empty((0, 0)))


# ---------- initial_factors ----------

def test_initial_factors_normalized():
    outcomes, _ = _low_rank_matrix()
    mask = np.ones_like(outcomes, dtype=bool)
    factors = initial_factors(outcomes, mask, 2)
    assert factors.shape == (25, 2)
    np.testing.assert_allclose(factors.T @ factors / 25, np.eye(2), atol=1e-10)


def test_initial_factors_zero_factors():
    outcomes, _ = _low_rank_matrix()
    assert initial_factors(outcomes, np.ones_like(outcomes, dtype=bool), 0).shape == (25, 0)


# ---------- fit_factor_model ----------

def test_fit_recovers_low_rank_signal():
    outcomes, signal = _low_rank_matrix()
    mask = np.ones_like(outcomes, dtype=bool)
    model = fit_factor_model(outcomes, mask, 2)
    assert isinstance(model, FactorModel)
    assert model.n_factors == 2
    assert model.converged
    assert model.n_obs == outcomes.size
    # Fitted surface is within noise of the true signal.
    assert np.sqrt(np.mean((model.predict() - signal) ** 2)) < 0.05
    # Normalization: F'F / T = I.
    np.testing.assert_allclose(model.factors.T @ model.factors / 25, np.eye(2), atol=1e-8)
    # Fixed effects are centred.
    assert abs(model.unit_effects.mean()) < 1e-10
    assert abs(model.time_effects.mean()) < 1e-10


def test_fit_model_is_read_only():
    outcomes, _ = _low_rank_matrix()
    model = fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 2)
    with pytest.raises(ValueError):
        model.loadings[0, 0] = 1.0
    assert not model.fit_mask.flags.writeable


def test_fit_ignores_cells_outside_mask():
    outcomes, _ = _low_rank_matrix()
    mask = np.ones_like(outcomes, dtype=bool)
    mask[18:, :3] = False
    corrupted = outcomes.copy()
    corrupted[18:, :3] = 1e6
    model_clean = fit_factor_model(outcomes, mask, 2)
    model_corrupted = fit_factor_model(corrupted, mask, 2)
    np.testing.assert_allclose(model_clean.predict(), model_corrupted.predict(), atol=1e-9)
    assert model_clean.n_obs == mask.sum()


def test_fit_round_trip_untreated_panel():
    """Gaps of the model's own predictions on an untreated panel are exactly its residuals."""
    outcomes, _ = _low_rank_matrix()
    mask = np.ones_like(outcomes, dtype=bool)
    model = fit_factor_model(outcomes, mask, 2)
    gaps = outcomes - model.predict()
    np.testing.assert_array_equal(gaps, fitted_residuals(model, outcomes, mask))
    assert np.sqrt(np.mean(gaps ** 2)) < 0.05
    assert model.ssr == pytest.approx(np.sum(gaps ** 2), rel=1e-8)


def test_fit_with_covariate_recovers_coefficient():
    rng = np.random.default_rng(5)
    outcomes, _ = _low_rank_matrix(noise=0.05, seed=8)
    covariate = rng.normal(size=outcomes.shape + (1,))
    model = fit_factor_model(outcomes + 1.5 * covariate[:, :, 0], np.ones_like(outcomes, dtype=bool), 2,
                             covariates=covariate)
    assert model.beta.shape == (1,)
    assert model.beta[0] == pytest.approx(1.5, abs=0.05)


@pytest.mark.parametrize("force", ["none", "unit", "time", "two-way"])
def test_fit_force_options(force):
    outcomes, _ = _low_rank_matrix(
        unit_effects=force in ("unit", "two-way"),
        time_effects=force in ("time", "two-way"),
    )
    model = fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 2, force=force)
    assert model.force == force
    if force in ("none", "time"):
        np.testing.assert_array_equal(model.unit_effects, 0.0)
    if force in ("none", "unit"):
        np.testing.assert_array_equal(model.time_effects, 0.0)


def test_fit_invalid_force_raises():
    outcomes, _ = _low_rank_matrix()
    with pytest.raises(GSCDataError, match="force must be one of"):
        fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 1, force="both")


def test_fit_singular_when_fewer_controls_than_factors(panel_factory):
    panel = dataprep(panel_factory(n_controls=2, n_treated=1), "unit", "time", "y", "treated")
    with pytest.raises(SingularMatrixError) as exc_info:
        fit_factor_model(panel.outcomes, panel.fit_mask(), 3)
    assert exc_info.value.step == "initialization"


def test_fit_singular_when_treated_unit_has_too_few_pre_periods(panel_factory):
    panel = dataprep(panel_factory(onset=2, n_treated=1), "unit", "time", "y", "treated")
    with pytest.raises(SingularMatrixError) as exc_info:
        fit_factor_model(panel.outcomes, panel.fit_mask(), 2)
    assert exc_info.value.step == "loadings"
    assert exc_info.value.index == 0


def test_fit_convergence_error_carries_diagnostics():
    outcomes, _ = _low_rank_matrix()
    with pytest.raises(ConvergenceError, match="did not converge") as exc_info:
        fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 2, max_iter=1)
    assert exc_info.value.n_iter == 1
    assert np.isfinite(exc_info.value.ssr)


def test_fit_exact_data_converges_in_one_sweep():
    outcomes, signal = _low_rank_matrix(n_factors=0, noise=0.0)
    model = fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 0, max_iter=1)
    assert model.n_iter == 1
    np.testing.assert_allclose(model.predict(), signal, atol=1e-10)


def test_fit_deadline_raises_timeout():
    outcomes, _ = _low_rank_matrix()
    with pytest.raises(ReplicateTimeoutError) as exc_info:
        fit_factor_model(outcomes, np.ones_like(outcomes, dtype=bool), 2, deadline=time.monotonic() - 1.0)
    assert isinstance(exc_info.value, ConvergenceError)
    assert exc_info.value.n_iter == 0


def test_fit_unit_without_observations_raises():
    outcomes, _ = _low_rank_matrix()
    mask = np.ones_like(outcomes, dtype=bool)
    mask[:, 4] = False
    with pytest.raises(SingularMatrixError, match="at least one fitted observation"):
        fit_factor_model(outcomes, mask, 1)

import numpy as np
from typing import Any, Dict, Optional, Tuple

from gscengine.config_models import FactorModel, PanelData

# Keys of the dictionaries returned by `effects.calculate`
KEY_ATT = "ATT"
KEY_ATT_BY_PERIOD = "ATT_Time"
KEY_ATT_BY_EVENT_TIME = "ATT_Event_Time"
KEY_ATT_BY_UNIT = "ATT_Unit"
KEY_RMSE_PRE = "T0 RMSE"
KEY_PRE_PERIODS = "Pre-Periods"
KEY_POST_PERIODS = "Post-Periods"
KEY_OBSERVED = "Observed Unit"
KEY_COUNTERFACTUAL = "Counterfactual"
KEY_GAP = "Gap"
KEY_POST_MASK = "Post Mask"


def predict_untreated(model: FactorModel, covariates: Optional[np.ndarray] = None) -> np.ndarray:
    """Full (T x N) untreated outcome surface of `model`."""
    return model.predict(covariates)


def counterfactual_matrix(model: FactorModel, panel: PanelData) -> np.ndarray:
    """
    Untreated outcome predictions for the treated units at every period.

    The treated units' post-treatment outcomes never entered the fit; their
    counterfactual continues along the estimated factor path using only the
    loadings and unit effects learned from their own pre-treatment periods.

    Returns
    -------
    np.ndarray
        Matrix of shape (T, n_treated), columns ordered as `panel.treated_index`.
    """
    return predict_untreated(model, panel.covariates)[:, panel.treated_index]


def predict_counterfactual(model: FactorModel, panel: PanelData) -> Dict[Any, np.ndarray]:
    """Counterfactual trajectory per treated unit, aligned with `panel.time_ids`."""
    trajectories = counterfactual_matrix(model, panel)
    return {
        unit: trajectories[:, position]
        for position, unit in enumerate(panel.treated_units)
    }


def _weighted_column_mean(values: np.ndarray, selection: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """Row-wise weighted mean of `values` over selected columns (NaN where nothing is selected)."""
    selected_weights = selection * weights[np.newaxis, :]
    denominator = selected_weights.sum(axis=1)
    numerator = np.where(selection, values, 0.0) @ weights
    with np.errstate(invalid="ignore", divide="ignore"):
        return np.where(denominator > 0, numerator / np.where(denominator > 0, denominator, 1.0), np.nan)


def att_series(panel: PanelData, counterfactual: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    Per-period and overall ATT from observed-minus-counterfactual gaps.

    At a period where at least one treated unit is under treatment, the
    per-period ATT averages the gaps of the units treated at that period.
    Before any treated unit is treated it averages all treated units' gaps,
    which are then pre-treatment fit residuals. The overall ATT is the mean
    of the per-period ATT over the post-treatment window.

    Parameters
    ----------
    panel : PanelData
        The panel the counterfactual belongs to.
    counterfactual : np.ndarray
        Matrix (T, n_treated) from `counterfactual_matrix`.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, float]
        Per-period ATT (T,), post-treatment period mask (T,), overall ATT.
    """
    observed = panel.outcomes[:, panel.treated_index]
    gap = observed - counterfactual
    treated_now = panel.treatment[:, panel.treated_index]
    weights = panel.unit_weights[panel.treated_index]

    post_mask = treated_now.any(axis=1)
    selection = np.where(post_mask[:, np.newaxis], treated_now, True)
    att_by_period = _weighted_column_mean(gap, selection, weights)
    overall_att = float(np.nanmean(att_by_period[post_mask])) if post_mask.any() else float("nan")
    return att_by_period, post_mask, overall_att


class effects:
    @staticmethod
    def calculate(
        panel: PanelData,
        counterfactual: np.ndarray,
    ) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
        """Treatment effects, fit statistics and plotting series for the treated units.

        Parameters
        ----------
        panel : PanelData
            The estimation panel.
        counterfactual : np.ndarray
            Matrix (T, n_treated) of counterfactual outcomes.

        Returns
        -------
        Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]
            Treatment effect metrics ("ATT", "ATT_Time", "ATT_Event_Time",
            "ATT_Unit"), fit statistics ("T0 RMSE", "Pre-Periods",
            "Post-Periods") and per-unit series ("Observed Unit",
            "Counterfactual", "Gap", "Post Mask").
        """
        att_by_period, post_mask, overall_att = att_series(panel, counterfactual)

        observed = panel.outcomes[:, panel.treated_index]
        gap = observed - counterfactual
        treated_now = panel.treatment[:, panel.treated_index]
        weights = panel.unit_weights[panel.treated_index]
        units = panel.treated_units

        # --- Event time: periods relative to each unit's onset (0 = first treated period) ---
        relative_time = np.arange(panel.n_periods)[:, np.newaxis] - panel.onsets[np.newaxis, :]
        att_by_event_time: Dict[int, float] = {}
        for event_time in np.unique(relative_time):
            at_event = relative_time == event_time
            cell_weights = np.where(at_event, weights[np.newaxis, :], 0.0)
            if cell_weights.sum() > 0:
                att_by_event_time[int(event_time)] = float(np.sum(cell_weights * gap) / cell_weights.sum())

        # --- Per-unit post-treatment average gap ---
        att_by_unit = {
            unit: float(gap[treated_now[:, position], position].mean())
            for position, unit in enumerate(units)
        }

        # --- Pre-treatment fit ---
        pre_cells = ~treated_now
        pre_treatment_rmse = float(np.sqrt(np.mean(gap[pre_cells] ** 2)))

        treatment_effects_dict = {
            KEY_ATT: overall_att,
            KEY_ATT_BY_PERIOD: att_by_period,
            KEY_ATT_BY_EVENT_TIME: att_by_event_time,
            KEY_ATT_BY_UNIT: att_by_unit,
        }
        fit_statistics_dict = {
            KEY_RMSE_PRE: pre_treatment_rmse,
            KEY_PRE_PERIODS: int(panel.min_pre_periods),
            KEY_POST_PERIODS: int(post_mask.sum()),
        }
        time_series_vectors_dict = {
            KEY_OBSERVED: {unit: observed[:, position] for position, unit in enumerate(units)},
            KEY_COUNTERFACTUAL: {unit: counterfactual[:, position] for position, unit in enumerate(units)},
            KEY_GAP: {unit: gap[:, position] for position, unit in enumerate(units)},
            KEY_POST_MASK: post_mask,
        }
        return treatment_effects_dict, fit_statistics_dict, time_series_vectors_dict

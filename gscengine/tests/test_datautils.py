import pytest
import pandas as pd
import numpy as np

from gscengine.utils.datautils import balance, dataprep, treatment_onsets, fill_edge_values
from gscengine.exceptions import (
    GSCDataError,
    DataFormatError,
    InvalidTreatmentPatternError,
    InsufficientDataError,
)


def _small_panel() -> pd.DataFrame:
    """Three units over six periods; unit 1 treated from period 4."""
    rows = []
    for unit in (1, 2, 3):
        for period in range(1, 7):
            rows.append({
                "unit": unit,
                "time": period,
                "y": float(unit * 10 + period),
                "treated": int(unit == 1 and period >= 4),
                "x": float(period) / unit,
            })
    return pd.DataFrame(rows)


# ---------- balance ----------

def test_balance_valid():
    balance(_small_panel(), "unit", "time")


def test_balance_duplicates_raises():
    df = _small_panel()
    df = pd.concat([df, df.iloc[[7]]], ignore_index=True)
    with pytest.raises(DataFormatError, match="Duplicate observation") as exc_info:
        balance(df, "unit", "time")
    assert exc_info.value.key == (2, 2)


def test_balance_unbalanced_raises_with_first_missing_key():
    df = _small_panel()
    df = df[~((df["unit"] == 3) & (df["time"].isin([2, 5])))]
    with pytest.raises(DataFormatError, match="not strongly balanced") as exc_info:
        balance(df, "unit", "time")
    assert exc_info.value.key == (3, 2)
    assert "2 missing cells" in str(exc_info.value)


# ---------- treatment_onsets ----------

def test_treatment_onsets_staggered():
    treatment = np.array([
        [0, 0, 0],
        [0, 1, 0],
        [1, 1, 0],
        [1, 1, 0],
    ], dtype=bool)
    treated, onsets = treatment_onsets(treatment, ["a", "b", "c"], [10, 11, 12, 13])
    np.testing.assert_array_equal(treated, [0, 1])
    np.testing.assert_array_equal(onsets, [2, 1])


def test_treatment_reversal_raises_scenario_c():
    df = _small_panel()
    # Unit 2 treated at time 5, untreated again at time 6.
    df.loc[(df["unit"] == 2) & (df["time"] == 5), "treated"] = 1
    with pytest.raises(InvalidTreatmentPatternError, match="not sustained") as exc_info:
        dataprep(df, "unit", "time", "y", "treated")
    assert exc_info.value.unit == 2
    assert exc_info.value.time == 6


# ---------- dataprep ----------

def test_dataprep_basic_shapes_and_indices():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated")
    assert panel.outcomes.shape == (6, 3)
    assert panel.treatment.dtype == bool
    np.testing.assert_array_equal(panel.unit_ids, [1, 2, 3])
    np.testing.assert_array_equal(panel.time_ids, np.arange(1, 7))
    assert panel.treated_units == [1]
    assert panel.control_units == [2, 3]
    np.testing.assert_array_equal(panel.onsets, [3])
    assert panel.pre_periods == {1: 3}
    assert panel.min_pre_periods == 3
    assert panel.covariates is None
    np.testing.assert_array_equal(panel.unit_weights, np.ones(3))
    assert panel.outcome_matrix[0, 1] == 21.0


def test_dataprep_sorts_unsorted_input():
    df = _small_panel().sample(frac=1.0, random_state=3)
    panel = dataprep(df, "unit", "time", "y", "treated")
    np.testing.assert_array_equal(panel.outcomes[:, 0], 10.0 + np.arange(1, 7))


def test_dataprep_fit_mask_excludes_treated_post_cells():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated")
    mask = panel.fit_mask()
    assert mask[:3, 0].all()
    assert not mask[3:, 0].any()
    assert mask[:, 1:].all()


def test_dataprep_arrays_are_read_only():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated")
    with pytest.raises(ValueError):
        panel.outcomes[0, 0] = 99.0


def test_dataprep_covariates_stacked():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated", covariate_column_names=["x"])
    assert panel.covariates.shape == (6, 3, 1)
    assert panel.covariate_names == ["x"]
    np.testing.assert_allclose(panel.covariates[:, 1, 0], np.arange(1, 7) / 2.0)


def test_dataprep_missing_value_raises():
    df = _small_panel()
    df.loc[(df["unit"] == 3) & (df["time"] == 4), "y"] = np.nan
    with pytest.raises(DataFormatError, match="Missing value in column 'y'") as exc_info:
        dataprep(df, "unit", "time", "y", "treated")
    assert exc_info.value.key == (3, 4)


def test_dataprep_missing_covariate_raises():
    df = _small_panel()
    df.loc[(df["unit"] == 2) & (df["time"] == 1), "x"] = np.nan
    with pytest.raises(DataFormatError, match="column 'x'"):
        dataprep(df, "unit", "time", "y", "treated", covariate_column_names=["x"])


def test_dataprep_non_binary_treatment_raises():
    df = _small_panel()
    df.loc[(df["unit"] == 2) & (df["time"] == 6), "treated"] = 2
    with pytest.raises(DataFormatError, match="binary"):
        dataprep(df, "unit", "time", "y", "treated")


def test_dataprep_no_treated_units_raises():
    df = _small_panel()
    df["treated"] = 0
    with pytest.raises(DataFormatError, match="No treated units found"):
        dataprep(df, "unit", "time", "y", "treated")


def test_dataprep_no_controls_raises():
    df = _small_panel()
    df.loc[df["time"] >= 5, "treated"] = 1
    with pytest.raises(InsufficientDataError, match="No control units"):
        dataprep(df, "unit", "time", "y", "treated")


def test_dataprep_no_pre_periods_raises():
    df = _small_panel()
    df.loc[df["unit"] == 1, "treated"] = 1
    with pytest.raises(InsufficientDataError, match="no pre-treatment periods"):
        dataprep(df, "unit", "time", "y", "treated")


def test_dataprep_weights():
    df = _small_panel()
    df["w"] = df["unit"].map({1: 2.0, 2: 1.0, 3: 0.5})
    panel = dataprep(df, "unit", "time", "y", "treated", weight_column_name="w")
    np.testing.assert_allclose(panel.unit_weights, [2.0, 1.0, 0.5])


def test_dataprep_weight_varying_within_unit_raises():
    df = _small_panel()
    df["w"] = df["time"].astype(float)
    with pytest.raises(DataFormatError, match="constant within each unit"):
        dataprep(df, "unit", "time", "y", "treated", weight_column_name="w")


def test_dataprep_negative_weight_raises():
    df = _small_panel()
    df["w"] = -1.0
    with pytest.raises(GSCDataError, match="non-negative"):
        dataprep(df, "unit", "time", "y", "treated", weight_column_name="w")


# ---------- PanelData helpers ----------

def test_take_units_allows_repeats():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated")
    resampled = panel.take_units(np.array([0, 2, 2]))
    assert resampled.n_units == 3
    np.testing.assert_array_equal(resampled.treated_index, [0])
    np.testing.assert_array_equal(resampled.control_index, [1, 2])
    np.testing.assert_array_equal(resampled.onsets, [3])
    np.testing.assert_array_equal(resampled.outcomes[:, 1], resampled.outcomes[:, 2])


def test_with_outcomes_shape_mismatch_raises():
    panel = dataprep(_small_panel(), "unit", "time", "y", "treated")
    with pytest.raises(GSCDataError, match="shape"):
        panel.with_outcomes(np.zeros((2, 2)))


# ---------- fill_edge_values ----------

def test_fill_edge_values_fills_only_edges():
    df = pd.DataFrame({
        "unit": [1] * 5 + [2] * 5,
        "time": list(range(5)) * 2,
        "x": [np.nan, 1.0, np.nan, 3.0, np.nan, 5.0, np.nan, np.nan, 6.0, 7.0],
    })
    filled = fill_edge_values(df, "unit", "time", ["x"])
    np.testing.assert_array_equal(filled.loc[filled["unit"] == 1, "x"].to_numpy(), [1.0, 1.0, np.nan, 3.0, 3.0])
    np.testing.assert_array_equal(filled.loc[filled["unit"] == 2, "x"].to_numpy(), [5.0, np.nan, np.nan, 6.0, 7.0])


def test_fill_edge_values_does_not_modify_input():
    df = pd.DataFrame({"unit": [1, 1], "time": [1, 2], "x": [np.nan, 2.0]})
    fill_edge_values(df, "unit", "time", ["x"])
    assert np.isnan(df.loc[0, "x"])

import numpy as np
import pandas as pd
from typing import Optional, Dict, List, Tuple, Any, Sequence
from gscengine.config_models import PanelData
from gscengine.exceptions import (
    DataFormatError,
    InvalidTreatmentPatternError,
    InsufficientDataError,
)


def balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Check that the panel is strongly balanced.

    A strongly balanced panel has exactly one observation for every
    combination of unit and time period found in the data. Absence of a
    (unit, time) row is a data error, never implicit missingness.

    Parameters
    ----------
    df : pd.DataFrame
        The input panel data in long format.
    unit_id_column_name : str
        The name of the column in `df` that identifies the units.
    time_period_column_name : str
        The name of the column in `df` that identifies the time periods.

    Raises
    ------
    DataFormatError
        If a (unit, time) key appears more than once, or if some unit is not
        observed in some period. The error message and its `key` attribute
        name the first offending key.
    """
    keys = [unit_id_column_name, time_period_column_name]

    # Uniqueness: each unit-time pair must appear exactly once.
    duplicated_rows = df.duplicated(keys, keep="first")
    if duplicated_rows.any():
        first_duplicate = tuple(df.loc[duplicated_rows, keys].iloc[0])
        raise DataFormatError(
            f"Duplicate observation for (unit, time) = {first_duplicate}. "
            "Ensure each combination of unit and time is unique.",
            key=first_duplicate,
        )

    # Balance: every unit must be observed at every time period.
    units = np.sort(df[unit_id_column_name].unique())
    times = np.sort(df[time_period_column_name].unique())
    if len(df) == len(units) * len(times):
        return
    expected = pd.MultiIndex.from_product([units, times], names=keys)
    observed = pd.MultiIndex.from_frame(df[keys])
    missing = expected.difference(observed, sort=True)
    first_missing = tuple(missing[0])
    raise DataFormatError(
        f"The panel is not strongly balanced: no observation for (unit, time) = {first_missing} "
        f"({len(missing)} missing cells in total).",
        key=first_missing,
    )


def treatment_onsets(
    treatment_matrix: np.ndarray, unit_ids: Sequence[Any], time_ids: Sequence[Any]
) -> Tuple[np.ndarray, np.ndarray]:
    """Locate treated units and the first treated period of each.

    Parameters
    ----------
    treatment_matrix : np.ndarray
        Boolean matrix of shape (n_periods, n_units); rows ordered by time.
    unit_ids : Sequence[Any]
        Unit identifiers matching the columns of `treatment_matrix`.
    time_ids : Sequence[Any]
        Time identifiers matching the rows of `treatment_matrix`.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Column indices of treated units and, aligned with them, the row index
        of each unit's first treated period.

    Raises
    ------
    InvalidTreatmentPatternError
        If a treated unit returns to control status after treatment starts.
    """
    treated_unit_mask = treatment_matrix.any(axis=0)
    treated_indices = np.flatnonzero(treated_unit_mask)
    onsets = np.empty(len(treated_indices), dtype=int)

    for position, unit_idx in enumerate(treated_indices):
        unit_treatment_vector = treatment_matrix[:, unit_idx]
        first_treated = int(np.argmax(unit_treatment_vector))
        # Treatment is absorbing: every period from onset on must be treated.
        reverted = np.flatnonzero(~unit_treatment_vector[first_treated:])
        if reverted.size > 0:
            reversal_row = first_treated + int(reverted[0])
            raise InvalidTreatmentPatternError(
                f"Treatment is not sustained for unit {unit_ids[unit_idx]!r}: treated at "
                f"{time_ids[first_treated]!r} but untreated again at {time_ids[reversal_row]!r}.",
                unit=unit_ids[unit_idx],
                time=time_ids[reversal_row],
            )
        onsets[position] = first_treated

    return treated_indices, onsets


def _first_missing_key(df: pd.DataFrame, column: str, keys: List[str]) -> Optional[Tuple[Any, Any]]:
    missing_rows = df[column].isna()
    if not missing_rows.any():
        return None
    return tuple(df.loc[missing_rows, keys].iloc[0])


def dataprep(
    df: pd.DataFrame,
    unit_id_column_name: str,
    time_period_column_name: str,
    outcome_column_name: str,
    treatment_indicator_column_name: str,
    covariate_column_names: Optional[List[str]] = None,
    weight_column_name: Optional[str] = None,
) -> PanelData:
    """Validate a long panel and pivot it into a read-only `PanelData`.

    Parameters
    ----------
    df : pd.DataFrame
        Long-format panel with one row per (unit, time).
    unit_id_column_name, time_period_column_name : str
        Identifier columns. Units and periods are sorted ascending.
    outcome_column_name : str
        Real-valued outcome column.
    treatment_indicator_column_name : str
        Treatment indicator restricted to {0, 1} or booleans, absorbing per unit.
    covariate_column_names : List[str], optional
        Time-varying covariates entering the model linearly.
    weight_column_name : str, optional
        Per-unit weight (constant within unit, non-negative) used when
        averaging effects across treated units.

    Returns
    -------
    PanelData
        The validated panel. Arrays are copies and are not writeable.

    Raises
    ------
    DataFormatError
        Duplicate or missing (unit, time) keys, missing values, a treatment
        indicator outside {0, 1}, a weight that varies within a unit, or a
        panel without treated units.
    InvalidTreatmentPatternError
        A unit's treatment status reverts from treated to untreated.
    InsufficientDataError
        No control units, or a treated unit without pre-treatment periods.
    """
    covariate_column_names = list(covariate_column_names or [])
    keys = [unit_id_column_name, time_period_column_name]

    balance(df, unit_id_column_name, time_period_column_name)

    # The core never imputes: any missing value is a data error.
    value_columns = [outcome_column_name, treatment_indicator_column_name] + covariate_column_names
    if weight_column_name is not None:
        value_columns.append(weight_column_name)
    for column in value_columns:
        offending_key = _first_missing_key(df, column, keys)
        if offending_key is not None:
            raise DataFormatError(
                f"Missing value in column '{column}' at (unit, time) = {offending_key}. "
                "Impute or drop missing values before constructing the panel.",
                key=offending_key,
            )

    treatment_values = df[treatment_indicator_column_name]
    invalid_treatment = ~treatment_values.isin([0, 1, True, False])
    if invalid_treatment.any():
        offending_key = tuple(df.loc[invalid_treatment, keys].iloc[0])
        raise DataFormatError(
            f"Treatment indicator must be binary (0/1 or boolean); found "
            f"{treatment_values[invalid_treatment].iloc[0]!r} at (unit, time) = {offending_key}.",
            key=offending_key,
        )

    # Pivot to wide format (time x units); pivot sorts both axes.
    outcome_matrix_wide = df.pivot(index=time_period_column_name, columns=unit_id_column_name, values=outcome_column_name)
    treatment_matrix_wide = df.pivot(index=time_period_column_name, columns=unit_id_column_name, values=treatment_indicator_column_name)
    unit_ids = outcome_matrix_wide.columns.to_numpy()
    time_ids = outcome_matrix_wide.index.to_numpy()

    try:
        outcome_array_wide = outcome_matrix_wide.to_numpy(dtype=float)
    except (TypeError, ValueError) as e:
        raise DataFormatError(f"Outcome column '{outcome_column_name}' must be numeric.") from e
    treatment_array_wide = treatment_matrix_wide.to_numpy().astype(bool)

    covariate_array: Optional[np.ndarray] = None
    if covariate_column_names:
        covariate_layers = []
        for column in covariate_column_names:
            layer = df.pivot(index=time_period_column_name, columns=unit_id_column_name, values=column)
            try:
                covariate_layers.append(layer.reindex(index=time_ids, columns=unit_ids).to_numpy(dtype=float))
            except (TypeError, ValueError) as e:
                raise DataFormatError(f"Covariate column '{column}' must be numeric.") from e
        covariate_array = np.stack(covariate_layers, axis=-1)

    if weight_column_name is not None:
        weights_by_unit = df.groupby(unit_id_column_name)[weight_column_name]
        varying = weights_by_unit.nunique() > 1
        if varying.any():
            raise DataFormatError(
                f"Weight column '{weight_column_name}' must be constant within each unit; "
                f"unit {varying[varying].index[0]!r} has several values.",
                key=varying[varying].index[0],
            )
        unit_weights = weights_by_unit.first().reindex(unit_ids).to_numpy(dtype=float)
        if (unit_weights < 0).any():
            raise DataFormatError(f"Weight column '{weight_column_name}' must be non-negative.")
    else:
        unit_weights = np.ones(len(unit_ids))

    treated_indices, onsets = treatment_onsets(treatment_array_wide, unit_ids, time_ids)
    if treated_indices.size == 0:
        raise DataFormatError("No treated units found (zero treated observations with value 1).")
    control_indices = np.flatnonzero(~treatment_array_wide.any(axis=0))
    if control_indices.size == 0:
        raise InsufficientDataError("No control units found: every unit is treated at some point.")
    if (onsets == 0).any():
        first_unit = unit_ids[treated_indices[np.flatnonzero(onsets == 0)[0]]]
        raise InsufficientDataError(
            f"Treated unit {first_unit!r} is treated from the first period and has no pre-treatment periods."
        )
    if weight_column_name is not None and unit_weights[treated_indices].sum() <= 0:
        raise DataFormatError(f"Weights of the treated units in '{weight_column_name}' sum to zero.")

    return PanelData(
        unit_ids=unit_ids,
        time_ids=time_ids,
        outcomes=outcome_array_wide,
        treatment=treatment_array_wide,
        covariates=covariate_array,
        covariate_names=covariate_column_names,
        unit_weights=unit_weights,
        treated_index=treated_indices,
        control_index=control_indices,
        onsets=onsets,
    )


def fill_edge_values(
    df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str, columns: List[str]
) -> pd.DataFrame:
    """Fill leading and trailing missing values per unit with the nearest observed value.

    This is a data-preparation policy applied before `dataprep`, never by the
    estimator itself. Interior gaps (missing values with observations on both
    sides) are left as they are, so `dataprep` still rejects them.

    Parameters
    ----------
    df : pd.DataFrame
        Long-format panel.
    unit_id_column_name, time_period_column_name : str
        Identifier columns.
    columns : List[str]
        Columns to fill.

    Returns
    -------
    pd.DataFrame
        A sorted copy of `df` with edge values filled.

    Examples
    --------
    >>> frame = pd.DataFrame({"u": [1, 1, 1, 1], "t": [1, 2, 3, 4], "x": [np.nan, 2.0, np.nan, 4.0]})
    >>> fill_edge_values(frame, "u", "t", ["x"])["x"].tolist()
    [2.0, 2.0, nan, 4.0]
    """
    filled = df.sort_values([unit_id_column_name, time_period_column_name]).reset_index(drop=True)
    grouped = filled.groupby(unit_id_column_name)[columns]
    # Leading gaps take the next observation, trailing gaps the previous one.
    leading = grouped.bfill().where(grouped.ffill().isna())
    trailing = grouped.ffill().where(grouped.bfill().isna())
    filled[columns] = filled[columns].fillna(leading).fillna(trailing)
    return filled

from typing import List, Optional, Any, Dict, Union
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator
from gscengine.exceptions import GSCDataError, GSCConfigError


def _readonly(array: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Return a private, read-only copy of `array` (None passes through)."""
    if array is None:
        return None
    frozen = np.array(array, copy=True)
    frozen.setflags(write=False)
    return frozen


class BaseEstimatorConfig(BaseModel):
    """
    Base Pydantic model for estimator configurations.
    Includes the column names every panel estimator needs.
    """
    df: pd.DataFrame = Field(..., description="Input panel data as a pandas DataFrame (long format).")
    outcome: str = Field(..., description="Name of the outcome variable column in the DataFrame.")
    treat: str = Field(..., description="Name of the treatment indicator column in the DataFrame.")
    unitid: str = Field(..., description="Name of the unit identifier column in the DataFrame.")
    time: str = Field(..., description="Name of the time period column in the DataFrame.")

    model_config = {
        "arbitrary_types_allowed": True,
        "extra": "forbid",  # Forbid extra fields not defined in the model
    }

    @model_validator(mode='after')
    def check_df_and_columns(self) -> "BaseEstimatorConfig":
        df = self.df
        if df.empty:
            raise GSCDataError("Input DataFrame 'df' cannot be empty.")

        required_columns = {self.outcome, self.treat, self.unitid, self.time}
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise GSCDataError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )
        return self


class GSCConfig(BaseEstimatorConfig):
    """
    Configuration for the Generalized Synthetic Control (GSC) estimator.

    Every hyperparameter of the interactive fixed effects model, the
    factor-count cross-validation and the bootstrap is an explicit field;
    there is no formula interface.
    """
    covariates: List[str] = Field(default_factory=list, description="Time-varying covariate columns entering the model linearly.")
    weight: Optional[str] = Field(default=None, description="Per-unit weight column used when averaging effects across treated units.")
    force: str = Field(
        default="two-way",
        description="Additive fixed effects: 'none', 'unit', 'time' or 'two-way'.",
        pattern="^(none|unit|time|two-way)$",
    )
    r_max: Optional[int] = Field(default=None, description="Largest number of latent factors considered by cross-validation. None uses min(5, controls - 1, pre-periods - 2).", ge=0)
    r: Optional[int] = Field(default=None, description="Fixed number of factors. When set, cross-validation is skipped. A value above the rank of the untreated data (for instance on noiseless data) leaves factors unidentified and the fit raises SingularMatrixError.", ge=0)
    cv_folds: int = Field(default=5, description="Number of folds over pre-treatment periods for factor-count selection.", ge=2)
    tol: float = Field(default=1e-7, description="Relative decrease in the sum of squared residuals that stops the ALS iterations.", gt=0)
    max_iter: int = Field(default=1000, description="Maximum number of ALS sweeps before a ConvergenceError is raised.", ge=1)
    n_bootstrap: int = Field(default=200, description="Number of bootstrap replicates. 0 disables inference.", ge=0)
    resample: str = Field(default="units", description="Bootstrap scheme: 'units' (placebo controls stand in for treated units, control pool resampled) or model 'residuals'.", pattern="^(units|residuals)$")
    reselect_factors: bool = Field(default=False, description="Rerun factor-count cross-validation inside each bootstrap replicate.")
    min_replicates: Optional[int] = Field(default=None, description="Minimum successful replicates required for intervals. None uses max(2, ceil(n_bootstrap / 2)).", ge=1)
    ci: float = Field(default=0.95, description="Confidence level of the percentile intervals.", gt=0, lt=1)
    seed: Optional[int] = Field(default=None, description="Seed for the bootstrap random number generator.", ge=0)
    parallel: bool = Field(default=False, description="Whether to run bootstrap replicates on a worker pool.")
    cores: Optional[int] = Field(default=None, description="Number of workers for parallel replicates. Defaults to all available if None and parallel is True.", ge=1)
    replicate_timeout: Optional[float] = Field(default=None, description="Wall-clock limit in seconds for a single replicate fit.", gt=0)

    @model_validator(mode='after')
    def check_gsc_params(self) -> "GSCConfig":
        df = self.df
        extra_columns = list(self.covariates) + ([self.weight] if self.weight else [])
        missing_columns = [col for col in extra_columns if col not in df.columns]
        if missing_columns:
            raise GSCDataError(
                f"Missing covariate/weight columns in DataFrame 'df': {', '.join(missing_columns)}"
            )
        if len(set(self.covariates)) != len(self.covariates):
            raise GSCConfigError("'covariates' contains duplicate column names.")
        reserved = {self.outcome, self.treat, self.unitid, self.time}
        if reserved.intersection(self.covariates):
            raise GSCConfigError("'covariates' cannot include the outcome, treatment, unit or time columns.")
        if self.r is not None and self.r_max is not None and self.r > self.r_max:
            raise GSCConfigError(f"'r' ({self.r}) cannot exceed 'r_max' ({self.r_max}).")
        if self.min_replicates is not None and self.n_bootstrap > 0 and self.min_replicates > self.n_bootstrap:
            raise GSCConfigError(
                f"'min_replicates' ({self.min_replicates}) cannot exceed 'n_bootstrap' ({self.n_bootstrap})."
            )
        return self


# --- Panel and fitted model containers ---

class PanelData(BaseModel):
    """
    Validated, balanced panel in wide (time x unit) form.

    Built once by `gscengine.utils.datautils.dataprep` and read-only
    afterwards: the model is frozen and every array is a private read-only
    copy. Rows of `outcomes`/`treatment` follow `time_ids`, columns follow
    `unit_ids`.
    """
    unit_ids: np.ndarray
    time_ids: np.ndarray
    outcomes: np.ndarray  # (T, N)
    treatment: np.ndarray  # (T, N) bool
    covariates: Optional[np.ndarray] = None  # (T, N, K)
    covariate_names: List[str] = Field(default_factory=list)
    unit_weights: np.ndarray  # (N,)
    treated_index: np.ndarray  # column positions of treated units
    control_index: np.ndarray  # column positions of control units
    onsets: np.ndarray  # first treated row, aligned with treated_index

    model_config = {
        "arbitrary_types_allowed": True,
        "frozen": True,
    }

    @field_validator(
        "unit_ids", "time_ids", "outcomes", "treatment", "covariates",
        "unit_weights", "treated_index", "control_index", "onsets",
    )
    @classmethod
    def _freeze_arrays(cls, value: Optional[np.ndarray]) -> Optional[np.ndarray]:
        return _readonly(value)

    @property
    def n_periods(self) -> int:
        return self.outcomes.shape[0]

    @property
    def n_units(self) -> int:
        return self.outcomes.shape[1]

    @property
    def n_treated(self) -> int:
        return len(self.treated_index)

    @property
    def n_controls(self) -> int:
        return len(self.control_index)

    @property
    def treated_units(self) -> List[Any]:
        return list(self.unit_ids[self.treated_index])

    @property
    def control_units(self) -> List[Any]:
        return list(self.unit_ids[self.control_index])

    @property
    def outcome_matrix(self) -> np.ndarray:
        return self.outcomes

    @property
    def treatment_matrix(self) -> np.ndarray:
        return self.treatment

    @property
    def pre_periods(self) -> Dict[Any, int]:
        """Number of pre-treatment periods per treated unit."""
        return {unit: int(onset) for unit, onset in zip(self.treated_units, self.onsets)}

    @property
    def min_pre_periods(self) -> int:
        """Number of pre-treatment periods of the earliest-treated unit."""
        return int(self.onsets.min())

    def fit_mask(self) -> np.ndarray:
        """Cells that may inform the untreated model: every untreated (unit, time) cell."""
        return ~self.treatment

    def take_units(self, column_index: np.ndarray) -> "PanelData":
        """New panel made of the given unit columns (repeats allowed), in that order."""
        column_index = np.asarray(column_index, dtype=int)
        treated_lookup = {int(col): pos for pos, col in enumerate(self.treated_index)}
        new_treated = [pos for pos, col in enumerate(column_index) if int(col) in treated_lookup]
        new_controls = [pos for pos, col in enumerate(column_index) if int(col) not in treated_lookup]
        new_onsets = [self.onsets[treated_lookup[int(column_index[pos])]] for pos in new_treated]
        return PanelData(
            unit_ids=self.unit_ids[column_index],
            time_ids=self.time_ids,
            outcomes=self.outcomes[:, column_index],
            treatment=self.treatment[:, column_index],
            covariates=None if self.covariates is None else self.covariates[:, column_index, :],
            covariate_names=list(self.covariate_names),
            unit_weights=self.unit_weights[column_index],
            treated_index=np.array(new_treated, dtype=int),
            control_index=np.array(new_controls, dtype=int),
            onsets=np.array(new_onsets, dtype=int),
        )

    def with_outcomes(self, outcomes: np.ndarray) -> "PanelData":
        """Copy of the panel with the outcome matrix replaced (same shape)."""
        if outcomes.shape != self.outcomes.shape:
            raise GSCDataError(
                f"Replacement outcomes have shape {outcomes.shape}, expected {self.outcomes.shape}."
            )
        return self.model_copy(update={"outcomes": _readonly(outcomes)})


class FactorModel(BaseModel):
    """
    Fitted interactive fixed effects model

        Y_it(0) = mu + alpha_i + xi_t + X_it' beta + lambda_i' f_t

    owned by exactly one fit. Immutable after construction.
    """
    factors: np.ndarray  # (T, r)
    loadings: np.ndarray  # (N, r)
    grand_mean: float
    unit_effects: np.ndarray  # (N,)
    time_effects: np.ndarray  # (T,)
    beta: np.ndarray  # (K,)
    fit_mask: np.ndarray  # (T, N) cells used in the fit
    force: str
    n_iter: int
    ssr: float
    n_obs: int
    converged: bool = True

    model_config = {
        "arbitrary_types_allowed": True,
        "frozen": True,
    }

    @field_validator("factors", "loadings", "unit_effects", "time_effects", "beta", "fit_mask")
    @classmethod
    def _freeze_arrays(cls, value: np.ndarray) -> np.ndarray:
        return _readonly(value)

    @property
    def n_factors(self) -> int:
        return self.factors.shape[1]

    def predict(self, covariates: Optional[np.ndarray] = None) -> np.ndarray:
        """Untreated outcome surface (T x N) implied by the model."""
        fitted = (
            self.grand_mean
            + self.unit_effects[np.newaxis, :]
            + self.time_effects[:, np.newaxis]
            + self.factors @ self.loadings.T
        )
        if covariates is not None and self.beta.size > 0:
            fitted = fitted + covariates @ self.beta
        return fitted


class CrossValidationResult(BaseModel):
    """Outcome of the factor-count cross-validation."""
    n_factors: int = Field(..., description="Selected number of latent factors.")
    r_max: int = Field(..., description="Largest candidate considered.")
    n_folds: int = Field(..., description="Number of folds actually used.")
    cv_scores: Dict[int, float] = Field(..., description="Mean squared prediction error per candidate (inf if it failed).")


class ReplicateOutcome(BaseModel):
    """Effect estimate of one bootstrap replicate."""
    index: int
    att: float
    att_by_period: np.ndarray  # (T,)
    n_factors: int

    model_config = {
        "arbitrary_types_allowed": True,
        "frozen": True,
    }


class BootstrapResults(BaseModel):
    """Aggregated bootstrap replicates and the intervals derived from them."""
    att_replicates: np.ndarray  # (n_successful,)
    period_att_replicates: np.ndarray  # (n_successful, T)
    n_replicates: int
    n_successful: int
    n_failed: int
    partial: bool = False
    method: str
    confidence_level: float
    standard_error: Optional[float] = None
    p_value: Optional[float] = None
    ci_lower: Optional[float] = None
    ci_upper: Optional[float] = None
    period_ci_lower: Optional[np.ndarray] = None
    period_ci_upper: Optional[np.ndarray] = None

    model_config = {"arbitrary_types_allowed": True}


# --- Pydantic Models for Standardized Estimator Results ---

class EffectsResults(BaseModel):
    """Treatment effect estimates."""
    att: Optional[float] = Field(default=None, description="Overall Average Treatment Effect on the Treated (mean of per-period ATT over the post-treatment window).")
    att_by_period: Optional[np.ndarray] = Field(default=None, description="Per-period ATT aligned with `TimeSeriesResults.time_periods`.")
    att_by_event_time: Optional[Dict[int, float]] = Field(default=None, description="ATT by periods relative to treatment onset (0 = first treated period).")
    att_by_unit: Optional[Dict[Any, float]] = Field(default=None, description="Post-treatment average gap per treated unit.")

    model_config = {"arbitrary_types_allowed": True, "extra": "allow"}

class FitDiagnosticsResults(BaseModel):
    """Model-selection and convergence diagnostics."""
    n_factors: Optional[int] = Field(default=None, description="Selected number of latent factors.")
    cv_scores: Optional[Dict[int, float]] = Field(default=None, description="Mean squared prediction error by candidate factor count.")
    n_iter: Optional[int] = Field(default=None, description="ALS sweeps used by the primary fit.")
    final_ssr: Optional[float] = Field(default=None, description="Sum of squared residuals of the primary fit.")
    rmse_pre: Optional[float] = Field(default=None, description="Root mean squared pre-treatment gap of the treated units.")
    n_failed_replicates: Optional[int] = Field(default=None, description="Bootstrap replicates dropped for failing to fit.")

    model_config = {"extra": "allow"}

class TimeSeriesResults(BaseModel):
    """Per treated unit observed, counterfactual and gap series, for gap/counterfactual plots."""
    time_periods: Optional[np.ndarray] = Field(default=None, description="Array of time periods corresponding to the series.")
    observed_outcome: Optional[Dict[Any, np.ndarray]] = Field(default=None, description="Observed outcome per treated unit.")
    counterfactual_outcome: Optional[Dict[Any, np.ndarray]] = Field(default=None, description="Counterfactual trajectory per treated unit.")
    estimated_gap: Optional[Dict[Any, np.ndarray]] = Field(default=None, description="Observed minus counterfactual per treated unit.")
    post_periods: Optional[np.ndarray] = Field(default=None, description="True where at least one treated unit is under treatment.")

    model_config = {"arbitrary_types_allowed": True, "extra": "allow"}

class InferenceResults(BaseModel):
    """Bootstrap inference for the ATT."""
    p_value: Optional[float] = Field(default=None, description="Two-sided normal p-value for the overall ATT using the bootstrap standard error.")
    ci_lower: Optional[float] = Field(default=None, description="Lower percentile bound for the overall ATT.")
    ci_upper: Optional[float] = Field(default=None, description="Upper percentile bound for the overall ATT.")
    standard_error: Optional[float] = Field(default=None, description="Bootstrap standard error of the overall ATT.")
    period_ci_lower: Optional[np.ndarray] = Field(default=None, description="Lower percentile bound per period.")
    period_ci_upper: Optional[np.ndarray] = Field(default=None, description="Upper percentile bound per period.")
    confidence_level: Optional[float] = Field(default=None, description="Confidence level used for the intervals.")
    method: Optional[str] = Field(default=None, description="Resampling scheme ('bootstrap-units' or 'bootstrap-residuals').")
    n_replicates: Optional[int] = Field(default=None, description="Replicates requested.")
    n_successful: Optional[int] = Field(default=None, description="Replicates that produced estimates.")
    n_failed: Optional[int] = Field(default=None, description="Replicates dropped (non-convergent, singular or timed out).")
    partial: bool = Field(default=False, description="True when the bootstrap was cancelled before every replicate ran.")

    model_config = {"arbitrary_types_allowed": True, "extra": "allow"}

class MethodDetailsResults(BaseModel):
    """Details about the estimation method used."""
    method_name: Optional[str] = Field(default=None, description="Name of the method.")
    parameters_used: Optional[Dict[str, Any]] = Field(default=None, description="Key parameters used for this result set.")

    model_config = {"extra": "allow"}

class GSCResults(BaseModel):
    """
    Result bundle returned by `GSC.fit()` and consumed by reporting layers.
    """
    effects: EffectsResults
    fit_diagnostics: FitDiagnosticsResults
    time_series: TimeSeriesResults
    inference: Optional[InferenceResults] = None
    method_details: Optional[MethodDetailsResults] = None
    factor_model: Optional[FactorModel] = Field(default=None, description="Primary fitted factor model.")

    model_config = {
        "arbitrary_types_allowed": True,
        "extra": "forbid",
    }

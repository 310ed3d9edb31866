import threading
from typing import Any, Dict, Optional, Union

import numpy as np
import pandas as pd
from pydantic import ValidationError

from ..utils.datautils import dataprep
from ..utils.crossval import select_factor_count
from ..utils.factorutils import fit_factor_model
from ..utils.inferutils import run_bootstrap
from ..utils.resultutils import effects, counterfactual_matrix
from ..config_models import (
    GSCConfig,
    GSCResults,
    EffectsResults,
    FitDiagnosticsResults,
    TimeSeriesResults,
    InferenceResults,
    MethodDetailsResults,
    PanelData,
)
from ..exceptions import (
    GSCConfigError,
    GSCDataError,
    GSCEstimationError,
    EstimationCancelledError,
)


class GSC:
    """
    Generalized Synthetic Control (GSC) estimator.

    Imputes the untreated outcomes of treated units from an interactive fixed
    effects model

        Y_it(0) = mu + alpha_i + xi_t + X_it' beta + lambda_i' f_t + eps_it

    fitted on control units over all periods and on treated units over their
    pre-treatment periods only. The number of latent factors is chosen by
    cross-validation over pre-treatment periods unless fixed, and uncertainty
    is quantified by a parametric or nonparametric bootstrap. Treatment may
    start at different periods for different units (staggered adoption) but
    is absorbing.

    Attributes
    ----------
    config : GSCConfig
        The configuration object holding all parameters for the estimator.
    df : pd.DataFrame
        The input DataFrame containing panel data in long format.
    outcome, treat, unitid, time : str
        Column names of the outcome, treatment indicator, unit and time.
    covariates : List[str]
        Time-varying covariate columns.
    weight : Optional[str]
        Per-unit weight column for aggregating effects over treated units.
    panel : Optional[PanelData]
        The validated panel, available after `fit`.

    References
    ----------
    Xu, Y. (2017). "Generalized Synthetic Control Method: Causal Inference
    with Interactive Fixed Effects Models." *Political Analysis*, 25(1), 57-76.
    """

    def __init__(self, config: Union[GSCConfig, Dict[str, Any]]) -> None:
        """
        Initializes the GSC estimator with a configuration object.

        Parameters
        ----------
        config : GSCConfig or dict
            A Pydantic model instance (or a dict of its fields) with the data,
            column names and every model, cross-validation and bootstrap
            setting. See `GSCConfig` for defaults.
        """
        if isinstance(config, dict):
            config = GSCConfig(**config)  # convert dict to config object
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.treat: str = config.treat
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.covariates = list(config.covariates)
        self.weight: Optional[str] = config.weight
        self.panel: Optional[PanelData] = None

    def _parameters_used(self, n_factors: int) -> Dict[str, Any]:
        parameters = self.config.model_dump(exclude={"df"})
        parameters["n_factors"] = n_factors
        return parameters

    def fit(self, cancel_event: Optional[threading.Event] = None) -> GSCResults:
        """
        Fits the GSC model to the provided data.

        Builds the panel, selects the number of factors (or uses `r`), fits
        the factor model on untreated cells, imputes the treated units'
        counterfactual outcomes, aggregates the ATT and, when
        `n_bootstrap > 0`, runs the bootstrap.

        Parameters
        ----------
        cancel_event : threading.Event, optional
            Cooperative cancellation. If set before the primary fit,
            `EstimationCancelledError` is raised; if set during the bootstrap,
            the replicates completed so far are used and
            `results.inference.partial` is True.

        Returns
        -------
        GSCResults
            Effects, diagnostics, per-unit series, inference and the primary
            fitted factor model.

        Raises
        ------
        GSCDataError
            For malformed panels (`DataFormatError`,
            `InvalidTreatmentPatternError`, `InsufficientDataError`).
        GSCEstimationError
            For estimation failures (`SingularMatrixError`, `ConvergenceError`,
            `InsufficientReplicatesError`, `EstimationCancelledError`) and any
            unexpected error, which is wrapped.

        Examples
        --------
        >>> import numpy as np
        >>> import pandas as pd
        >>> from gscengine import GSC
        >>> rng = np.random.default_rng(0)
        >>> units, periods = np.arange(12), np.arange(20)
        >>> data = pd.DataFrame(
        ...     [(u, t, rng.normal() + 0.3 * u + 0.1 * t, int(u < 2 and t >= 15))
        ...      for u in units for t in periods],
        ...     columns=["unit", "year", "y", "treated"],
        ... )
        >>> results = GSC({"df": data, "outcome": "y", "treat": "treated",
        ...                "unitid": "unit", "time": "year", "seed": 1,
        ...                "n_bootstrap": 50}).fit()  # doctest: +SKIP
        >>> results.effects.att  # doctest: +SKIP
        """
        results_to_return: Optional[GSCResults] = None

        try:
            # Step 1: Validate the long panel and pivot it into wide matrices
            panel = dataprep(
                self.df,
                self.unitid,
                self.time,
                self.outcome,
                self.treat,
                covariate_column_names=self.covariates,
                weight_column_name=self.weight,
            )
            self.panel = panel

            if cancel_event is not None and cancel_event.is_set():
                raise EstimationCancelledError("GSC estimation was cancelled before the primary fit.")

            # Step 2: Number of latent factors (fixed or cross-validated)
            cv_scores: Optional[Dict[int, float]] = None
            if self.config.r is not None:
                n_factors = self.config.r
            else:
                cv_result = select_factor_count(
                    panel,
                    r_max=self.config.r_max,
                    n_folds=self.config.cv_folds,
                    force=self.config.force,
                    tol=self.config.tol,
                    max_iter=self.config.max_iter,
                )
                n_factors = cv_result.n_factors
                cv_scores = cv_result.cv_scores

            # Step 3: Primary fit on control cells and treated pre-treatment cells
            factor_model = fit_factor_model(
                panel.outcomes,
                panel.fit_mask(),
                n_factors,
                covariates=panel.covariates,
                force=self.config.force,
                tol=self.config.tol,
                max_iter=self.config.max_iter,
            )

            # Step 4: Counterfactuals and treatment effects
            counterfactual = counterfactual_matrix(factor_model, panel)
            (
                treatment_effects_dict,
                fit_statistics_dict,
                time_series_vectors_dict,
            ) = effects.calculate(panel, counterfactual)

            # Step 5: Bootstrap inference
            inference_results_obj: Optional[InferenceResults] = None
            n_failed_replicates: Optional[int] = None
            if self.config.n_bootstrap > 0:
                bootstrap = run_bootstrap(
                    panel,
                    factor_model,
                    treatment_effects_dict["ATT"],
                    n_replicates=self.config.n_bootstrap,
                    resample=self.config.resample,
                    reselect_factors=self.config.reselect_factors,
                    r_max=self.config.r_max,
                    cv_folds=self.config.cv_folds,
                    tol=self.config.tol,
                    max_iter=self.config.max_iter,
                    ci=self.config.ci,
                    seed=self.config.seed,
                    min_replicates=self.config.min_replicates,
                    parallel=self.config.parallel,
                    cores=self.config.cores,
                    replicate_timeout=self.config.replicate_timeout,
                    cancel_event=cancel_event,
                )
                n_failed_replicates = bootstrap.n_failed
                inference_results_obj = InferenceResults(
                    p_value=bootstrap.p_value,
                    ci_lower=bootstrap.ci_lower,
                    ci_upper=bootstrap.ci_upper,
                    standard_error=bootstrap.standard_error,
                    period_ci_lower=bootstrap.period_ci_lower,
                    period_ci_upper=bootstrap.period_ci_upper,
                    confidence_level=bootstrap.confidence_level,
                    method=bootstrap.method,
                    n_replicates=bootstrap.n_replicates,
                    n_successful=bootstrap.n_successful,
                    n_failed=bootstrap.n_failed,
                    partial=bootstrap.partial,
                )

            # Step 6: Assemble the results
            effects_results_obj = EffectsResults(
                att=treatment_effects_dict["ATT"],
                att_by_period=treatment_effects_dict["ATT_Time"],
                att_by_event_time=treatment_effects_dict["ATT_Event_Time"],
                att_by_unit=treatment_effects_dict["ATT_Unit"],
            )
            fit_diagnostics_results_obj = FitDiagnosticsResults(
                n_factors=n_factors,
                cv_scores=cv_scores,
                n_iter=factor_model.n_iter,
                final_ssr=factor_model.ssr,
                rmse_pre=fit_statistics_dict["T0 RMSE"],
                n_failed_replicates=n_failed_replicates,
                pre_periods=fit_statistics_dict["Pre-Periods"],
                post_periods=fit_statistics_dict["Post-Periods"],
            )
            time_series_results_obj = TimeSeriesResults(
                time_periods=np.asarray(panel.time_ids),
                observed_outcome=time_series_vectors_dict["Observed Unit"],
                counterfactual_outcome=time_series_vectors_dict["Counterfactual"],
                estimated_gap=time_series_vectors_dict["Gap"],
                post_periods=time_series_vectors_dict["Post Mask"],
            )
            method_details_results_obj = MethodDetailsResults(
                method_name="GSC",
                parameters_used=self._parameters_used(n_factors),
            )

            results_to_return = GSCResults(
                effects=effects_results_obj,
                fit_diagnostics=fit_diagnostics_results_obj,
                time_series=time_series_results_obj,
                inference=inference_results_obj,
                method_details=method_details_results_obj,
                factor_model=factor_model,
            )

        except (GSCDataError, GSCConfigError, GSCEstimationError):
            raise
        except ValidationError as e:  # Pydantic errors while building the results
            raise GSCEstimationError(f"Error creating results structure for GSC: {str(e)}") from e
        except Exception as e:
            raise GSCEstimationError(f"An unexpected error occurred during GSC estimation: {str(e)}") from e

        return results_to_return

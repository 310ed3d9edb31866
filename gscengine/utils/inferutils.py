"""
Bootstrap inference for the generalized synthetic control estimator.

Replicates are independent: each owns a random generator spawned from one
seed sequence and its results are stored by replicate index, so the output
does not depend on the number of workers or on completion order.
"""

import logging
import math
import os
import threading
import time
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Union

import numpy as np
from scipy.stats import norm

from gscengine.config_models import BootstrapResults, FactorModel, PanelData, ReplicateOutcome
from gscengine.exceptions import (
    ConvergenceError,
    GSCConfigError,
    InsufficientDataError,
    InsufficientReplicatesError,
    SingularMatrixError,
)
from gscengine.utils.crossval import select_factor_count
from gscengine.utils.factorutils import fit_factor_model
from gscengine.utils.resultutils import att_series, counterfactual_matrix

logger = logging.getLogger(__name__)

RESAMPLE_SCHEMES = ("units", "residuals")
# Share of failed replicates above which a warning is issued.
FAILURE_WARNING_RATE = 0.05

# Replicate-level failures: the replicate is dropped and counted.
REPLICATE_ERRORS = (SingularMatrixError, ConvergenceError, InsufficientDataError)

_FAILED = "failed"


def default_min_replicates(n_replicates: int) -> int:
    return max(2, math.ceil(n_replicates / 2))


def resample_units(panel: PanelData, model: FactorModel, rng: np.random.Generator) -> PanelData:
    """
    Placebo replicate built from resampled control units.

    Each treated column is replaced by the observed path of a randomly drawn
    control, shifted onto the treated unit's covariates, plus the treated
    unit's estimated effect on its treated cells. The treated column keeps
    its adoption pattern and weight. The control pool is redrawn with
    replacement from the controls not used as placebos, so a replicate ATT
    is the point estimate plus one out-of-sample prediction error.

    Raises
    ------
    InsufficientDataError
        If every control was drawn as a placebo and none is left for the pool.
    """
    placebo_index = rng.choice(panel.control_index, size=panel.n_treated, replace=True)
    pool = np.setdiff1d(panel.control_index, placebo_index)
    if pool.size == 0:
        raise InsufficientDataError("No control units remain after drawing placebo units.")
    drawn_controls = rng.choice(pool, size=panel.n_controls, replace=True)
    replicate = panel.take_units(np.concatenate([panel.treated_index, drawn_controls]))

    fitted = model.predict(panel.covariates)
    treated_outcomes = panel.outcomes[:, panel.treated_index]
    estimated_gap = np.where(
        panel.treatment[:, panel.treated_index],
        treated_outcomes - fitted[:, panel.treated_index],
        0.0,
    )
    placebo_outcomes = panel.outcomes[:, placebo_index]
    if panel.covariates is not None and model.beta.size > 0:
        covariate_shift = panel.covariates[:, panel.treated_index, :] - panel.covariates[:, placebo_index, :]
        placebo_outcomes = placebo_outcomes + covariate_shift @ model.beta

    outcomes = np.array(replicate.outcomes)
    outcomes[:, :panel.n_treated] = placebo_outcomes + estimated_gap
    return replicate.with_outcomes(outcomes)


def resample_residuals(panel: PanelData, model: FactorModel, rng: np.random.Generator) -> PanelData:
    """
    Panel whose outcomes are the fitted untreated surface plus resampled control residuals.

    Every unit receives the full residual path of a control unit drawn with
    replacement. Treated cells additionally keep the estimated effect, so the
    replicate is centred on the point estimate.
    """
    fitted = model.predict(panel.covariates)
    control_residuals = panel.outcomes[:, panel.control_index] - fitted[:, panel.control_index]
    drawn = rng.integers(0, panel.n_controls, size=panel.n_units)
    estimated_gap = np.where(panel.treatment, panel.outcomes - fitted, 0.0)
    return panel.with_outcomes(fitted + control_residuals[:, drawn] + estimated_gap)


def _run_replicate(
    index: int,
    seed_sequence: np.random.SeedSequence,
    panel: PanelData,
    model: FactorModel,
    n_factors: int,
    resample: str,
    reselect_factors: bool,
    r_max: Optional[int],
    cv_folds: int,
    tol: float,
    max_iter: int,
    replicate_timeout: Optional[float],
    cancel_event: Optional[threading.Event],
) -> Union[ReplicateOutcome, str, None]:
    """One replicate: resample, refit, recompute the ATT. None when skipped after cancellation."""
    if cancel_event is not None and cancel_event.is_set():
        return None

    rng = np.random.default_rng(seed_sequence)
    deadline = None if replicate_timeout is None else time.monotonic() + replicate_timeout

    try:
        if resample == "units":
            replicate_panel = resample_units(panel, model, rng)
        else:
            replicate_panel = resample_residuals(panel, model, rng)

        replicate_factors = n_factors
        if reselect_factors:
            replicate_factors = select_factor_count(
                replicate_panel,
                r_max=r_max,
                n_folds=cv_folds,
                force=model.force,
                tol=tol,
                max_iter=max_iter,
                deadline=deadline,
            ).n_factors
        replicate_model = fit_factor_model(
            replicate_panel.outcomes,
            replicate_panel.fit_mask(),
            replicate_factors,
            covariates=replicate_panel.covariates,
            force=model.force,
            tol=tol,
            max_iter=max_iter,
            deadline=deadline,
        )
    except REPLICATE_ERRORS as e:
        logger.debug("Bootstrap replicate %d dropped: %s: %s", index, type(e).__name__, e)
        return _FAILED

    counterfactual = counterfactual_matrix(replicate_model, replicate_panel)
    att_by_period, _, att = att_series(replicate_panel, counterfactual)
    return ReplicateOutcome(
        index=index,
        att=att,
        att_by_period=att_by_period,
        n_factors=replicate_factors,
    )


def run_bootstrap(
    panel: PanelData,
    model: FactorModel,
    point_estimate: float,
    n_replicates: int = 200,
    resample: str = "units",
    reselect_factors: bool = False,
    r_max: Optional[int] = None,
    cv_folds: int = 5,
    tol: float = 1e-7,
    max_iter: int = 1000,
    ci: float = 0.95,
    seed: Optional[int] = None,
    min_replicates: Optional[int] = None,
    parallel: bool = False,
    cores: Optional[int] = None,
    replicate_timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> BootstrapResults:
    """
    Bootstrap the ATT of a fitted generalized synthetic control model.

    Parameters
    ----------
    panel : PanelData
        The estimation panel.
    model : FactorModel
        The primary fit. Supplies the number of factors, the fixed-effect
        specification and, for residual resampling, the fitted surface.
    point_estimate : float
        The primary overall ATT, used for the normal p-value.
    n_replicates : int
        Number of replicates B.
    resample : str
        "units" replaces each treated unit by a drawn placebo control carrying
        the estimated effect and resamples the remaining control pool with
        replacement; "residuals" redraws control residual paths around the
        fitted untreated surface.
    reselect_factors : bool
        Rerun the factor-count cross-validation in every replicate.
    r_max, cv_folds : optional
        Cross-validation settings when `reselect_factors` is True.
    tol, max_iter : float, int
        ALS settings for the replicate fits.
    ci : float
        Confidence level of the percentile intervals.
    seed : int, optional
        Seed of the `SeedSequence` every replicate generator is spawned from.
    min_replicates : int, optional
        Successful replicates required; default max(2, ceil(B / 2)).
    parallel : bool
        Run replicates on a thread pool.
    cores : int, optional
        Pool size; defaults to `os.cpu_count()`.
    replicate_timeout : float, optional
        Seconds allowed for one replicate; a timeout drops the replicate.
    cancel_event : threading.Event, optional
        When set, replicates not yet started are skipped and the result is
        flagged as partial.

    Returns
    -------
    BootstrapResults
        Replicate ATTs, percentile intervals, standard error and p-value.

    Raises
    ------
    InsufficientReplicatesError
        If fewer than `min_replicates` replicates succeed in a run that was
        not cancelled.
    """
    if resample not in RESAMPLE_SCHEMES:
        raise GSCConfigError(f"resample must be one of {RESAMPLE_SCHEMES}; got {resample!r}")
    if n_replicates < 1:
        raise GSCConfigError("n_replicates must be at least 1.")
    required = default_min_replicates(n_replicates) if min_replicates is None else int(min_replicates)

    seed_sequences = np.random.SeedSequence(seed).spawn(n_replicates)
    replicate_args = (
        panel, model, model.n_factors, resample, reselect_factors, r_max,
        cv_folds, tol, max_iter, replicate_timeout, cancel_event,
    )

    if parallel:
        max_workers = cores or os.cpu_count() or 1
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(_run_replicate, index, seed_sequence, *replicate_args)
                for index, seed_sequence in enumerate(seed_sequences)
            ]
            outcomes: List[Union[ReplicateOutcome, str, None]] = [future.result() for future in futures]
    else:
        outcomes = [
            _run_replicate(index, seed_sequence, *replicate_args)
            for index, seed_sequence in enumerate(seed_sequences)
        ]

    successful = [outcome for outcome in outcomes if isinstance(outcome, ReplicateOutcome)]
    n_successful = len(successful)
    n_failed = sum(1 for outcome in outcomes if isinstance(outcome, str))
    n_completed = n_successful + n_failed
    partial = n_completed < n_replicates
    method = f"bootstrap-{resample}"

    att_replicates = np.array([outcome.att for outcome in successful], dtype=float)
    period_att_replicates = (
        np.vstack([outcome.att_by_period for outcome in successful])
        if successful else np.empty((0, panel.n_periods))
    )
    logger.debug(
        "Bootstrap finished: %d successful, %d failed, %d skipped",
        n_successful, n_failed, n_replicates - n_completed,
    )

    results = BootstrapResults(
        att_replicates=att_replicates,
        period_att_replicates=period_att_replicates,
        n_replicates=n_replicates,
        n_successful=n_successful,
        n_failed=n_failed,
        partial=partial,
        method=method,
        confidence_level=ci,
    )

    if n_successful < required:
        if partial:
            warnings.warn(
                f"Bootstrap was cancelled after {n_completed}/{n_replicates} replicates with only "
                f"{n_successful} successful (at least {required} needed). Intervals are not reported.",
                UserWarning,
                stacklevel=2,
            )
            return results
        raise InsufficientReplicatesError(
            f"Only {n_successful}/{n_replicates} bootstrap replicates succeeded "
            f"({n_failed} failed); at least {required} are required. Replicates fail when the "
            f"resampled control pool cannot identify {model.n_factors} factors or the fit does "
            f"not converge. Consider fewer factors, more control units or a larger max_iter.",
            n_successful=n_successful,
            n_failed=n_failed,
            required=required,
        )

    if partial:
        warnings.warn(
            f"Bootstrap was cancelled: intervals use {n_successful} of {n_replicates} requested replicates.",
            UserWarning,
            stacklevel=2,
        )
    failure_rate = n_failed / n_completed if n_completed else 0.0
    if failure_rate > FAILURE_WARNING_RATE:
        warnings.warn(
            f"Only {n_successful}/{n_completed} bootstrap replicates succeeded "
            f"({failure_rate:.1%} failure rate). Intervals may be unreliable.",
            UserWarning,
            stacklevel=2,
        )

    alpha = 1.0 - ci
    lower_q, upper_q = 100 * alpha / 2, 100 * (1 - alpha / 2)
    standard_error = float(np.std(att_replicates, ddof=1))
    if standard_error > 0:
        p_value = float(2 * (1 - norm.cdf(abs(point_estimate) / standard_error)))
    else:
        p_value = None

    return results.model_copy(update={
        "standard_error": standard_error,
        "p_value": p_value,
        "ci_lower": float(np.percentile(att_replicates, lower_q)),
        "ci_upper": float(np.percentile(att_replicates, upper_q)),
        "period_ci_lower": np.percentile(period_att_replicates, lower_q, axis=0),
        "period_ci_upper": np.percentile(period_att_replicates, upper_q, axis=0),
    })

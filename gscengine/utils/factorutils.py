"""
Interactive fixed effects (latent factor) estimation by alternating least squares.

The model for untreated outcomes is

    Y_it = mu + alpha_i + xi_t + X_it' beta + lambda_i' f_t + eps_it

and is fitted only on the cells flagged in a boolean mask (time x unit).
Cells outside the mask, in particular treated units' post-treatment
outcomes, never enter any fitting step.
"""

import logging
import time
from typing import Optional, Tuple

import numpy as np

from gscengine.config_models import FactorModel
from gscengine.exceptions import (
    ConvergenceError,
    GSCDataError,
    ReplicateTimeoutError,
    SingularMatrixError,
)

logger = logging.getLogger(__name__)

FORCE_OPTIONS = ("none", "unit", "time", "two-way")


def two_way_demean(input_matrix: np.ndarray) -> np.ndarray:
    """
    Remove row and column means from a complete matrix (double centering).

    Parameters
    ----------
    input_matrix : np.ndarray
        Matrix of shape (n_rows, n_cols) without missing values.

    Returns
    -------
    np.ndarray
        `input_matrix - row_means - col_means + grand_mean`. Every row and
        every column of the result averages to zero.

    Examples
    --------
    >>> X_ex = np.array([[1.0, 2.0], [3.0, 8.0]])
    >>> two_way_demean(X_ex)
    array([[ 1., -1.],
           [-1.,  1.]])
    """
    if not isinstance(input_matrix, np.ndarray) or input_matrix.ndim != 2:
        raise GSCDataError("Input `input_matrix` must be a 2D NumPy array.")
    if input_matrix.size == 0:
        raise GSCDataError("Input `input_matrix` cannot be empty.")
    row_means = input_matrix.mean(axis=1, keepdims=True)
    col_means = input_matrix.mean(axis=0, keepdims=True)
    return input_matrix - row_means - col_means + input_matrix.mean()


def initial_factors(outcomes: np.ndarray, mask: np.ndarray, n_factors: int) -> np.ndarray:
    """
    Starting factors from the SVD of the demeaned, fully observed columns.

    Columns observed in every period (the control pool) are double-centered
    and decomposed; the leading `n_factors` left singular vectors, scaled by
    sqrt(T) so that F'F / T = I, are returned.

    Raises
    ------
    SingularMatrixError
        If fewer fully observed columns (or periods) than `n_factors` exist.
    """
    num_periods = outcomes.shape[0]
    if n_factors == 0:
        return np.zeros((num_periods, 0))

    complete_columns = np.flatnonzero(mask.all(axis=0))
    if complete_columns.size < n_factors or num_periods < n_factors:
        raise SingularMatrixError(
            f"Cannot initialise {n_factors} factors from {complete_columns.size} fully observed "
            f"units over {num_periods} periods.",
            step="initialization",
        )
    demeaned_controls = two_way_demean(outcomes[:, complete_columns])
    left_vectors, _, _ = np.linalg.svd(demeaned_controls, full_matrices=False)
    return np.sqrt(num_periods) * left_vectors[:, :n_factors]


def _grouped_lstsq(
    design: np.ndarray, target: np.ndarray, observed: np.ndarray, step: str
) -> np.ndarray:
    """
    Solve one least-squares problem per column of `target`.

    Column j regresses target[observed[:, j], j] on design[observed[:, j]].
    Columns sharing an observation pattern are solved together.

    Returns
    -------
    np.ndarray
        Coefficients of shape (n_columns, design.shape[1]).
    """
    num_coefficients = design.shape[1]
    coefficients = np.zeros((target.shape[1], num_coefficients))
    if num_coefficients == 0:
        return coefficients

    patterns, inverse = np.unique(observed.T, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    for group, pattern in enumerate(patterns):
        columns = np.flatnonzero(inverse == group)
        rows = np.flatnonzero(pattern)
        sub_design = design[rows]
        solution, _, rank, _ = np.linalg.lstsq(sub_design, target[np.ix_(rows, columns)], rcond=None)
        if rank < num_coefficients:
            raise SingularMatrixError(
                f"Rank-deficient design in the {step} step at index {int(columns[0])}: "
                f"rank {rank} with {num_coefficients} coefficients and {rows.size} observations.",
                step=step,
                index=int(columns[0]),
            )
        coefficients[columns] = solution.T
    return coefficients


def _normalize(factors: np.ndarray, loadings: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Rotate so that F'F / T = I and L'L is diagonal, with a fixed sign convention."""
    num_factors = factors.shape[1]
    if num_factors == 0:
        return factors, loadings
    num_periods = factors.shape[0]
    left_vectors, singular_values, right_vectors_t = np.linalg.svd(factors @ loadings.T, full_matrices=False)
    left_vectors = left_vectors[:, :num_factors]
    right_vectors_t = right_vectors_t[:num_factors]
    signs = np.sign(left_vectors[np.argmax(np.abs(left_vectors), axis=0), np.arange(num_factors)])
    signs[signs == 0] = 1.0
    factors = np.sqrt(num_periods) * left_vectors * signs
    loadings = (right_vectors_t.T * singular_values[:num_factors]) * signs / np.sqrt(num_periods)
    return factors, loadings


def fit_factor_model(
    outcomes: np.ndarray,
    mask: np.ndarray,
    n_factors: int,
    covariates: Optional[np.ndarray] = None,
    force: str = "two-way",
    tol: float = 1e-7,
    max_iter: int = 1000,
    deadline: Optional[float] = None,
) -> FactorModel:
    """
    Fit the interactive fixed effects model by alternating least squares.

    Each sweep (a) solves every unit's loading vector (with its unit effect)
    by least squares against its own observed periods, (b) solves every
    period's factor vector (with its time effect) by least squares across the
    units observed in that period, (c) recomputes the grand mean and fixed
    effects as residual means, and (d) updates covariate coefficients.
    Every block is an exact minimiser, so the sum of squared residuals never
    increases.

    Parameters
    ----------
    outcomes : np.ndarray
        Outcome matrix (T x N). Values outside `mask` are ignored.
    mask : np.ndarray
        Boolean matrix (T x N); True marks cells used in the fit.
    n_factors : int
        Number of latent factors r.
    covariates : np.ndarray, optional
        Covariate array (T x N x K).
    force : str
        Additive fixed effects: "none", "unit", "time" or "two-way".
    tol : float
        Iterations stop once the relative decrease in the sum of squared
        residuals falls below `tol`, or as soon as a sweep fits the masked
        cells exactly (which can happen on the first sweep).
    max_iter : int
        Maximum number of sweeps.
    deadline : float, optional
        Value of `time.monotonic()` after which the fit is abandoned.

    Returns
    -------
    FactorModel
        The fitted, immutable model with its convergence diagnostics.

    Raises
    ------
    SingularMatrixError
        If a least-squares sub-step is rank deficient (for instance fewer
        control units than factors).
    ConvergenceError
        If `max_iter` sweeps complete without meeting `tol`.
    ReplicateTimeoutError
        If `deadline` passes before convergence.
    """
    if force not in FORCE_OPTIONS:
        raise GSCDataError(f"force must be one of {FORCE_OPTIONS}; got {force!r}")
    if n_factors < 0:
        raise GSCDataError(f"n_factors must be non-negative; got {n_factors}")
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != outcomes.shape:
        raise GSCDataError(f"mask shape {mask.shape} does not match outcomes shape {outcomes.shape}.")
    if not mask.any(axis=0).all() or not mask.any(axis=1).all():
        raise SingularMatrixError(
            "Every unit and every period needs at least one fitted observation.", step="mask"
        )

    num_periods, num_units = outcomes.shape
    use_unit_effects = force in ("unit", "two-way")
    use_time_effects = force in ("time", "two-way")
    observed_outcomes = np.where(mask, outcomes, 0.0)
    num_obs = int(mask.sum())

    # Covariate design over fitted cells is fixed, so its pseudo-inverse is computed once.
    num_covariates = 0 if covariates is None else covariates.shape[2]
    covariate_pinv = None
    if num_covariates > 0:
        covariate_design = covariates[mask]
        if np.linalg.matrix_rank(covariate_design) < num_covariates:
            raise SingularMatrixError(
                "Covariate design over fitted observations is rank deficient.", step="covariates"
            )
        covariate_pinv = np.linalg.pinv(covariate_design)

    # 1. Initialise: fixed effects and coefficients at zero, factors from the SVD.
    grand_mean = 0.0
    unit_effects = np.zeros(num_units)
    time_effects = np.zeros(num_periods)
    beta = np.zeros(num_covariates)
    factors = initial_factors(outcomes, mask, n_factors)
    loadings = np.zeros((num_units, n_factors))
    covariate_part = np.zeros((num_periods, num_units))

    scale = max(float(np.sum(observed_outcomes ** 2)), 1.0)
    previous_ssr: Optional[float] = None

    for iteration in range(1, max_iter + 1):
        if deadline is not None and time.monotonic() > deadline:
            current_ssr = float("nan") if previous_ssr is None else previous_ssr
            raise ReplicateTimeoutError(
                f"Factor model fit exceeded its deadline after {iteration - 1} iterations.",
                n_iter=iteration - 1,
                ssr=current_ssr,
            )

        # (a) Loadings (and unit effects) per unit, holding factors fixed.
        target = outcomes - grand_mean - time_effects[:, np.newaxis] - covariate_part
        design = np.column_stack([np.ones(num_periods), factors]) if use_unit_effects else factors
        unit_coefficients = _grouped_lstsq(design, target, mask, step="loadings")
        if use_unit_effects:
            unit_effects = unit_coefficients[:, 0]
            loadings = unit_coefficients[:, 1:]
        else:
            loadings = unit_coefficients

        # (b) Factors (and time effects) per period, holding loadings fixed.
        target = outcomes - grand_mean - unit_effects[np.newaxis, :] - covariate_part
        design = np.column_stack([np.ones(num_units), loadings]) if use_time_effects else loadings
        period_coefficients = _grouped_lstsq(design, target.T, mask.T, step="factors")
        if use_time_effects:
            time_effects = period_coefficients[:, 0]
            factors = period_coefficients[:, 1:]
        else:
            factors = period_coefficients

        # (c) Grand mean and fixed effects as residual means over fitted cells.
        interactive_part = factors @ loadings.T
        residual = np.where(mask, outcomes - interactive_part - covariate_part, 0.0)
        effects_part = unit_effects[np.newaxis, :] + time_effects[:, np.newaxis]
        grand_mean = float(np.sum(np.where(mask, residual - effects_part, 0.0)) / num_obs)
        if use_unit_effects:
            unit_residual = np.where(mask, residual - grand_mean - time_effects[:, np.newaxis], 0.0)
            unit_effects = unit_residual.sum(axis=0) / mask.sum(axis=0)
            grand_mean += float(unit_effects.mean())
            unit_effects = unit_effects - unit_effects.mean()
        if use_time_effects:
            time_residual = np.where(mask, residual - grand_mean - unit_effects[np.newaxis, :], 0.0)
            time_effects = time_residual.sum(axis=1) / mask.sum(axis=1)
            grand_mean += float(time_effects.mean())
            time_effects = time_effects - time_effects.mean()

        # (d) Covariate coefficients on what the rest of the model leaves over.
        if covariate_pinv is not None:
            remainder = outcomes - grand_mean - unit_effects[np.newaxis, :] - time_effects[:, np.newaxis] - interactive_part
            beta = covariate_pinv @ remainder[mask]
            covariate_part = covariates @ beta

        fitted = (
            grand_mean
            + unit_effects[np.newaxis, :]
            + time_effects[:, np.newaxis]
            + interactive_part
            + covariate_part
        )
        ssr = float(np.sum(np.where(mask, outcomes - fitted, 0.0) ** 2))

        exact_fit = ssr <= np.finfo(float).eps * scale
        if exact_fit or (previous_ssr is not None and previous_ssr - ssr <= tol * previous_ssr):
            factors, loadings = _normalize(factors, loadings)
            logger.debug(
                "ALS with r=%d converged after %d iterations (ssr=%.6g)", n_factors, iteration, ssr
            )
            return FactorModel(
                factors=factors,
                loadings=loadings,
                grand_mean=grand_mean,
                unit_effects=unit_effects,
                time_effects=time_effects,
                beta=beta,
                fit_mask=mask,
                force=force,
                n_iter=iteration,
                ssr=ssr,
                n_obs=num_obs,
            )
        previous_ssr = ssr

    raise ConvergenceError(
        f"Factor model with r={n_factors} did not converge within {max_iter} iterations "
        f"(final ssr={previous_ssr:.6g}, tol={tol}).",
        n_iter=max_iter,
        ssr=float(previous_ssr),
    )


def fitted_residuals(
    model: FactorModel,
    outcomes: np.ndarray,
    mask: np.ndarray,
    covariates: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Residuals on fitted cells; NaN elsewhere."""
    return np.where(mask, outcomes - model.predict(covariates), np.nan)

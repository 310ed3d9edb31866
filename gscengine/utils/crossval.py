import logging
from typing import Optional

import numpy as np
from sklearn.base import BaseEstimator
from sklearn.model_selection import KFold

from gscengine.config_models import CrossValidationResult, PanelData
from gscengine.exceptions import (
    ConvergenceError,
    InsufficientDataError,
    ReplicateTimeoutError,
    SingularMatrixError,
)
from gscengine.utils.factorutils import fit_factor_model

logger = logging.getLogger(__name__)

DEFAULT_R_CAP = 5
_TIE_RTOL = 1e-12


def default_r_max(panel: PanelData) -> int:
    """min(5, controls - 1, pre-periods - 2), floored at zero."""
    return max(0, min(DEFAULT_R_CAP, panel.n_controls - 1, panel.min_pre_periods - 2))


class FactorCountCV(BaseEstimator):
    """
    Cross-validated choice of the number of latent factors.

    Pre-treatment periods shared by all treated units are split into
    contiguous folds. For each fold the treated units' outcomes in the
    held-out periods are removed from the fitting sample, the factor model
    is fitted for every candidate r in [0, r_max], and the held-out cells are
    predicted. The r with the lowest mean squared prediction error averaged
    over folds is selected; ties go to the smaller r.

    Parameters
    ----------
    r_max : int, optional
        Largest candidate. None uses `default_r_max`.
    n_folds : int, default=5
        Number of folds (capped at the number of pre-treatment periods;
        equal to it means leave-one-period-out).
    force : str, default="two-way"
        Additive fixed effects passed to the factor model.
    tol : float, default=1e-7
        ALS tolerance.
    max_iter : int, default=1000
        ALS iteration cap.
    """

    def __init__(self, *,
                 r_max: Optional[int] = None,
                 n_folds: int = 5,
                 force: str = "two-way",
                 tol: float = 1e-7,
                 max_iter: int = 1000):
        self.r_max = r_max
        self.n_folds = n_folds
        self.force = force
        self.tol = tol
        self.max_iter = max_iter

    def _check_data(self, panel: PanelData) -> int:
        """Resolve r_max and fail before any fit if the panel cannot support it."""
        r_max = default_r_max(panel) if self.r_max is None else int(self.r_max)
        if panel.n_controls < r_max + 1:
            raise InsufficientDataError(
                f"Control pool has {panel.n_controls} units; at least r_max + 1 = {r_max + 1} "
                f"are needed to identify up to {r_max} factors."
            )
        if panel.min_pre_periods < r_max + 2:
            raise InsufficientDataError(
                f"Only {panel.min_pre_periods} pre-treatment periods available; cross-validation "
                f"over up to {r_max} factors needs at least r_max + 2 = {r_max + 2}."
            )
        return r_max

    def _fold_scores(
        self, panel: PanelData, test_rows: np.ndarray, r_max: int, deadline: Optional[float]
    ) -> np.ndarray:
        """Mean squared prediction error of every candidate r on one held-out fold."""
        treated_columns = panel.treated_index
        fold_mask = panel.fit_mask().copy()
        fold_mask[np.ix_(test_rows, treated_columns)] = False
        held_out = panel.outcomes[np.ix_(test_rows, treated_columns)]

        # Each treated unit keeps at least this many pre-periods for its own parameters.
        training_pre = panel.min_pre_periods - test_rows.size
        unit_parameters = 1 if self.force in ("unit", "two-way") else 0

        scores = np.full(r_max + 1, np.inf)
        for candidate in range(r_max + 1):
            if training_pre < candidate + unit_parameters:
                continue
            try:
                model = fit_factor_model(
                    panel.outcomes,
                    fold_mask,
                    candidate,
                    covariates=panel.covariates,
                    force=self.force,
                    tol=self.tol,
                    max_iter=self.max_iter,
                    deadline=deadline,
                )
            except ReplicateTimeoutError:
                raise
            except (SingularMatrixError, ConvergenceError) as e:
                logger.debug("CV candidate r=%d failed on fold: %s", candidate, e)
                continue
            predicted = model.predict(panel.covariates)[np.ix_(test_rows, treated_columns)]
            scores[candidate] = float(np.mean((held_out - predicted) ** 2))
        return scores

    def fit(self, panel: PanelData, deadline: Optional[float] = None) -> "FactorCountCV":
        """
        Run the cross-validation.

        Sets
        ----
        r_max_ : int
            Largest candidate actually considered.
        cv_scores_ : Dict[int, float]
            Mean squared prediction error per candidate (inf if it failed).
        n_factors_ : int
            Selected number of factors.
        n_folds_ : int
            Number of folds used.

        Raises
        ------
        InsufficientDataError
            Too few pre-treatment periods or control units for `r_max`, or no
            candidate could be fitted on every fold.
        """
        r_max = self._check_data(panel)
        pre_rows = np.arange(panel.min_pre_periods)
        splitter = KFold(n_splits=min(self.n_folds, pre_rows.size))

        fold_scores = [
            self._fold_scores(panel, pre_rows[test_idx], r_max, deadline)
            for _, test_idx in splitter.split(pre_rows)
        ]
        mean_scores = np.mean(np.vstack(fold_scores), axis=0)

        finite = np.isfinite(mean_scores)
        if not finite.any():
            raise InsufficientDataError(
                f"No factor count in [0, {r_max}] could be fitted on every cross-validation fold."
            )
        best_score = mean_scores[finite].min()
        # Parsimony: the smallest r whose score matches the minimum.
        selected = int(np.flatnonzero(mean_scores <= best_score * (1 + _TIE_RTOL) + np.finfo(float).tiny)[0])

        self.r_max_ = r_max
        self.n_folds_ = splitter.get_n_splits()
        self.cv_scores_ = {candidate: float(score) for candidate, score in enumerate(mean_scores)}
        self.n_factors_ = selected
        logger.debug("Factor-count CV selected r=%d (scores=%s)", selected, self.cv_scores_)
        return self


def select_factor_count(
    panel: PanelData,
    r_max: Optional[int] = None,
    n_folds: int = 5,
    force: str = "two-way",
    tol: float = 1e-7,
    max_iter: int = 1000,
    deadline: Optional[float] = None,
) -> CrossValidationResult:
    """
    Select the number of latent factors for `panel` by cross-validation.

    Returns
    -------
    CrossValidationResult
        The selected r, the candidate range and the mean squared prediction
        error per candidate.
    """
    selector = FactorCountCV(r_max=r_max, n_folds=n_folds, force=force, tol=tol, max_iter=max_iter)
    selector.fit(panel, deadline=deadline)
    return CrossValidationResult(
        n_factors=selector.n_factors_,
        r_max=selector.r_max_,
        n_folds=selector.n_folds_,
        cv_scores=selector.cv_scores_,
    )

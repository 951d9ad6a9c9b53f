"""Sklearn-compatible estimators with cross-validated component selection.

Example
-------
>>> from cvdim import BiCrossValidatedPCA, NestedCVComponentRegression
>>> pca = BiCrossValidatedPCA(max_components=8, random_state=1).fit(X)
>>> pca.n_components_, pca.cv_results_["mean_errors"]
>>> reg = NestedCVComponentRegression(max_components=10, random_state=1)
>>> reg.fit(X, y)
>>> reg.score_, reg.predictions_.head()
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import linalg
from sklearn.base import BaseEstimator, RegressorMixin, TransformerMixin
from sklearn.utils.validation import check_array, check_is_fitted

from .config import CVConfig
from .evaluators import (
    BiCrossValidationEvaluator,
    ComponentRegressionEvaluator,
    _scale_or_one,
)
from .exceptions import ConfigurationError, DataShapeError, FitFailure
from .metrics import reconstruction_rmse
from .prediction import predict_held_out
from .runstate import RunState, RunTracker
from .selection import evaluation_table, select_complexity
from .splitters import BalancedKFold, BiCrossValidationSplit

logger = logging.getLogger(__name__)


def _check_X(X) -> np.ndarray:
    try:
        return check_array(X, dtype=np.float64)
    except ValueError as exc:
        raise DataShapeError(str(exc), stage=RunState.INITIALIZED.value) from exc


def _check_X_y(X, y) -> tuple[np.ndarray, np.ndarray]:
    X = _check_X(X)
    try:
        y = np.asarray(y, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise DataShapeError(
            f"target is not numeric: {exc}", stage=RunState.INITIALIZED.value
        ) from exc
    if y.ndim == 2 and y.shape[1] == 1:
        y = y.ravel()
    if y.ndim not in (1, 2):
        raise DataShapeError(
            f"target must be 1-D or 2-D, got shape {y.shape}",
            stage=RunState.INITIALIZED.value,
        )
    if len(y) != len(X):
        raise DataShapeError(
            f"X has {len(X)} rows but y has {len(y)}",
            stage=RunState.INITIALIZED.value,
        )
    if not np.all(np.isfinite(y)):
        raise DataShapeError(
            "target contains NaN or infinite values",
            stage=RunState.INITIALIZED.value,
        )
    return X, y


def _score_candidate(evaluator, fold: Any, n_components: int, args: tuple) -> tuple[Any, int, float]:
    """One Evaluation Record; a failed fit is recorded as NaN."""
    try:
        err = float(evaluator.evaluate(*args, n_components))
    except FitFailure as exc:
        logger.debug("fold %s, n_components=%d failed: %s", fold, n_components, exc)
        err = np.nan
    return fold, n_components, err


class BiCrossValidatedPCA(TransformerMixin, BaseEstimator):
    r"""PCA whose rank is chosen by bi-cross-validation.

    Rows and columns of :math:`X` are partitioned independently; for every
    held-out row × column block a rank-*c* truncated SVD of the fully
    retained block predicts the held-out block (see
    :class:`~cvdim.evaluators.BiCrossValidationEvaluator`).  The rank with
    the lowest mean block RMSE over all blocks and repeats is kept (ties go
    to the smaller rank) and a final PCA of that rank is fitted on all of
    :math:`X`.

    Parameters
    ----------
    max_components : int, default 10
        Candidate ranks are ``0..max_components``.  Ranks larger than a
        training block allows are recorded as failed (NaN).
    n_row_folds, n_col_folds : int, default 2
        Row and column fold counts.
    n_repeats : int, default 10
        Independent re-partitions; repeat *r* is seeded with
        ``[random_state, r]``.
    standardize : bool, default True
        z-score columns (training-row statistics inside each block).
    tolerance : float, default 0.0
        Parsimony band for the selector, see
        :func:`~cvdim.selection.select_complexity`.
    random_state : int, default 0
        Explicit seed; the run never draws from global random state.
    n_jobs : int or None
        Parallel workers for block evaluations (:class:`joblib.Parallel`).

    Attributes
    ----------
    n_components\_ : int
        Selected rank.
    components\_ : ndarray (n_components\_, p)
        Principal axes (rows).  Use :attr:`loadings_` for the (p, k) form.
    explained_variance\_ : ndarray (n_components\_,)
    all_eigenvalues\_ : ndarray (p,)
    mean\_ : ndarray (p,)
    scale\_ : ndarray (p,)
        Column standard deviations, or ones when ``standardize=False``.
    selection\_ : :class:`~cvdim.selection.SelectionResult`
    cv_results\_ : dict
        ``table`` (blocks × ranks), ``folds`` (block id → repeat, row fold,
        column fold), ``mean_errors``, ``std_errors``, ``n_scored``,
        ``candidate_mask``, ``failed_folds``.
    run_history\_ : list of str
    """

    def __init__(
        self,
        max_components: int = 10,
        n_row_folds: int = 2,
        n_col_folds: int = 2,
        n_repeats: int = 10,
        standardize: bool = True,
        tolerance: float = 0.0,
        random_state: int = 0,
        n_jobs: int | None = None,
    ) -> None:
        self.max_components = max_components
        self.n_row_folds = n_row_folds
        self.n_col_folds = n_col_folds
        self.n_repeats = n_repeats
        self.standardize = standardize
        self.tolerance = tolerance
        self.random_state = random_state
        self.n_jobs = n_jobs

    # ---- properties ----------------------------------------------------------

    @property
    def loadings_(self) -> np.ndarray:
        """Principal axes as columns, shape ``(p, n_components_)``."""
        check_is_fitted(self)
        return self.components_.T

    def _config(self) -> CVConfig:
        cfg = CVConfig(
            n_folds=self.n_row_folds,
            max_components=self.max_components,
            random_state=self.random_state,
            n_repeats=self.n_repeats,
            tolerance=self.tolerance,
            n_jobs=self.n_jobs,
        )
        try:
            cfg.validate()
            if self.n_col_folds < 2:
                raise ConfigurationError(
                    f"n_col_folds must be >= 2, got {self.n_col_folds}"
                )
        except ConfigurationError as exc:
            raise ConfigurationError(str(exc), stage=RunState.INITIALIZED.value) from exc
        return cfg

    # ---- fit -----------------------------------------------------------------

    def fit(self, X: np.ndarray, y=None) -> "BiCrossValidatedPCA":  # noqa: ARG002
        """Select the rank by bi-cross-validation, then fit PCA on all of *X*."""
        X = _check_X(X)
        cfg = self._config()
        n, p = X.shape
        run = RunTracker()
        evaluator = BiCrossValidationEvaluator(standardize=self.standardize)

        # ---- partition -------------------------------------------------------
        with run.stage(RunState.PARTITIONED):
            blocks = []
            fold_rows = []
            for r in range(cfg.n_repeats):
                splitter = BiCrossValidationSplit(
                    self.n_row_folds,
                    self.n_col_folds,
                    random_state=[cfg.random_state, r],
                )
                for i, j, row_test, col_test in splitter.split(X):
                    block_id = len(blocks)
                    blocks.append((block_id, row_test, col_test))
                    fold_rows.append((block_id, r, i, j))
            folds = pd.DataFrame(
                fold_rows, columns=["fold", "repeat", "row_fold", "col_fold"]
            ).set_index("fold")

        # ---- evaluate every (block, rank) pair -------------------------------
        with run.stage(RunState.EVALUATING):
            records = Parallel(n_jobs=cfg.n_jobs)(
                delayed(_score_candidate)(evaluator, b, c, (X, rt, ct))
                for b, rt, ct in blocks
                for c in cfg.complexities
            )
            table = evaluation_table(
                {(f, c): err for f, c, err in records},
                folds=list(folds.index),
                complexities=cfg.complexities,
            )

        # ---- select ----------------------------------------------------------
        with run.stage(RunState.SELECTING):
            selection = select_complexity(table, tolerance=cfg.tolerance)
            if selection.failed_folds:
                warnings.warn(
                    f"blocks {list(selection.failed_folds)} produced no finite error "
                    "at any rank and are excluded from the selection",
                    UserWarning,
                    stacklevel=2,
                )
            logger.info(
                "bi-cross-validation selected n_components=%d (mean RMSE %.4f)",
                selection.n_components,
                float(selection.mean_errors[selection.n_components]),
            )

        # ---- final fit on all rows -------------------------------------------
        with run.stage(RunState.AGGREGATED):
            self.mean_ = X.mean(axis=0)
            self.scale_ = _scale_or_one(X) if self.standardize else np.ones(p)
            _, s, vt = linalg.svd(self._to_working_space(X), full_matrices=False)
            variances = np.zeros(p)
            variances[: len(s)] = s**2 / max(n - 1, 1)
            k = min(selection.n_components, len(s))

            self.n_features_in_ = p
            self.components_ = vt[:k]
            self.explained_variance_ = variances[:k]
            self.all_eigenvalues_ = variances
            self.n_components_ = k
            self.selection_ = selection
            self.cv_results_ = {
                "table": table,
                "folds": folds,
                "mean_errors": selection.mean_errors,
                "std_errors": selection.std_errors,
                "n_scored": selection.n_scored,
                "candidate_mask": selection.candidate_mask,
                "failed_folds": list(selection.failed_folds),
            }

        run.advance(RunState.DONE)
        self.run_history_ = [s.value for s in run.history]
        return self

    # ---- working space -------------------------------------------------------

    def _to_working_space(self, X: np.ndarray) -> np.ndarray:
        return (X - self.mean_) / self.scale_

    def _check_features(self, X) -> np.ndarray:
        X = _check_X(X)
        if X.shape[1] != self.n_features_in_:
            raise DataShapeError(
                f"X has {X.shape[1]} features, expected {self.n_features_in_}"
            )
        return X

    # ---- transform / reconstruct --------------------------------------------

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Component scores of *X*, shape ``(n, n_components_)``."""
        check_is_fitted(self)
        return self._to_working_space(self._check_features(X)) @ self.loadings_

    def inverse_transform(self, X_transformed: np.ndarray) -> np.ndarray:
        """Map scores back to the units of the training data."""
        check_is_fitted(self)
        scores = np.atleast_2d(np.asarray(X_transformed, dtype=float))
        return (scores @ self.components_) * self.scale_ + self.mean_

    def reconstruction_error(
        self,
        X: np.ndarray,
        k: int | None = None,
        per_obs: bool = False,
    ) -> float | np.ndarray:
        """RMSE of the rank-*k* reconstruction in the centred (scaled) space.

        ``k`` defaults to the selected rank and cannot exceed it.
        """
        check_is_fitted(self)
        rank = self.n_components_ if k is None else int(k)
        if not 0 <= rank <= self.n_components_:
            raise ConfigurationError(
                f"k must lie in [0, {self.n_components_}], got {k!r}"
            )
        Z = self._to_working_space(self._check_features(X))
        return reconstruction_rmse(Z, self.loadings_[:, :rank], per_obs=per_obs)

    def score(self, X: np.ndarray, y=None) -> float:  # noqa: ARG002
        """Negative reconstruction RMSE at the selected rank."""
        return -float(self.reconstruction_error(X))


class NestedCVComponentRegression(RegressorMixin, BaseEstimator):
    r"""Component regression with nested cross-validated complexity selection.

    Outer folds estimate out-of-sample performance; inside each outer
    training subset an inner k-fold search picks the number of components,
    the model is refitted at that complexity and predicts the outer held-out
    rows.  The pooled predictions give one correlation with the truth.  A
    final model is fitted on all rows at the complexity selected by a plain
    k-fold search over the outer folds.

    Parameters
    ----------
    max_components : int, default 10
        Candidates are ``0..max_components`` (0 = intercept only).
    n_outer_folds, n_inner_folds : int, default 5
    model : {``'pls'``, ``'pcr'``}, default ``'pls'``
    scale : bool, default True
        Scale predictors with training-subset statistics.
    aggregation : {``'pooled'``, ``'per-fold-mean'``}, default ``'pooled'``
        Correlation over all pooled predictions, or mean of per-fold
        correlations.
    tolerance : float, default 0.0
        Parsimony band for the selector.
    random_state : int, default 0
        Outer folds use this seed directly; inner folds of outer fold *f*
        use ``[random_state, f + 1]``.
    n_jobs : int or None
        Parallel workers (:class:`joblib.Parallel`).
    max_iter : int, default 500
        NIPALS iterations for PLS.
    evaluator : object or None
        Replaces the default
        :class:`~cvdim.evaluators.ComponentRegressionEvaluator`; must
        provide ``evaluate``, ``fit`` and ``predict``.

    Attributes
    ----------
    n_components\_ : int
        Complexity of the final model.
    estimator\_ : fitted regressor on all rows.
    fold_assignment\_ : ndarray (n,) – outer fold of every observation.
    selected_components\_ : Series (outer fold → complexity, ``<NA>`` when
        every candidate failed).
    inner_results\_ : dict outer fold → SelectionResult or None.
    prediction\_ : :class:`~cvdim.prediction.PredictionResult`
    predictions\_ : DataFrame – pooled out-of-fold predictions.
    score\_ : float – aggregate held-out correlation (mean over targets
        for multi-target ``y``).
    target_scores\_ : Series – held-out correlation of each target column.
    rmse\_ : float – pooled held-out RMSE.
    flagged_folds\_ : list
    selection\_ : SelectionResult or None – outer k-fold search for the final
        model; None when every candidate failed there and the most frequent
        per-fold selection was used instead.
    cv_results\_ : dict
    run_history\_ : list of str
    """

    def __init__(
        self,
        max_components: int = 10,
        n_outer_folds: int = 5,
        n_inner_folds: int = 5,
        model: str = "pls",
        scale: bool = True,
        aggregation: str = "pooled",
        tolerance: float = 0.0,
        random_state: int = 0,
        n_jobs: int | None = None,
        max_iter: int = 500,
        evaluator: Any = None,
    ) -> None:
        self.max_components = max_components
        self.n_outer_folds = n_outer_folds
        self.n_inner_folds = n_inner_folds
        self.model = model
        self.scale = scale
        self.aggregation = aggregation
        self.tolerance = tolerance
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.max_iter = max_iter
        self.evaluator = evaluator

    def _config(self) -> CVConfig:
        cfg = CVConfig(
            n_folds=self.n_outer_folds,
            max_components=self.max_components,
            random_state=self.random_state,
            aggregation=self.aggregation,
            tolerance=self.tolerance,
            n_jobs=self.n_jobs,
        )
        try:
            cfg.validate()
            if self.n_inner_folds < 2:
                raise ConfigurationError(
                    f"n_inner_folds must be >= 2, got {self.n_inner_folds}"
                )
        except ConfigurationError as exc:
            raise ConfigurationError(str(exc), stage=RunState.INITIALIZED.value) from exc
        return cfg

    def _evaluator(self):
        if self.evaluator is not None:
            return self.evaluator
        try:
            return ComponentRegressionEvaluator(
                model=self.model, scale=self.scale, max_iter=self.max_iter
            )
        except ConfigurationError as exc:
            raise ConfigurationError(str(exc), stage=RunState.INITIALIZED.value) from exc

    # ---- fit -----------------------------------------------------------------

    def fit(self, X: np.ndarray, y: np.ndarray) -> "NestedCVComponentRegression":
        """Run the nested cross-validation and fit the final model.

        Parameters
        ----------
        X : array-like (n_samples, n_features)
        y : array-like (n_samples,) or (n_samples, n_targets)
        """
        X, y = _check_X_y(X, y)
        cfg = self._config()
        evaluator = self._evaluator()
        run = RunTracker()

        # ---- partition -------------------------------------------------------
        with run.stage(RunState.PARTITIONED):
            outer = BalancedKFold(cfg.n_folds, random_state=cfg.random_state)
            fold_assignment = outer.assignment(len(X))
            outer_splits = list(outer.split_with_fold(X))
            inner_splits = {}
            for fold, tr_idx, _te_idx in outer_splits:
                inner = BalancedKFold(
                    self.n_inner_folds, random_state=[cfg.random_state, fold + 1]
                )
                inner_splits[fold] = [
                    (i, tr_idx[i_tr], tr_idx[i_te])
                    for i, i_tr, i_te in inner.split_with_fold(tr_idx)
                ]

        # ---- evaluate --------------------------------------------------------
        with run.stage(RunState.EVALUATING):
            jobs = [
                ((fold, i), tr, te)
                for fold, splits in inner_splits.items()
                for i, tr, te in splits
            ]
            jobs += [(("outer", fold), tr, te) for fold, tr, te in outer_splits]
            records = Parallel(n_jobs=cfg.n_jobs)(
                delayed(_score_candidate)(evaluator, key, c, (X, y, tr, te))
                for key, tr, te in jobs
                for c in cfg.complexities
            )
            by_group: dict[Any, dict] = {}
            for (group, sub), c, err in records:
                by_group.setdefault(group, {})[(sub, c)] = err
            inner_tables = {
                fold: evaluation_table(
                    by_group.get(fold, {}),
                    folds=list(range(self.n_inner_folds)),
                    complexities=cfg.complexities,
                )
                for fold, _tr, _te in outer_splits
            }
            outer_table = evaluation_table(
                by_group.get("outer", {}),
                folds=[fold for fold, _tr, _te in outer_splits],
                complexities=cfg.complexities,
            )

        # ---- select ----------------------------------------------------------
        with run.stage(RunState.SELECTING):
            inner_results: dict[Any, Any] = {}
            selected: dict[Any, int | None] = {}
            for fold, table in inner_tables.items():
                try:
                    res = select_complexity(table, tolerance=cfg.tolerance)
                except FitFailure as exc:
                    logger.warning("outer fold %s: %s", fold, exc)
                    inner_results[fold] = None
                    selected[fold] = None
                    continue
                inner_results[fold] = res
                selected[fold] = res.n_components
            logger.info("per-fold selected n_components: %s", selected)
            try:
                final_selection = select_complexity(outer_table, tolerance=cfg.tolerance)
                final_components = final_selection.n_components
            except FitFailure:
                chosen = pd.Series([s for s in selected.values() if s is not None], dtype=int)
                if chosen.empty:
                    raise
                final_selection = None
                final_components = int(chosen.mode().min())
                logger.warning(
                    "outer k-fold search failed for every candidate; final model "
                    "uses the most frequent per-fold selection n_components=%d",
                    final_components,
                )

        # ---- predict held-out rows -------------------------------------------
        with run.stage(RunState.PREDICTING):
            prediction = predict_held_out(
                evaluator,
                X,
                y,
                outer_splits,
                selected,
                aggregation=cfg.aggregation,
                n_jobs=cfg.n_jobs,
            )

        # ---- aggregate and refit on all rows ---------------------------------
        with run.stage(RunState.AGGREGATED):
            self.n_components_ = final_components
            self.estimator_ = evaluator.fit(
                X, y, np.arange(len(X)), self.n_components_
            )

        run.advance(RunState.DONE)

        self.n_features_in_ = X.shape[1]
        self._y_ndim = y.ndim
        self.fold_assignment_ = fold_assignment
        self.selected_components_ = pd.Series(
            [selected[f] for f, _tr, _te in outer_splits],
            index=pd.Index([f for f, _tr, _te in outer_splits], name="fold"),
            dtype="Int64",
            name="n_components",
        )
        self.inner_results_ = inner_results
        self.selection_ = final_selection
        self.prediction_ = prediction
        self.predictions_ = prediction.predictions
        self.score_ = prediction.score
        self.target_scores_ = prediction.target_scores
        self.rmse_ = prediction.rmse
        self.flagged_folds_ = list(prediction.flagged_folds)
        self.cv_results_ = {
            "inner_tables": inner_tables,
            "outer_table": outer_table,
            "mean_errors": None if final_selection is None else final_selection.mean_errors,
            "fold_scores": prediction.fold_scores,
            "target_scores": prediction.target_scores,
            "aggregation": prediction.aggregation,
            "failed_folds": [f for f, s in selected.items() if s is None],
        }
        self.run_history_ = [s.value for s in run.history]
        return self

    # ---- predict -------------------------------------------------------------

    def predict(self, X: np.ndarray) -> np.ndarray:
        """Predict with the final model fitted on all training rows."""
        check_is_fitted(self)
        X = _check_X(X)
        if X.shape[1] != self.n_features_in_:
            raise DataShapeError(
                f"X has {X.shape[1]} features, expected {self.n_features_in_}"
            )
        return self._evaluator().predict(self.estimator_, X, self._y_ndim)

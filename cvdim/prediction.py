"""Refit at the selected complexity per fold and predict the held-out rows."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .config import AGGREGATIONS
from .exceptions import ConfigurationError, FitFailure, InsufficientDataError
from .metrics import (
    mean_correlation,
    per_fold_target_correlations,
    rmse,
    target_correlations,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionResult:
    """Pooled out-of-fold predictions and their aggregate statistic.

    Attributes
    ----------
    predictions : DataFrame
        One row per observation, indexed by original position, with
        ``y_true``/``y_pred`` (``y_true_<j>``/``y_pred_<j>`` for multi-target
        ``y``), ``fold`` and ``n_components``.
    score : float
        Held-out correlation.  With ``'pooled'`` aggregation it is computed
        once over all pooled predictions, with ``'per-fold-mean'`` it is the
        mean of the per-fold correlations.  Each target column is correlated
        on its own; for multi-target ``y`` the score is the mean of
        ``target_scores``.
    rmse : float
        Pooled RMSE over unflagged folds.
    fold_scores : Series
        Correlation per fold, averaged over targets (NaN for flagged folds).
    target_scores : Series
        The aggregated correlation of each target column, indexed by
        ``target`` (a single entry for 1-D ``y``).
    aggregation : str
    flagged_folds : list
        Folds without predictions (no selectable complexity or failed refit).
    """

    predictions: pd.DataFrame
    score: float
    rmse: float
    fold_scores: pd.Series
    target_scores: pd.Series
    aggregation: str
    flagged_folds: list = field(default_factory=list)


def _target_names(y: np.ndarray) -> tuple[list[str], list[str]]:
    if y.ndim == 1:
        return ["y_true"], ["y_pred"]
    q = y.shape[1]
    return [f"y_true_{j}" for j in range(q)], [f"y_pred_{j}" for j in range(q)]


def _fold_frame(
    fold: Any,
    test_idx: np.ndarray,
    y_true: np.ndarray,
    y_pred: np.ndarray,
    n_components: int | None,
) -> pd.DataFrame:
    true_names, pred_names = _target_names(y_true)
    yt = y_true.reshape(len(test_idx), -1)
    yp = y_pred.reshape(len(test_idx), -1)
    frame = pd.DataFrame(index=pd.Index(test_idx, name="observation"))
    for j, name in enumerate(true_names):
        frame[name] = yt[:, j]
    for j, name in enumerate(pred_names):
        frame[name] = yp[:, j]
    frame["fold"] = fold
    frame["n_components"] = pd.array(
        [n_components] * len(test_idx), dtype="Int64"
    )
    return frame


def predict_fold(
    evaluator,
    X: np.ndarray,
    y: np.ndarray,
    fold: Any,
    train_idx: np.ndarray,
    test_idx: np.ndarray,
    n_components: int | None,
) -> tuple[pd.DataFrame, bool]:
    """Predict one fold's held-out rows.

    Returns ``(frame, ok)``; ``ok`` is False when the fold had no selected
    complexity or the refit failed, in which case predictions are NaN.
    """
    y_true = y[test_idx]
    if n_components is None:
        return _fold_frame(fold, test_idx, y_true, np.full(y_true.shape, np.nan), None), False
    try:
        model = evaluator.fit(X, y, train_idx, n_components)
        y_pred = evaluator.predict(model, X[test_idx], y.ndim)
    except FitFailure as exc:
        logger.warning("refit of fold %s at n_components=%d failed: %s", fold, n_components, exc)
        return (
            _fold_frame(fold, test_idx, y_true, np.full(y_true.shape, np.nan), n_components),
            False,
        )
    return _fold_frame(fold, test_idx, y_true, y_pred, n_components), True


def predict_held_out(
    evaluator,
    X: np.ndarray,
    y: np.ndarray,
    splits: Sequence[tuple[Any, np.ndarray, np.ndarray]],
    selected: Mapping[Any, int | None],
    aggregation: str = "pooled",
    n_jobs: int | None = None,
) -> PredictionResult:
    """Out-of-fold predictions at each fold's selected complexity.

    Parameters
    ----------
    evaluator : object with ``fit(X, y, train_idx, n_components)`` and
        ``predict(model, X, y_ndim)``.
    X, y : arrays with matching first dimension.
    splits : sequence of ``(fold, train_idx, test_idx)``.
    selected : mapping fold → complexity, ``None`` for folds in which every
        candidate failed.
    aggregation : {``'pooled'``, ``'per-fold-mean'``}
    n_jobs : passed to :class:`joblib.Parallel`.

    Raises
    ------
    InsufficientDataError
        If any fold's held-out subset is empty.
    """
    if aggregation not in AGGREGATIONS:
        raise ConfigurationError(
            f"aggregation must be one of {AGGREGATIONS}, got {aggregation!r}"
        )
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    for fold, _tr, te in splits:
        if len(te) == 0:
            raise InsufficientDataError(f"held-out subset of fold {fold} is empty")

    outputs = Parallel(n_jobs=n_jobs)(
        delayed(predict_fold)(evaluator, X, y, fold, tr, te, selected.get(fold))
        for fold, tr, te in splits
    )

    frames = [frame for frame, _ in outputs]
    flagged = [fold for (fold, _, _), (_, ok) in zip(splits, outputs) if not ok]
    predictions = pd.concat(frames).sort_index()

    true_cols, pred_cols = _target_names(y)
    valid = ~predictions["fold"].isin(flagged)
    yt = predictions.loc[valid, true_cols].to_numpy(dtype=float)
    yp = predictions.loc[valid, pred_cols].to_numpy(dtype=float)
    folds = predictions.loc[valid, "fold"].to_numpy()

    by_fold = per_fold_target_correlations(yt, yp, folds)
    fold_scores = pd.Series(
        {fold: mean_correlation(by_fold.get(fold, np.nan)) for fold, _, _ in splits},
        name="correlation",
        dtype=float,
    )
    fold_scores.index.name = "fold"
    if aggregation == "pooled":
        per_target = target_correlations(yt, yp)
    else:
        by_fold_matrix = np.array(list(by_fold.values()), dtype=float).reshape(-1, len(true_cols))
        per_target = np.array(
            [mean_correlation(by_fold_matrix[:, j]) for j in range(len(true_cols))]
        )
    target_scores = pd.Series(
        per_target,
        index=pd.RangeIndex(len(true_cols), name="target"),
        name="correlation",
        dtype=float,
    )
    score = mean_correlation(per_target)
    pooled_rmse = rmse(yt, yp) if len(yt) else np.nan

    if flagged:
        warnings.warn(
            f"folds {flagged} produced no predictions and are excluded from "
            f"the {aggregation} statistic",
            UserWarning,
            stacklevel=2,
        )
    logger.info(
        "held-out %s correlation %.4f over %d observations (%d flagged folds)",
        aggregation,
        score,
        int(valid.sum()),
        len(flagged),
    )
    return PredictionResult(
        predictions=predictions,
        score=score,
        rmse=pooled_rmse,
        fold_scores=fold_scores,
        target_scores=target_scores,
        aggregation=aggregation,
        flagged_folds=flagged,
    )

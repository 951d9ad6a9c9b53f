"""Reconstruction / prediction error and correlation statistics."""

from __future__ import annotations

import numpy as np
from scipy import stats


def rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    r"""Root-mean-square error over all entries.

    .. math:: \mathrm{RMSE} = \sqrt{\tfrac{1}{m}\sum_i (y_i - \hat y_i)^2}
    """
    a = np.asarray(y_true, dtype=float)
    b = np.asarray(y_pred, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"shape mismatch: {a.shape} vs {b.shape}")
    if a.size == 0:
        return np.nan
    return float(np.sqrt(np.mean((a - b) ** 2)))


def reconstruction_rmse(
    Z: np.ndarray,
    V: np.ndarray,
    per_obs: bool = False,
) -> np.ndarray | float:
    r"""RMSE of the rank-*k* projection :math:`Z V V^\top`.

    Parameters
    ----------
    Z : ndarray, shape (n, p) – centred data.
    V : ndarray, shape (p, k) – orthonormal loading matrix (``k`` may be 0).
    per_obs : bool – if True, return per-observation RMSE shape (n,).
    """
    Z = np.asarray(Z, dtype=float)
    Z_hat = (Z @ V) @ V.T
    if per_obs:
        return np.sqrt(np.mean((Z - Z_hat) ** 2, axis=1))
    return rmse(Z, Z_hat)


def pearson_r(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Pearson correlation of two vectors.

    Returns NaN (instead of raising) when fewer than two finite pairs are
    available or either side is constant.
    """
    a = np.asarray(y_true, dtype=float).ravel()
    b = np.asarray(y_pred, dtype=float).ravel()
    ok = np.isfinite(a) & np.isfinite(b)
    a, b = a[ok], b[ok]
    if len(a) < 2 or np.ptp(a) == 0 or np.ptp(b) == 0:
        return np.nan
    r = float(stats.pearsonr(a, b)[0])
    return float(np.clip(r, -1.0, 1.0))


def _columns(values: np.ndarray) -> np.ndarray:
    a = np.asarray(values, dtype=float)
    return a if a.ndim == 2 else a.reshape(-1, 1)


def mean_correlation(values: np.ndarray) -> float:
    """NaN-ignoring mean of correlations; NaN if none is defined."""
    vals = np.asarray(values, dtype=float)
    if not np.any(np.isfinite(vals)):
        return np.nan
    return float(np.nanmean(vals))


def target_correlations(
    y_true: np.ndarray,
    y_pred: np.ndarray,
) -> np.ndarray:
    """Pearson r of every target column, shape ``(n_targets,)``.

    A 1-D ``y`` is a single target.  Columns are never pooled together, so
    offsets between targets cannot inflate the correlation.
    """
    a, b = _columns(y_true), _columns(y_pred)
    if a.shape != b.shape:
        raise ValueError(f"shape mismatch: {a.shape} vs {b.shape}")
    return np.array([pearson_r(a[:, j], b[:, j]) for j in range(a.shape[1])])


def pooled_correlation(
    y_true: np.ndarray,
    y_pred: np.ndarray,
) -> float:
    """Correlation over all pooled out-of-fold predictions, averaged over targets."""
    return mean_correlation(target_correlations(y_true, y_pred))


def per_fold_target_correlations(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    folds: np.ndarray,
) -> dict[int, np.ndarray]:
    """Per-target correlations within each fold (fold → array of length n_targets)."""
    a, b = _columns(y_true), _columns(y_pred)
    f = np.asarray(folds)
    return {int(k): target_correlations(a[f == k], b[f == k]) for k in np.unique(f)}


def per_fold_mean_correlation(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    folds: np.ndarray,
) -> tuple[float, dict[int, float]]:
    """Mean of per-fold correlations.

    Within a fold the correlation of a multi-target ``y`` is the mean of the
    per-target correlations.

    Returns
    -------
    mean_r : float – NaN if no fold yields a defined correlation.
    by_fold : dict fold → r.
    """
    by_fold = {
        k: mean_correlation(r)
        for k, r in per_fold_target_correlations(y_true, y_pred, folds).items()
    }
    return mean_correlation(list(by_fold.values())), by_fold

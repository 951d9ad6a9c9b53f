"""Load a numeric observation × feature matrix from CSV."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from .exceptions import DataShapeError

logger = logging.getLogger(__name__)


def load_matrix(
    path: str | Path,
    target: str | Sequence[str] | None = None,
    columns: Sequence[str] | None = None,
    index_col: str | int | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame | pd.Series | None]:
    """Read *path* and split it into features and (optionally) target.

    Parameters
    ----------
    path : CSV file with a header row.
    target : column name(s) to return as ``y``.
    columns : feature columns; default all non-target columns.
    index_col : passed to :func:`pandas.read_csv`.

    Returns
    -------
    X : DataFrame of float, shape (n, p)
    y : Series / DataFrame of float, or None

    Raises
    ------
    DataShapeError
        Unknown columns, non-numeric entries or missing values.
    """
    frame = pd.read_csv(path, index_col=index_col)
    target_cols = [target] if isinstance(target, str) else list(target or [])
    feature_cols = (
        list(columns)
        if columns is not None
        else [c for c in frame.columns if c not in target_cols]
    )
    missing = [c for c in feature_cols + target_cols if c not in frame.columns]
    if missing:
        raise DataShapeError(f"{path}: columns not found: {missing}")

    X = _numeric(frame[feature_cols], path)
    logger.info("loaded %s with %d observations x %d features", path, *X.shape)
    if not target_cols:
        return X, None
    y = _numeric(frame[target_cols], path)
    if isinstance(target, str):
        return X, y[target]
    return X, y


def _numeric(frame: pd.DataFrame, path) -> pd.DataFrame:
    out = frame.apply(pd.to_numeric, errors="coerce")
    bad = out.isna() & frame.notna()
    if bad.to_numpy().any():
        cols = list(frame.columns[bad.any(axis=0)])
        raise DataShapeError(f"{path}: non-numeric entries in columns {cols}")
    if out.isna().to_numpy().any():
        cols = list(frame.columns[out.isna().any(axis=0)])
        raise DataShapeError(f"{path}: missing values in columns {cols}")
    if not np.all(np.isfinite(out.to_numpy(dtype=float))):
        raise DataShapeError(f"{path}: infinite values")
    return out.astype(float)

"""Pick the number of components from a folds × complexities error table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, FitFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of :func:`select_complexity`.

    Attributes
    ----------
    n_components : int
        Selected complexity.
    mean_errors, std_errors : Series indexed by complexity
        NaN-ignoring mean / std across folds.
    n_scored : Series indexed by complexity
        Number of folds with a finite score.
    candidate_mask : Series of bool
        Complexities inside the tolerance band.
    failed_folds : list
        Folds in which every candidate failed.
    table : DataFrame
        The evaluation table the selection was made from.
    """

    n_components: int
    mean_errors: pd.Series
    std_errors: pd.Series
    n_scored: pd.Series
    candidate_mask: pd.Series
    failed_folds: list = field(default_factory=list)
    table: pd.DataFrame | None = None


def evaluation_table(
    records: dict[tuple[object, int], float],
    folds: list | None = None,
    complexities: list[int] | None = None,
) -> pd.DataFrame:
    """Arrange ``{(fold, complexity): error}`` into a folds × complexities table.

    Missing pairs become NaN.
    """
    if folds is None:
        folds = sorted({f for f, _ in records})
    if complexities is None:
        complexities = sorted({c for _, c in records})
    data = np.full((len(folds), len(complexities)), np.nan, dtype=float)
    row_pos = {f: i for i, f in enumerate(folds)}
    col_pos = {c: j for j, c in enumerate(complexities)}
    for (f, c), val in records.items():
        data[row_pos[f], col_pos[c]] = val
    return pd.DataFrame(
        data,
        index=pd.Index(folds, name="fold"),
        columns=pd.Index(complexities, name="n_components"),
    )


def select_complexity(
    table: pd.DataFrame,
    tolerance: float = 0.0,
) -> SelectionResult:
    """Select the complexity with the lowest mean error across folds.

    Parameters
    ----------
    table : DataFrame (folds × complexities)
        NaN entries are failed candidates and are excluded from the means.
    tolerance : float, default 0.0
        Candidates with ``mean <= (1 + tolerance) * min(mean)`` are
        eligible; the smallest eligible complexity is selected.  With the
        default only exact ties are eligible.

    Raises
    ------
    ConfigurationError
        Empty table or negative tolerance.
    FitFailure
        No complexity has a finite score in any fold.
    """
    if not tolerance >= 0.0:
        raise ConfigurationError(f"tolerance must be >= 0, got {tolerance!r}")
    if table.shape[1] == 0 or table.shape[0] == 0:
        raise ConfigurationError("evaluation table is empty", stage="selecting")

    values = table.to_numpy(dtype=float)
    finite = np.isfinite(values)
    failed_folds = [f for f, ok in zip(table.index, finite.any(axis=1)) if not ok]
    if failed_folds:
        logger.info("every candidate failed in folds %s", failed_folds)

    n_scored = pd.Series(finite.sum(axis=0), index=table.columns, name="n_scored")
    clean = table.where(finite)
    mean_errors = clean.mean(axis=0, skipna=True).rename("mean_error")
    std_errors = clean.std(axis=0, ddof=1, skipna=True).rename("std_error")
    means = mean_errors.to_numpy(dtype=float)

    ok = np.isfinite(means)
    if not np.any(ok):
        raise FitFailure("no candidate complexity produced a finite score", stage="selecting")

    complexities = np.asarray(table.columns, dtype=int)
    if len(complexities) == 1:
        cand = ok.copy()
    else:
        min_val = float(np.min(means[ok]))
        cand = ok & (means <= (1.0 + tolerance) * min_val)
        if not np.any(cand):
            # negative minimum with a tolerance band that excludes it
            cand = ok & (means == min_val)

    selected = int(np.min(complexities[cand]))
    logger.debug("selected n_components=%d from %s", selected, list(complexities))
    return SelectionResult(
        n_components=selected,
        mean_errors=mean_errors,
        std_errors=std_errors,
        n_scored=n_scored,
        candidate_mask=pd.Series(cand, index=table.columns, name="candidate"),
        failed_folds=failed_folds,
        table=table,
    )

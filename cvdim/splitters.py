"""Balanced, seeded fold partitions for k-fold and bi-cross-validation."""

from __future__ import annotations

from typing import Generator, Sequence

import numpy as np
from sklearn.model_selection import BaseCrossValidator

from .exceptions import ConfigurationError, InsufficientDataError


def fold_assignment(
    n_samples: int,
    n_folds: int,
    random_state: int | Sequence[int] | np.random.SeedSequence = 0,
) -> np.ndarray:
    """Assign each of *n_samples* observations to one of *n_folds* folds.

    Labels ``0..n_folds-1`` are dealt round-robin and then shuffled with a
    generator built from *random_state*, so fold sizes are
    ``floor(n/k)`` or ``ceil(n/k)`` for every seed.

    Parameters
    ----------
    n_samples : int
    n_folds : int – must satisfy ``2 <= n_folds <= n_samples``.
    random_state : int, sequence of int or SeedSequence – generator entropy.

    Returns
    -------
    ndarray of int, shape (n_samples,), read-only.
    """
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be >= 2, got {n_folds}")
    if n_folds > n_samples:
        raise ConfigurationError(
            f"n_folds={n_folds} exceeds the number of observations ({n_samples})"
        )
    rng = np.random.default_rng(random_state)
    labels = rng.permutation(np.arange(n_samples) % n_folds)
    labels.setflags(write=False)
    return labels


def fold_sizes(labels: np.ndarray, n_folds: int) -> np.ndarray:
    """Number of observations per fold, shape ``(n_folds,)``."""
    return np.bincount(np.asarray(labels, dtype=int), minlength=n_folds)


class BalancedKFold(BaseCrossValidator):
    """Shuffled k-fold splitter with balanced fold sizes.

    Unlike :class:`sklearn.model_selection.KFold` the seed is mandatory and
    is the only source of randomness: identical ``(n, n_splits,
    random_state)`` gives an identical partition.

    Parameters
    ----------
    n_splits : int, default 5
    random_state : int or sequence of int, default 0
    """

    def __init__(
        self,
        n_splits: int = 5,
        random_state: int | Sequence[int] = 0,
    ) -> None:
        self.n_splits = n_splits
        self.random_state = random_state

    # ---- sklearn interface ---------------------------------------------------

    def split(self, X, y=None, groups=None):  # type: ignore[override]
        """Yield ``(train_idx, test_idx)`` arrays."""
        for _fold, tr_idx, te_idx in self.split_with_fold(X):
            yield tr_idx, te_idx

    def get_n_splits(self, X=None, y=None, groups=None) -> int:
        return self.n_splits

    # ---- extended interface --------------------------------------------------

    def assignment(self, n_samples: int) -> np.ndarray:
        """Fold label of every observation."""
        return fold_assignment(n_samples, self.n_splits, self.random_state)

    def split_with_fold(
        self,
        X,
    ) -> Generator[tuple[int, np.ndarray, np.ndarray], None, None]:
        """Like :meth:`split` but also yields the fold label.

        Raises
        ------
        InsufficientDataError
            If a fold's held-out subset or training subset is empty.
        """
        labels = self.assignment(len(X))
        for fold in range(self.n_splits):
            te_mask = labels == fold
            te_idx = np.where(te_mask)[0]
            tr_idx = np.where(~te_mask)[0]
            if len(te_idx) == 0 or len(tr_idx) == 0:
                raise InsufficientDataError(f"fold {fold} has an empty subset")
            yield fold, tr_idx, te_idx


class BiCrossValidationSplit:
    """Independent row and column partitions for bi-cross-validation.

    The row and column partitions are drawn from two child seeds spawned
    from ``random_state``, so they are independent of each other yet fully
    determined by the one seed.

    Parameters
    ----------
    n_row_folds, n_col_folds : int
    random_state : int or sequence of int, default 0
    """

    def __init__(
        self,
        n_row_folds: int = 5,
        n_col_folds: int = 5,
        random_state: int | Sequence[int] = 0,
    ) -> None:
        self.n_row_folds = n_row_folds
        self.n_col_folds = n_col_folds
        self.random_state = random_state

    def assignments(self, X) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(row_labels, col_labels)``."""
        n, p = np.shape(X)
        row_seq, col_seq = np.random.SeedSequence(self.random_state).spawn(2)
        rows = fold_assignment(n, self.n_row_folds, row_seq)
        cols = fold_assignment(p, self.n_col_folds, col_seq)
        return rows, cols

    def get_n_splits(self) -> int:
        return self.n_row_folds * self.n_col_folds

    def split(
        self,
        X,
    ) -> Generator[tuple[int, int, np.ndarray, np.ndarray], None, None]:
        """Yield ``(row_fold, col_fold, row_test, col_test)`` for every block.

        The held-out block is ``X[np.ix_(row_test, col_test)]``; everything
        outside ``row_test`` and ``col_test`` is available for fitting.
        """
        rows, cols = self.assignments(X)
        for i in range(self.n_row_folds):
            row_test = np.where(rows == i)[0]
            for j in range(self.n_col_folds):
                col_test = np.where(cols == j)[0]
                yield i, j, row_test, col_test

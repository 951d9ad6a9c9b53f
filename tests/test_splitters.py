import numpy as np
import pytest

from cvdim.exceptions import ConfigurationError
from cvdim.splitters import (
    BalancedKFold,
    BiCrossValidationSplit,
    fold_assignment,
    fold_sizes,
)


@pytest.mark.parametrize(
    "n, k",
    [(2, 2), (10, 2), (10, 3), (13, 4), (60, 5), (61, 5), (7, 7), (100, 9)],
)
def test_fold_sizes_balanced_and_cover_every_index(n: int, k: int):
    labels = fold_assignment(n, k, random_state=3)

    assert labels.shape == (n,)
    assert set(np.unique(labels)) == set(range(k))
    sizes = fold_sizes(labels, k)
    assert sizes.sum() == n
    assert set(sizes) <= {n // k, -(-n // k)}


def test_same_seed_gives_identical_assignment():
    a = fold_assignment(60, 5, random_state=1)
    b = fold_assignment(60, 5, random_state=1)
    assert np.array_equal(a, b)


def test_different_seed_keeps_balance():
    a = fold_assignment(60, 5, random_state=1)
    b = fold_assignment(60, 5, random_state=2)
    assert not np.array_equal(a, b)
    assert np.all(fold_sizes(b, 5) == 12)


def test_assignment_is_read_only():
    labels = fold_assignment(20, 4, random_state=0)
    assert not labels.flags.writeable
    with pytest.raises(ValueError):
        labels[0] = 1


def test_assignment_does_not_touch_global_random_state():
    np.random.seed(123)
    expected = np.random.rand()
    np.random.seed(123)
    fold_assignment(50, 5, random_state=9)
    assert np.random.rand() == expected


@pytest.mark.parametrize("n, k", [(3, 5), (10, 1), (10, 0), (4, 5)])
def test_invalid_fold_count_raises(n: int, k: int):
    with pytest.raises(ConfigurationError):
        fold_assignment(n, k, random_state=0)


def test_balanced_kfold_train_test_complement():
    x = np.zeros((23, 3))
    cv = BalancedKFold(n_splits=4, random_state=5)
    seen = []
    for fold, tr_idx, te_idx in cv.split_with_fold(x):
        assert len(np.intersect1d(tr_idx, te_idx)) == 0
        assert np.array_equal(np.sort(np.concatenate([tr_idx, te_idx])), np.arange(23))
        assert np.all(cv.assignment(23)[te_idx] == fold)
        seen.append(te_idx)
    assert cv.get_n_splits() == 4
    assert np.array_equal(np.sort(np.concatenate(seen)), np.arange(23))


def test_balanced_kfold_sklearn_split_matches_extended_split():
    x = np.zeros((17, 2))
    cv = BalancedKFold(n_splits=3, random_state=0)
    plain = list(cv.split(x))
    extended = [(tr, te) for _, tr, te in cv.split_with_fold(x)]
    assert len(plain) == 3
    for (a_tr, a_te), (b_tr, b_te) in zip(plain, extended):
        assert np.array_equal(a_tr, b_tr)
        assert np.array_equal(a_te, b_te)


def test_bicv_row_and_column_partitions_balanced():
    x = np.zeros((41, 13))
    rows, cols = BiCrossValidationSplit(4, 3, random_state=7).assignments(x)

    assert set(fold_sizes(rows, 4)) <= {10, 11}
    assert set(fold_sizes(cols, 3)) <= {4, 5}


def test_bicv_partitions_are_reproducible_and_independent():
    x = np.zeros((40, 40))
    split = BiCrossValidationSplit(4, 4, random_state=11)
    rows_a, cols_a = split.assignments(x)
    rows_b, cols_b = split.assignments(x)

    assert np.array_equal(rows_a, rows_b)
    assert np.array_equal(cols_a, cols_b)
    assert not np.array_equal(rows_a, cols_a)


def test_bicv_split_yields_every_block_once():
    x = np.zeros((30, 8))
    split = BiCrossValidationSplit(3, 2, random_state=0)
    blocks = list(split.split(x))

    assert len(blocks) == split.get_n_splits() == 6
    assert {(i, j) for i, j, _, _ in blocks} == {(i, j) for i in range(3) for j in range(2)}
    cells = np.zeros((30, 8), dtype=int)
    for _, _, row_test, col_test in blocks:
        cells[np.ix_(row_test, col_test)] += 1
    assert np.all(cells == 1)


def test_bicv_too_many_column_folds_raises():
    with pytest.raises(ConfigurationError):
        list(BiCrossValidationSplit(2, 5, random_state=0).split(np.zeros((20, 3))))

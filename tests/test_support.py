import warnings
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

import cvdim
from cvdim.config import CVConfig, leakage_check_enabled
from cvdim.exceptions import (
    ConfigurationError,
    CVError,
    DataShapeError,
    InsufficientDataError,
)
from cvdim.io import load_matrix
from cvdim.metrics import (
    mean_correlation,
    pearson_r,
    per_fold_mean_correlation,
    pooled_correlation,
    reconstruction_rmse,
    rmse,
    target_correlations,
)
from cvdim.runstate import RunState, RunTracker


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(0)


# --------------------------------------------------------------------------- #
# config
# --------------------------------------------------------------------------- #


def test_config_defaults_validate():
    cfg = CVConfig().validate()
    assert cfg.complexities == list(range(11))
    assert cfg.to_dict()["aggregation"] == "pooled"
    assert cfg.n_repeats == 10


def test_config_from_mapping():
    cfg = CVConfig.from_mapping(
        {"n_folds": 4, "max_components": 3, "random_state": 1, "aggregation": "per-fold-mean"}
    )
    assert cfg.n_folds == 4
    assert cfg.complexities == [0, 1, 2, 3]
    assert cfg.aggregation == "per-fold-mean"


def test_config_from_mapping_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match="foldCount"):
        CVConfig.from_mapping({"foldCount": 5})


@pytest.mark.parametrize(
    "kwargs",
    [
        {"n_folds": 1},
        {"n_folds": 2.5},
        {"max_components": -1},
        {"random_state": None},
        {"aggregation": "mean"},
        {"n_repeats": 0},
        {"tolerance": -0.5},
    ],
)
def test_config_invalid_values(kwargs: dict):
    with pytest.raises(ConfigurationError):
        CVConfig(**kwargs).validate()


@pytest.mark.parametrize("value, expected", [("1", True), ("On", True), ("0", False), ("", False)])
def test_leakage_switch(monkeypatch: pytest.MonkeyPatch, value: str, expected: bool):
    monkeypatch.setenv("CVDIM_DEBUG_LEAKAGE", value)
    assert leakage_check_enabled() is expected


# --------------------------------------------------------------------------- #
# exceptions / run state
# --------------------------------------------------------------------------- #


def test_error_hierarchy_and_stage_prefix():
    err = InsufficientDataError("fold 2 is empty", stage="predicting")
    assert isinstance(err, CVError)
    assert isinstance(err, ValueError)
    assert err.stage == "predicting"
    assert str(err) == "[predicting] fold 2 is empty"


def test_run_tracker_forward_only():
    run = RunTracker()
    run.advance(RunState.PARTITIONED)
    run.advance(RunState.EVALUATING)
    with pytest.raises(RuntimeError):
        run.advance(RunState.PARTITIONED)
    with pytest.raises(RuntimeError):
        run.advance(RunState.EVALUATING)
    run.advance(RunState.AGGREGATED)
    assert run.history == [
        RunState.INITIALIZED,
        RunState.PARTITIONED,
        RunState.EVALUATING,
        RunState.AGGREGATED,
    ]


def test_run_tracker_attaches_stage_and_aborts():
    run = RunTracker()
    with pytest.raises(DataShapeError, match=r"^\[evaluating\] bad rows$"):
        with run.stage(RunState.EVALUATING):
            raise DataShapeError("bad rows")
    assert run.aborted
    with pytest.raises(RuntimeError, match="aborted"):
        run.advance(RunState.SELECTING)


def test_run_tracker_keeps_existing_stage():
    run = RunTracker()
    with pytest.raises(ConfigurationError, match=r"^\[initialized\]"):
        with run.stage(RunState.PARTITIONED):
            raise ConfigurationError("x", stage="initialized")


# --------------------------------------------------------------------------- #
# metrics
# --------------------------------------------------------------------------- #


def test_rmse_and_reconstruction_rmse(rng: np.random.Generator):
    assert rmse(np.array([1.0, 2.0]), np.array([1.0, 4.0])) == pytest.approx(np.sqrt(2.0))
    z = rng.normal(size=(20, 5))
    z -= z.mean(axis=0)
    v_full = np.linalg.svd(z, full_matrices=False)[2].T
    assert reconstruction_rmse(z, v_full) == pytest.approx(0.0, abs=1e-10)
    assert reconstruction_rmse(z, v_full[:, :0]) == pytest.approx(rmse(z, np.zeros_like(z)))
    assert reconstruction_rmse(z, v_full[:, :2], per_obs=True).shape == (20,)
    with pytest.raises(ValueError):
        rmse(np.zeros(3), np.zeros(4))


def test_pearson_r_degenerate_inputs_are_nan():
    assert np.isnan(pearson_r(np.ones(5), np.arange(5.0)))
    assert np.isnan(pearson_r(np.array([1.0]), np.array([2.0])))
    assert pearson_r(np.arange(5.0), 2 * np.arange(5.0)) == pytest.approx(1.0)


def test_correlations_are_computed_per_target():
    t = np.array([0.0, 1.0, 2.0, 3.0, 4.0, 5.0])
    y_true = np.column_stack([t, 100.0 + t[::-1]])
    y_pred = np.column_stack([t[::-1], 100.0 + t])
    folds = np.array([0, 0, 0, 1, 1, 1])

    assert np.allclose(target_correlations(y_true, y_pred), [-1.0, -1.0])
    assert pooled_correlation(y_true, y_pred) == pytest.approx(-1.0)
    mean_r, by_fold = per_fold_mean_correlation(y_true, y_pred, folds)
    assert mean_r == pytest.approx(-1.0)
    assert by_fold == {0: pytest.approx(-1.0), 1: pytest.approx(-1.0)}
    assert pearson_r(y_true, y_pred) > 0.99


def test_mean_correlation_ignores_undefined_values():
    assert mean_correlation([0.2, np.nan, 0.4]) == pytest.approx(0.3)
    assert np.isnan(mean_correlation([np.nan, np.nan]))
    assert np.isnan(mean_correlation([]))


def test_pooled_and_per_fold_correlations_differ():
    y_true = np.array([0.0, 1.0, 2.0, 10.0, 11.0, 12.0])
    y_pred = np.array([2.0, 1.0, 0.0, 12.0, 11.0, 10.0])
    folds = np.array([0, 0, 0, 1, 1, 1])

    mean_r, by_fold = per_fold_mean_correlation(y_true, y_pred, folds)
    assert by_fold == {0: pytest.approx(-1.0), 1: pytest.approx(-1.0)}
    assert mean_r == pytest.approx(-1.0)
    assert pooled_correlation(y_true, y_pred) > 0.9


# --------------------------------------------------------------------------- #
# io
# --------------------------------------------------------------------------- #


def test_load_matrix_splits_features_and_target(tmp_path, rng: np.random.Generator):
    frame = pd.DataFrame(rng.normal(size=(12, 3)), columns=["a", "b", "c"])
    frame["score"] = rng.normal(size=12)
    path = tmp_path / "data.csv"
    frame.to_csv(path, index=False)

    x, y = load_matrix(path, target="score")
    assert list(x.columns) == ["a", "b", "c"]
    assert x.shape == (12, 3)
    assert isinstance(y, pd.Series)
    assert np.allclose(y.to_numpy(), frame["score"].to_numpy())

    x_only, none = load_matrix(path, columns=["a", "c"])
    assert none is None
    assert list(x_only.columns) == ["a", "c"]


def test_load_matrix_rejects_non_numeric(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("a,b\n1,2\n3,oops\n")
    with pytest.raises(DataShapeError, match="non-numeric"):
        load_matrix(path)


def test_load_matrix_rejects_missing_values(tmp_path):
    path = tmp_path / "gap.csv"
    path.write_text("a,b\n1,2\n3,\n")
    with pytest.raises(DataShapeError, match="missing"):
        load_matrix(path)


def test_load_matrix_rejects_unknown_columns(tmp_path):
    path = tmp_path / "ok.csv"
    path.write_text("a,b\n1,2\n3,4\n")
    with pytest.raises(DataShapeError, match="not found"):
        load_matrix(path, target="y")


# --------------------------------------------------------------------------- #
# source hygiene
# --------------------------------------------------------------------------- #


@pytest.mark.parametrize(
    "path", sorted(Path(cvdim.__file__).parent.glob("*.py")), ids=lambda p: p.name
)
def test_module_compiles_without_warnings(path: Path):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(encoding="utf-8"), str(path), "exec")

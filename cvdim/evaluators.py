"""Candidate evaluators: fit at one complexity on training data, score held-out.

Both evaluators keep only their constructor parameters; every call to
``fit`` / ``evaluate`` works on local copies of the slices it needs, so a
single instance can be shared by concurrent workers.

Example
-------
>>> ev = BiCrossValidationEvaluator()
>>> err = ev.evaluate(X, row_test, col_test, n_components=3)
>>> ev = ComponentRegressionEvaluator(model="pls")
>>> err = ev.evaluate(X, y, train_idx, test_idx, n_components=2)
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
from scipy import linalg
from sklearn.cross_decomposition import PLSRegression
from sklearn.decomposition import PCA
from sklearn.dummy import DummyRegressor
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LinearRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import StandardScaler

from .config import leakage_check_enabled
from .exceptions import ConfigurationError, FitFailure, InsufficientDataError
from .metrics import rmse

logger = logging.getLogger(__name__)

MODELS = ("pls", "pcr")


def _scale_or_one(X: np.ndarray) -> np.ndarray:
    if X.shape[0] < 2:
        return np.ones(X.shape[1])
    sd = np.std(X, axis=0, ddof=1)
    return np.where(sd < 1e-10, 1.0, sd)


def _check_training_scaler(Z: np.ndarray, scaled: bool) -> None:
    # Only rows used for fitting may define the centring statistics.
    if Z.shape[0] < 2:
        return
    if not np.allclose(np.mean(Z, axis=0), 0.0, atol=1e-7, rtol=0.0):
        raise AssertionError("Training block mean is not near zero.")
    if scaled:
        sd = np.std(Z, axis=0, ddof=1)
        non_constant = sd >= 1e-10
        if np.any(non_constant) and not np.allclose(
            sd[non_constant], 1.0, atol=1e-5, rtol=0.0
        ):
            raise AssertionError("Training block std is not near one.")


def _check_complexity(n_components: int) -> int:
    c = int(n_components)
    if c < 0:
        raise ConfigurationError(f"n_components must be >= 0, got {n_components}")
    return c


# --------------------------------------------------------------------------- #
# Unsupervised: bi-cross-validation of a truncated SVD
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class BlockFit:
    """Parameters of one bi-cross-validation block fit.

    Attributes
    ----------
    n_components : int
    row_train, col_train : ndarray – indices used for fitting.
    mean : ndarray (p,) – column means over ``row_train``.
    scale : ndarray (p,) or None – column std over ``row_train``.
    loadings : ndarray (len(col_train), n_components) – right singular
        vectors of the training block.
    coef : ndarray (n_components, len(col_test)) – regression of the
        held-out columns on the training-block scores.
    """

    n_components: int
    row_train: np.ndarray
    col_train: np.ndarray
    mean: np.ndarray
    scale: np.ndarray | None
    loadings: np.ndarray
    coef: np.ndarray


class BiCrossValidationEvaluator:
    r"""Score a rank-*c* factorization on a held-out row × column block.

    With rows split into held-out ``I`` and training ``I^c`` and columns into
    ``J`` / ``J^c``, write

    .. math:: X = \begin{pmatrix} A & C \\ B & D \end{pmatrix},\quad
              A = X_{IJ},\; C = X_{IJ^c},\; B = X_{I^cJ},\; D = X_{I^cJ^c}.

    A rank-*c* truncated SVD of :math:`D` gives loadings :math:`V`; the
    held-out rows are projected as :math:`T_C = C V`, the held-out columns
    are regressed on the training scores :math:`D V` to give
    :math:`\beta`, and :math:`\hat A = T_C \beta`.  The block :math:`A` is
    never read while fitting.

    Parameters
    ----------
    standardize : bool, default False
        z-score columns with training-row statistics (otherwise only centre).
    """

    def __init__(self, standardize: bool = False) -> None:
        self.standardize = standardize

    def __repr__(self) -> str:
        return f"BiCrossValidationEvaluator(standardize={self.standardize})"

    def fit(
        self,
        X: np.ndarray,
        row_test: np.ndarray,
        col_test: np.ndarray,
        n_components: int,
    ) -> BlockFit:
        X = np.asarray(X, dtype=float)
        n, p = X.shape
        c = _check_complexity(n_components)
        row_train = np.setdiff1d(np.arange(n), row_test)
        col_train = np.setdiff1d(np.arange(p), col_test)
        if len(row_test) == 0 or len(col_test) == 0:
            raise InsufficientDataError("held-out block is empty")
        if len(row_train) == 0 or len(col_train) == 0:
            raise InsufficientDataError("training block is empty")

        X_tr = X[row_train]
        mu = np.mean(X_tr, axis=0)
        sd = _scale_or_one(X_tr) if self.standardize else None
        Z_tr = X_tr - mu
        if sd is not None:
            Z_tr = Z_tr / sd
        if leakage_check_enabled():
            _check_training_scaler(Z_tr, sd is not None)

        D = Z_tr[:, col_train]
        B = Z_tr[:, col_test]

        if c > min(D.shape):
            raise FitFailure(
                f"n_components={c} exceeds training block shape {D.shape}"
            )
        if c == 0:
            V = np.zeros((len(col_train), 0))
            coef = np.zeros((0, len(col_test)))
        else:
            try:
                _, s, Vt = linalg.svd(D, full_matrices=False)
            except (linalg.LinAlgError, ValueError) as exc:
                raise FitFailure(f"SVD of training block failed: {exc}") from exc
            tol = s[0] * max(D.shape) * np.finfo(float).eps
            if s[c - 1] <= tol:
                raise FitFailure(
                    f"training block is rank-deficient for n_components={c}"
                )
            V = Vt[:c].T
            T = D @ V
            coef, *_ = linalg.lstsq(T, B)

        return BlockFit(
            n_components=c,
            row_train=row_train,
            col_train=col_train,
            mean=mu,
            scale=sd,
            loadings=V,
            coef=np.asarray(coef),
        )

    def _held_out_scores(
        self,
        fit: BlockFit,
        X: np.ndarray,
        row_test: np.ndarray,
        col_test: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(Z_A, Z_A_hat)`` in the working (centred/scaled) space."""
        X = np.asarray(X, dtype=float)
        Z_te = X[row_test] - fit.mean
        if fit.scale is not None:
            Z_te = Z_te / fit.scale
        C = Z_te[:, fit.col_train]
        A = Z_te[:, col_test]
        A_hat = (C @ fit.loadings) @ fit.coef
        return A, A_hat

    def predict(
        self,
        fit: BlockFit,
        X: np.ndarray,
        row_test: np.ndarray,
        col_test: np.ndarray,
    ) -> np.ndarray:
        """Reconstruct the held-out block in the original units."""
        _, A_hat = self._held_out_scores(fit, X, row_test, col_test)
        if fit.scale is not None:
            A_hat = A_hat * fit.scale[col_test]
        return A_hat + fit.mean[col_test]

    def evaluate(
        self,
        X: np.ndarray,
        row_test: np.ndarray,
        col_test: np.ndarray,
        n_components: int,
    ) -> float:
        """RMSE of the held-out block reconstruction."""
        fit = self.fit(X, row_test, col_test, n_components)
        A, A_hat = self._held_out_scores(fit, X, row_test, col_test)
        return rmse(A, A_hat)


# --------------------------------------------------------------------------- #
# Supervised: component regression (PLS / PCR)
# --------------------------------------------------------------------------- #


class ComponentRegressionEvaluator:
    """Fit a component regression on training rows and score held-out RMSE.

    Parameters
    ----------
    model : {``'pls'``, ``'pcr'``}, default ``'pls'``
        ``'pls'`` uses :class:`~sklearn.cross_decomposition.PLSRegression`;
        ``'pcr'`` chains :class:`~sklearn.decomposition.PCA` and
        :class:`~sklearn.linear_model.LinearRegression`.
    scale : bool, default True
        Scale predictors to unit variance (training statistics only).
    max_iter : int, default 500
        NIPALS iterations for PLS.
    """

    def __init__(
        self,
        model: str = "pls",
        scale: bool = True,
        max_iter: int = 500,
    ) -> None:
        if model not in MODELS:
            raise ConfigurationError(f"model must be one of {MODELS}, got {model!r}")
        self.model = model
        self.scale = scale
        self.max_iter = max_iter

    def __repr__(self) -> str:
        return (
            f"ComponentRegressionEvaluator(model={self.model!r}, "
            f"scale={self.scale}, max_iter={self.max_iter})"
        )

    def build(self, n_components: int):
        """Unfitted regressor of the requested complexity."""
        c = _check_complexity(n_components)
        if c == 0:
            return DummyRegressor(strategy="mean")
        if self.model == "pls":
            return PLSRegression(
                n_components=c, scale=self.scale, max_iter=self.max_iter
            )
        steps = []
        if self.scale:
            steps.append(("scale", StandardScaler()))
        steps.append(("pca", PCA(n_components=c, svd_solver="full")))
        steps.append(("ols", LinearRegression()))
        return Pipeline(steps)

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        train_idx: np.ndarray,
        n_components: int,
    ):
        """Fit on ``X[train_idx]`` only and return the fitted regressor."""
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if len(train_idx) == 0:
            raise InsufficientDataError("training subset is empty")
        X_tr, y_tr = X[train_idx], y[train_idx]
        c = _check_complexity(n_components)
        if c > min(X_tr.shape):
            raise FitFailure(
                f"n_components={c} exceeds training data shape {X_tr.shape}"
            )
        model = self.build(c)
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", ConvergenceWarning)
                warnings.simplefilter("error", RuntimeWarning)
                # PLS stops early and keeps fewer components than requested
                warnings.filterwarnings(
                    "error", message="Y residual is constant", category=UserWarning
                )
                model.fit(X_tr, y_tr)
        except (
            ValueError,
            np.linalg.LinAlgError,
            ConvergenceWarning,
            RuntimeWarning,
            UserWarning,
        ) as exc:
            logger.debug("%s fit failed at n_components=%d: %s", self.model, c, exc)
            raise FitFailure(
                f"{self.model} fit with n_components={c} failed: {exc}"
            ) from exc
        return model

    @staticmethod
    def predict(model, X: np.ndarray, y_ndim: int = 1) -> np.ndarray:
        pred = np.asarray(model.predict(np.asarray(X, dtype=float)), dtype=float)
        if y_ndim == 1:
            return pred.reshape(-1)
        return pred.reshape(len(pred), -1)

    def evaluate(
        self,
        X: np.ndarray,
        y: np.ndarray,
        train_idx: np.ndarray,
        test_idx: np.ndarray,
        n_components: int,
    ) -> float:
        """Held-out RMSE of the model fitted on ``train_idx``."""
        if len(test_idx) == 0:
            raise InsufficientDataError("held-out subset is empty")
        if leakage_check_enabled() and len(np.intersect1d(train_idx, test_idx)):
            raise AssertionError("Training and held-out subsets overlap.")
        y = np.asarray(y, dtype=float)
        model = self.fit(X, y, train_idx, n_components)
        pred = self.predict(model, np.asarray(X)[test_idx], y.ndim)
        err = rmse(y[test_idx], pred)
        if not np.isfinite(err):
            raise FitFailure(
                f"{self.model} with n_components={n_components} produced non-finite predictions"
            )
        return err

"""Cross-validated selection of the number of components: sklearn-compatible estimators."""

from .estimator import BiCrossValidatedPCA, NestedCVComponentRegression
from .exceptions import (
    ConfigurationError,
    CVError,
    DataShapeError,
    FitFailure,
    InsufficientDataError,
)
from .selection import select_complexity
from .splitters import BalancedKFold, BiCrossValidationSplit, fold_assignment

__all__ = [
    "BiCrossValidatedPCA",
    "NestedCVComponentRegression",
    "BalancedKFold",
    "BiCrossValidationSplit",
    "fold_assignment",
    "select_complexity",
    "CVError",
    "ConfigurationError",
    "DataShapeError",
    "InsufficientDataError",
    "FitFailure",
]

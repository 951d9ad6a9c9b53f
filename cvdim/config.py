"""Run configuration and environment switches."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from numbers import Integral
from typing import Any, Mapping

from .exceptions import ConfigurationError

AGGREGATIONS = ("pooled", "per-fold-mean")

_TRUTHY = {"1", "true", "yes", "on"}


def leakage_check_enabled() -> bool:
    """True when ``CVDIM_DEBUG_LEAKAGE`` is set to a truthy value."""
    return os.getenv("CVDIM_DEBUG_LEAKAGE", "").strip().lower() in _TRUTHY


@dataclass(frozen=True)
class CVConfig:
    """Validated options shared by the estimators.

    Parameters
    ----------
    n_folds : int, default 5
        Number of folds (outer folds in the nested case; row and column
        folds in bi-cross-validation).
    max_components : int, default 10
        Largest candidate complexity; candidates are ``0..max_components``.
    random_state : int, default 0
        Seed for every fold partition of the run.
    aggregation : {``'pooled'``, ``'per-fold-mean'``}
        How the held-out correlation is aggregated.
    n_repeats : int, default 10
        Independent re-partitions (bi-cross-validation only).
    tolerance : float, default 0.0
        Parsimony band for the complexity selector.
    n_jobs : int or None
        Passed to :class:`joblib.Parallel`.
    """

    n_folds: int = 5
    max_components: int = 10
    random_state: int = 0
    aggregation: str = "pooled"
    n_repeats: int = 10
    tolerance: float = 0.0
    n_jobs: int | None = None

    def validate(self) -> "CVConfig":
        if not isinstance(self.n_folds, Integral) or self.n_folds < 2:
            raise ConfigurationError(
                f"n_folds must be an integer >= 2, got {self.n_folds!r}"
            )
        if not isinstance(self.max_components, Integral) or self.max_components < 0:
            raise ConfigurationError(
                f"max_components must be a non-negative integer, got {self.max_components!r}"
            )
        if not isinstance(self.random_state, Integral) or self.random_state < 0:
            raise ConfigurationError(
                f"random_state must be an explicit non-negative integer seed, got {self.random_state!r}"
            )
        if self.aggregation not in AGGREGATIONS:
            raise ConfigurationError(
                f"aggregation must be one of {AGGREGATIONS}, got {self.aggregation!r}"
            )
        if not isinstance(self.n_repeats, Integral) or self.n_repeats < 1:
            raise ConfigurationError(
                f"n_repeats must be a positive integer, got {self.n_repeats!r}"
            )
        if not self.tolerance >= 0.0:
            raise ConfigurationError(
                f"tolerance must be >= 0, got {self.tolerance!r}"
            )
        return self

    @property
    def complexities(self) -> list[int]:
        return list(range(self.max_components + 1))

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "CVConfig":
        """Build from a plain mapping, rejecting unknown keys."""
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {unknown}")
        return cls(**dict(options)).validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

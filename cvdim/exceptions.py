"""Error taxonomy for cross-validated component selection."""

from __future__ import annotations


class CVError(Exception):
    """Base class for all run errors.

    Parameters
    ----------
    message : str
    stage : str or None
        Pipeline stage in which the error was raised (``'partitioned'``,
        ``'evaluating'``, …).  Prefixed to the message when given.
    """

    def __init__(self, message: str, stage: str | None = None) -> None:
        self.stage = stage
        if stage is not None:
            message = f"[{stage}] {message}"
        super().__init__(message)


class ConfigurationError(CVError, ValueError):
    """Invalid fold count, complexity bound or aggregation option."""


class DataShapeError(CVError, ValueError):
    """Mismatched row counts, non-numeric or missing entries."""


class InsufficientDataError(CVError, ValueError):
    """Empty fold or fewer observations than a split requires."""


class FitFailure(CVError, RuntimeError):
    """A single candidate fit failed (recorded as NaN, not fatal)."""

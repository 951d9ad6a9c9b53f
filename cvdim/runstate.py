"""Forward-only stage tracking for a cross-validation run."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator

from .exceptions import CVError

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INITIALIZED = "initialized"
    PARTITIONED = "partitioned"
    EVALUATING = "evaluating"
    SELECTING = "selecting"
    PREDICTING = "predicting"
    AGGREGATED = "aggregated"
    DONE = "done"


_ORDER = list(RunState)


class RunTracker:
    """Records the stages a run has passed through.

    Stages may be skipped (bi-cross-validation has no prediction stage) but
    never revisited.  Errors raised inside :meth:`stage` are re-raised with
    the stage name attached, and the run is marked as aborted.
    """

    def __init__(self) -> None:
        self.state = RunState.INITIALIZED
        self.history: list[RunState] = [RunState.INITIALIZED]
        self.aborted = False

    def advance(self, new: RunState) -> None:
        if self.aborted:
            raise RuntimeError(f"run aborted in stage {self.state.value!r}")
        if _ORDER.index(new) <= _ORDER.index(self.state):
            raise RuntimeError(
                f"cannot move from {self.state.value!r} back to {new.value!r}"
            )
        logger.info("run stage: %s -> %s", self.state.value, new.value)
        self.state = new
        self.history.append(new)

    @contextmanager
    def stage(self, new: RunState) -> Iterator["RunTracker"]:
        self.advance(new)
        try:
            yield self
        except CVError as exc:
            self.aborted = True
            if exc.stage is not None:
                raise
            raise type(exc)(str(exc), stage=new.value) from exc
        except Exception:
            self.aborted = True
            raise

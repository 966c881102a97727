"""Per-stage status state machine."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from enum import StrEnum

from stagerunner.errors import InvalidTransition


class StageStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)


# Pending -> Failed covers credential errors caught before launch.
# Pending -> Skipped only happens after an earlier stage aborted the run.
_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED, StageStatus.FAILED}),
    StageStatus.RUNNING: frozenset(
        {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.TIMED_OUT}
    ),
}


class StageTracker:
    """Tracks the status of every stage in one run."""

    def __init__(self, stage_names: Iterable[str]) -> None:
        self._lock = threading.Lock()
        self._status = dict.fromkeys(stage_names, StageStatus.PENDING)

    def status(self, name: str) -> StageStatus:
        with self._lock:
            return self._status[name]

    def transition(self, name: str, new: StageStatus) -> None:
        with self._lock:
            current = self._status[name]
            if new not in _TRANSITIONS.get(current, frozenset()):
                raise InvalidTransition(f"Stage '{name}' cannot go from {current} to {new}")
            self._status[name] = new

    def snapshot(self) -> dict[str, StageStatus]:
        with self._lock:
            return dict(self._status)

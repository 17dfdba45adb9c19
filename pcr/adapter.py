from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from threading import Lock


class TargetAction(str, Enum):
    DETECTED = "detected"
    DELETED = "deleted"


@dataclass(frozen=True)
class ExperimentAction:
    """What target events asked of the experiment since the last reconciliation."""

    refresh: bool = False  # a ready target was deleted
    resume: bool = False  # a missing target showed up
    target_kind: str | None = None
    target_name: str | None = None

    def describe(self) -> str:
        if self.target_name is None:
            return ""
        return f"{self.target_kind} '{self.target_name}'"


class ActionAdapter:
    """Holds at most one pending target action for one experiment.

    Detection and deletion overwrite each other (last write wins).
    snapshot() hands the pending action to exactly one caller and clears it;
    a snapshot that is taken but not acted upon loses that signal for good.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._action: TargetAction | None = None
        self._kind: str | None = None
        self._name: str | None = None

    def mark_target_detected(self, name: str, kind: str) -> None:
        with self._lock:
            self._action = TargetAction.DETECTED
            self._name, self._kind = name, kind

    def mark_target_deleted(self, name: str, kind: str) -> None:
        with self._lock:
            self._action = TargetAction.DELETED
            self._name, self._kind = name, kind

    def pending(self) -> TargetAction | None:
        with self._lock:
            return self._action

    def snapshot(self) -> ExperimentAction:
        with self._lock:
            out = ExperimentAction(
                refresh=self._action == TargetAction.DELETED,
                resume=self._action == TargetAction.DETECTED,
                target_kind=self._kind,
                target_name=self._name,
            )
            self._action = self._kind = self._name = None
            return out

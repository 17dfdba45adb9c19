from __future__ import annotations

from dataclasses import dataclass

from .db import EventLog


@dataclass(frozen=True)
class ReconcileContext:
    """Request-scoped logging for one reconciliation of one experiment."""

    namespace: str
    name: str
    events: EventLog

    def info(self, message: str) -> None:
        self.events.log_event("INFO", message, namespace=self.namespace, experiment=self.name)

    def warn(self, message: str) -> None:
        self.events.log_event("WARN", message, namespace=self.namespace, experiment=self.name)

    def error(self, message: str) -> None:
        self.events.log_event("ERROR", message, namespace=self.namespace, experiment=self.name)

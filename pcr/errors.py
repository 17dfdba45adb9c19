from __future__ import annotations


class ReconcilerError(Exception):
    pass


class NotFound(ReconcilerError):
    """The requested cluster object does not exist."""


class Conflict(ReconcilerError):
    """An update lost a resource-version race; the next pass will retry."""


class RoutingValidationError(ReconcilerError):
    """Routing rules found in the cluster cannot be used by this experiment."""


class RoutingError(ReconcilerError):
    """A routing rule is missing a piece an update relies on."""


class TargetNotFound(ReconcilerError):
    def __init__(self, kind: str, name: str, namespace: str):
        super().__init__(f"{kind} '{name}' not found in namespace '{namespace}'")
        self.kind = kind
        self.name = name
        self.namespace = namespace


class ReadinessTimeout(ReconcilerError):
    pass


class TargetConflictError(ReconcilerError):
    """A target is already owned by another experiment."""


class MetricsSyncError(ReconcilerError):
    pass


class AnalyticsError(ReconcilerError):
    pass

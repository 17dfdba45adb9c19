from __future__ import annotations

import re
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .db import utc_now

API_VERSION = "iter8.tools/v1alpha2"
FINALIZER = "finalizer.iter8-tools"

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h)$")
_UNIT_S = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class Phase(str, Enum):
    INITIALIZING = "Initializing"
    PROGRESSING = "Progressing"
    PAUSE = "Pause"
    COMPLETED = "Completed"


class ConditionType(str, Enum):
    TARGETS_PROVIDED = "TargetsProvided"
    METRICS_SYNCED = "MetricsSynced"
    ROUTING_RULES_READY = "RoutingRulesReady"
    EXPERIMENT_COMPLETED = "ExperimentCompleted"


class _Model(BaseModel):
    # Unknown fields survive a read-modify-write of the custom resource.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class ObjectMeta(_Model):
    name: str
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = None
    resource_version: str | None = None
    generation: int | None = None


class Service(_Model):
    kind: str = "Deployment"
    name: str = ""
    namespace: str | None = None
    baseline: str
    candidates: list[str] = Field(default_factory=list)
    port: int | None = None


class Host(_Model):
    name: str
    gateway: str


class Networking(_Model):
    id: str | None = None
    hosts: list[Host] = Field(default_factory=list)


class Match(_Model):
    http: list[dict[str, Any]] = Field(default_factory=list)


class TrafficControl(_Model):
    strategy: str | None = None
    max_increment: int | None = None
    on_termination: str | None = None
    match: Match | None = None


class ManualOverride(_Model):
    action: Literal["pause", "resume", "terminate"]
    traffic_split: dict[str, int] = Field(default_factory=dict)


class Duration(_Model):
    interval: str | None = None
    max_iterations: int | None = None


class ExperimentSpec(_Model):
    service: Service
    traffic_control: TrafficControl | None = None
    networking: Networking | None = None
    manual_override: ManualOverride | None = None
    cleanup: bool | None = None
    criteria: list[dict[str, Any]] | None = None
    duration: Duration | None = None
    analytics_endpoint: str | None = None
    metrics: dict[str, Any] | None = None


class VersionWeight(_Model):
    name: str
    weight: int = Field(0, ge=0, le=100)


class Assessment(_Model):
    baseline: VersionWeight
    candidates: list[VersionWeight] = Field(default_factory=list)

    def total(self) -> int:
        return self.baseline.weight + sum(c.weight for c in self.candidates)

    def weights(self) -> list[int]:
        return [self.baseline.weight] + [c.weight for c in self.candidates]


class Condition(_Model):
    type: ConditionType
    status: Literal["True", "False"]
    reason: str = ""
    message: str = ""
    last_transition_time: str | None = None


class ExperimentStatus(_Model):
    phase: Phase | None = None
    init_timestamp: str | None = None
    last_update_time: str | None = None
    current_iteration: int = 0
    message: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    assessment: Assessment | None = None

    def condition(self, ctype: ConditionType) -> Condition | None:
        for c in self.conditions:
            if c.type == ctype:
                return c
        return None

    def set_condition(self, ctype: ConditionType, ok: bool, reason: str = "", message: str = "") -> bool:
        """Record a condition; returns True when anything changed."""
        status = "True" if ok else "False"
        cur = self.condition(ctype)
        if cur is not None:
            if cur.status == status and cur.reason == reason and cur.message == message:
                return False
            if cur.status != status:
                cur.last_transition_time = utc_now()
            cur.status, cur.reason, cur.message = status, reason, message
            return True
        self.conditions.append(
            Condition(type=ctype, status=status, reason=reason, message=message, last_transition_time=utc_now())
        )
        return True

    def metrics_synced(self) -> bool:
        c = self.condition(ConditionType.METRICS_SYNCED)
        return c is not None and c.status == "True"


def parse_duration(value: str) -> float:
    """'30s' / '1m' / '500ms' -> seconds."""
    m = _DURATION_RE.match(value.strip())
    if not m:
        raise ValueError(f"Invalid duration {value!r}")
    return float(m.group(1)) * _UNIT_S[m.group(2)]


class Experiment(_Model):
    api_version: str = API_VERSION
    kind: str = "Experiment"
    metadata: ObjectMeta
    spec: ExperimentSpec
    status: ExperimentStatus = Field(default_factory=ExperimentStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "Experiment":
        return cls.model_validate(obj)

    def to_object(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def full_name(self) -> str:
        """Value of the ownership label on routing rules."""
        return f"{self.name}.{self.namespace}"

    def service_namespace(self) -> str:
        return self.spec.service.namespace or self.namespace

    def action(self) -> str | None:
        mo = self.spec.manual_override
        return mo.action if mo else None

    def pause(self) -> bool:
        return self.action() == "pause"

    def resume(self) -> bool:
        return self.action() == "resume"

    def terminate(self) -> bool:
        return self.action() == "terminate"

    def cleanup(self) -> bool:
        return bool(self.spec.cleanup)

    def completed(self) -> bool:
        return self.status.phase == Phase.COMPLETED

    def deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_criteria(self) -> bool:
        return bool(self.spec.criteria)

    def match_rules(self) -> list[dict[str, Any]]:
        tc = self.spec.traffic_control
        if tc is None or tc.match is None:
            return []
        return tc.match.http

    def interval_seconds(self, default: float) -> float:
        d = self.spec.duration
        if d is None or not d.interval:
            return default
        return parse_duration(d.interval)

    def max_iterations(self, default: int) -> int:
        d = self.spec.duration
        if d is None or d.max_iterations is None:
            return default
        return d.max_iterations

    def init_status(self) -> None:
        svc = self.spec.service
        self.status.phase = Phase.INITIALIZING
        self.status.init_timestamp = utc_now()
        self.status.last_update_time = self.status.init_timestamp
        self.status.current_iteration = 0
        self.status.assessment = Assessment(
            baseline=VersionWeight(name=svc.baseline, weight=100),
            candidates=[VersionWeight(name=c, weight=0) for c in svc.candidates],
        )

    def ensure_assessment(self) -> Assessment:
        if self.status.assessment is None:
            svc = self.spec.service
            self.status.assessment = Assessment(
                baseline=VersionWeight(name=svc.baseline, weight=100),
                candidates=[VersionWeight(name=c, weight=0) for c in svc.candidates],
            )
        return self.status.assessment

from __future__ import annotations

from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .context import ReconcileContext
from .errors import AnalyticsError
from .experiment import Assessment, Experiment


class MetricsReader(Protocol):
    """Loads metric definitions for the experiment's criteria.

    Raises MetricsSyncError when definitions cannot be read.
    """

    def sync(self, ctx: ReconcileContext, exp: Experiment) -> None: ...


class Assessor(Protocol):
    """Decides the next traffic split of a progressing experiment."""

    def assess(self, ctx: ReconcileContext, exp: Experiment) -> Assessment: ...


class NullMetrics:
    """Accepts declared criteria as they are."""

    def sync(self, ctx: ReconcileContext, exp: Experiment) -> None:
        ctx.info(f"Metrics synced for {len(exp.spec.criteria or [])} criteria")


def check_assessment(exp: Experiment, assessment: Assessment) -> None:
    """Reject splits that do not line up with the experiment's versions."""
    svc = exp.spec.service
    if assessment.baseline.name != svc.baseline:
        raise AnalyticsError(f"assessment baseline {assessment.baseline.name!r} != {svc.baseline!r}")
    names = [c.name for c in assessment.candidates]
    if names != list(svc.candidates):
        raise AnalyticsError(f"assessment candidates {names} != {list(svc.candidates)}")
    if assessment.total() != 100:
        raise AnalyticsError(f"assessment weights sum to {assessment.total()}, expected 100")


class AnalyticsClient:
    """Fitness-assessment service client.

    POST <endpoint>/assessment with the experiment abstract; the reply is
    {"baseline": {"name", "weight"}, "candidates": [{"name", "weight"}, ...]}.
    """

    def __init__(self, endpoint: str, timeout_s: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.endpoint = endpoint
        self.timeout_s = timeout_s
        self.transport = transport

    def request_body(self, exp: Experiment) -> dict[str, Any]:
        svc = exp.spec.service
        tc = exp.spec.traffic_control
        return {
            "name": exp.full_name,
            "iteration": exp.status.current_iteration,
            "baseline": svc.baseline,
            "candidates": list(svc.candidates),
            "criteria": exp.spec.criteria or [],
            "trafficControl": tc.model_dump(mode="json", by_alias=True, exclude_none=True) if tc else {},
            "lastAssessment": exp.ensure_assessment().model_dump(mode="json", by_alias=True),
        }

    def assess(self, ctx: ReconcileContext, exp: Experiment) -> Assessment:
        url = (exp.spec.analytics_endpoint or self.endpoint).rstrip("/") + "/assessment"
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self.transport) as client:
                resp = client.post(url, json=self.request_body(exp))
        except httpx.HTTPError as e:
            raise AnalyticsError(f"analytics request failed: {type(e).__name__}: {e}") from e

        if resp.status_code != 200:
            raise AnalyticsError(f"analytics returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise AnalyticsError("analytics returned invalid JSON") from e
        try:
            assessment = Assessment.model_validate(data)
        except ValidationError as e:
            raise AnalyticsError(f"analytics returned an invalid assessment: {e.error_count()} error(s)") from e

        check_assessment(exp, assessment)
        ctx.info(f"Assessment received: {assessment.weights()}")
        return assessment

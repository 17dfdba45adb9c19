from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .cache import KIND_DEPLOYMENT, KIND_SERVICE
from .errors import NotFound, TargetNotFound
from .experiment import Experiment
from .health import wait_for_ready
from .kube import KubeAPI
from .settings import Settings


@dataclass
class Targets:
    service: dict[str, Any] | None
    baseline: dict[str, Any]
    candidates: list[dict[str, Any]] = field(default_factory=list)


def resolve_targets(client: KubeAPI, exp: Experiment, cfg: Settings) -> Targets:
    """Fetch the experiment's service, baseline and candidates once they are ready.

    Deployment-kind experiments route to deployments behind one service;
    Service-kind experiments route to one service per version.
    """
    svc = exp.spec.service
    ns = exp.service_namespace()
    version_kind = KIND_SERVICE if svc.kind == KIND_SERVICE else KIND_DEPLOYMENT

    service = None
    if svc.name:
        try:
            service = client.get_workload(KIND_SERVICE, ns, svc.name)
        except NotFound as e:
            raise TargetNotFound(KIND_SERVICE, svc.name, ns) from e

    def ready(name: str) -> dict[str, Any]:
        return wait_for_ready(
            client, version_kind, ns, name, interval_s=cfg.poll_interval_s, timeout_s=cfg.ready_timeout_s
        )

    baseline = ready(svc.baseline)
    candidates = [ready(c) for c in svc.candidates]
    return Targets(service=service, baseline=baseline, candidates=candidates)


def delete_candidates(client: KubeAPI, exp: Experiment) -> list[str]:
    """Delete candidate workloads; returns the failures as messages."""
    svc = exp.spec.service
    ns = exp.service_namespace()
    kind = KIND_SERVICE if svc.kind == KIND_SERVICE else KIND_DEPLOYMENT
    failures: list[str] = []
    for name in svc.candidates:
        try:
            client.delete_workload(kind, ns, name)
        except NotFound:
            continue
        except Exception as e:
            failures.append(f"{kind} {ns}/{name}: {type(e).__name__}: {e}")
    return failures

from __future__ import annotations

import time
from typing import Any, Callable

from .errors import NotFound, ReadinessTimeout, TargetNotFound
from .kube import KubeAPI


def _condition(obj: dict[str, Any], ctype: str) -> str | None:
    for c in (obj.get("status") or {}).get("conditions") or []:
        if c.get("type") == ctype:
            return c.get("status", "Unknown")
    return None


def deployment_ready(client: KubeAPI, deploy: dict[str, Any]) -> bool:
    """Available, with every replica ready."""
    st = deploy.get("status") or {}
    return (
        (st.get("availableReplicas") or 0) > 0
        and (st.get("replicas") or 0) == (st.get("readyReplicas") or 0)
        and _condition(deploy, "Available") == "True"
    )


def service_ready(client: KubeAPI, service: dict[str, Any]) -> bool:
    """Every pod behind the service selector is Running and Ready."""
    selector = (service.get("spec") or {}).get("selector") or {}
    namespace = service["metadata"]["namespace"]
    try:
        pods = client.list_pods(namespace, selector)
    except NotFound:
        return False
    for pod in pods:
        if (pod.get("status") or {}).get("phase") != "Running":
            return False
        if _condition(pod, "Ready") not in {"True", None}:
            return False
    return True


READY_CHECKS: dict[str, Callable[[KubeAPI, dict[str, Any]], bool]] = {
    "Service": service_ready,
    "Deployment": deployment_ready,
}


def wait_for_ready(
    client: KubeAPI,
    kind: str,
    namespace: str,
    name: str,
    interval_s: float = 3.0,
    timeout_s: float = 15.0,
) -> dict[str, Any]:
    """Poll a workload until its readiness check passes.

    Returns the last fetched object. Raises TargetNotFound as soon as the
    object is gone and ReadinessTimeout once timeout_s has passed.
    """
    check = READY_CHECKS.get(kind)
    if check is None:
        raise ValueError(f"Unsupported kind {kind}")

    t0 = time.time()
    while True:
        try:
            obj = client.get_workload(kind, namespace, name)
        except NotFound as e:
            raise TargetNotFound(kind, name, namespace) from e
        if check(client, obj):
            return obj
        if time.time() - t0 >= timeout_s:
            raise ReadinessTimeout(f"{kind} '{namespace}/{name}' not ready after {timeout_s:g}s")
        time.sleep(interval_s)

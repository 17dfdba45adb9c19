from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from .experiment import Experiment

ISTIO_API_VERSION = "networking.istio.io/v1alpha3"

# route receiving experimental traffic
ROUTE_EXPERIMENT = "iter8-experiment"
# route receiving non-experimental traffic when match clauses exist
ROUTE_BASE = "iter8-base"

LABEL_ROUTER = "iter8-tools/router"
LABEL_ROLE = "iter8-tools/role"
LABEL_EXPERIMENT = "iter8-tools/experiment"
LABEL_INIT = "iter8-tools/init"
LABEL_KIALI_WIZARD = "kiali_wizard"
KIALI_TRAFFIC_SHIFTING = "traffic_shifting"

# label values cannot hold "*"
WILDCARD_HOST = "iter8-wildcard-host"
RULE_NAME_SUFFIX = "iter8router"
MESH_GATEWAY = "mesh"

SUBSET_BASELINE = "iter8-baseline"
SUBSET_CANDIDATE = "iter8-candidate"


class Role(str, Enum):
    INITIALIZING = "initializing"
    PROGRESSING = "progressing"
    STABLE = "stable"


def role_of(obj: dict[str, Any] | None) -> Role | None:
    if obj is None:
        return None
    raw = labels_of(obj).get(LABEL_ROLE)
    try:
        return Role(raw) if raw is not None else None
    except ValueError:
        return None


def labels_of(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def candidate_subset_name(idx: int) -> str:
    return f"{SUBSET_CANDIDATE}-{idx}"


def service_host(name: str, namespace: str) -> str:
    return f"{name}.{namespace}.svc.cluster.local"


def default_host(exp: Experiment) -> str:
    """Internal service host if a service is named, else the first external host."""
    svc = exp.spec.service
    if svc.name:
        return service_host(svc.name, exp.service_namespace())
    nwk = exp.spec.networking
    if nwk and nwk.hosts:
        return nwk.hosts[0].name
    return "*"


def router_id(exp: Experiment) -> str:
    nwk = exp.spec.networking
    if nwk is not None and nwk.id:
        return nwk.id
    host = default_host(exp)
    if host == "*":
        return WILDCARD_HOST
    return host


def rule_name(rid: str) -> str:
    return f"{rid}.{RULE_NAME_SUFFIX}"


def new_destination_rule(name: str, host: str, namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": ISTIO_API_VERSION,
        "kind": "DestinationRule",
        "metadata": {"name": name, "namespace": namespace, "labels": {}},
        "spec": {"host": host, "subsets": []},
    }


def new_virtual_service(name: str, namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": ISTIO_API_VERSION,
        "kind": "VirtualService",
        "metadata": {"name": name, "namespace": namespace, "labels": {}},
        "spec": {"hosts": [], "gateways": [], "http": []},
    }


def route_destination(host: str, weight: int, subset: str | None = None, port: int | None = None) -> dict[str, Any]:
    dest: dict[str, Any] = {"host": host}
    if subset:
        dest["subset"] = subset
    if port:
        dest["port"] = {"number": int(port)}
    return {"destination": dest, "weight": int(weight)}


def subset_for(deployment: dict[str, Any], subset_name: str) -> dict[str, Any]:
    """Subset selecting the pods of a deployment by its pod template labels."""
    template = ((deployment.get("spec") or {}).get("template") or {}).get("metadata") or {}
    return {"name": subset_name, "labels": dict(template.get("labels") or {})}


def experiment_route(vs: dict[str, Any]) -> dict[str, Any] | None:
    for route in (vs.get("spec") or {}).get("http") or []:
        if route.get("name") == ROUTE_EXPERIMENT:
            return route
    return None


class DestinationStrategy(ABC):
    """How one version of the target becomes a route destination."""

    requires_traffic_policy: bool = True

    @abstractmethod
    def build_destination(self, exp: Experiment, name: str, weight: int, subset: str) -> dict[str, Any]:
        raise NotImplementedError


class DeploymentDestinations(DestinationStrategy):
    """Versions are deployments behind one host, told apart by subsets."""

    requires_traffic_policy = True

    def build_destination(self, exp: Experiment, name: str, weight: int, subset: str) -> dict[str, Any]:
        return route_destination(default_host(exp), weight, subset=subset, port=exp.spec.service.port)


class ServiceDestinations(DestinationStrategy):
    """Versions are services of their own; no DestinationRule is needed."""

    requires_traffic_policy = False

    def build_destination(self, exp: Experiment, name: str, weight: int, subset: str) -> dict[str, Any]:
        return route_destination(service_host(name, exp.service_namespace()), weight, port=exp.spec.service.port)


def strategy_for(exp: Experiment) -> DestinationStrategy:
    if exp.spec.service.kind == "Service":
        return ServiceDestinations()
    return DeploymentDestinations()


def unique(values: list[str]) -> list[str]:
    out: list[str] = []
    for v in values:
        if v and v not in out:
            out.append(v)
    return out


def clone(obj: dict[str, Any] | None) -> dict[str, Any] | None:
    return copy.deepcopy(obj) if obj is not None else None

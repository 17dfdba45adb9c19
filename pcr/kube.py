from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.exceptions import ApiException

from .errors import Conflict, NotFound
from .settings import Settings

EXPERIMENT_GVP = ("iter8.tools", "v1alpha2", "experiments")
ROUTING_GVP = {
    "DestinationRule": ("networking.istio.io", "v1alpha3", "destinationrules"),
    "VirtualService": ("networking.istio.io", "v1alpha3", "virtualservices"),
}
KIND_EXPERIMENT = "Experiment"


def label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class KubeAPI(Protocol):
    """Cluster operations the controller needs, on plain dict objects."""

    def get_experiment(self, namespace: str, name: str) -> dict[str, Any]: ...

    def update_experiment(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def update_experiment_status(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    def list_routing(self, kind: str, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]: ...

    def create_routing(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def update_routing(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete_routing(self, kind: str, namespace: str, name: str) -> None: ...

    def get_workload(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def delete_workload(self, kind: str, namespace: str, name: str) -> None: ...

    def list_pods(self, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]: ...


@contextmanager
def _api_call(what: str) -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFound(f"{what}: not found") from e
        if e.status == 409:
            raise Conflict(f"{what}: conflict ({e.reason})") from e
        raise


class KubernetesClient:
    """KubeAPI backed by the official kubernetes client."""

    def __init__(self, api_client: k8s.ApiClient | None = None):
        self.api_client = api_client or k8s.ApiClient()
        self.core = k8s.CoreV1Api(self.api_client)
        self.apps = k8s.AppsV1Api(self.api_client)
        self.custom = k8s.CustomObjectsApi(self.api_client)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "KubernetesClient":
        if cfg.in_cluster:
            k8s_config.load_incluster_config()
        else:
            k8s_config.load_kube_config()
        return cls()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    # Experiments

    def get_experiment(self, namespace: str, name: str) -> dict[str, Any]:
        group, version, plural = EXPERIMENT_GVP
        with _api_call(f"experiment {namespace}/{name}"):
            return self.custom.get_namespaced_custom_object(group, version, namespace, plural, name)

    def update_experiment(self, obj: dict[str, Any]) -> dict[str, Any]:
        group, version, plural = EXPERIMENT_GVP
        md = obj["metadata"]
        with _api_call(f"experiment {md['namespace']}/{md['name']}"):
            return self.custom.replace_namespaced_custom_object(
                group, version, md["namespace"], plural, md["name"], obj
            )

    def update_experiment_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        group, version, plural = EXPERIMENT_GVP
        md = obj["metadata"]
        with _api_call(f"experiment status {md['namespace']}/{md['name']}"):
            return self.custom.replace_namespaced_custom_object_status(
                group, version, md["namespace"], plural, md["name"], obj
            )

    # Routing rules

    def list_routing(self, kind: str, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        group, version, plural = ROUTING_GVP[kind]
        with _api_call(f"list {kind} in {namespace}"):
            out = self.custom.list_namespaced_custom_object(
                group, version, namespace, plural, label_selector=label_selector(selector)
            )
        return list(out.get("items", []))

    def create_routing(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        group, version, plural = ROUTING_GVP[kind]
        with _api_call(f"create {kind} {namespace}/{body['metadata']['name']}"):
            return self.custom.create_namespaced_custom_object(group, version, namespace, plural, body)

    def update_routing(self, kind: str, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        group, version, plural = ROUTING_GVP[kind]
        name = body["metadata"]["name"]
        with _api_call(f"update {kind} {namespace}/{name}"):
            return self.custom.replace_namespaced_custom_object(group, version, namespace, plural, name, body)

    def delete_routing(self, kind: str, namespace: str, name: str) -> None:
        group, version, plural = ROUTING_GVP[kind]
        with _api_call(f"delete {kind} {namespace}/{name}"):
            self.custom.delete_namespaced_custom_object(group, version, namespace, plural, name)

    # Workloads

    def get_workload(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        with _api_call(f"{kind} {namespace}/{name}"):
            if kind == "Service":
                obj = self.core.read_namespaced_service(name, namespace)
            else:
                obj = self.apps.read_namespaced_deployment(name, namespace)
        return self._to_dict(obj)

    def delete_workload(self, kind: str, namespace: str, name: str) -> None:
        with _api_call(f"delete {kind} {namespace}/{name}"):
            if kind == "Service":
                self.core.delete_namespaced_service(name, namespace)
            else:
                self.apps.delete_namespaced_deployment(name, namespace)

    def list_pods(self, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        with _api_call(f"list pods in {namespace}"):
            pods = self.core.list_namespaced_pod(namespace, label_selector=label_selector(selector))
        return [self._to_dict(p) for p in pods.items]

    # Watches

    def _list_func(self, kind: str, namespace: str) -> tuple[Any, tuple[Any, ...]]:
        if kind == KIND_EXPERIMENT:
            group, version, plural = EXPERIMENT_GVP
            if namespace:
                return self.custom.list_namespaced_custom_object, (group, version, namespace, plural)
            return self.custom.list_cluster_custom_object, (group, version, plural)
        if kind == "Service":
            if namespace:
                return self.core.list_namespaced_service, (namespace,)
            return self.core.list_service_for_all_namespaces, ()
        if namespace:
            return self.apps.list_namespaced_deployment, (namespace,)
        return self.apps.list_deployment_for_all_namespaces, ()

    def watch(self, kind: str, namespace: str = "", timeout_s: int = 300) -> Iterator[tuple[str, dict[str, Any]]]:
        """Yield (event_type, object) until the server closes the stream."""
        func, args = self._list_func(kind, namespace)
        w = k8s_watch.Watch()
        for event in w.stream(func, *args, timeout_seconds=timeout_s):
            yield event["type"], self._to_dict(event["object"])

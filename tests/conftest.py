import copy
import os as _os
import sys
import time

import pytest

# Ensure project root is importable (so `import pcr` and `import main` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from pcr.cache import TargetCache  # noqa: E402
from pcr.db import EventLog  # noqa: E402
from pcr.errors import Conflict, NotFound  # noqa: E402
from pcr.experiment import Assessment  # noqa: E402
from pcr.kube import label_selector  # noqa: E402
from pcr.settings import Settings  # noqa: E402


class FakeCluster:
    """In-memory stand-in for the Kubernetes API, recording every write."""

    def __init__(self):
        self.experiments: dict[tuple[str, str], dict] = {}
        self.routing: dict[str, dict[tuple[str, str], dict]] = {"DestinationRule": {}, "VirtualService": {}}
        self.workloads: dict[tuple[str, str, str], dict] = {}
        self.pods: list[dict] = []
        self.calls: list[tuple[str, str, str]] = []
        self.watch_events: dict[str, list[tuple[str, dict]]] = {}
        self.fail_next: dict[str, Exception] = {}
        self._rv = 0

    def _bump(self, obj: dict) -> None:
        self._rv += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._rv)

    def _maybe_fail(self, op: str) -> None:
        err = self.fail_next.pop(op, None)
        if err is not None:
            raise err

    # Experiments

    def add_experiment(self, obj: dict) -> dict:
        obj = copy.deepcopy(obj)
        obj["metadata"].setdefault("generation", 1)
        self._bump(obj)
        md = obj["metadata"]
        self.experiments[(md["namespace"], md["name"])] = obj
        return copy.deepcopy(obj)

    def experiment(self, namespace: str, name: str) -> dict:
        return copy.deepcopy(self.experiments[(namespace, name)])

    def get_experiment(self, namespace, name):
        self._maybe_fail("get_experiment")
        try:
            return copy.deepcopy(self.experiments[(namespace, name)])
        except KeyError:
            raise NotFound(f"Experiment {namespace}/{name} not found") from None

    def _stored_for_write(self, obj: dict) -> dict:
        md = obj["metadata"]
        key = (md["namespace"], md["name"])
        stored = self.experiments.get(key)
        if stored is None:
            raise NotFound(f"Experiment {key} not found")
        if md.get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise Conflict(f"Experiment {key} was modified")
        return stored

    def update_experiment(self, obj):
        self._maybe_fail("update_experiment")
        stored = self._stored_for_write(obj)
        new = copy.deepcopy(obj)
        new["status"] = copy.deepcopy(stored.get("status"))
        gen = stored["metadata"].get("generation", 1)
        new["metadata"]["generation"] = gen + 1 if new.get("spec") != stored.get("spec") else gen
        if new["metadata"].get("deletionTimestamp") and not new["metadata"].get("finalizers"):
            del self.experiments[(new["metadata"]["namespace"], new["metadata"]["name"])]
            self.calls.append(("delete", "Experiment", new["metadata"]["name"]))
            return copy.deepcopy(new)
        self._bump(new)
        self.experiments[(new["metadata"]["namespace"], new["metadata"]["name"])] = new
        self.calls.append(("update", "Experiment", new["metadata"]["name"]))
        return copy.deepcopy(new)

    def update_experiment_status(self, obj):
        self._maybe_fail("update_experiment_status")
        stored = self._stored_for_write(obj)
        stored["status"] = copy.deepcopy(obj.get("status"))
        self._bump(stored)
        self.calls.append(("update_status", "Experiment", stored["metadata"]["name"]))
        return copy.deepcopy(stored)

    def mark_deleting(self, namespace: str, name: str) -> None:
        stored = self.experiments[(namespace, name)]
        stored["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        self._bump(stored)

    # Routing rules

    def list_routing(self, kind, namespace, selector):
        out = []
        for (ns, _), obj in sorted(self.routing[kind].items()):
            labels = obj["metadata"].get("labels") or {}
            if ns == namespace and all(labels.get(k) == v for k, v in selector.items()):
                out.append(copy.deepcopy(obj))
        self.calls.append(("list", kind, label_selector(selector)))
        return out

    def create_routing(self, kind, namespace, body):
        self._maybe_fail("create_routing")
        name = body["metadata"]["name"]
        if (namespace, name) in self.routing[kind]:
            raise Conflict(f"{kind} {namespace}/{name} already exists")
        obj = copy.deepcopy(body)
        obj["metadata"]["namespace"] = namespace
        self._bump(obj)
        self.routing[kind][(namespace, name)] = obj
        self.calls.append(("create", kind, name))
        return copy.deepcopy(obj)

    def update_routing(self, kind, namespace, body):
        self._maybe_fail("update_routing")
        name = body["metadata"]["name"]
        if (namespace, name) not in self.routing[kind]:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        obj = copy.deepcopy(body)
        self._bump(obj)
        self.routing[kind][(namespace, name)] = obj
        self.calls.append(("update", kind, name))
        return copy.deepcopy(obj)

    def delete_routing(self, kind, namespace, name):
        self._maybe_fail("delete_routing")
        if self.routing[kind].pop((namespace, name), None) is None:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        self.calls.append(("delete", kind, name))

    def put_routing(self, kind: str, obj: dict) -> None:
        md = obj["metadata"]
        self.routing[kind][(md["namespace"], md["name"])] = copy.deepcopy(obj)

    def only(self, kind: str) -> dict:
        objs = list(self.routing[kind].values())
        assert len(objs) == 1, f"expected one {kind}, found {len(objs)}"
        return copy.deepcopy(objs[0])

    # Workloads

    def add_workload(self, obj: dict) -> None:
        md = obj["metadata"]
        self.workloads[(obj["kind"], md["namespace"], md["name"])] = copy.deepcopy(obj)

    def get_workload(self, kind, namespace, name):
        try:
            return copy.deepcopy(self.workloads[(kind, namespace, name)])
        except KeyError:
            raise NotFound(f"{kind} {namespace}/{name} not found") from None

    def delete_workload(self, kind, namespace, name):
        self._maybe_fail("delete_workload")
        if self.workloads.pop((kind, namespace, name), None) is None:
            raise NotFound(f"{kind} {namespace}/{name} not found")
        self.calls.append(("delete", kind, name))

    def list_pods(self, namespace, selector):
        out = []
        for pod in self.pods:
            md = pod["metadata"]
            labels = md.get("labels") or {}
            if md["namespace"] == namespace and all(labels.get(k) == v for k, v in selector.items()):
                out.append(copy.deepcopy(pod))
        return out

    def watch(self, kind, namespace="", timeout_s=300):
        pending = self.watch_events.pop(kind, [])
        if not pending:
            time.sleep(0.05)
        for etype, obj in pending:
            yield etype, copy.deepcopy(obj)

    # Call inspection

    def writes(self, kind: str | None = None) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] != "list" and (kind is None or c[1] == kind)]


def deployment(name, namespace="bookinfo", app="reviews", ready=True):
    replicas = 1
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": app}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": app, "version": name}},
            "template": {"metadata": {"labels": {"app": app, "version": name}}},
        },
        "status": {
            "replicas": replicas,
            "readyReplicas": replicas if ready else 0,
            "availableReplicas": replicas if ready else 0,
            "conditions": [{"type": "Available", "status": "True" if ready else "False"}],
        },
    }


def service(name, namespace="bookinfo", selector=None):
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"selector": selector if selector is not None else {"app": name}, "ports": [{"port": 9080}]},
    }


def pod(name, namespace="bookinfo", labels=None, phase="Running", ready="True"):
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "status": {"phase": phase, "conditions": [{"type": "Ready", "status": ready}]},
    }


def experiment(
    name="reviews-v3-rollout",
    namespace="bookinfo",
    service_name="reviews",
    baseline="reviews-v2",
    candidates=("reviews-v3",),
    kind=None,
    **spec,
):
    svc = {"name": service_name, "baseline": baseline, "candidates": list(candidates)}
    if kind:
        svc["kind"] = kind
    return {
        "apiVersion": "iter8.tools/v1alpha2",
        "kind": "Experiment",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"service": svc, **spec},
    }


class StubAssessor:
    """Hands out queued assessments; repeats the last one when the queue runs dry."""

    def __init__(self, *splits):
        self.splits = list(splits)
        self.calls = 0

    def assess(self, ctx, exp):
        self.calls += 1
        svc = exp.spec.service
        weights = self.splits.pop(0) if len(self.splits) > 1 else self.splits[0]
        return Assessment.model_validate(
            {
                "baseline": {"name": svc.baseline, "weight": weights[0]},
                "candidates": [{"name": c, "weight": w} for c, w in zip(svc.candidates, weights[1:])],
            }
        )


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def events(tmp_path):
    log = EventLog(str(tmp_path / "events.db"))
    log.init_db()
    return log


@pytest.fixture
def cache():
    return TargetCache()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        db_path=str(tmp_path / "events.db"),
        workers=2,
        reconcile_timeout_s=5.0,
        poll_interval_s=0.0,
        ready_timeout_s=0.0,
        default_interval_s=30.0,
        default_max_iterations=3,
        backoff_base_s=1.0,
        backoff_max_s=8.0,
    )


@pytest.fixture
def bookinfo(cluster):
    """reviews service with a ready baseline and candidate deployment."""
    cluster.add_workload(service("reviews"))
    cluster.add_workload(deployment("reviews-v2"))
    cluster.add_workload(deployment("reviews-v3"))
    return cluster

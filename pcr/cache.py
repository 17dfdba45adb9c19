from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Iterable

from .adapter import ActionAdapter
from .errors import TargetConflictError
from .experiment import Experiment

KIND_SERVICE = "Service"
KIND_DEPLOYMENT = "Deployment"


@dataclass(frozen=True)
class TargetRef:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass
class TargetEntry:
    experiment: str  # namespace/name
    found: bool = False


def experiment_targets(exp: Experiment) -> list[TargetRef]:
    """Workloads an experiment depends on, in declaration order."""
    svc = exp.spec.service
    ns = exp.service_namespace()
    version_kind = KIND_SERVICE if svc.kind == KIND_SERVICE else KIND_DEPLOYMENT

    refs: list[TargetRef] = []
    if svc.name:
        refs.append(TargetRef(KIND_SERVICE, ns, svc.name))
    for name in [svc.baseline, *svc.candidates]:
        ref = TargetRef(version_kind, ns, name)
        if ref not in refs:
            refs.append(ref)
    return refs


class TargetCache:
    """Which experiment owns which workload, and whether that workload exists.

    Shared between watch callbacks and reconcilers; every method takes the lock.
    """

    def __init__(self) -> None:
        self.lock = Lock()
        self._targets: dict[TargetRef, TargetEntry] = {}
        self._experiments: dict[str, tuple[list[TargetRef], ActionAdapter]] = {}

    def register_experiment(self, experiment_key: str, targets: Iterable[TargetRef]) -> ActionAdapter:
        """Claim targets for an experiment and return its action adapter.

        Re-registering the same experiment keeps found/missing state and the
        adapter. Raises TargetConflictError, leaving the cache untouched, when
        any target already belongs to a different experiment.
        """
        refs = list(targets)
        with self.lock:
            for ref in refs:
                entry = self._targets.get(ref)
                if entry is not None and entry.experiment != experiment_key:
                    raise TargetConflictError(f"{ref} is already used by experiment {entry.experiment}")

            prev = self._experiments.get(experiment_key)
            adapter = prev[1] if prev else ActionAdapter()
            if prev:
                for old in prev[0]:
                    if old not in refs:
                        self._targets.pop(old, None)
            for ref in refs:
                self._targets.setdefault(ref, TargetEntry(experiment=experiment_key))
            self._experiments[experiment_key] = (refs, adapter)
            return adapter

    def unregister_experiment(self, experiment_key: str) -> None:
        with self.lock:
            prev = self._experiments.pop(experiment_key, None)
            if not prev:
                return
            for ref in prev[0]:
                entry = self._targets.get(ref)
                if entry is not None and entry.experiment == experiment_key:
                    del self._targets[ref]

    def mark_found(self, kind: str, name: str, namespace: str, notify: bool = True) -> bool:
        """Flip a registered target to found.

        Returns False when the target is unknown or was already found. With
        notify the owning experiment's adapter records a detection.
        """
        ref = TargetRef(kind, namespace, name)
        with self.lock:
            entry = self._targets.get(ref)
            if entry is None or entry.found:
                return False
            entry.found = True
            if notify:
                self._experiments[entry.experiment][1].mark_target_detected(name, kind)
            return True

    def mark_missing(self, kind: str, name: str, namespace: str) -> bool:
        """Flip a registered target to missing; False if unknown or already missing."""
        ref = TargetRef(kind, namespace, name)
        with self.lock:
            entry = self._targets.get(ref)
            if entry is None or not entry.found:
                return False
            entry.found = False
            self._experiments[entry.experiment][1].mark_target_deleted(name, kind)
            return True

    def resolve_owner(self, kind: str, name: str, namespace: str) -> str | None:
        with self.lock:
            entry = self._targets.get(TargetRef(kind, namespace, name))
            return entry.experiment if entry else None

    def adapter(self, experiment_key: str) -> ActionAdapter | None:
        with self.lock:
            prev = self._experiments.get(experiment_key)
            return prev[1] if prev else None

    def is_found(self, kind: str, name: str, namespace: str) -> bool:
        with self.lock:
            entry = self._targets.get(TargetRef(kind, namespace, name))
            return bool(entry and entry.found)

    def snapshot(self) -> list[dict]:
        with self.lock:
            return [
                {
                    "kind": ref.kind,
                    "namespace": ref.namespace,
                    "name": ref.name,
                    "experiment": entry.experiment,
                    "found": entry.found,
                }
                for ref, entry in sorted(self._targets.items(), key=lambda kv: (kv[0].namespace, kv[0].name, kv[0].kind))
            ]

from __future__ import annotations

import time
from threading import Event, Lock, Thread
from typing import Any

from .cache import KIND_DEPLOYMENT, KIND_SERVICE, TargetCache
from .db import EventLog
from .kube import KIND_EXPERIMENT, KubeAPI
from .reconciler import Reconciler, Result
from .settings import Settings
from .workqueue import WorkQueue

WATCHED_KINDS = (KIND_EXPERIMENT, KIND_SERVICE, KIND_DEPLOYMENT)


def split_key(key: str) -> tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


def _meta(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _spec_without_override(obj: dict[str, Any]) -> dict[str, Any]:
    spec = dict(obj.get("spec") or {})
    spec.pop("manualOverride", None)
    return spec


class _Step:
    """One reconcile run, which the worker may stop waiting for."""

    def __init__(self, key: str):
        self.key = key
        self.result: Result | None = None
        self.error: Exception | None = None
        self.finished = Event()
        self._lock = Lock()
        self._abandoned = False

    def abandon(self) -> bool:
        """Give up waiting; False if the run already finished."""
        with self._lock:
            if self.finished.is_set():
                return False
            self._abandoned = True
            return True

    def complete(self) -> bool:
        """Mark finished; True if the worker had given up on this run."""
        with self._lock:
            self.finished.set()
            return self._abandoned


class Controller:
    """Watches experiments and their workloads and drives the reconciler."""

    def __init__(
        self,
        client: KubeAPI,
        reconciler: Reconciler,
        cache: TargetCache,
        events: EventLog,
        cfg: Settings,
        queue: WorkQueue | None = None,
    ):
        self.client = client
        self.reconciler = reconciler
        self.cache = cache
        self.events = events
        self.cfg = cfg
        self.queue = queue or WorkQueue(cfg.backoff_base_s, cfg.backoff_max_s)
        self._stop = False
        self._threads: list[Thread] = []
        self._seen_lock = Lock()
        self._seen: dict[str, dict[str, Any]] = {}

    @property
    def workers(self) -> int:
        return max(1, int(self.cfg.workers))

    def start(self, watch: bool = True) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop = False
        self._threads = [Thread(target=self._worker, name=f"pcr-worker-{i}", daemon=True) for i in range(self.workers)]
        if watch:
            self._threads += [
                Thread(target=self._watch, args=(kind,), name=f"pcr-watch-{kind.lower()}", daemon=True)
                for kind in WATCHED_KINDS
            ]
        for t in self._threads:
            t.start()
        self.events.log_event("INFO", f"Controller started with {self.workers} worker(s)")

    def stop(self) -> None:
        self._stop = True
        self.queue.shutdown()

    def enqueue(self, namespace: str, name: str) -> str:
        key = f"{namespace}/{name}"
        self.queue.add(key)
        return key

    # Workers

    def _worker(self) -> None:
        while not self._stop:
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            self.process(key)

    def process(self, key: str) -> None:
        """Reconcile one key, waiting at most reconcile_timeout_s.

        A run that overruns is abandoned: the key stays in processing until
        the run actually returns, so no second run of it can start.
        """
        step = _Step(key)
        Thread(target=self._run, args=(step,), name=f"pcr-step-{key}", daemon=True).start()
        if not step.finished.wait(self.cfg.reconcile_timeout_s) and step.abandon():
            namespace, name = split_key(key)
            delay = self.queue.add_rate_limited(key)
            self.events.log_event(
                "ERROR",
                f"Reconcile exceeded {self.cfg.reconcile_timeout_s}s; abandoned, retry in {delay:.0f}s",
                namespace,
                name,
            )
            return
        self._finish(step)

    def _run(self, step: _Step) -> None:
        try:
            step.result = self.reconciler.reconcile(*split_key(step.key))
        except Exception as e:
            step.error = e
        if step.complete():
            self._finish(step)

    def _finish(self, step: _Step) -> None:
        key = step.key
        if step.error is not None:
            delay = self.queue.add_rate_limited(key)
            namespace, name = split_key(key)
            err = step.error
            self.events.log_event(
                "ERROR", f"Reconcile failed ({type(err).__name__}: {err}); retry in {delay:.0f}s", namespace, name
            )
        elif step.result is not None:
            self.queue.forget(key)
            if step.result.requeue:
                self.queue.add_after(key, step.result.requeue_after or 0)
        self.queue.done(key)

    # Watches

    def _watch(self, kind: str) -> None:
        while not self._stop:
            try:
                for etype, obj in self.client.watch(kind, self.cfg.watch_namespace):
                    if self._stop:
                        return
                    if kind == KIND_EXPERIMENT:
                        self.handle_experiment_event(etype, obj)
                    else:
                        self.handle_workload_event(kind, etype, obj)
            except Exception as e:
                self.events.log_event("WARN", f"Watch on {kind} failed: {type(e).__name__}: {e}")
                time.sleep(max(1.0, self.cfg.poll_interval_s))

    def handle_workload_event(self, kind: str, etype: str, obj: dict[str, Any]) -> bool:
        """Feed a Service/Deployment event through the target cache.

        Returns True when the owning experiment was enqueued.
        """
        md = _meta(obj)
        name, namespace = md.get("name"), md.get("namespace") or "default"
        if not name:
            return False
        if etype == "ADDED":
            changed = self.cache.mark_found(kind, name, namespace)
        elif etype == "DELETED":
            changed = self.cache.mark_missing(kind, name, namespace)
        else:
            return False
        if not changed:
            return False
        owner = self.cache.resolve_owner(kind, name, namespace)
        if owner is None:
            return False
        self.queue.add(owner)
        return True

    def handle_experiment_event(self, etype: str, obj: dict[str, Any]) -> bool:
        """Enqueue an experiment unless the event carries nothing to act on.

        Status, finalizer and other metadata-only updates do not bump the
        generation and are dropped, as is the update that only clears a
        consumed resume override.
        """
        md = _meta(obj)
        name, namespace = md.get("name"), md.get("namespace") or "default"
        if not name:
            return False
        key = f"{namespace}/{name}"

        if etype == "DELETED":
            with self._seen_lock:
                self._seen.pop(key, None)
            self.cache.unregister_experiment(key)
            return False

        current = {
            "generation": md.get("generation"),
            "deleting": md.get("deletionTimestamp") is not None,
            "override": (obj.get("spec") or {}).get("manualOverride"),
            "spec": _spec_without_override(obj),
        }
        with self._seen_lock:
            prev = self._seen.get(key)
            self._seen[key] = current

        if etype == "MODIFIED" and prev is not None and not (current["deleting"] and not prev["deleting"]):
            if current["generation"] is not None and current["generation"] == prev["generation"]:
                return False
            if current["spec"] == prev["spec"] and current["override"] is None and (prev["override"] or {}).get(
                "action"
            ) == "resume":
                return False
            if current["generation"] is None and current["spec"] == prev["spec"] and current["override"] == prev["override"]:
                return False

        self.queue.add(key)
        return True

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query

from .api_models import EventOut, Health, ReconcileAccepted, TargetOut
from .cache import TargetCache
from .controller import Controller
from .db import EventLog


def create_app(controller: Controller, cache: TargetCache, events: EventLog, start_controller: bool = True) -> FastAPI:
    """Status API over a running controller."""
    app = FastAPI(title="Progressive Canary Reconciler")

    @app.on_event("startup")
    def startup() -> None:
        events.init_db()
        if start_controller:
            controller.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if start_controller:
            controller.stop()

    @app.get("/healthz", response_model=Health)
    def healthz():
        return Health(workers=controller.workers, queue_depth=len(controller.queue))

    @app.get("/targets", response_model=list[TargetOut])
    def targets():
        return [TargetOut(**t) for t in cache.snapshot()]

    @app.get("/events", response_model=list[EventOut])
    def list_events(
        limit: int = Query(100, ge=1, le=1000),
        namespace: str | None = None,
        experiment: str | None = None,
    ):
        return [EventOut(**e) for e in events.latest_events(limit=limit, namespace=namespace, experiment=experiment)]

    @app.post("/experiments/{namespace}/{name}/reconcile", response_model=ReconcileAccepted, status_code=202)
    def reconcile(namespace: str, name: str):
        if controller.queue.shutting_down:
            raise HTTPException(status_code=503, detail="Controller is shutting down")
        key = controller.enqueue(namespace, name)
        events.log_event("INFO", "Reconcile requested via API", namespace, name)
        return ReconcileAccepted(key=key)

    return app

from __future__ import annotations

import os

import uvicorn
from fastapi import FastAPI

from pcr.analytics import AnalyticsClient, NullMetrics
from pcr.api import create_app
from pcr.cache import TargetCache
from pcr.controller import Controller
from pcr.db import EventLog
from pcr.kube import KubeAPI, KubernetesClient
from pcr.reconciler import Reconciler
from pcr.settings import Settings, settings


def build_app(cfg: Settings = settings, client: KubeAPI | None = None, start_controller: bool = True) -> FastAPI:
    """Wire the controller and return the status API.

    Run with: uvicorn main:build_app --factory
    """
    events = EventLog(cfg.db_path)
    events.init_db()
    cache = TargetCache()
    client = client or KubernetesClient.from_settings(cfg)
    reconciler = Reconciler(
        client,
        cache,
        events,
        cfg,
        assessor=AnalyticsClient(cfg.analytics_endpoint, timeout_s=cfg.analytics_timeout_s),
        metrics=NullMetrics(),
    )
    controller = Controller(client, reconciler, cache, events, cfg)
    return create_app(controller, cache, events, start_controller=start_controller)


if __name__ == "__main__":
    uvicorn.run(
        "main:build_app",
        factory=True,
        host=os.getenv("PCR_HOST", "0.0.0.0"),
        port=int(os.getenv("PCR_PORT", "8000")),
    )

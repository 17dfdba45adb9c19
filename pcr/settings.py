from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("PCR_DB_PATH", "pcr.db")
    workers: int = _env_int("PCR_WORKERS", 4)
    reconcile_timeout_s: float = _env_float("PCR_RECONCILE_TIMEOUT_S", 60.0)
    watch_namespace: str = os.getenv("PCR_WATCH_NAMESPACE", "")
    in_cluster: bool = _env_bool("PCR_IN_CLUSTER", False)

    # Target readiness polling
    poll_interval_s: float = _env_float("PCR_POLL_INTERVAL_S", 3.0)
    ready_timeout_s: float = _env_float("PCR_READY_TIMEOUT_S", 15.0)

    # Iterations and requeue
    default_interval_s: float = _env_float("PCR_DEFAULT_INTERVAL_S", 30.0)
    default_max_iterations: int = _env_int("PCR_DEFAULT_MAX_ITERATIONS", 100)
    backoff_base_s: float = _env_float("PCR_BACKOFF_BASE_S", 1.0)
    backoff_max_s: float = _env_float("PCR_BACKOFF_MAX_S", 300.0)

    # Fitness-assessment service
    analytics_endpoint: str = os.getenv("PCR_ANALYTICS_ENDPOINT", "http://iter8-analytics.iter8:8080")
    analytics_timeout_s: float = _env_float("PCR_ANALYTICS_TIMEOUT_S", 10.0)

    # Cleanup policy
    # When an experiment asks for cleanup, also delete its candidate workloads.
    delete_candidates_on_cleanup: bool = _env_bool("PCR_DELETE_CANDIDATES_ON_CLEANUP", False)


settings = Settings()

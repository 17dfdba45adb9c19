from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the DB file goes inside it.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "pcr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


class EventLog:
    """Append-only event trail shared by the controller, reconciler and API."""

    def __init__(self, path: str):
        self.path = _resolve_db_path(path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  namespace TEXT,
                  experiment TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_experiment ON events(namespace, experiment);
                """
            )

    def log_event(
        self, level: str, message: str, namespace: str | None = None, experiment: str | None = None
    ) -> None:
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, namespace, experiment, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), namespace, experiment, message),
            )

    def latest_events(
        self, limit: int = 100, namespace: str | None = None, experiment: str | None = None
    ) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if namespace and experiment:
                rows = conn.execute(
                    "SELECT * FROM events WHERE namespace=? AND experiment=? ORDER BY id DESC LIMIT ?",
                    (namespace, experiment, limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

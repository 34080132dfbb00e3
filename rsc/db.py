from __future__ import annotations

import json
import os
import sqlite3
from types import MappingProxyType
from typing import Any, Iterable

from .models import DeploymentEvent, EventKind, HealthCheckSpec, TaskDefinition
from .settings import settings


def _resolve_db_path(path: str | None = None) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one when a bind-mounted
    file does not exist yet) the DB file is placed inside it.
    """
    p = os.path.abspath(path or settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "rsc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect(path: str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str | None = None) -> None:
    """Create tables if they do not exist."""
    with connect(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS task_definitions (
              version INTEGER PRIMARY KEY AUTOINCREMENT,
              image TEXT NOT NULL,
              cpu INTEGER NOT NULL,
              memory INTEGER NOT NULL,
              port INTEGER NOT NULL,
              environment TEXT NOT NULL, -- json object
              health_check TEXT NOT NULL, -- json object
              log_sink TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              kind TEXT NOT NULL,
              service_id TEXT,
              task_id TEXT,
              version INTEGER,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_events_service ON events(service_id);
            """
        )


def _row_to_definition(row: sqlite3.Row) -> TaskDefinition:
    hc = json.loads(row["health_check"])
    health_check = HealthCheckSpec(
        command=tuple(hc["command"]),
        interval=hc["interval"],
        timeout=hc["timeout"],
        retries=hc["retries"],
        start_period=hc["start_period"],
    )
    return TaskDefinition(
        version=row["version"],
        image=row["image"],
        cpu=row["cpu"],
        memory=row["memory"],
        port=row["port"],
        health_check=health_check,
        environment=MappingProxyType(json.loads(row["environment"])),
        log_sink=row["log_sink"],
        created_at=row["created_at"],
    )


def insert_task_definition(
    path: str | None,
    image: str,
    cpu: int,
    memory: int,
    port: int,
    environment: dict[str, str],
    health_check: dict[str, Any],
    log_sink: str | None,
    created_at: str,
) -> int:
    with connect(path) as conn:
        cur = conn.execute(
            """
            INSERT INTO task_definitions (image, cpu, memory, port, environment, health_check, log_sink, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                image,
                cpu,
                memory,
                port,
                json.dumps(environment, sort_keys=True),
                json.dumps(health_check),
                log_sink,
                created_at,
            ),
        )
        return int(cur.lastrowid)


def get_task_definition(path: str | None, version: int) -> TaskDefinition | None:
    with connect(path) as conn:
        row = conn.execute("SELECT * FROM task_definitions WHERE version=?", (version,)).fetchone()
        return _row_to_definition(row) if row else None


def list_task_definitions(path: str | None) -> list[TaskDefinition]:
    with connect(path) as conn:
        rows = conn.execute("SELECT * FROM task_definitions ORDER BY version").fetchall()
        return [_row_to_definition(r) for r in rows]


def insert_event(path: str | None, ev: DeploymentEvent) -> int:
    with connect(path) as conn:
        cur = conn.execute(
            """
            INSERT INTO events (ts, level, kind, service_id, task_id, version, message)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (ev.ts, ev.level, ev.kind.value, ev.service_id, ev.task_id, ev.version, ev.message),
        )
        return int(cur.lastrowid)


def _rows_to_events(rows: Iterable[sqlite3.Row]) -> list[DeploymentEvent]:
    out: list[DeploymentEvent] = []
    for r in rows:
        out.append(
            DeploymentEvent(
                id=r["id"],
                ts=r["ts"],
                level=r["level"],
                kind=EventKind(r["kind"]),
                service_id=r["service_id"],
                task_id=r["task_id"],
                version=r["version"],
                message=r["message"],
            )
        )
    return out


def latest_events(path: str | None, limit: int = 100, service_id: str | None = None) -> list[DeploymentEvent]:
    with connect(path) as conn:
        if service_id:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_id=? ORDER BY id DESC LIMIT ?",
                (service_id, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return _rows_to_events(rows)

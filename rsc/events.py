from __future__ import annotations

import logging
from dataclasses import replace
from threading import Lock
from typing import Callable

from prometheus_client import Counter, Gauge

from . import db
from .models import DeploymentEvent, EventKind, utc_now

log = logging.getLogger(__name__)

EventSink = Callable[[DeploymentEvent], None]

EVENTS_TOTAL = Counter("rsc_deployment_events_total", "Deployment events emitted", ["kind", "level"])
SERVICE_DESIRED = Gauge("rsc_service_desired_tasks", "Desired task count", ["service"])
SERVICE_RUNNING = Gauge("rsc_service_running_tasks", "Non-stopped tasks", ["service"])
SERVICE_HEALTHY = Gauge("rsc_service_healthy_tasks", "Healthy tasks of the target version", ["service"])

_LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}


class EventLog:
    """Append-only DeploymentEvent stream.

    Each event is stored in SQLite, logged, counted, then handed to every
    registered sink (alerting, external collectors). A failing sink is logged
    and skipped.
    """

    def __init__(self, db_path: str | None = None, sinks: list[EventSink] | None = None):
        self.db_path = db_path
        self._lock = Lock()
        self._sinks: list[EventSink] = list(sinks or [])
        db.init_db(db_path)

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def emit(
        self,
        kind: EventKind,
        message: str,
        level: str = "INFO",
        service_id: str | None = None,
        task_id: str | None = None,
        version: int | None = None,
    ) -> DeploymentEvent:
        level = level.upper()
        ev = DeploymentEvent(
            ts=utc_now(),
            level=level,
            kind=kind,
            message=message,
            service_id=service_id,
            task_id=task_id,
            version=version,
        )
        event_id = db.insert_event(self.db_path, ev)
        ev = replace(ev, id=event_id)

        log.log(_LEVELS.get(level, logging.INFO), "%s service=%s task=%s: %s", kind.value, service_id, task_id, message)
        EVENTS_TOTAL.labels(kind=kind.value, level=level).inc()

        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(ev)
            except Exception:
                log.exception("Event sink %r failed", sink)
        return ev

    def latest(self, limit: int = 100, service_id: str | None = None) -> list[DeploymentEvent]:
        return db.latest_events(self.db_path, limit=limit, service_id=service_id)

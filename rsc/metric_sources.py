"""Load metrics the auto scaler can track.

A metric source is any callable taking a service id and returning the current
value, raising MetricUnavailable when it has nothing fresh to offer.
"""
from __future__ import annotations

import time
from threading import Lock
from typing import TYPE_CHECKING, Callable

from .errors import MetricUnavailable, NotFound
from .settings import settings

if TYPE_CHECKING:
    from .controller import ServiceController

MetricSource = Callable[[str], float]


class PushedMetrics:
    """Latest value pushed per service; values older than ``ttl_s`` are ignored."""

    def __init__(self, ttl_s: float | None = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = settings.metric_ttl_s if ttl_s is None else ttl_s
        self.clock = clock
        self._lock = Lock()
        self._values: dict[str, tuple[float, float]] = {}

    def push(self, service_id: str, value: float) -> None:
        with self._lock:
            self._values[service_id] = (float(value), self.clock())

    def __call__(self, service_id: str) -> float:
        with self._lock:
            entry = self._values.get(service_id)
        if entry is None:
            raise MetricUnavailable(f"no metric pushed for {service_id}")
        value, at = entry
        if self.clock() - at > self.ttl_s:
            raise MetricUnavailable(f"last metric for {service_id} is older than {self.ttl_s:g}s")
        return value


class FleetCpuMetric:
    """Average CPU utilization (% of reservation) across a service's healthy tasks."""

    def __init__(self, controller: "ServiceController"):
        self.controller = controller

    def __call__(self, service_id: str) -> float:
        try:
            svc = self.controller.get_service(service_id)
        except NotFound as e:
            raise MetricUnavailable(str(e)) from e
        with svc.lock:
            tasks = [t for t in svc.live_tasks() if t.healthy]
        samples = [u for u in (self.controller.runtime.cpu_utilization(t) for t in tasks) if u is not None]
        if not samples:
            raise MetricUnavailable(f"no CPU samples for {service_id}")
        return sum(samples) / len(samples)


class FirstAvailable:
    """Try each source in order; the first that answers wins."""

    def __init__(self, *sources: MetricSource):
        self.sources = sources

    def __call__(self, service_id: str) -> float:
        reasons = []
        for source in self.sources:
            try:
                return source(service_id)
            except MetricUnavailable as e:
                reasons.append(str(e))
        raise MetricUnavailable("; ".join(reasons) or "no metric sources configured")

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from .controller import ServiceController
from .errors import MetricUnavailable
from .metric_sources import MetricSource
from .models import EventKind, ScalingPolicy
from .settings import settings

log = logging.getLogger(__name__)


def desired_for(current: int, metric: float, policy: ScalingPolicy) -> int:
    """Target tracking: ceil(current * metric / target), clamped to the policy bounds."""
    raw = math.ceil(round(current * metric / policy.target_value, 9))
    return policy.clamp(raw)


class AutoScaler:
    """Adjusts desired count from a load metric.

    The metric is read outside the Service lock; the read-modify-write of
    desired count happens under it, so it serializes with reconcile ticks and
    operator updates. A write is suppressed if the previous scaling write is
    younger than the cooldown for the direction of the change.
    """

    def __init__(
        self,
        controller: ServiceController,
        metric_source: MetricSource,
        clock: Callable[[], float] | None = None,
        alarm_after: int | None = None,
    ):
        self.controller = controller
        self.metric_source = metric_source
        self.clock = clock or controller.clock
        self.alarm_after = settings.metric_unavailable_alarm if alarm_after is None else alarm_after

    def evaluate(self, service_id: str) -> int | None:
        """Run one evaluation; return the new desired count if one was written."""
        svc = self.controller.get_service(service_id)
        if svc.scaling_policy is None:
            return None
        events = self.controller.events

        try:
            metric = float(self.metric_source(service_id))
        except MetricUnavailable as e:
            with svc.lock:
                svc.metric_misses += 1
                misses = svc.metric_misses
            events.emit(
                EventKind.SCALING_SKIPPED,
                f"metric unavailable, keeping desired count: {e}",
                service_id=svc.id,
            )
            if misses == self.alarm_after:
                events.emit(
                    EventKind.SCALING_SKIPPED,
                    f"metric unavailable for {misses} consecutive evaluations",
                    level="WARN",
                    service_id=svc.id,
                )
            return None

        with svc.lock:
            svc.metric_misses = 0
            policy = svc.scaling_policy
            if policy is None:
                return None
            now = self.clock()
            current = svc.desired_count
            new = desired_for(current, metric, policy)
            if new == current:
                return None
            cooldown = policy.scale_out_cooldown if new > current else policy.scale_in_cooldown
            if svc.last_scaling_write_at is not None and now - svc.last_scaling_write_at < cooldown:
                log.info(
                    "Scaling %s %d -> %d suppressed: %.1fs into %gs cooldown",
                    svc.id, current, new, now - svc.last_scaling_write_at, cooldown,
                )
                return None
            applied = self.controller.apply_desired_count(
                svc, new, f"target tracking {metric:g}/{policy.target_value:g}"
            )
            svc.last_scaling_write_at = now
            events.emit(
                EventKind.SCALE_OUT if applied > current else EventKind.SCALE_IN,
                f"desired {current} -> {applied} (metric {metric:g}, target {policy.target_value:g})",
                service_id=svc.id,
                version=svc.target_version,
            )
            return applied

    def evaluate_all(self) -> None:
        for service_id in self.controller.service_ids():
            self.evaluate(service_id)

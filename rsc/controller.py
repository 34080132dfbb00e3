from __future__ import annotations

import itertools
import logging
import re
import secrets
import time
from threading import Lock
from typing import Any, Callable

from .errors import LaunchFailure, NotFound, ValidationError
from .events import SERVICE_DESIRED, SERVICE_HEALTHY, SERVICE_RUNNING, EventLog
from .gateway import InProcessTargetGroup, LoadBalancerBinding, TargetRegistrar
from .health import HealthChecker
from .models import (
    Deployment,
    EventKind,
    RollingPolicy,
    RolloutStatus,
    ScalingPolicy,
    Service,
    Task,
    TaskDefinition,
    TaskState,
    utc_now,
)
from .runtime import TaskRuntime
from .settings import settings
from .task_definitions import TaskDefinitionStore

log = logging.getLogger(__name__)

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def _oldest_first(tasks: list[Task]) -> list[Task]:
    return sorted(tasks, key=lambda t: (t.launched_at, t.seq))


class ServiceController:
    """Rolling-update state machine for every Service it owns.

    Each call to ``tick(service_id)`` runs one reconciliation pass under the
    Service's lock: observe health, replace unhealthy tasks, then move the fleet
    toward {desired count, target version} without exceeding
    ceil(desired * max_percent / 100) live tasks and without letting healthy
    target-version tasks fall below the min-healthy bound once it is reached.
    Launch and stop calls never wait for a task to become healthy; the next
    tick observes the outcome.
    """

    def __init__(
        self,
        store: TaskDefinitionStore,
        runtime: TaskRuntime,
        events: EventLog,
        binding: LoadBalancerBinding | None = None,
        health: HealthChecker | None = None,
        clock: Callable[[], float] = time.monotonic,
        launch_max_attempts: int | None = None,
        launch_backoff_base_s: float | None = None,
        launch_backoff_max_s: float | None = None,
        deregistration_delay_s: float | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.events = events
        self.binding = binding or InProcessTargetGroup()
        self.health = health or HealthChecker(runtime, events)
        self.registrar = TargetRegistrar(self.binding, events)
        self.clock = clock
        self.launch_max_attempts = launch_max_attempts or settings.launch_max_attempts
        self.launch_backoff_base_s = (
            settings.launch_backoff_base_s if launch_backoff_base_s is None else launch_backoff_base_s
        )
        self.launch_backoff_max_s = settings.launch_backoff_max_s if launch_backoff_max_s is None else launch_backoff_max_s
        self.deregistration_delay_s = (
            settings.deregistration_delay_s if deregistration_delay_s is None else deregistration_delay_s
        )
        self._services: dict[str, Service] = {}
        self._lock = Lock()  # guards _services only; each Service has its own lock
        self._seq = itertools.count(1)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_service(
        self,
        task_definition: int,
        desired_count: int,
        rolling_policy: RollingPolicy | None = None,
        name: str | None = None,
    ) -> str:
        policy = rolling_policy or RollingPolicy()
        policy.validate()
        _validate_count(desired_count)
        self.store.get(task_definition)

        service_id = f"svc-{secrets.token_hex(4)}"
        name = name or service_id
        if not SERVICE_NAME_RE.match(name):
            raise ValidationError(
                "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )

        svc = Service(
            id=service_id,
            name=name,
            desired_count=desired_count,
            target_version=task_definition,
            rolling_policy=policy,
            deployment=Deployment(target_version=task_definition, desired_count=desired_count),
        )
        with self._lock:
            if any(s.name == name for s in self._services.values()):
                raise ValidationError(f"service name '{name}' is already in use")
            self._services[service_id] = svc

        self.events.emit(
            EventKind.SERVICE_CREATED,
            f"service '{name}' created: version {task_definition}, desired {desired_count}, policy {policy.to_dict()}",
            service_id=service_id,
            version=task_definition,
        )
        self.events.emit(
            EventKind.ROLLOUT_STARTED, "initial deployment", service_id=service_id, version=task_definition
        )
        return service_id

    def update_service(
        self,
        service_id: str,
        task_definition: int | None = None,
        desired_count: int | None = None,
        rolling_policy: RollingPolicy | None = None,
    ) -> dict[str, Any]:
        svc = self.get_service(service_id)
        if task_definition is not None:
            self.store.get(task_definition)
        if desired_count is not None:
            _validate_count(desired_count)
        if rolling_policy is not None:
            rolling_policy.validate()

        with svc.lock:
            changes = []
            if rolling_policy is not None and rolling_policy != svc.rolling_policy:
                svc.rolling_policy = rolling_policy
                changes.append(f"policy {rolling_policy.to_dict()}")
            stalled = svc.deployment.status is RolloutStatus.STALLED
            if task_definition is not None and (task_definition != svc.target_version or stalled):
                svc.target_version = task_definition
                svc.launch_failures = 0
                svc.next_launch_at = 0.0
                changes.append(f"version {task_definition}")
                # Supersedes whatever rollout was in flight, stalled or not.
                self._start_deployment(svc, f"new task definition {task_definition}")
            if desired_count is not None:
                applied = self.apply_desired_count(svc, desired_count, "operator update")
                changes.append(f"desired {applied}")
            if changes:
                self.events.emit(
                    EventKind.SERVICE_UPDATED,
                    "; ".join(changes),
                    service_id=svc.id,
                    version=svc.target_version,
                )
            return self._snapshot(svc)

    def set_scaling_policy(
        self,
        service_id: str,
        target_value: float,
        min_capacity: int,
        max_capacity: int,
        cooldown: float,
        scale_in_cooldown: float | None = None,
    ) -> ScalingPolicy:
        policy = ScalingPolicy(
            target_value=target_value,
            min_capacity=min_capacity,
            max_capacity=max_capacity,
            scale_out_cooldown=cooldown,
            scale_in_cooldown=cooldown if scale_in_cooldown is None else scale_in_cooldown,
        )
        policy.validate()
        svc = self.get_service(service_id)
        with svc.lock:
            svc.scaling_policy = policy
            svc.metric_misses = 0
            self.events.emit(
                EventKind.SERVICE_UPDATED,
                f"scaling policy {policy.to_dict()}",
                service_id=svc.id,
                version=svc.target_version,
            )
            self.apply_desired_count(svc, svc.desired_count, "scaling policy bounds")
        return policy

    def resume_service(self, service_id: str) -> dict[str, Any]:
        """Operator intervention: clear a stalled rollout and retry launching."""
        svc = self.get_service(service_id)
        with svc.lock:
            if svc.deployment.status is RolloutStatus.STALLED:
                svc.launch_failures = 0
                svc.next_launch_at = 0.0
                svc.deployment.status = RolloutStatus.IN_PROGRESS
                svc.deployment.reason = None
                self.events.emit(
                    EventKind.ROLLOUT_RESUMED,
                    "stalled rollout resumed by operator",
                    service_id=svc.id,
                    version=svc.target_version,
                )
            return self._snapshot(svc)

    def describe_service(self, service_id: str) -> dict[str, Any]:
        svc = self.get_service(service_id)
        with svc.lock:
            return self._snapshot(svc)

    def list_services(self) -> list[dict[str, Any]]:
        with self._lock:
            services = list(self._services.values())
        out = []
        for svc in services:
            with svc.lock:
                out.append(self._snapshot(svc))
        return out

    def get_service(self, service_id: str) -> Service:
        with self._lock:
            svc = self._services.get(service_id)
        if svc is None:
            raise NotFound(f"service {service_id} does not exist")
        return svc

    def service_ids(self) -> list[str]:
        with self._lock:
            return list(self._services)

    def apply_desired_count(self, svc: Service, count: int, reason: str) -> int:
        """Write desired count, clamped to the scaling policy bounds.

        The caller must hold ``svc.lock``. Returns the value written.
        """
        if svc.scaling_policy is not None:
            count = svc.scaling_policy.clamp(count)
        if count == svc.desired_count:
            return count
        prev = svc.desired_count
        svc.desired_count = count
        if svc.deployment.status is RolloutStatus.COMPLETED:
            self._start_deployment(svc, f"desired count {prev} -> {count} ({reason})")
        else:
            # In-flight rollouts are re-targeted, never aborted.
            svc.deployment.desired_count = count
        return count

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def tick(self, service_id: str) -> bool:
        """Run one reconciliation pass. Returns False if another pass holds the lock."""
        svc = self.get_service(service_id)
        if not svc.lock.acquire(blocking=False):
            return False
        try:
            self._reconcile(svc)
        finally:
            svc.lock.release()
        return True

    def tick_all(self) -> None:
        for service_id in self.service_ids():
            self.tick(service_id)

    def _reconcile(self, svc: Service) -> None:
        now = self.clock()
        definitions = {t.version: self.store.get(t.version) for t in svc.live_tasks()}

        report = self.health.observe(svc.live_tasks(), definitions, now)
        if any(t.version == svc.target_version for t in report.started):
            svc.launch_failures = 0
        for task in report.failed_to_start:
            self._stop(svc, task, now, "exited before reaching RUNNING")
            self._record_launch_failure(svc, now, f"task {task.id} exited before reaching RUNNING")
        for task in report.unhealthy:
            self._begin_stop(svc, task, now, "unhealthy, replacing")
        self._finish_draining(svc, now)
        self.registrar.sync(svc.live_tasks(), now)

        target = svc.target_version
        desired = svc.desired_count
        policy = svc.rolling_policy
        max_total = policy.max_total(desired)
        min_healthy = policy.min_healthy(desired)
        healthy_floor = policy.healthy_floor(desired)

        # Scale in: target-version tasks beyond desired, not-yet-healthy and newest first.
        # Draining keeps a task live, so it is only allowed while within max_total.
        current, old, total = self._partition(svc)
        extra = len(current) - desired
        if extra > 0:
            for task in sorted(current, key=lambda t: (t.healthy, -t.seq))[:extra]:
                within = len(svc.live_tasks()) <= max_total
                self._begin_stop(svc, task, now, "scale in", drain=within)

        # Hard capacity bound after desired shrank: cut drains short, then stop old tasks.
        draining = [t for t in svc.live_tasks() if t.stop_requested and t.drain_until is not None]
        for task in _oldest_first(draining):
            if len(svc.live_tasks()) <= max_total:
                break
            self._stop(svc, task, now, "drain cut short: over capacity")
        current, old, total = self._partition(svc)
        for task in _oldest_first(old):
            if len(svc.live_tasks()) <= max_total:
                break
            self._begin_stop(svc, task, now, "over capacity", drain=False)

        # Retire old-version tasks already replaced by healthy target-version ones.
        current, old, total = self._partition(svc)
        current_healthy = sum(1 for t in current if t.healthy)
        if old and current_healthy >= min_healthy:
            batch = min(len(old), max(0, current_healthy + len(old) - desired))
            for task in _oldest_first(old)[:batch]:
                self._begin_stop(svc, task, now, f"replaced by version {target}")

        can_launch = svc.deployment.status is not RolloutStatus.STALLED and now >= svc.next_launch_at

        # No room to launch: give up old capacity down to the healthy floor.
        current, old, total = self._partition(svc)
        need = (desired - len(current)) - (max_total - total)
        if can_launch and need > 0 and old:
            healthy_all = sum(1 for t in current + old if t.healthy)
            for task in _oldest_first(old):
                if need <= 0:
                    break
                if task.healthy:
                    if healthy_all - 1 < healthy_floor:
                        continue
                    healthy_all -= 1
                self._begin_stop(svc, task, now, "making room for replacement")
                need -= 1

        current, old, total = self._partition(svc)
        current_healthy = sum(1 for t in current if t.healthy)
        if can_launch and current_healthy < desired and total < max_total:
            definition = self.store.get(target)
            for _ in range(min(max_total - total, desired - len(current))):
                if not self._launch(svc, definition, now):
                    break

        self._check_complete(svc)
        self._update_gauges(svc)

    def _partition(self, svc: Service) -> tuple[list[Task], list[Task], int]:
        """(target-version active, old-version active, live total incl. draining)."""
        live = svc.live_tasks()
        active = [t for t in live if not t.stop_requested]
        current = [t for t in active if t.version == svc.target_version]
        old = [t for t in active if t.version != svc.target_version]
        return current, old, len(live)

    def _launch(self, svc: Service, definition: TaskDefinition, now: float) -> bool:
        task = Task(
            id=f"task-{secrets.token_hex(6)}",
            service_id=svc.id,
            version=definition.version,
            launched_at=now,
            seq=next(self._seq),
        )
        try:
            task.handle, task.endpoint = self.runtime.launch(task, definition, svc.name)
        except LaunchFailure as e:
            self._record_launch_failure(svc, now, str(e))
            return False
        svc.tasks[task.id] = task
        self.events.emit(
            EventKind.TASK_LAUNCHED,
            f"launched {definition.image} ({task.endpoint})",
            service_id=svc.id,
            task_id=task.id,
            version=definition.version,
        )
        return True

    def _record_launch_failure(self, svc: Service, now: float, reason: str) -> None:
        svc.launch_failures += 1
        if svc.launch_failures >= self.launch_max_attempts:
            if svc.deployment.status is not RolloutStatus.STALLED:
                svc.deployment.status = RolloutStatus.STALLED
                svc.deployment.reason = f"{svc.launch_failures} consecutive launch failures: {reason}"
                self.events.emit(
                    EventKind.ROLLOUT_STALLED,
                    svc.deployment.reason,
                    level="ERROR",
                    service_id=svc.id,
                    version=svc.target_version,
                )
            return
        delay = min(self.launch_backoff_max_s, self.launch_backoff_base_s * 2 ** (svc.launch_failures - 1))
        svc.next_launch_at = now + delay
        self.events.emit(
            EventKind.TASK_LAUNCH_FAILED,
            f"attempt {svc.launch_failures}/{self.launch_max_attempts} failed, retry in {delay:g}s: {reason}",
            level="WARN",
            service_id=svc.id,
            version=svc.target_version,
        )

    def _begin_stop(self, svc: Service, task: Task, now: float, reason: str, drain: bool = True) -> None:
        """Deregister, then stop now or after the deregistration delay."""
        if task.stop_requested:
            return
        was_registered = task.registered
        task.stop_requested = True
        self.registrar.release(task)
        if drain and was_registered and self.deregistration_delay_s > 0:
            task.drain_until = now + self.deregistration_delay_s
            return
        self._stop(svc, task, now, reason)

    def _finish_draining(self, svc: Service, now: float) -> None:
        for task in svc.live_tasks():
            if task.stop_requested and task.drain_until is not None and now >= task.drain_until:
                self._stop(svc, task, now, "drained")

    def _stop(self, svc: Service, task: Task, now: float, reason: str) -> None:
        task.stop_requested = True
        try:
            self.runtime.stop(task)
        except Exception as e:
            # Stop is idempotent; try again next tick.
            log.warning("Stopping task %s failed: %s", task.id, e)
            task.drain_until = now
            return
        task.state = TaskState.STOPPED
        svc.tasks.pop(task.id, None)
        self.events.emit(
            EventKind.TASK_STOPPED,
            reason,
            service_id=svc.id,
            task_id=task.id,
            version=task.version,
        )

    def _start_deployment(self, svc: Service, reason: str) -> None:
        svc.deployment = Deployment(target_version=svc.target_version, desired_count=svc.desired_count)
        self.events.emit(EventKind.ROLLOUT_STARTED, reason, service_id=svc.id, version=svc.target_version)

    def _check_complete(self, svc: Service) -> None:
        if svc.deployment.status is not RolloutStatus.IN_PROGRESS:
            return
        live = svc.live_tasks()
        if any(t.version != svc.target_version for t in live):
            return
        current = [t for t in live if not t.stop_requested]
        if len(current) != svc.desired_count or len(live) != len(current):
            return
        if not all(t.healthy for t in current):
            return
        svc.deployment.status = RolloutStatus.COMPLETED
        svc.deployment.completed_at = utc_now()
        self.events.emit(
            EventKind.ROLLOUT_COMPLETED,
            f"{svc.desired_count} healthy task(s) on version {svc.target_version}",
            service_id=svc.id,
            version=svc.target_version,
        )

    def _update_gauges(self, svc: Service) -> None:
        live = svc.live_tasks()
        SERVICE_DESIRED.labels(service=svc.id).set(svc.desired_count)
        SERVICE_RUNNING.labels(service=svc.id).set(len(live))
        SERVICE_HEALTHY.labels(service=svc.id).set(
            sum(1 for t in live if t.version == svc.target_version and t.healthy)
        )

    def _snapshot(self, svc: Service) -> dict[str, Any]:
        running: dict[int, int] = {}
        healthy: dict[int, int] = {}
        live = svc.live_tasks()
        for t in live:
            running[t.version] = running.get(t.version, 0) + 1
            if t.healthy:
                healthy[t.version] = healthy.get(t.version, 0) + 1
        return {
            "id": svc.id,
            "name": svc.name,
            "desired_count": svc.desired_count,
            "target_version": svc.target_version,
            "rolling_policy": svc.rolling_policy.to_dict(),
            "scaling_policy": svc.scaling_policy.to_dict() if svc.scaling_policy else None,
            "running_by_version": running,
            "healthy_by_version": healthy,
            "total_tasks": len(live),
            "receiving_traffic": sum(1 for t in live if t.registered),
            "rollout": {**svc.deployment.to_dict(), "launch_failures": svc.launch_failures},
            "tasks": [t.to_dict() for t in _oldest_first(live)],
            "created_at": svc.created_at,
        }


def _validate_count(count: int) -> None:
    if int(count) != count or count < 0:
        raise ValidationError("desired count must be an integer >= 0")

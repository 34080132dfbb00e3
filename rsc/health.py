from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from threading import Event
from typing import Iterable, Mapping

import httpx

from .errors import ProbeFailure
from .events import EventLog
from .models import EventKind, Task, TaskDefinition, TaskState
from .runtime import TaskRuntime
from .settings import settings

log = logging.getLogger(__name__)

HEALTHY_PAYLOADS = {"healthy", "ok", "up", "pass"}


def check_http(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Any 2xx is healthy, unless the body is JSON with a "status" field that
    says otherwise. Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if not 200 <= resp.status_code < 300:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return True, "Healthy", latency_ms
        if isinstance(data, dict) and "status" in data and str(data["status"]).lower() not in HEALTHY_PAYLOADS:
            return False, f"Unhealthy payload: {data!r}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


@dataclass
class HealthReport:
    started: list[Task] = field(default_factory=list)
    unhealthy: list[Task] = field(default_factory=list)
    failed_to_start: list[Task] = field(default_factory=list)


@dataclass
class _ProbeRun:
    task: Task
    definition: TaskDefinition
    submitted_at: float
    future: Future | None = None
    started_at: float = 0.0
    started: Event = field(default_factory=Event)


class HealthChecker:
    """Drives the per-task health state machine.

    PENDING -> RUNNING -> HEALTHY <-> UNHEALTHY. Probing starts start_period
    after RUNNING and repeats every interval; ``retries`` consecutive failures
    flip RUNNING/HEALTHY to UNHEALTHY, one success flips back to HEALTHY.
    The checker only reports; stopping and replacing is the controller's job.
    """

    def __init__(self, runtime: TaskRuntime, events: EventLog, max_workers: int | None = None):
        self.runtime = runtime
        self.events = events
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.probe_workers, thread_name_prefix="rsc-probe"
        )
        # task id -> last probe future, so a hung check is never stacked
        self._inflight: dict[str, Future] = {}

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    def observe(self, tasks: Iterable[Task], definitions: Mapping[int, TaskDefinition], now: float) -> HealthReport:
        report = HealthReport()
        due: list[Task] = []
        for task in tasks:
            if not task.live or task.stop_requested:
                continue
            status = self.runtime.status(task)
            if status == "unknown":
                continue
            if task.state is TaskState.PENDING:
                if status == "exited":
                    report.failed_to_start.append(task)
                    continue
                if status != "running":
                    continue
                self.mark_running(task, definitions[task.version], now)
                report.started.append(task)
            elif status == "exited":
                if task.state is not TaskState.UNHEALTHY:
                    self._transition(task, TaskState.UNHEALTHY, "container exited", level="WARN")
                continue
            if task.next_probe_at is not None and now >= task.next_probe_at:
                due.append(task)

        self._run_probes(due, definitions, now)

        for task in tasks:
            if task.live and not task.stop_requested and task.state is TaskState.UNHEALTHY:
                report.unhealthy.append(task)
        return report

    def mark_running(self, task: Task, definition: TaskDefinition, now: float) -> None:
        task.running_since = now
        task.next_probe_at = now + definition.health_check.start_period
        self._transition(task, TaskState.RUNNING, "container started")

    def _run_probes(self, due: list[Task], definitions: Mapping[int, TaskDefinition], now: float) -> None:
        if not due:
            return
        for task_id, fut in list(self._inflight.items()):
            if fut.done():
                self._inflight.pop(task_id, None)
        runs: list[_ProbeRun] = []
        for task in due:
            definition = definitions[task.version]
            previous = self._inflight.get(task.id)
            if previous is not None and not previous.done():
                self.record(task, definition, False, "previous probe still running")
                self._schedule_next(task, definition, now)
                continue
            run = _ProbeRun(task, definition, submitted_at=time.monotonic())
            run.future = self._pool.submit(self._probe, run)
            self._inflight[task.id] = run.future
            runs.append(run)

        for run in runs:
            ok, detail = self._await(run)
            self.record(run.task, run.definition, ok, detail)
            self._schedule_next(run.task, run.definition, now)
            if run.future.done():
                self._inflight.pop(run.task.id, None)

    def _probe(self, run: _ProbeRun) -> bool:
        run.started_at = time.monotonic()
        run.started.set()
        return self.runtime.probe(run.task, run.definition)

    def _await(self, run: _ProbeRun) -> tuple[bool, str]:
        """Wait for one probe; its timeout runs from when a worker picked it up."""
        hc = run.definition.health_check
        start_by = run.submitted_at + hc.interval
        if not run.started.wait(timeout=max(0.0, start_by - time.monotonic())):
            if run.future.cancel():
                return False, "probe not started, all probe workers busy"
            run.started.wait()
        remaining = max(0.0, run.started_at + hc.timeout - time.monotonic())
        try:
            return bool(run.future.result(timeout=remaining)), "probe failed"
        except FutureTimeout:
            return False, f"probe timed out after {hc.timeout}s"
        except ProbeFailure as e:
            return False, str(e)
        except Exception as e:
            log.warning("Probe for task %s raised %s: %s", run.task.id, type(e).__name__, e)
            return False, f"probe error: {type(e).__name__}"

    @staticmethod
    def _schedule_next(task: Task, definition: TaskDefinition, now: float) -> None:
        interval = definition.health_check.interval
        task.next_probe_at += interval
        if task.next_probe_at <= now:
            task.next_probe_at = now + interval

    def record(self, task: Task, definition: TaskDefinition, ok: bool, detail: str = "probe failed") -> None:
        """Apply one probe result to the task's state."""
        if ok:
            task.consecutive_failures = 0
            if task.state in (TaskState.RUNNING, TaskState.UNHEALTHY):
                self._transition(task, TaskState.HEALTHY, "health check passed")
            return

        task.consecutive_failures += 1
        retries = definition.health_check.retries
        if task.state in (TaskState.RUNNING, TaskState.HEALTHY) and task.consecutive_failures >= retries:
            self._transition(
                task,
                TaskState.UNHEALTHY,
                f"{task.consecutive_failures} consecutive failed health checks ({detail})",
                level="WARN",
            )

    def _transition(self, task: Task, state: TaskState, reason: str, level: str = "INFO") -> None:
        prev = task.state
        task.state = state
        self.events.emit(
            EventKind[f"TASK_{state.value}"],
            f"{prev.value} -> {state.value}: {reason}",
            level=level,
            service_id=task.service_id,
            task_id=task.id,
            version=task.version,
        )

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Iterable

import httpx

from .errors import RegistrationFailure
from .events import EventLog
from .models import EventKind, Task
from .settings import settings

log = logging.getLogger(__name__)


class NoHealthyBackends(Exception):
    pass


@dataclass(frozen=True)
class Target:
    service_id: str
    task_id: str
    version: int
    endpoint: str

    @classmethod
    def for_task(cls, task: Task) -> "Target":
        return cls(service_id=task.service_id, task_id=task.id, version=task.version, endpoint=task.endpoint or "")


class LoadBalancerBinding(ABC):
    """Traffic-routing component owned outside the controller.

    Both calls must be idempotent and raise RegistrationFailure on error.
    """

    @abstractmethod
    def register(self, target: Target) -> None:
        ...

    @abstractmethod
    def deregister(self, target: Target) -> None:
        ...


class InProcessTargetGroup(LoadBalancerBinding):
    """Target registry plus round-robin backend selection for an in-process gateway."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._targets: dict[str, dict[str, Target]] = {}
        self._rr_index: dict[str, int] = {}

    def register(self, target: Target) -> None:
        with self._lock:
            self._targets.setdefault(target.service_id, {})[target.task_id] = target

    def deregister(self, target: Target) -> None:
        with self._lock:
            self._targets.get(target.service_id, {}).pop(target.task_id, None)

    def targets(self, service_id: str) -> list[Target]:
        with self._lock:
            return list(self._targets.get(service_id, {}).values())

    def select(self, service_id: str) -> Target:
        with self._lock:
            targets = sorted(self._targets.get(service_id, {}).values(), key=lambda t: t.task_id)
            if not targets:
                raise NoHealthyBackends(f"No healthy backends for service '{service_id}'.")
            i = self._rr_index.get(service_id, 0) % len(targets)
            self._rr_index[service_id] = (i + 1) % len(targets)
            return targets[i]


class HttpTargetGroup(LoadBalancerBinding):
    """Registers targets with an external proxy over HTTP.

    POST {base}/targets registers, DELETE {base}/targets/{task_id} deregisters.
    409 on register and 404 on deregister mean the work is already done.
    """

    def __init__(self, base_url: str, timeout_s: float | None = None, client: httpx.Client | None = None):
        self._base = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_s or settings.lb_timeout_s)

    def register(self, target: Target) -> None:
        payload = {
            "id": target.task_id,
            "service": target.service_id,
            "version": target.version,
            "url": f"http://{target.endpoint}",
        }
        self._call("POST", f"{self._base}/targets", ok_codes={409}, json=payload)

    def deregister(self, target: Target) -> None:
        self._call("DELETE", f"{self._base}/targets/{target.task_id}", ok_codes={404})

    def _call(self, method: str, url: str, ok_codes: set[int], **kwargs) -> None:
        try:
            resp = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RegistrationFailure(f"{method} {url}: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400 and resp.status_code not in ok_codes:
            raise RegistrationFailure(f"{method} {url}: HTTP {resp.status_code}")

    def close(self) -> None:
        self._client.close()


class TargetRegistrar:
    """Keeps the binding in step with task health.

    Registration failures are retried with exponential backoff on later calls
    and never block the rollout; deregistration failures are reported and the
    caller proceeds with the stop.
    """

    def __init__(
        self,
        binding: LoadBalancerBinding,
        events: EventLog,
        backoff_base_s: float | None = None,
        backoff_max_s: float | None = None,
    ):
        self.binding = binding
        self.events = events
        self.backoff_base_s = settings.registration_backoff_base_s if backoff_base_s is None else backoff_base_s
        self.backoff_max_s = settings.registration_backoff_max_s if backoff_max_s is None else backoff_max_s

    def sync(self, tasks: Iterable[Task], now: float) -> None:
        for task in tasks:
            if task.healthy and not task.registered and task.endpoint and now >= task.next_registration_at:
                self._register(task, now)
            elif task.registered and not task.healthy:
                self.release(task)

    def _register(self, task: Task, now: float) -> None:
        try:
            self.binding.register(Target.for_task(task))
        except RegistrationFailure as e:
            task.registration_attempts += 1
            delay = min(self.backoff_max_s, self.backoff_base_s * 2 ** (task.registration_attempts - 1))
            task.next_registration_at = now + delay
            self.events.emit(
                EventKind.REGISTRATION_FAILED,
                f"attempt {task.registration_attempts} failed, retry in {delay:g}s: {e}",
                level="WARN",
                service_id=task.service_id,
                task_id=task.id,
                version=task.version,
            )
            return
        task.registered = True
        task.registration_attempts = 0
        self.events.emit(
            EventKind.TASK_REGISTERED,
            f"registered {task.endpoint}",
            service_id=task.service_id,
            task_id=task.id,
            version=task.version,
        )

    def release(self, task: Task) -> None:
        if not task.registered:
            return
        task.registered = False
        try:
            self.binding.deregister(Target.for_task(task))
        except RegistrationFailure as e:
            self.events.emit(
                EventKind.REGISTRATION_FAILED,
                f"deregistration failed, stopping anyway: {e}",
                level="WARN",
                service_id=task.service_id,
                task_id=task.id,
                version=task.version,
            )
            return
        self.events.emit(
            EventKind.TASK_DEREGISTERED,
            f"deregistered {task.endpoint}",
            service_id=task.service_id,
            task_id=task.id,
            version=task.version,
        )

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping

from .errors import ValidationError


ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PROBE_KINDS = {"CMD", "CMD-SHELL", "HTTP"}


def utc_now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


class TaskState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    STOPPED = "STOPPED"


class RolloutStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    STALLED = "stalled"


class EventKind(str, Enum):
    SERVICE_CREATED = "SERVICE_CREATED"
    SERVICE_UPDATED = "SERVICE_UPDATED"
    TASK_LAUNCHED = "TASK_LAUNCHED"
    TASK_LAUNCH_FAILED = "TASK_LAUNCH_FAILED"
    TASK_RUNNING = "TASK_RUNNING"
    TASK_HEALTHY = "TASK_HEALTHY"
    TASK_UNHEALTHY = "TASK_UNHEALTHY"
    TASK_STOPPED = "TASK_STOPPED"
    TASK_REGISTERED = "TASK_REGISTERED"
    TASK_DEREGISTERED = "TASK_DEREGISTERED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    ROLLOUT_STARTED = "ROLLOUT_STARTED"
    ROLLOUT_COMPLETED = "ROLLOUT_COMPLETED"
    ROLLOUT_STALLED = "ROLLOUT_STALLED"
    ROLLOUT_RESUMED = "ROLLOUT_RESUMED"
    SCALE_OUT = "SCALE_OUT"
    SCALE_IN = "SCALE_IN"
    SCALING_SKIPPED = "SCALING_SKIPPED"
    RECONCILE_ERROR = "RECONCILE_ERROR"


@dataclass(frozen=True)
class HealthCheckSpec:
    """Container health probe.

    ``command`` follows the container health-check convention:
      - ["CMD", "exe", "arg", ...]  run inside the task, exit 0 = healthy
      - ["CMD-SHELL", "curl -f http://localhost/ || exit 1"]
      - ["HTTP", "/health"]  GET against the task endpoint, 2xx = healthy
    A list without a recognised prefix is treated as CMD.
    Timings are in seconds.
    """

    command: tuple[str, ...]
    interval: float = 30.0
    timeout: float = 5.0
    retries: int = 3
    start_period: float = 0.0

    @property
    def kind(self) -> str:
        if self.command and self.command[0] in PROBE_KINDS:
            return self.command[0]
        return "CMD"

    @property
    def argv(self) -> list[str]:
        if self.command and self.command[0] in PROBE_KINDS:
            return list(self.command[1:])
        return list(self.command)

    def validate(self) -> None:
        if not self.command or not all(isinstance(c, str) and c for c in self.command):
            raise ValidationError("health check command must be a non-empty list of strings")
        if not self.argv:
            raise ValidationError(f"health check command '{self.command[0]}' needs an argument")
        if self.kind == "HTTP" and not self.argv[0].startswith("/"):
            raise ValidationError("HTTP health check path must start with '/'")
        if self.interval <= 0:
            raise ValidationError("health check interval must be > 0")
        if self.timeout <= 0 or self.timeout > self.interval:
            raise ValidationError("health check timeout must be > 0 and <= interval")
        if int(self.retries) != self.retries or self.retries < 1:
            raise ValidationError("health check retries must be an integer >= 1")
        if self.start_period < 0:
            raise ValidationError("health check start_period must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": list(self.command),
            "interval": self.interval,
            "timeout": self.timeout,
            "retries": self.retries,
            "start_period": self.start_period,
        }


@dataclass(frozen=True)
class TaskDefinitionSpec:
    """Input to TaskDefinitionStore.register; becomes a TaskDefinition once versioned."""

    image: str
    cpu: int
    memory: int
    port: int
    health_check: HealthCheckSpec
    environment: Mapping[str, str] = field(default_factory=dict)
    log_sink: str | None = None

    def validate(self) -> None:
        if not self.image or any(ch.isspace() for ch in self.image):
            raise ValidationError("image must be a non-empty reference without whitespace")
        if int(self.cpu) != self.cpu or self.cpu <= 0:
            raise ValidationError("cpu must be a positive integer (CPU units, 1024 = 1 vCPU)")
        if int(self.memory) != self.memory or self.memory <= 0:
            raise ValidationError("memory must be a positive integer (MiB)")
        if not 1 <= self.port <= 65535:
            raise ValidationError("port must be in 1..65535")
        for key, value in self.environment.items():
            if not ENV_KEY_RE.match(key):
                raise ValidationError(f"invalid environment variable name: {key!r}")
            if not isinstance(value, str):
                raise ValidationError(f"environment value for {key!r} must be a string")
        self.health_check.validate()


@dataclass(frozen=True)
class TaskDefinition:
    version: int
    image: str
    cpu: int
    memory: int
    port: int
    health_check: HealthCheckSpec
    environment: Mapping[str, str]
    log_sink: str | None
    created_at: str

    @classmethod
    def from_spec(cls, version: int, spec: TaskDefinitionSpec, created_at: str) -> "TaskDefinition":
        return cls(
            version=version,
            image=spec.image,
            cpu=int(spec.cpu),
            memory=int(spec.memory),
            port=int(spec.port),
            health_check=spec.health_check,
            environment=MappingProxyType(dict(spec.environment)),
            log_sink=spec.log_sink,
            created_at=created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "image": self.image,
            "cpu": self.cpu,
            "memory": self.memory,
            "port": self.port,
            "environment": dict(self.environment),
            "health_check": self.health_check.to_dict(),
            "log_sink": self.log_sink,
            "created_at": self.created_at,
        }


def _ceil_pct(n: int, pct: int) -> int:
    return -(-n * pct // 100)


@dataclass(frozen=True)
class RollingPolicy:
    max_percent: int = 200
    min_healthy_percent: int = 100

    def validate(self) -> None:
        if self.max_percent < 100:
            raise ValidationError("max_percent must be >= 100")
        if not 0 <= self.min_healthy_percent <= 100:
            raise ValidationError("min_healthy_percent must be in 0..100")
        if self.max_percent == 100 and self.min_healthy_percent == 100:
            # No room to launch and nothing may be stopped: a rollout could never start.
            raise ValidationError("max_percent=100 requires min_healthy_percent < 100")

    def max_total(self, desired: int) -> int:
        return _ceil_pct(desired, self.max_percent)

    def min_healthy(self, desired: int) -> int:
        return _ceil_pct(desired, self.min_healthy_percent)

    def healthy_floor(self, desired: int) -> int:
        return desired * self.min_healthy_percent // 100

    def to_dict(self) -> dict[str, int]:
        return {"max_percent": self.max_percent, "min_healthy_percent": self.min_healthy_percent}


@dataclass(frozen=True)
class ScalingPolicy:
    """Target tracking policy. Cooldowns are in seconds."""

    target_value: float
    min_capacity: int
    max_capacity: int
    scale_out_cooldown: float = 60.0
    scale_in_cooldown: float = 300.0

    def validate(self) -> None:
        if not self.target_value > 0 or math.isinf(self.target_value):
            raise ValidationError("target_value must be a positive number")
        if self.min_capacity < 0:
            raise ValidationError("min_capacity must be >= 0")
        if self.max_capacity < self.min_capacity:
            raise ValidationError("max_capacity must be >= min_capacity")
        if self.scale_out_cooldown < 0 or self.scale_in_cooldown < 0:
            raise ValidationError("cooldowns must be >= 0")

    def clamp(self, count: int) -> int:
        return max(self.min_capacity, min(self.max_capacity, count))

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_value": self.target_value,
            "min_capacity": self.min_capacity,
            "max_capacity": self.max_capacity,
            "scale_out_cooldown": self.scale_out_cooldown,
            "scale_in_cooldown": self.scale_in_cooldown,
        }


@dataclass
class Task:
    id: str
    service_id: str
    version: int
    launched_at: float
    seq: int
    state: TaskState = TaskState.PENDING
    consecutive_failures: int = 0
    handle: str | None = None  # runtime container id
    endpoint: str | None = None  # host:port reachable by the load balancer
    running_since: float | None = None
    next_probe_at: float | None = None
    stop_requested: bool = False
    drain_until: float | None = None
    registered: bool = False
    registration_attempts: int = 0
    next_registration_at: float = 0.0

    @property
    def live(self) -> bool:
        return self.state is not TaskState.STOPPED

    @property
    def healthy(self) -> bool:
        return self.state is TaskState.HEALTHY and not self.stop_requested

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "state": self.state.value,
            "launched_at": self.launched_at,
            "consecutive_failures": self.consecutive_failures,
            "endpoint": self.endpoint,
            "registered": self.registered,
            "stop_requested": self.stop_requested,
        }


@dataclass
class Deployment:
    target_version: int
    desired_count: int
    status: RolloutStatus = RolloutStatus.IN_PROGRESS
    reason: str | None = None
    started_at: str = field(default_factory=utc_now)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_version": self.target_version,
            "desired_count": self.desired_count,
            "status": self.status.value,
            "reason": self.reason,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass
class Service:
    id: str
    name: str
    desired_count: int
    target_version: int
    rolling_policy: RollingPolicy
    deployment: Deployment
    scaling_policy: ScalingPolicy | None = None
    tasks: dict[str, Task] = field(default_factory=dict)
    launch_failures: int = 0
    next_launch_at: float = 0.0
    last_scaling_write_at: float | None = None
    metric_misses: int = 0
    created_at: str = field(default_factory=utc_now)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def live_tasks(self) -> list[Task]:
        return [t for t in self.tasks.values() if t.live]


@dataclass(frozen=True)
class DeploymentEvent:
    ts: str
    level: str
    kind: EventKind
    message: str
    service_id: str | None = None
    task_id: str | None = None
    version: int | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.ts,
            "level": self.level,
            "kind": self.kind.value,
            "service_id": self.service_id,
            "task_id": self.task_id,
            "version": self.version,
            "message": self.message,
        }

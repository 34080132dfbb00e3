from __future__ import annotations

from pydantic import BaseModel, Field

from .models import HealthCheckSpec, RollingPolicy, TaskDefinitionSpec


class HealthCheckIn(BaseModel):
    command: list[str] = Field(
        ..., min_length=1, description='e.g. ["CMD-SHELL", "curl -f http://localhost/ || exit 1"] or ["HTTP", "/health"]'
    )
    interval: float = Field(30.0, gt=0, description="Seconds between probes")
    timeout: float = Field(5.0, gt=0, description="Seconds a probe may take")
    retries: int = Field(3, ge=1, description="Consecutive failures before UNHEALTHY")
    start_period: float = Field(0.0, ge=0, description="Grace period after start, in seconds")


class TaskDefinitionIn(BaseModel):
    image: str = Field(..., description="Image reference (name:tag or digest)")
    cpu: int = Field(256, ge=1, description="CPU units, 1024 = one vCPU")
    memory: int = Field(512, ge=1, description="Memory limit in MiB")
    port: int = Field(..., ge=1, le=65535, description="Container port the service listens on")
    environment: dict[str, str] = Field(default_factory=dict)
    health_check: HealthCheckIn
    log_sink: str | None = Field(None, description="Logging driver handle passed to the runtime")

    def to_spec(self) -> TaskDefinitionSpec:
        hc = self.health_check
        return TaskDefinitionSpec(
            image=self.image,
            cpu=self.cpu,
            memory=self.memory,
            port=self.port,
            environment=dict(self.environment),
            log_sink=self.log_sink,
            health_check=HealthCheckSpec(
                command=tuple(hc.command),
                interval=hc.interval,
                timeout=hc.timeout,
                retries=hc.retries,
                start_period=hc.start_period,
            ),
        )


class RollingPolicyIn(BaseModel):
    max_percent: int = Field(200, ge=100, description="Upper bound on running tasks, % of desired")
    min_healthy_percent: int = Field(100, ge=0, le=100, description="Lower bound on healthy tasks, % of desired")

    def to_policy(self) -> RollingPolicy:
        return RollingPolicy(max_percent=self.max_percent, min_healthy_percent=self.min_healthy_percent)


class CreateServiceRequest(BaseModel):
    name: str | None = Field(None, description="Service name (dns-safe)")
    task_definition: int = Field(..., ge=1)
    desired_count: int = Field(..., ge=0)
    rolling_policy: RollingPolicyIn = Field(default_factory=RollingPolicyIn)


class UpdateServiceRequest(BaseModel):
    task_definition: int | None = Field(None, ge=1)
    desired_count: int | None = Field(None, ge=0)
    rolling_policy: RollingPolicyIn | None = None


class ScalingPolicyRequest(BaseModel):
    target_value: float = Field(..., gt=0, description="Metric value to hold, e.g. 50 (% CPU)")
    min_capacity: int = Field(..., ge=0)
    max_capacity: int = Field(..., ge=0)
    cooldown: float = Field(60.0, ge=0, description="Seconds between scaling writes (scale-out)")
    scale_in_cooldown: float | None = Field(None, ge=0, description="Defaults to cooldown")


class MetricRequest(BaseModel):
    value: float = Field(..., ge=0)

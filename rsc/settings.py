from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("RSC_DB_PATH", "rsc.db")
    poll_interval_s: float = _env_float("RSC_POLL_INTERVAL_S", 5.0)
    scaling_interval_s: float = _env_float("RSC_SCALING_INTERVAL_S", 60.0)
    reconcile_workers: int = _env_int("RSC_RECONCILE_WORKERS", 4)
    log_level: str = os.getenv("RSC_LOG_LEVEL", "INFO")

    # Container runtime
    docker_network: str = os.getenv("RSC_DOCKER_NETWORK", "rsc")
    probe_workers: int = _env_int("RSC_PROBE_WORKERS", 8)

    # Launch retry policy
    launch_max_attempts: int = _env_int("RSC_LAUNCH_MAX_ATTEMPTS", 5)
    launch_backoff_base_s: float = _env_float("RSC_LAUNCH_BACKOFF_BASE_S", 2.0)
    launch_backoff_max_s: float = _env_float("RSC_LAUNCH_BACKOFF_MAX_S", 120.0)

    # Load balancer binding
    lb_url: str | None = os.getenv("RSC_LB_URL")
    lb_timeout_s: float = _env_float("RSC_LB_TIMEOUT_S", 5.0)
    registration_backoff_base_s: float = _env_float("RSC_REGISTRATION_BACKOFF_BASE_S", 2.0)
    registration_backoff_max_s: float = _env_float("RSC_REGISTRATION_BACKOFF_MAX_S", 60.0)
    deregistration_delay_s: float = _env_float("RSC_DEREGISTRATION_DELAY_S", 0.0)

    # Auto scaling inputs
    metric_ttl_s: float = _env_float("RSC_METRIC_TTL_S", 300.0)
    metric_unavailable_alarm: int = _env_int("RSC_METRIC_UNAVAILABLE_ALARM", 5)

    # Email alerting (optional)
    enable_email: bool = _env_bool("RSC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("RSC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("RSC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("RSC_SMTP_USER")
    smtp_password: str | None = os.getenv("RSC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("RSC_EMAIL_FROM")
    email_to: str | None = os.getenv("RSC_EMAIL_TO")


settings = Settings()

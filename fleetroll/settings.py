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
    db_path: str = os.getenv("FLEETROLL_DB_PATH", "fleetroll.db")
    fleet_name: str = os.getenv("FLEETROLL_FLEET_NAME", "web")

    # Health probing (interval x unhealthy threshold = default health timeout)
    probe_interval_s: float = _env_float("FLEETROLL_PROBE_INTERVAL_S", 15.0)
    probe_timeout_s: float = _env_float("FLEETROLL_PROBE_TIMEOUT_S", 2.0)
    healthy_threshold: int = _env_int("FLEETROLL_HEALTHY_THRESHOLD", 5)
    unhealthy_threshold: int = _env_int("FLEETROLL_UNHEALTHY_THRESHOLD", 8)
    health_path: str = os.getenv("FLEETROLL_HEALTH_PATH", "/health")
    health_port: int = _env_int("FLEETROLL_HEALTH_PORT", 8080)

    # Rolling updates
    health_timeout_s: float = _env_float("FLEETROLL_HEALTH_TIMEOUT_S", 120.0)
    drain_grace_s: float = _env_float("FLEETROLL_DRAIN_GRACE_S", 30.0)
    provider_max_attempts: int = _env_int("FLEETROLL_PROVIDER_MAX_ATTEMPTS", 4)
    provider_backoff_s: float = _env_float("FLEETROLL_PROVIDER_BACKOFF_S", 1.0)
    provider_backoff_max_s: float = _env_float("FLEETROLL_PROVIDER_BACKOFF_MAX_S", 8.0)

    # Capacity
    evaluation_period_s: float = _env_float("FLEETROLL_EVALUATION_PERIOD_S", 60.0)

    # Docker fleet provider
    docker_network: str = os.getenv("FLEETROLL_DOCKER_NETWORK", "fleetroll")
    max_replicas: int = _env_int("FLEETROLL_MAX_REPLICAS", 30)

    # Email alerting (optional)
    enable_email: bool = _env_bool("FLEETROLL_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FLEETROLL_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FLEETROLL_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FLEETROLL_SMTP_USER")
    smtp_password: str | None = os.getenv("FLEETROLL_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FLEETROLL_EMAIL_FROM")
    email_to: str | None = os.getenv("FLEETROLL_EMAIL_TO")


settings = Settings()

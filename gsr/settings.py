from __future__ import annotations

import os
import socket
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


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("GSR_DB_PATH", "gsr.db")
    docker_base_url: str | None = os.getenv("GSR_DOCKER_BASE_URL")
    # Deadline for every platform API call. Exceeding it is a transient failure.
    api_timeout_s: int = _env_int("GSR_API_TIMEOUT_S", 30)
    log_level: str = os.getenv("GSR_LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("GSR_LOG_JSON", False)
    start_controller: bool = _env_bool("GSR_START_CONTROLLER", True)
    worker_id: str = os.getenv("GSR_WORKER_ID", f"{socket.gethostname()}-{os.getpid()}")
    # HTTP basic auth for the API; disabled unless both are set.
    api_user: str | None = os.getenv("GSR_API_USER")
    api_password: str | None = os.getenv("GSR_API_PASSWORD")

    # Observation ingest
    resync_interval_s: int = _clamp(_env_int("GSR_RESYNC_INTERVAL_S", 60), 30, 120)
    watch_retry_s: float = _env_float("GSR_WATCH_RETRY_S", 2.0)

    # Scheduler
    reconcile_interval_s: int = _env_int("GSR_RECONCILE_INTERVAL_S", 300)
    workers: int = _env_int("GSR_WORKERS", 4)
    max_concurrent_reconciles: int = _env_int("GSR_MAX_CONCURRENT_RECONCILES", 4)
    poll_interval_s: float = _env_float("GSR_POLL_INTERVAL_S", 1.0)
    job_lease_s: int = _env_int("GSR_JOB_LEASE_S", 300)
    backoff_base_s: float = _env_float("GSR_BACKOFF_BASE_S", 2.0)
    backoff_max_s: float = _env_float("GSR_BACKOFF_MAX_S", 300.0)
    max_attempts: int = _env_int("GSR_MAX_ATTEMPTS", 0)  # 0 = retry forever
    progress_recheck_s: int = _env_int("GSR_PROGRESS_RECHECK_S", 15)
    max_plan_restarts: int = _env_int("GSR_MAX_PLAN_RESTARTS", 3)

    # Drift
    default_drift_policy: str = os.getenv("GSR_DEFAULT_DRIFT_POLICY", "enforce")

    # Health probes of workloads that declare a published health port.
    probe_host: str | None = os.getenv("GSR_PROBE_HOST")
    probe_timeout_s: float = _env_float("GSR_PROBE_TIMEOUT_S", 2.0)

    # Email alerting (optional)
    enable_email: bool = _env_bool("GSR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("GSR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("GSR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("GSR_SMTP_USER")
    smtp_password: str | None = os.getenv("GSR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("GSR_EMAIL_FROM")
    email_to: str | None = os.getenv("GSR_EMAIL_TO")


settings = Settings()

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
    db_path: str = os.getenv("SVCSUP_DB_PATH", "svcsup.db")
    label_prefix: str = os.getenv("SVCSUP_LABEL_PREFIX", "svcsup")

    # Probing
    probe_timeout_s: float = _env_float("SVCSUP_PROBE_TIMEOUT_S", 3.0)
    probe_host: str = os.getenv("SVCSUP_PROBE_HOST", "localhost")
    default_health_path: str = os.getenv("SVCSUP_DEFAULT_HEALTH_PATH", "/health")

    # Crash-loop protection
    crash_loop_threshold: int = _env_int("SVCSUP_CRASH_LOOP_THRESHOLD", 5)
    crash_loop_window_s: int = _env_int("SVCSUP_CRASH_LOOP_WINDOW_S", 600)
    stable_after_s: int = _env_int("SVCSUP_STABLE_AFTER_S", 60)

    # Runtime calls
    runtime_timeout_s: float = _env_float("SVCSUP_RUNTIME_TIMEOUT_S", 30.0)
    stop_grace_s: int = _env_int("SVCSUP_STOP_GRACE_S", 10)

    # Health monitor
    poll_interval_s: int = _env_int("SVCSUP_POLL_INTERVAL_S", 30)
    fail_threshold: int = _env_int("SVCSUP_FAIL_THRESHOLD", 3)
    probe_workers: int = _env_int("SVCSUP_PROBE_WORKERS", 8)

    # Background (fire-and-forget) work
    background_workers: int = _env_int("SVCSUP_BACKGROUND_WORKERS", 2)
    background_queue: int = _env_int("SVCSUP_BACKGROUND_QUEUE", 256)
    background_retries: int = _env_int("SVCSUP_BACKGROUND_RETRIES", 1)
    log_sample_every: int = _env_int("SVCSUP_LOG_SAMPLE_EVERY", 20)

    # Email alerting (optional)
    enable_email: bool = _env_bool("SVCSUP_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SVCSUP_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SVCSUP_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SVCSUP_SMTP_USER")
    smtp_password: str | None = os.getenv("SVCSUP_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SVCSUP_EMAIL_FROM")
    email_to: str | None = os.getenv("SVCSUP_EMAIL_TO")

    # HTTP surface
    admin_user: str = os.getenv("SVCSUP_ADMIN_USER", "admin")
    admin_password: str | None = os.getenv("SVCSUP_ADMIN_PASSWORD")


settings = Settings()

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]
FailurePolicy = Literal["open", "closed"]


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getenv_policy(name: str) -> FailurePolicy:
    raw = _getenv(name, "open").lower()
    if raw not in ("open", "closed"):
        raise ValueError(f"{name} must be open|closed (got {raw!r})")
    return raw  # type: ignore[return-value]


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None
    # open: lock/idempotency outages degrade to "proceed uncontended"
    # closed: the operation fails with a retryable error instead
    lock_failure_policy: FailurePolicy = "open"
    idempotency_failure_policy: FailurePolicy = "open"
    idempotency_ttl_hours: int = 24
    enrollment_lock_timeout_ms: int = 10_000
    request_lock_timeout_ms: int = 5_000
    event_channel: str = "enrollment-events"
    purge_interval_seconds: int = 3600
    # false once no reader is left on the legacy student_progress table
    legacy_mirror_enabled: bool = True

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    log_json = _getenv("LOG_JSON", "false").lower() in ("1", "true", "yes")
    database_url = _getenv("DATABASE_URL", "") or None
    redis_url = _getenv("REDIS_URL", "") or None

    event_channel = _getenv("EVENT_CHANNEL", "enrollment-events")
    if not event_channel:
        raise ValueError("EVENT_CHANNEL must be non-empty")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=log_json,
        port=port,
        database_url=database_url,
        redis_url=redis_url,
        lock_failure_policy=_getenv_policy("LOCK_FAILURE_POLICY"),
        idempotency_failure_policy=_getenv_policy("IDEMPOTENCY_FAILURE_POLICY"),
        idempotency_ttl_hours=_getenv_int("IDEMPOTENCY_TTL_HOURS", 24, minimum=1),
        enrollment_lock_timeout_ms=_getenv_int("ENROLLMENT_LOCK_TIMEOUT_MS", 10_000),
        request_lock_timeout_ms=_getenv_int("REQUEST_LOCK_TIMEOUT_MS", 5_000),
        event_channel=event_channel,
        purge_interval_seconds=_getenv_int("PURGE_INTERVAL_SECONDS", 3600, minimum=1),
        legacy_mirror_enabled=_getenv("LEGACY_MIRROR", "true").lower() in ("1", "true", "yes"),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()

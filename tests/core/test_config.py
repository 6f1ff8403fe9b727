from __future__ import annotations

import pytest

from enrollsync.core.config import AppEnv, Settings, load_settings

# ---- valid values ----


def test_load_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    settings = load_settings()
    assert settings.app_env == "dev"
    assert settings.log_level == "info"


def test_load_settings_respects_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("LOG_LEVEL", "error")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.log_level == "error"


def test_load_settings_normalizes_case(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "PROD")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    settings = load_settings()
    assert settings.app_env == "prod"
    assert settings.log_level == "debug"


def test_load_settings_strips_whitespace(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "  test  ")
    monkeypatch.setenv("LOG_LEVEL", "  warning  ")
    settings = load_settings()
    assert settings.app_env == "test"
    assert settings.log_level == "warning"


# ---- invalid APP_ENV ----


def test_load_settings_rejects_invalid_app_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("LOG_LEVEL", "info")
    with pytest.raises(ValueError, match="APP_ENV must be dev|test|prod"):
        load_settings()


def test_load_settings_rejects_empty_app_env(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "")
    with pytest.raises(ValueError, match="APP_ENV must be dev|test|prod"):
        load_settings()


# ---- invalid LOG_LEVEL ----


def test_load_settings_rejects_invalid_log_level(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("LOG_LEVEL", "verbose")
    with pytest.raises(ValueError, match="LOG_LEVEL must be debug|info|warning|error"):
        load_settings()


def test_load_settings_rejects_empty_log_level(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "")
    with pytest.raises(ValueError, match="LOG_LEVEL must be debug|info|warning|error"):
        load_settings()


# ---- Settings properties ----


def _make_settings(app_env: AppEnv = "dev") -> Settings:
    return Settings(  # type: ignore[arg-type]
        app_env=app_env,
        log_level="info",
        log_json=False,
        port=8000,
        database_url=None,
        redis_url=None,
    )


@pytest.mark.parametrize("app_env", ["dev", "test", "prod"])
def test_settings_environment_flags(app_env: AppEnv) -> None:
    s = _make_settings(app_env)
    assert (s.is_dev, s.is_test, s.is_prod) == (
        app_env == "dev",
        app_env == "test",
        app_env == "prod",
    )


def test_settings_is_frozen() -> None:
    s = _make_settings()
    with pytest.raises(AttributeError):
        s.app_env = "prod"  # type: ignore[misc]


def test_settings_engine_defaults() -> None:
    s = _make_settings()
    assert s.lock_failure_policy == "open"
    assert s.idempotency_failure_policy == "open"
    assert s.idempotency_ttl_hours == 24
    assert s.enrollment_lock_timeout_ms == 10_000
    assert s.request_lock_timeout_ms == 5_000
    assert s.event_channel == "enrollment-events"
    assert s.legacy_mirror_enabled is True


# ---- engine settings from env ----


def test_load_settings_reads_failure_policies(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCK_FAILURE_POLICY", "CLOSED")
    monkeypatch.setenv("IDEMPOTENCY_FAILURE_POLICY", " open ")
    settings = load_settings()
    assert settings.lock_failure_policy == "closed"
    assert settings.idempotency_failure_policy == "open"


def test_load_settings_rejects_unknown_failure_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCK_FAILURE_POLICY", "maybe")
    with pytest.raises(ValueError, match="LOCK_FAILURE_POLICY must be open|closed"):
        load_settings()


def test_load_settings_reads_timeouts_and_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENROLLMENT_LOCK_TIMEOUT_MS", "2500")
    monkeypatch.setenv("REQUEST_LOCK_TIMEOUT_MS", "0")
    monkeypatch.setenv("IDEMPOTENCY_TTL_HOURS", "48")
    settings = load_settings()
    assert settings.enrollment_lock_timeout_ms == 2500
    assert settings.request_lock_timeout_ms == 0
    assert settings.idempotency_ttl_hours == 48


def test_load_settings_rejects_non_integer_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENROLLMENT_LOCK_TIMEOUT_MS", "soon")
    with pytest.raises(ValueError, match="ENROLLMENT_LOCK_TIMEOUT_MS must be an integer"):
        load_settings()


def test_load_settings_rejects_zero_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IDEMPOTENCY_TTL_HOURS", "0")
    with pytest.raises(ValueError, match="IDEMPOTENCY_TTL_HOURS must be >= 1"):
        load_settings()


def test_load_settings_optional_urls(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    settings = load_settings()
    assert settings.database_url is None
    assert settings.redis_url == "redis://localhost:6379/0"


def test_load_settings_legacy_mirror_switch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LEGACY_MIRROR", "false")
    assert load_settings().legacy_mirror_enabled is False

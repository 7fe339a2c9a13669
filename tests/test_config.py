"""Tests for config validation."""

import pytest
from pydantic import ValidationError

from app.config import Settings


def test_defaults(monkeypatch):
    for var in ("MAX_CONCURRENT_BUILDS", "QUEUE_POLL_INTERVAL_MS",
                "STATUS_POLL_INTERVAL_MS", "SCHEDULER_ENABLED", "QUEUE_MAX_RETRIES"):
        monkeypatch.delenv(var, raising=False)
    settings = Settings(_env_file=None)
    assert settings.QUEUE_POLL_INTERVAL_MS == 10_000
    assert settings.STATUS_POLL_INTERVAL_MS == 30_000
    assert settings.MAX_CONCURRENT_BUILDS == 5
    assert settings.SCHEDULER_ENABLED is True
    assert settings.QUEUE_MAX_RETRIES == 3


def test_env_vars_are_coerced(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_BUILDS", "2")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("CI_BASE_URL", "https://bamboo.internal")
    settings = Settings(_env_file=None)
    assert settings.MAX_CONCURRENT_BUILDS == 2
    assert settings.SCHEDULER_ENABLED is False
    assert settings.CI_BASE_URL == "https://bamboo.internal"


def test_concurrency_cap_must_be_positive(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_BUILDS", "0")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_module_settings_exposes_required_vars():
    from app.config import _REQUIRED_VARS, settings

    for var in _REQUIRED_VARS:
        assert hasattr(settings, var)


def test_pool_min_above_max_is_rejected(monkeypatch):
    monkeypatch.setenv("DB_POOL_MIN_SIZE", "8")
    monkeypatch.setenv("DB_POOL_MAX_SIZE", "4")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_ci_base_url_trailing_slash_is_stripped(monkeypatch):
    monkeypatch.setenv("CI_BASE_URL", "https://bamboo.internal/")
    assert Settings(_env_file=None).CI_BASE_URL == "https://bamboo.internal"

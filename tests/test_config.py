"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from profileauth.config import Settings, get_settings, reset_settings_cache

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


def test_defaults():
    settings = Settings(jwt_secret=SECRET)

    assert settings.jwt_issuer == "OpenProfileServer"
    assert settings.jwt_audience == "OpenProfileClient"
    assert settings.access_token_ttl_minutes == 10
    assert settings.refresh_token_ttl_days == 7
    assert settings.verification_code_ttl_minutes == 15
    assert settings.token_reaper_interval_seconds == 24 * 60 * 60
    assert settings.code_reaper_interval_seconds == 30 * 60
    assert (settings.argon2_time_cost, settings.argon2_memory_cost, settings.argon2_parallelism) == (3, 8192, 2)
    assert settings.email_enabled is False


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("EMAIL_ENABLED", "true")
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.email_enabled is True
    assert settings.smtp_host == "smtp.example.com"


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, refresh_token_ttl_days=0)


def test_missing_secret_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("STATE_DIR", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    cached = get_settings()

    assert get_settings() is cached
    monkeypatch.setenv("JWT_ISSUER", "Elsewhere")
    assert get_settings().jwt_issuer == cached.jwt_issuer
    reset_settings_cache()
    assert get_settings().jwt_issuer == "Elsewhere"
    reset_settings_cache()

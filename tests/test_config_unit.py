"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from apiguard.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="a" * 40, jwt_refresh_secret="b" * 40)

        assert settings.jwt_expires_in == "15m"
        assert settings.jwt_refresh_expires_in == "7d"
        assert settings.jwt_remember_me_expires_in == "30d"
        assert settings.login_rate_limit == 5
        assert settings.login_rate_limit_window_seconds == 900
        assert settings.forgot_password_rate_limit == 3
        assert settings.invitation_ttl_days == 7

    def test_missing_secrets_are_generated_and_distinct(self):
        settings = Settings()

        assert settings.jwt_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_secret != settings.jwt_refresh_secret

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("JWT_EXPIRES_IN", "5m")
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "9")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("SMTP_HOST", "  ")

        settings = Settings.from_env()

        assert settings.jwt_expires_in == "5m"
        assert settings.login_rate_limit == 9
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.smtp_host is None
        assert settings.redis_url is None

    def test_settings_cache_resets(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("INVITATION_TTL_DAYS", "3")
        reset_settings_cache()
        assert get_settings().invitation_ttl_days == 3
        reset_settings_cache()

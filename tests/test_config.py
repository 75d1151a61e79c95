"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from gatehouse.config import AppEnv, Settings, get_settings, reset_settings_cache
from gatehouse.service.runtime import Runtime


class TestFromEnv:
    def test_reads_env_names(self, monkeypatch):
        monkeypatch.setenv("SESSION_TTL_HOURS", "12")
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        monkeypatch.setenv("VALID_INVITE_CODES", "alpha, beta,,")
        monkeypatch.setenv("APP_ENV", " Staging ")
        settings = Settings.from_env()
        assert settings.session_ttl_hours == 12
        assert settings.allow_signup is False
        assert settings.valid_invite_codes == ["alpha", "beta"]
        assert settings.app_env == AppEnv.STAGING

    def test_env_overrides_dotenv(self, monkeypatch, tmp_path):
        """Process environment wins over a .env file in the working directory."""
        (tmp_path / ".env").write_text("APP_NAME=FromFile\nSMTP_PORT=2525\n")
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("APP_NAME", "FromEnv")
        settings = Settings.from_env()
        assert settings.app_name == "FromEnv"
        assert settings.smtp_port == 2525

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("APP_NAME", "Renamed")
        reset_settings_cache()
        assert get_settings().app_name == "Renamed"
        reset_settings_cache()


class TestCookiePolicy:
    def test_defaults(self):
        policy = Settings().cookie_policy()
        assert policy.session_name == "gatehouse_session"
        assert policy.session_max_age == 7 * 24 * 3600
        assert policy.csrf_name == "csrf_token"
        assert policy.csrf_header == "X-CSRF-Token"
        assert policy.secure is False

    def test_secure_flag(self):
        assert Settings(app_env="production").cookie_policy().secure
        assert Settings(cookie_secure=True).cookie_policy().secure


class TestValidation:
    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValidationError):
            Settings(session_ttl_hours=0)

    def test_rejects_offsite_landing_path(self):
        with pytest.raises(ValidationError):
            Settings(default_landing_path="//evil.example.com")


class TestRedisRequirement:
    def test_fallback_is_opt_in(self):
        assert Settings().allow_redis_fallback_dev is False

    def test_production_without_redis_refuses_to_start(self, monkeypatch):
        with monkeypatch.context() as m:
            m.setenv("APP_ENV", "production")
            m.setenv("TEST_MODE", "false")
            m.delenv("ALLOW_REDIS_FALLBACK_DEV", raising=False)
            m.delenv("REDIS_URL", raising=False)
            reset_settings_cache()
            with pytest.raises(RuntimeError, match="Redis is required"):
                Runtime()
        reset_settings_cache()

    def test_explicit_fallback_allows_local_buckets(self, monkeypatch):
        with monkeypatch.context() as m:
            m.setenv("TEST_MODE", "false")
            m.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
            m.delenv("REDIS_URL", raising=False)
            reset_settings_cache()
            runtime = Runtime()
        reset_settings_cache()
        assert runtime.cache is None


class TestServerEntryPoint:
    def test_main_serves_app_on_configured_address(self, monkeypatch):
        from gatehouse import run

        monkeypatch.setenv("HOST", "0.0.0.0")
        monkeypatch.setenv("PORT", "9001")
        reset_settings_cache()
        calls = []
        monkeypatch.setattr(run.uvicorn, "run", lambda target, **kwargs: calls.append((target, kwargs)))
        run.main()
        reset_settings_cache()
        assert calls[0][0] == "gatehouse.app:app"
        assert calls[0][1]["host"] == "0.0.0.0"
        assert calls[0][1]["port"] == 9001

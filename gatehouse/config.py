from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AppEnv(str, Enum):
    """Deployment modes; production forces Secure cookies."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass(frozen=True)
class CookiePolicy:
    """Cookie names and attributes shared by the gates and the handlers.

    Built once from :class:`Settings` so that every component reading or
    writing the session and CSRF cookies agrees on names, lifetimes and the
    Secure flag.
    """

    session_name: str
    session_max_age: int
    csrf_name: str
    csrf_field: str
    csrf_header: str
    csrf_max_age: int
    secure: bool
    path: str = "/"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    host: str = env_field("127.0.0.1", "HOST")
    port: int = env_field(8000, "PORT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    app_name: str = env_field("Gatehouse", "APP_NAME")
    cookie_secure: bool = env_field(
        False,
        "COOKIE_SECURE",
        description="Force the Secure attribute on cookies outside production",
    )
    session_cookie_name: str = env_field("gatehouse_session", "SESSION_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_form_field: str = env_field("csrf_token", "CSRF_FORM_FIELD")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    session_ttl_hours: int = env_field(7 * 24, "SESSION_TTL_HOURS", gt=0)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", gt=0
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", gt=0)
    csrf_ttl_seconds: int = env_field(3600, "CSRF_TTL_SECONDS", gt=0)
    email_send_timeout_seconds: float = env_field(
        30.0,
        "EMAIL_SEND_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for one background email delivery attempt",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    invite_codes_enabled: bool = env_field(False, "INVITE_CODES_ENABLED")
    valid_invite_codes: List[str] = env_field([], "VALID_INVITE_CODES")
    default_landing_path: str = env_field("/dashboard", "DEFAULT_LANDING_PATH")
    # Email service settings
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    email_log_links: bool = env_field(
        False,
        "EMAIL_LOG_LINKS",
        description="Log verification and reset links when no SMTP server is configured",
    )
    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic test behaviors",
    )
    # Rate limits in requests per minute. The per-action limits apply to each
    # submitted email; the client limit applies to each client address.
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    signup_rate_limit_per_minute: int = env_field(5, "SIGNUP_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    client_rate_limit_per_minute: int = env_field(30, "CLIENT_RATE_LIMIT_PER_MINUTE")
    sweep_interval_seconds: int = env_field(3600, "SWEEP_INTERVAL_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("valid_invite_codes", mode="before")
    @classmethod
    def _split_invite_codes(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [str(code).strip() for code in value if str(code).strip()]

    @field_validator("default_landing_path")
    @classmethod
    def _validate_landing_path(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError("DEFAULT_LANDING_PATH must be a local absolute path")
        return value

    @property
    def secure_cookies(self) -> bool:
        return self.cookie_secure or self.app_env == AppEnv.PRODUCTION

    def cookie_policy(self) -> CookiePolicy:
        return CookiePolicy(
            session_name=self.session_cookie_name,
            session_max_age=self.session_ttl_hours * 3600,
            csrf_name=self.csrf_cookie_name,
            csrf_field=self.csrf_form_field,
            csrf_header=self.csrf_header_name,
            csrf_max_age=self.csrf_ttl_seconds,
            secure=self.secure_cookies,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

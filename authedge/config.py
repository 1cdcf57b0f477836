from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authedge.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and abuse-control subsystem."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits running without Redis.",
    )
    hmac_secret: str | None = env_field(
        None,
        "HMAC_SECRET",
        description="Key for hashing session tokens before they are persisted",
    )

    # Sessions
    session_ttl_seconds: int = env_field(
        900, "SESSION_TTL_SECONDS", description="Sliding (soft) session lifetime", gt=0
    )
    session_hard_ttl_seconds: int = env_field(
        86400,
        "SESSION_HARD_TTL_SECONDS",
        description="Absolute session lifetime, never extended by activity",
        gt=0,
    )
    max_sessions_per_account: int = env_field(
        5,
        "MAX_SESSIONS_PER_ACCOUNT",
        description="Concurrent sessions per account; 0 disables the cap",
        ge=0,
    )
    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Login throttling and lockout
    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Failed logins per window before lockout; -1 for unlimited",
    )
    login_attempt_window_seconds: int = env_field(900, "LOGIN_ATTEMPT_WINDOW_SECONDS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    clear_login_attempts_on_success: bool = env_field(
        True,
        "CLEAR_LOGIN_ATTEMPTS_ON_SUCCESS",
        description="Reset the failed-login counter after a successful login",
    )

    # One-time verification / reset codes
    code_ttl_seconds: int = env_field(600, "CODE_TTL_SECONDS", gt=0)
    max_code_requests_per_hour: int = env_field(
        5,
        "MAX_CODE_REQUESTS_PER_HOUR",
        description="Code requests per subject per hour; -1 for unlimited",
    )
    max_code_verify_attempts: int = env_field(
        5,
        "MAX_CODE_VERIFY_ATTEMPTS",
        gt=0,
        description="Wrong guesses before the outstanding code is withdrawn",
    )

    # Store key namespaces
    session_prefix: str = env_field("auth:session:", "SESSION_PREFIX")
    account_session_prefix: str = env_field(
        "auth:account_sessions:", "ACCOUNT_SESSION_PREFIX"
    )
    login_attempts_prefix: str = env_field("auth:login_attempts:", "LOGIN_ATTEMPTS_PREFIX")
    code_prefix: str = env_field("auth:code:", "CODE_PREFIX")
    code_attempts_prefix: str = env_field("auth:code_attempts:", "CODE_ATTEMPTS_PREFIX")

    # Email notifications
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthEdge", "EMAIL_FROM_NAME")

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

    @field_validator("login_attempt_window_seconds")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("login_attempt_window_seconds must be positive")
        return value

    @model_validator(mode="after")
    def _check_session_lifetimes(self) -> "Settings":
        if self.session_hard_ttl_seconds < self.session_ttl_seconds:
            raise ValueError(
                "session_hard_ttl_seconds must be >= session_ttl_seconds"
            )
        return self

    @model_validator(mode="after")
    def _ensure_hmac_secret(self) -> "Settings":
        if self.hmac_secret:
            return self
        if not self.test_mode:
            raise ValueError("HMAC_SECRET is required outside TEST_MODE")
        # Tokens hashed with an ephemeral key do not survive a restart
        logger.warning(
            "hmac_secret_generated",
            message="Generated an ephemeral HMAC secret under TEST_MODE",
        )
        self.hmac_secret = secrets.token_urlsafe(64)
        return self


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

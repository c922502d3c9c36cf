from __future__ import annotations

import json
import os
import secrets
from typing import Any, Callable, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

DEFAULT_RESET_PASSWORD_TEMPLATE = {
    "subject": "Reset your password",
    "text": "Use this code to reset your password: {token}",
    "html": "<p>Use this code to reset your password:</p><p><code>{token}</code></p>",
}

DEFAULT_VERIFICATION_TEMPLATE = {
    "subject": "Verify your email address",
    "text": "Use this code to verify {email}: {token}",
    "html": "<p>Use this code to verify {email}:</p><p><code>{token}</code></p>",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class PasswordOptions(BaseModel):
    """Strength rules applied by the password policy."""

    min_length: int = Field(8, ge=1)
    max_length: int = Field(128, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PasswordOptions":
        if self.max_length < self.min_length:
            raise ValueError("max_length must be >= min_length")
        return self


class EmailTemplate(BaseModel):
    subject: str
    text: str
    html: Optional[str] = None


class EmailOptions(BaseModel):
    """Outbound email collaborator and the templates rendered for it."""

    send_email: Optional[Callable[..., Any]] = None
    from_email: str = "noreply@example.com"
    reset_password_template: EmailTemplate = Field(
        default_factory=lambda: EmailTemplate(**DEFAULT_RESET_PASSWORD_TEMPLATE)
    )
    verification_template: EmailTemplate = Field(
        default_factory=lambda: EmailTemplate(**DEFAULT_VERIFICATION_TEMPLATE)
    )

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="ignore")


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    jwt_secret: Optional[str] = env_field(
        None, "JWT_SECRET", description="HMAC signing key, at least 32 characters"
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_expiry: int = env_field(
        3600, "ACCESS_TOKEN_EXPIRY", description="Access token TTL in seconds", gt=0
    )
    refresh_token_expiry: int = env_field(
        7 * 24 * 3600,
        "REFRESH_TOKEN_EXPIRY",
        description="Refresh token TTL in seconds",
        gt=0,
    )
    password_reset_token_expiry: int = env_field(
        3600, "PASSWORD_RESET_TOKEN_EXPIRY", gt=0
    )
    email_verification_token_expiry: int = env_field(
        24 * 3600, "EMAIL_VERIFICATION_TOKEN_EXPIRY", gt=0
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking expiry",
        ge=0,
    )
    password_options: PasswordOptions = env_field(
        PasswordOptions(), "PASSWORD_OPTIONS"
    )
    email_options: EmailOptions = env_field(EmailOptions(), "EMAIL_OPTIONS")
    # argon2id cost parameters
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST", ge=1)
    password_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_MEMORY_COST", description="KiB", ge=8
    )
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM", ge=1)
    require_email_verification: bool = env_field(
        False,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Refuse login until the address has been verified",
    )
    revoke_sessions_on_token_reuse: bool = env_field(
        True,
        "REVOKE_SESSIONS_ON_TOKEN_REUSE",
        description="Revoke every refresh token of a user when reuse is detected",
    )
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: Optional[str] = env_field(None, "DATABASE_URL")
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    state_dir: Optional[str] = env_field(
        None,
        "AUTHCORE_STATE_DIR",
        description="Persist the in-memory store as JSON under this directory",
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    # SMTP transport used when no send_email callable is supplied
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_name: str = env_field("authcore", "EMAIL_FROM_NAME")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; exposes reset tokens to callers",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls, **overrides: Any) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        merged.update(overrides)
        return cls(**merged)

    @field_validator("password_options", "email_options", mode="before")
    @classmethod
    def _parse_json_options(cls, value: Any) -> Any:
        # nested options arrive from the environment as JSON strings
        if isinstance(value, str):
            return json.loads(value)
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"jwt_secret must be at least {MIN_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside test mode")
        logger.warning(
            "jwt_secret_generated",
            message="No JWT_SECRET configured; using an ephemeral secret for test mode",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
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

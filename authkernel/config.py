from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file the in-memory store persists to; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; generates throwaway JWT secrets when unset.",
    )

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("auth-service", "JWT_ISSUER")
    jwt_audience: str = env_field("social-network", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated on exp/nbf checks"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    argon2_memory_cost: int = env_field(64 * 1024, "ARGON2_MEMORY_COST")
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_parallelism: int = env_field(2, "ARGON2_PARALLELISM")
    argon2_salt_len: int = env_field(16, "ARGON2_SALT_LEN")
    argon2_hash_len: int = env_field(32, "ARGON2_HASH_LEN")

    default_role: str = env_field("user", "DEFAULT_ROLE")
    allow_registration: bool = env_field(True, "ALLOW_REGISTRATION")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS"
    )
    event_stream_prefix: str = env_field("auth-events", "EVENT_STREAM_PREFIX")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    log_level: str = env_field("INFO", "LOG_LEVEL")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "argon2_memory_cost",
        "argon2_time_cost",
        "argon2_parallelism",
        "argon2_salt_len",
        "argon2_hash_len",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_leeway_seconds")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            logger.warning("jwt_secrets_generated", reason="test_mode")
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60


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

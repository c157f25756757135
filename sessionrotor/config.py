from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any
from urllib.parse import quote

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionrotor.logging import get_logger
from sessionrotor.service.durations import (
    DEFAULT_ACCESS_TTL_SECONDS,
    DEFAULT_REFRESH_TTL_SECONDS,
    is_valid_expires_in,
    parse_expires_in_to_seconds,
)

logger = get_logger(__name__)


class SessionBackend(str, Enum):
    """Where the current refresh-credential hash is kept."""

    REDIS = "redis"
    RECORD = "record"


class PrincipalStoreKind(str, Enum):
    MEMORY = "memory"
    POSTGRES = "postgres"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token lifecycle service."""

    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_access_expires_in: str = env_field(
        "15m",
        "JWT_ACCESS_EXPIRES_IN",
        description="Access credential lifetime, e.g. 15m",
    )
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_refresh_expires_in: str = env_field(
        "7d",
        "JWT_REFRESH_EXPIRES_IN",
        description="Refresh credential and session lifetime, e.g. 7d",
    )
    jwt_leeway_seconds: int = env_field(
        0,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew allowance applied when checking expiry",
    )
    session_backend: SessionBackend = env_field(SessionBackend.REDIS, "SESSION_BACKEND")
    principal_store: PrincipalStoreKind = env_field(
        PrincipalStoreKind.MEMORY, "PRINCIPAL_STORE"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_host: str = env_field("localhost", "REDIS_HOST")
    redis_port: int = env_field(6379, "REDIS_PORT")
    redis_password: str | None = env_field(None, "REDIS_PASSWORD")
    redis_db: int = env_field(0, "REDIS_DB")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    database_url: str = env_field(
        "postgresql://localhost:5432/sessionrotor", "DATABASE_URL"
    )
    data_root: str = env_field("/srv/sessionrotor", "DATA_ROOT")
    storage_max_retries: int = env_field(
        2,
        "STORAGE_MAX_RETRIES",
        description="Retries after the first attempt for a failing store call",
    )
    storage_backoff_ms: int = env_field(
        50,
        "STORAGE_BACKOFF_MS",
        description="Initial store retry backoff; quadruples each retry",
    )
    revoke_on_token_mismatch: bool = env_field(
        True,
        "REVOKE_ON_TOKEN_MISMATCH",
        description="Delete the session when a stale refresh credential is replayed",
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and generated secrets.",
    )

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

    @field_validator("session_backend")
    @classmethod
    def _validate_session_backend(cls, value: SessionBackend) -> SessionBackend:
        return SessionBackend(value)

    @field_validator("principal_store")
    @classmethod
    def _validate_principal_store(cls, value: PrincipalStoreKind) -> PrincipalStoreKind:
        return PrincipalStoreKind(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_refresh_expires_in")
    @classmethod
    def _warn_refresh_expiry(cls, value: str) -> str:
        if not is_valid_expires_in(value):
            logger.warning(
                "refresh_expiry_unparseable",
                value=value,
                fallback_seconds=DEFAULT_REFRESH_TTL_SECONDS,
            )
        return value

    @field_validator("jwt_access_expires_in")
    @classmethod
    def _warn_access_expiry(cls, value: str) -> str:
        if not is_valid_expires_in(value):
            logger.warning(
                "access_expiry_unparseable",
                value=value,
                fallback_seconds=DEFAULT_ACCESS_TTL_SECONDS,
            )
        return value

    @field_validator("storage_max_retries")
    @classmethod
    def _validate_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("storage_max_retries must be >= 0")
        return value

    @model_validator(mode="after")
    def _resolve_secrets_and_urls(self) -> "Settings":
        if not self.jwt_access_secret or not self.jwt_refresh_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be set outside TEST_MODE"
                )
            # Generated secrets only live for this process
            self.jwt_access_secret = self.jwt_access_secret or secrets.token_urlsafe(48)
            self.jwt_refresh_secret = self.jwt_refresh_secret or secrets.token_urlsafe(48)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        if not self.redis_url:
            auth = f":{quote(self.redis_password, safe='')}@" if self.redis_password else ""
            self.redis_url = (
                f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"
            )
        return self

    @property
    def access_ttl_seconds(self) -> int:
        return parse_expires_in_to_seconds(
            self.jwt_access_expires_in, default=DEFAULT_ACCESS_TTL_SECONDS
        )

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_expires_in_to_seconds(self.jwt_refresh_expires_in)


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

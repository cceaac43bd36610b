from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from usertokens.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Backends able to hold token records and the user registry."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token store and lifecycle service."""

    store_backend: StoreBackend = env_field(
        StoreBackend.POSTGRES,
        "TOKEN_STORE_BACKEND",
        description="Where token records live: memory, postgres, or redis",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/usertokens", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE", ge=1)
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE", ge=1)
    auto_migrate: bool = env_field(
        False,
        "AUTO_MIGRATE",
        description="Create the users/user_tokens tables on start-up when missing",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("usertokens", "REDIS_KEY_PREFIX", min_length=1)
    state_root: str | None = env_field(
        None,
        "STATE_ROOT",
        description="Directory for the memory store's JSON snapshot; unset keeps state in-process only",
    )
    token_ttl_minutes: int | None = env_field(
        None,
        "TOKEN_TTL_MINUTES",
        description="Optional token lifetime; unset means tokens live until revoked",
    )
    token_issue_max_attempts: int = env_field(
        3,
        "TOKEN_ISSUE_MAX_ATTEMPTS",
        ge=1,
        description="Total identifier draws per issue before giving up on collisions",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("store_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: Any) -> StoreBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return StoreBackend(value)

    @field_validator("state_root", "token_ttl_minutes", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("token_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("token_ttl_minutes must be positive when set")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            store_backend=_settings_cache.store_backend.value,
            token_ttl_minutes=_settings_cache.token_ttl_minutes,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

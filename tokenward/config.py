from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenward", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tokenward", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Skip external connectivity checks and allow in-process fallbacks.",
    )
    secret_length: int = env_field(
        54,
        "TOKEN_SECRET_LENGTH",
        description="Number of characters in generated token secrets",
    )
    token_name_prefix: str = env_field("token-", "TOKEN_NAME_PREFIX")
    store_timeout_seconds: float | None = env_field(
        10.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound on a single backing store call; unset disables the bound",
    )
    index_resync_seconds: int = env_field(
        30,
        "INDEX_RESYNC_SECONDS",
        description="Interval between full index resyncs; 0 disables the background refresher",
    )
    index_grace_seconds: int = env_field(
        300,
        "INDEX_GRACE_SECONDS",
        description="How long expired tokens stay in the secret index past their expiry",
    )
    index_entry_max_seconds: int = env_field(
        900,
        "INDEX_ENTRY_MAX_SECONDS",
        description="Upper bound on how long any secret index entry lives without a rewrite",
    )
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

    @field_validator("secret_length")
    @classmethod
    def _validate_secret_length(cls, value: int) -> int:
        # 32 characters of the 27-symbol alphabet is roughly 152 bits
        if value < 32:
            raise ValueError("secret_length must be at least 32")
        return value

    @field_validator("token_name_prefix")
    @classmethod
    def _validate_name_prefix(cls, value: str) -> str:
        if ":" in value:
            raise ValueError("token_name_prefix must not contain ':'")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_store_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            return None
        return value

    @field_validator("index_resync_seconds", "index_grace_seconds")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("interval must be >= 0")
        return value

    @field_validator("index_entry_max_seconds")
    @classmethod
    def _validate_entry_bound(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("index_entry_max_seconds must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

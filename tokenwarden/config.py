from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_HASH_WORKERS = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenwarden", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/tokenwarden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Recovery policy
    recovery_max_attempts: int = env_field(
        5,
        "RECOVERY_MAX_ATTEMPTS",
        description="Consecutive failed recovery matches before an account locks",
    )
    registration_code_length: int = env_field(
        6,
        "REGISTRATION_CODE_LENGTH",
        description="Normalized length that marks an input as a registration code",
    )
    count_consumed_code_replays: bool = env_field(
        True,
        "COUNT_CONSUMED_CODE_REPLAYS",
        description="Count replays of a consumed registration code toward lockout",
    )
    recovery_max_retries: int = env_field(
        5,
        "RECOVERY_MAX_RETRIES",
        description="Retries of an account write that lost an optimistic version check",
    )

    # Tokens
    token_bytes: int = env_field(32, "TOKEN_BYTES")

    # Secret hashing (argon2id)
    hash_workers: int = env_field(
        4,
        "HASH_WORKERS",
        description="Size of the bounded thread pool used for password hashing",
    )
    hash_time_cost: int = env_field(3, "HASH_TIME_COST")
    hash_memory_cost: int = env_field(65536, "HASH_MEMORY_COST")
    hash_parallelism: int = env_field(4, "HASH_PARALLELISM")

    # Per-client request limits, independent of per-account lockout
    login_rate_limit_per_minute: int = env_field(30, "LOGIN_RATE_LIMIT_PER_MINUTE")
    recovery_rate_limit_per_minute: int = env_field(
        10, "RECOVERY_RATE_LIMIT_PER_MINUTE"
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")

    # Seed files
    registration_codes_file: str = env_field(
        "registration-codes.txt", "REGISTRATION_CODES_FILE"
    )
    registered_clients_file: str = env_field(
        "seeds/registered-clients.txt", "REGISTERED_CLIENTS_FILE"
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

    @field_validator("recovery_max_attempts", "registration_code_length")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("recovery_max_retries")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("token_bytes")
    @classmethod
    def _validate_token_bytes(cls, value: int) -> int:
        if value < 16:
            raise ValueError("bearer tokens need at least 16 random bytes")
        return value

    @field_validator("hash_workers")
    @classmethod
    def _clamp_hash_workers(cls, value: int) -> int:
        return min(max(1, value), MAX_HASH_WORKERS)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


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

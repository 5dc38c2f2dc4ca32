from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kispha.service.tokens import DEFAULT_VALIDITY_MS, TokenKeys


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/kispha", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/kispha", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests.",
    )
    # Both values must encode to exactly 16 bytes; checked when the runtime builds the codec
    token_key: str = env_field(
        "KisphaAESKeyCode",
        "TOKEN_KEY",
        description="AES-128 key used to encrypt identity tokens",
    )
    token_iv: str = env_field(
        "Muimi_KisphaCode",
        "TOKEN_IV",
        description="Fixed CBC initialization vector for identity tokens",
    )
    token_validity_ms: int = env_field(
        DEFAULT_VALIDITY_MS,
        "TOKEN_VALIDITY_MS",
        description="How long an issued token proves freshness, in milliseconds",
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

    @field_validator("token_validity_ms")
    @classmethod
    def _validate_validity(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token_validity_ms must be positive")
        return value

    def token_keys(self) -> TokenKeys:
        """Build the codec key material, raising ConfigurationError on bad lengths."""
        return TokenKeys.from_strings(self.token_key, self.token_iv)


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

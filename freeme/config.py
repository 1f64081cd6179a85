from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from freeme.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the calendar command service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/freeme", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_statement_timeout_ms: int = env_field(
        5000,
        "STORE_STATEMENT_TIMEOUT_MS",
        description="Postgres statement_timeout applied to every pooled connection",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: stub completions, in-process rate limits.",
    )

    # Completion service
    model_path: str = env_field("anthropic/claude-3.5-sonnet", "MODEL_PATH")
    model_api_key: str | None = env_field(None, "OPENROUTER_API_KEY")
    model_base_url: str = env_field("https://openrouter.ai/api/v1", "MODEL_BASE_URL")
    model_timeout_seconds: float = env_field(45.0, "MODEL_TIMEOUT_SECONDS")
    model_max_retries: int = env_field(1, "MODEL_MAX_RETRIES")
    model_temperature: float = env_field(0.3, "MODEL_TEMPERATURE")
    model_max_tokens: int = env_field(1500, "MODEL_MAX_TOKENS")

    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    app_title: str = env_field("Freeme Calendar", "APP_TITLE")
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Rate limit classes; each class has its own key namespace
    ai_rate_limit_per_minute: int = env_field(10, "AI_RATE_LIMIT_PER_MINUTE")
    event_api_rate_limit_per_minute: int = env_field(100, "EVENT_API_RATE_LIMIT_PER_MINUTE")
    auth_rate_limit: int = env_field(5, "AUTH_RATE_LIMIT")
    auth_rate_limit_window_seconds: int = env_field(300, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_sweep_interval_seconds: int = env_field(
        300,
        "RATE_LIMIT_SWEEP_INTERVAL_SECONDS",
        description="How often expired in-process rate limit windows are purged",
    )

    max_ai_request_bytes: int = env_field(10240, "MAX_AI_REQUEST_BYTES")
    context_event_limit: int = env_field(50, "CONTEXT_EVENT_LIMIT")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "model_api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("model_timeout_seconds")
    @classmethod
    def _bound_model_timeout(cls, value: float) -> float:
        if value <= 0:
            logger.warning("model_timeout_invalid", model_timeout_seconds=value)
            return 45.0
        return value


def validate_api_key(settings: Settings) -> bool:
    """Return True when a plausible completion API key is configured."""
    key = settings.model_api_key
    return bool(key) and len(key) > 20


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

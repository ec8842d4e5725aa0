from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from agentrelay.logging import get_logger

logger = get_logger(__name__)


class TraceBackend(str, Enum):
    """Where run traces are flushed after every step."""

    FILE = "file"
    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-level settings passed explicitly into the engine and agents."""

    workflow_path: str = env_field("workflow.yaml", "WORKFLOW_PATH")
    workflow_name: str | None = env_field(
        None,
        "WORKFLOW_NAME",
        description="Fallback workflow name when the document does not declare one",
    )
    org_id: str | None = env_field(None, "ORG_ID")

    trace_backend: TraceBackend = env_field(TraceBackend.FILE, "TRACE_BACKEND")
    trace_dir: str = env_field("./traces", "TRACE_DIR")
    redis_url: str | None = env_field(None, "REDIS_URL")
    trace_ttl_seconds: int = env_field(7 * 24 * 3600, "TRACE_TTL_SECONDS")

    # LLM settings (OpenAI or any OpenAI-compatible endpoint)
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    openai_model: str = env_field("gpt-4o-mini", "OPENAI_MODEL")
    llm_prompt_cost_per_token: float = env_field(
        0.00000015, "LLM_PROMPT_COST_PER_TOKEN"
    )
    llm_completion_cost_per_token: float = env_field(
        0.0000006, "LLM_COMPLETION_COST_PER_TOKEN"
    )

    database_url: str | None = env_field(None, "DATABASE_URL")
    database_pool_size: int = env_field(5, "DATABASE_POOL_SIZE")

    serper_api_key: str | None = env_field(None, "SERPER_API_KEY")
    brave_api_key: str | None = env_field(None, "BRAVE_API_KEY")

    http_timeout_seconds: float = env_field(30.0, "HTTP_TIMEOUT_SECONDS")
    http_connect_timeout_seconds: float = env_field(10.0, "HTTP_CONNECT_TIMEOUT_SECONDS")
    http_max_redirects: int = env_field(5, "HTTP_MAX_REDIRECTS")

    guardrail_resolve_dns: bool = env_field(
        True,
        "GUARDRAIL_RESOLVE_DNS",
        description="Resolve hostnames and check every address against private ranges",
    )
    retry_guardrail_violations: bool = env_field(
        True,
        "RETRY_GUARDRAIL_VIOLATIONS",
        description="Retry guardrail violations like transient failures; false makes them terminal",
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

    @field_validator("trace_backend")
    @classmethod
    def _validate_trace_backend(cls, value: TraceBackend) -> TraceBackend:
        return TraceBackend(value)

    @field_validator("http_max_redirects", "database_pool_size")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be non-negative")
        return value

    @property
    def llm_configured(self) -> bool:
        return bool(self.openai_api_key)


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

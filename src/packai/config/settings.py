"""Settings and configuration management."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from packai.orchestration.engine import EngineConfig
    from packai.orchestration.retry import RetryConfig

logger = logging.getLogger(__name__)

_LOG_FORMATS = ("text", "json")


class Settings(BaseSettings):
    """Application settings.

    Every field can be overridden with a ``PACKAI_``-prefixed environment
    variable or a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="PACKAI_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Session retry
    retry_max_retries: int = Field(3, description="Retries after the first attempt")
    retry_base_delay_ms: int = Field(1000, description="Backoff base delay")
    retry_max_delay_ms: int = Field(30000, description="Backoff ceiling")
    retry_jitter: bool = Field(True, description="Randomize backoff in [0, delay)")

    # Session manager
    availability_cache_ttl_seconds: float = Field(
        30.0, description="How long worker availability probes are cached"
    )

    # Execution engine
    workspace_root: str = Field(".", description="Root directory for written files")
    max_quality_retries: int = Field(
        2, description="Re-executions allowed when quality gates report errors"
    )
    continue_on_task_failure: bool = Field(
        True, description="Record failed tasks and keep going instead of aborting"
    )
    enable_checkpoints: bool = Field(True, description="Persist plan after each batch")
    autosave_interval_seconds: float = Field(
        30.0, description="Periodic checkpoint interval"
    )

    # Agent fallback
    fallback_order: list[str] = Field(
        default_factory=lambda: ["claude", "copilot", "codex"],
        description="Roles tried in order when the primary agent fails",
    )
    max_fallback_attempts: int = Field(
        2, description="Fallback roles tried after the primary"
    )

    # State
    state_db_path: str = Field(
        "packai-state.db", description="SQLite file used for checkpoints"
    )

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")
    sanitize_logs: bool = Field(True, description="Sanitize sensitive data from logs")

    @field_validator(
        "retry_max_retries",
        "retry_base_delay_ms",
        "retry_max_delay_ms",
        "max_quality_retries",
        "max_fallback_attempts",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("availability_cache_ttl_seconds", "autosave_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        if value.lower() not in _LOG_FORMATS:
            raise ValueError(f"log_format must be one of {_LOG_FORMATS}")
        return value.lower()

    def retry_config(self) -> RetryConfig:
        """Build the session retry configuration."""
        from packai.orchestration.retry import RetryConfig

        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter=self.retry_jitter,
        )

    def engine_config(self) -> EngineConfig:
        """Build the execution engine configuration."""
        from packai.orchestration.engine import EngineConfig

        return EngineConfig(
            workspace_root=self.workspace_root,
            max_quality_retries=self.max_quality_retries,
            continue_on_task_failure=self.continue_on_task_failure,
            enable_checkpoints=self.enable_checkpoints,
            autosave_interval_seconds=self.autosave_interval_seconds,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

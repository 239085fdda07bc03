"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for agent-swarm.
All settings can be overridden via environment variables or a .env file.
"""

import logging
import os
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        api_key: Provider API key exported for LiteLLM when set.
        api_base: Provider base URL exported for LiteLLM when set.
        default_model: Model used by subagents (LiteLLM provider/model id).
        llm_fallback_model: Model tried once after the primary exhausts retries.
        llm_max_retries: Retries for transient LLM failures.
        llm_request_timeout_seconds: Per-request timeout for LLM calls.
        llm_temperature: Sampling temperature for subagent rounds.
        max_concurrent_agents: Upper bound on live subagent workers.
        default_task_timeout_seconds: Wall-clock budget applied to each task.
        scheduling_mode: "continuous" starts a task as soon as its own
            dependencies finish; "batch" waits for the whole previous level.
        enable_loop_detection: Master switch for the loop governor.
        tool_timeout_seconds: Timeout for a single shell tool invocation.
        tool_output_max_chars: Truncation limit for tool output.
        workspace_root: Default working directory for local tools.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    api_key: str = ""
    api_base: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., openai/, xai/)
    default_model: str = "xai/grok-code-fast-1"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    llm_temperature: float = 0.7

    # Orchestration
    max_concurrent_agents: int = 5
    default_task_timeout_seconds: float = 300.0
    scheduling_mode: Literal["continuous", "batch"] = "continuous"

    # Safety
    enable_loop_detection: bool = True

    # Tools
    tool_timeout_seconds: int = 60
    tool_output_max_chars: int = 50000
    workspace_root: str = "."

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("scheduling_mode", mode="before")
    @classmethod
    def normalize_scheduling_mode(cls, v: Any) -> Any:
        """Accept mixed-case values such as 'Batch' from the environment."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    model_config = SettingsConfigDict(
        env_prefix="AGENT_SWARM_",
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def model_post_init(self, __context: Any) -> None:
        """Export provider credentials to os.environ for LiteLLM discovery."""
        if self.api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.api_key)
        if self.api_base:
            os.environ.setdefault("OPENAI_API_BASE", self.api_base)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Read-only settings loaded once per process
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

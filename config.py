"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the critic loop.
All settings can be overridden via environment variables or a .env file.

The module-level ``settings`` instance only supplies defaults. Collaborators
receive their models and limits explicitly at construction time so that
several runs (or tests) can use different values side by side.
"""

import logging
import os
import sys
from typing import Any, Literal

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        openai_api_key: API key exported to litellm when set.
        coder_model: Model that drafts the initial artifact.
        critic_model: Model used by every critic on the review panel.
        fixer_model: Model that repairs an artifact from feedback.
        llm_temperature: Sampling temperature for all model calls.
        llm_max_tokens: Token cap passed to the transport.
        llm_max_retries: Per-call retries on runaway output, timeouts and
            transient transport errors.
        llm_retry_delay_seconds: Base delay for exponential backoff.
        llm_retry_backoff_cap_seconds: Upper bound on a single backoff sleep.
        llm_retry_attempts: Re-asks for malformed (undecodable) output.
        llm_request_timeout_seconds: Overall wall-clock deadline per call.
        stream_chunk_timeout_seconds: Maximum silence between two chunks.
        max_response_chars: Monitor-side cap on response length.
        runaway_whitespace_threshold: Longest tolerated run of whitespace
            before a streamed call is aborted as runaway output.
        stream_progress_interval: Chunks between two progress events.
        num_critics: Review panel size.
        critic_style: "specialized" (design/correctness/syntax round-robin)
            or "general" (one general reviewer style for every member).
        max_iterations: Iteration budget of the orchestration loop.
        tester_timeout_seconds: Timeout for compiling and for running tests.
        rustc_path: Compiler executable used by the tester.
        assert_tag_pattern: Regex matching assertion tags in test output.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    openai_api_key: str = ""
    # Model names are passed to LiteLLM as-is (provider prefixes allowed)
    coder_model: str = "gpt-4o"
    critic_model: str = "gpt-4o"
    fixer_model: str = "gpt-4o"
    llm_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    llm_max_tokens: int = 2048

    # Per-call retry policy
    llm_max_retries: int = Field(default=5, ge=0)
    llm_retry_delay_seconds: float = 1.0
    llm_retry_backoff_cap_seconds: float = 4.0
    llm_retry_attempts: int = Field(default=2, ge=0)

    # Streaming watchdog
    llm_request_timeout_seconds: float = 120.0
    stream_chunk_timeout_seconds: float = 30.0
    max_response_chars: int = 12000
    # Empirically chosen; tune per model
    runaway_whitespace_threshold: int = 400
    stream_progress_interval: int = 25

    # Review panel
    num_critics: int = Field(default=3, ge=1)
    critic_style: Literal["specialized", "general"] = "specialized"

    # Loop budget
    max_iterations: int = Field(default=10, ge=0)

    # Tester
    tester_timeout_seconds: float = 60.0
    rustc_path: str = "rustc"
    assert_tag_pattern: str = r"\bAT-[0-9A-Za-z]{4,12}\b"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def check_runaway_threshold(self) -> "Settings":
        """Runaway detection must be able to fire before the length cap."""
        if self.runaway_whitespace_threshold >= self.max_response_chars:
            raise ValueError(
                "runaway_whitespace_threshold must be smaller than max_response_chars"
            )
        return self

    def model_post_init(self, __context: Any) -> None:
        """Export the OpenAI API key to os.environ for LiteLLM discovery."""
        if self.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.openai_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Configure structured logging for the application.

    Sets up structlog with processors for either JSON or console output, written
    to stderr so that stdout carries only the program a converged run prints.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for machine consumption, 'text' for terminals.
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
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

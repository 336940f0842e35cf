"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the orchestrator
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        stability_delay_seconds: Quiet period a task's files must stay unchanged
            before its verification runs.
        max_verification_retries: Failed verifications tolerated before a task
            is marked terminally failed.
        default_task_priority: Priority used for tasks that declare none. Lower
            numbers are scheduled first.
        max_dependency_chain: Dependency chains longer than this produce a
            validation warning.
        context_reference_prefix: Prefix of the context tag attached to a queued
            task for each completed dependency.
        verification_command: Shell command run by the command executor.
        verification_workdir: Working directory for the verification command.
        verification_timeout_seconds: Timeout for one verification run.
        pending_verification_ttl_minutes: Idle pending verifications older than
            this are pruned by the cleanup loop.
        finished_session_ttl_minutes: Completed or cancelled sessions are
            evicted this long after they end.
        cleanup_interval_seconds: Interval of the background cleanup loop.
        backend_port: Port for the FastAPI server.
        frontend_port: Port for the frontend (for CORS).
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Verification gate
    stability_delay_seconds: float = 60.0
    max_verification_retries: int = 3
    verification_command: str = "pytest -q"
    verification_workdir: str = "."
    verification_timeout_seconds: float = 600.0
    pending_verification_ttl_minutes: int = 120
    finished_session_ttl_minutes: int = 60
    cleanup_interval_seconds: float = 60.0

    # Scheduling
    default_task_priority: int = 99
    max_dependency_chain: int = 10
    context_reference_prefix: str = "context:dependency:"

    # Server Configuration
    backend_port: int = 8000
    frontend_port: int = 3000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("stability_delay_seconds", "verification_timeout_seconds")
    @classmethod
    def non_negative_seconds(cls, v: float) -> float:
        """Reject negative durations."""
        if v < 0:
            raise ValueError("duration must not be negative")
        return v

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


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


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

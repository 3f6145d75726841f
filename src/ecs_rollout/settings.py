# src/ecs_rollout/settings.py
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for deployment settings.

    Configuration precedence:
    1. Explicit overrides (``settings.model_copy(update=...)`` from the CLI)
    2. Environment variables (``ECS_ROLLOUT_*``, plus the AWS aliases below)
    3. .env file (if exists)
    4. Default values in this class (lowest priority)

    The model is frozen; callers receive it by reference and never mutate it.

    Usage:
        from ecs_rollout.settings import get_settings
        settings = get_settings()
        timeout = settings.stable_timeout_s
    """

    # AWS Core Settings
    aws_region: Optional[str] = Field(
        default=None,
        alias="AWS_DEFAULT_REGION",
        description="Region for the ECS/S3 clients (boto3 default chain if unset)"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL",
        description="Custom endpoint, e.g. a local moto server"
    )

    # Output
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    debug: bool = Field(
        default=False,
        description="Verbose output; overrides quiet"
    )

    quiet: bool = Field(
        default=False,
        description="No console output; use the exit code to determine success"
    )

    # Polling
    poll_interval_s: int = Field(
        default=15,
        description="Base delay between service polls"
    )

    task_poll_interval_s: int = Field(
        default=6,
        description="Base delay between one-shot task polls"
    )

    stable_timeout_s: int = Field(
        default=600,
        description="Budget for a service to become stable (0 waits forever)"
    )

    inactive_timeout_s: int = Field(
        default=600,
        description="Budget for a deleted service to become inactive (0 waits forever)"
    )

    task_timeout_s: int = Field(
        default=600,
        description="Budget for one-shot tasks to stop (0 waits forever)"
    )

    failure_markers: List[str] = Field(
        default_factory=lambda: ["unable"],
        description="Service event substrings that abort a deployment early"
    )

    # Templates
    definition_filename: str = Field(
        default="task-definition.json",
        description="Template file looked up when a directory is given"
    )

    desired_count: int = Field(
        default=1,
        description="Desired task count for services created by install"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Normalize and validate the log level name."""
        level = str(v).upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if level not in valid_levels:
            raise ValueError(f"Invalid log_level: {v}. Must be one of {valid_levels}")
        return level

    @field_validator('stable_timeout_s', 'inactive_timeout_s', 'task_timeout_s', 'desired_count')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("must be zero or positive")
        return v

    @field_validator('poll_interval_s', 'task_poll_interval_s')
    @classmethod
    def validate_interval(cls, v):
        if v <= 0:
            raise ValueError("poll interval must be positive")
        return v

    @property
    def effective_log_level(self) -> int:
        """Numeric log level after applying --debug / --quiet."""
        if self.debug:  # debug overrides quiet
            return logging.DEBUG
        if self.quiet:
            return logging.CRITICAL
        return getattr(logging, self.log_level)

    model_config = SettingsConfigDict(
        env_prefix="ECS_ROLLOUT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
        frozen=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only read the environment once per process.
    """
    return Settings()

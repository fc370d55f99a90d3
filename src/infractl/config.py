"""Run configuration with validation.

Configuration is an immutable value built once at startup and passed
explicitly into the coordinator. Invalid values raise ConfigurationError
before any provider call is made.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Retry policy defaults: 3 attempts, fixed 2s delay, no backoff
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 2.0
MIN_RETRY_ATTEMPTS = 1
MAX_RETRY_ATTEMPTS = 10
MAX_RETRY_DELAY_SECONDS = 60.0

DEFAULT_SPEC_PATH = "infra.yaml"
DEFAULT_VARIABLES_PATH = "variables.yaml"

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec or variables file

VALID_LOG_FORMATS = ("json", "text")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded-attempt, fixed-delay retry policy for provider calls."""

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))
    variables_path: Path = field(default_factory=lambda: Path(DEFAULT_VARIABLES_PATH))

    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Approve every change set without prompting
    auto_approve: bool = False

    # Logging
    json_logs: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_RETRY_ATTEMPTS <= self.retry.attempts <= MAX_RETRY_ATTEMPTS):
            errors.append(
                f"RETRY_ATTEMPTS must be between {MIN_RETRY_ATTEMPTS} "
                f"and {MAX_RETRY_ATTEMPTS}"
            )

        if not (0 <= self.retry.delay_seconds <= MAX_RETRY_DELAY_SECONDS):
            errors.append(
                f"RETRY_DELAY_SECONDS must be between 0 and {MAX_RETRY_DELAY_SECONDS}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if not str(self.spec_path):
            errors.append("INFRA_SPEC is required")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_value(self) -> int:
        """Numeric logging level."""
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            INFRA_SPEC: Path to the desired-state file (default: infra.yaml)
            INFRA_VARIABLES: Path to the optional variables file (default: variables.yaml)
            RETRY_ATTEMPTS: Attempts per provider call (default: 3)
            RETRY_DELAY_SECONDS: Fixed delay between attempts (default: 2)
            AUTO_APPROVE: If "true", apply updates without prompting (default: false)
            LOG_FORMAT: "json" or "text" (default: json)
            LOG_LEVEL: Logging level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_log_format(value: str | None) -> bool:
            if not value:
                return True
            if value.lower() not in VALID_LOG_FORMATS:
                raise ConfigurationError(
                    f"LOG_FORMAT must be one of {list(VALID_LOG_FORMATS)}: {value}"
                )
            return value.lower() == "json"

        return cls(
            spec_path=Path(os.environ.get("INFRA_SPEC", DEFAULT_SPEC_PATH)),
            variables_path=Path(os.environ.get("INFRA_VARIABLES", DEFAULT_VARIABLES_PATH)),
            retry=RetryPolicy(
                attempts=get_int("RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS),
                delay_seconds=get_float("RETRY_DELAY_SECONDS", DEFAULT_RETRY_DELAY_SECONDS),
            ),
            auto_approve=get_bool("AUTO_APPROVE", False),
            json_logs=get_log_format(os.environ.get("LOG_FORMAT")),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

"""Configuration management with validation.

Engine tuning (poll cadence, retry bounds, concurrency) is validated at
construction time so a bad environment fails before any backend call is made.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
MAX_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_POLL_MAX_INTERVAL_SECONDS = 15.0
DEFAULT_POLL_BACKOFF_MULTIPLIER = 1.5

DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 3600
MAX_CONVERGENCE_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_MAX_POLL_RETRIES = 5
RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_MAX_CONCURRENT_OPERATIONS = 4
MAX_CONCURRENT_OPERATIONS = 16

DEFAULT_LOG_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_LOG_MAX_RETRIES = 3

# Stack names end up as resource group names (90 chars) and deployment names (64 chars)
MAX_STACK_NAME_LENGTH = 64
MAX_PLAN_FILE_SIZE_BYTES = 1024 * 1024
MAX_TEMPLATE_FILE_SIZE_BYTES = 4 * 1024 * 1024

# Input validation patterns
VALID_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,28}[a-z0-9]$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"

DEFAULT_STATE_DIR = Path.home() / ".stackpilot"


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deployment.
    """

    # Backend target; optional so that test doubles need no cloud identity
    subscription_id: str | None = None
    location: str | None = None

    # Event polling
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_interval_seconds: float = DEFAULT_POLL_MAX_INTERVAL_SECONDS
    poll_backoff_multiplier: float = DEFAULT_POLL_BACKOFF_MULTIPLIER
    max_poll_retries: int = DEFAULT_MAX_POLL_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS

    # Local wait bound; the backend operation is never cancelled
    convergence_timeout_seconds: int = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS

    # Orchestration
    max_concurrent_operations: int = DEFAULT_MAX_CONCURRENT_OPERATIONS

    # Log tailing
    log_poll_interval_seconds: float = DEFAULT_LOG_POLL_INTERVAL_SECONDS
    log_max_retries: int = DEFAULT_LOG_MAX_RETRIES

    # Paths
    templates_dir: Path | None = None
    state_dir: Path = field(default_factory=lambda: DEFAULT_STATE_DIR)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid region name: {self.location}")

        if not (0 <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"STACKPILOT_POLL_INTERVAL must be between 0 and "
                f"{MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if self.poll_max_interval_seconds < self.poll_interval_seconds:
            errors.append(
                "STACKPILOT_POLL_MAX_INTERVAL must not be lower than STACKPILOT_POLL_INTERVAL"
            )

        if self.poll_backoff_multiplier < 1.0:
            errors.append("STACKPILOT_POLL_BACKOFF must be at least 1.0")

        if self.max_poll_retries < 0:
            errors.append("STACKPILOT_MAX_POLL_RETRIES cannot be negative")

        if self.retry_backoff_base_seconds < 0:
            errors.append("retry_backoff_base_seconds cannot be negative")

        if not (1 <= self.convergence_timeout_seconds <= MAX_CONVERGENCE_TIMEOUT_SECONDS):
            errors.append(
                f"STACKPILOT_CONVERGENCE_TIMEOUT must be between 1 and "
                f"{MAX_CONVERGENCE_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_concurrent_operations <= MAX_CONCURRENT_OPERATIONS):
            errors.append(
                f"STACKPILOT_MAX_CONCURRENT_OPERATIONS must be between 1 and "
                f"{MAX_CONCURRENT_OPERATIONS}"
            )

        if self.log_poll_interval_seconds < 0:
            errors.append("STACKPILOT_LOG_POLL_INTERVAL cannot be negative")

        if self.log_max_retries < 0:
            errors.append("STACKPILOT_LOG_MAX_RETRIES cannot be negative")

        if self.templates_dir is not None and not self.templates_dir.exists():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription for the ARM backend
            AZURE_LOCATION: Default region
            STACKPILOT_POLL_INTERVAL: Seconds between event polls (default: 3)
            STACKPILOT_POLL_MAX_INTERVAL: Backoff ceiling for polls (default: 15)
            STACKPILOT_POLL_BACKOFF: Backoff multiplier when idle (default: 1.5)
            STACKPILOT_MAX_POLL_RETRIES: Transient poll errors tolerated (default: 5)
            STACKPILOT_CONVERGENCE_TIMEOUT: Local wait bound in seconds (default: 3600)
            STACKPILOT_MAX_CONCURRENT_OPERATIONS: Parallel plan steps (default: 4)
            STACKPILOT_LOG_POLL_INTERVAL: Seconds between log polls (default: 1)
            STACKPILOT_LOG_MAX_RETRIES: Per-stream log fetch retries (default: 3)
            STACKPILOT_TEMPLATES_DIR: Override for the packaged stack templates
            STACKPILOT_STATE_DIR: Local configuration store (default: ~/.stackpilot)
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

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            location=os.environ.get("AZURE_LOCATION") or None,
            poll_interval_seconds=get_float(
                "STACKPILOT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            poll_max_interval_seconds=get_float(
                "STACKPILOT_POLL_MAX_INTERVAL", DEFAULT_POLL_MAX_INTERVAL_SECONDS
            ),
            poll_backoff_multiplier=get_float(
                "STACKPILOT_POLL_BACKOFF", DEFAULT_POLL_BACKOFF_MULTIPLIER
            ),
            max_poll_retries=get_int("STACKPILOT_MAX_POLL_RETRIES", DEFAULT_MAX_POLL_RETRIES),
            convergence_timeout_seconds=get_int(
                "STACKPILOT_CONVERGENCE_TIMEOUT", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            max_concurrent_operations=get_int(
                "STACKPILOT_MAX_CONCURRENT_OPERATIONS", DEFAULT_MAX_CONCURRENT_OPERATIONS
            ),
            log_poll_interval_seconds=get_float(
                "STACKPILOT_LOG_POLL_INTERVAL", DEFAULT_LOG_POLL_INTERVAL_SECONDS
            ),
            log_max_retries=get_int("STACKPILOT_LOG_MAX_RETRIES", DEFAULT_LOG_MAX_RETRIES),
            templates_dir=get_path("STACKPILOT_TEMPLATES_DIR"),
            state_dir=get_path("STACKPILOT_STATE_DIR") or DEFAULT_STATE_DIR,
        )

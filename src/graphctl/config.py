"""Configuration management with validation.

Every knob of a plan/apply/destroy cycle is validated at load time so that a
bad value fails before the State Store lock is taken or a provider is called.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONFIG_PATH = "infra.yaml"
DEFAULT_STATE_PATH = ".graphctl/state.json"
DEFAULT_PROVIDER = "azure"

DEFAULT_PARALLELISM = 10
MIN_PARALLELISM = 1
MAX_PARALLELISM = 64

DEFAULT_MAX_ATTEMPTS = 5
MAX_ATTEMPTS_LIMIT = 20
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 1800

DEFAULT_LOCK_TIMEOUT_SECONDS = 300
MIN_LOCK_TIMEOUT_SECONDS = 30
MAX_LOCK_TIMEOUT_SECONDS = 86400
DEFAULT_LOCK_WAIT_SECONDS = 0

DEFAULT_TEARDOWN_MAX_ROUNDS = 10
MAX_TEARDOWN_ROUNDS = 100

# Boundary limits
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max configuration document
MAX_STATE_FILE_SIZE_BYTES = 50 * 1024 * 1024  # 50MB max state document
MAX_PLAN_FILE_SIZE_BYTES = 10 * 1024 * 1024

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-cycle.
    """

    # Paths
    config_path: Path = field(default_factory=lambda: Path(DEFAULT_CONFIG_PATH))
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Provider
    provider: str = DEFAULT_PROVIDER
    subscription_id: str | None = None
    managed_identity_client_id: str | None = None
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS

    # Execution
    parallelism: int = DEFAULT_PARALLELISM
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS

    # Locking
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    lock_wait_seconds: int = DEFAULT_LOCK_WAIT_SECONDS

    # Teardown
    teardown_max_rounds: int = DEFAULT_TEARDOWN_MAX_ROUNDS

    # Behavior
    refresh: bool = True

    # Logging
    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together.
        """
        errors: list[str] = []

        if not self.provider:
            errors.append("PROVIDER is required")

        # Presence is checked when the provider is built; read-only commands never need it
        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (MIN_PARALLELISM <= self.parallelism <= MAX_PARALLELISM):
            errors.append(
                f"PARALLELISM must be between {MIN_PARALLELISM} and {MAX_PARALLELISM}"
            )

        if not (1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX must be at least RETRY_BACKOFF_BASE")

        if self.provider_timeout_seconds < 1:
            errors.append("PROVIDER_TIMEOUT must be at least 1 second")

        if not (MIN_LOCK_TIMEOUT_SECONDS <= self.lock_timeout_seconds <= MAX_LOCK_TIMEOUT_SECONDS):
            errors.append(
                f"LOCK_TIMEOUT must be between {MIN_LOCK_TIMEOUT_SECONDS} "
                f"and {MAX_LOCK_TIMEOUT_SECONDS} seconds"
            )

        if self.lock_wait_seconds < 0:
            errors.append("LOCK_WAIT cannot be negative")

        if not (1 <= self.teardown_max_rounds <= MAX_TEARDOWN_ROUNDS):
            errors.append(f"TEARDOWN_MAX_ROUNDS must be between 1 and {MAX_TEARDOWN_ROUNDS}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"STATE_PATH must be a file, not a directory: {self.state_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def lock_heartbeat_seconds(self) -> float:
        """Interval at which a held lock is refreshed."""
        return self.lock_timeout_seconds / 3

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONFIG_PATH: Configuration document (default: infra.yaml)
            STATE_PATH: State document (default: .graphctl/state.json)
            PROVIDER: Provider name (default: azure)
            AZURE_SUBSCRIPTION_ID: Target subscription (required for azure)
            AZURE_CLIENT_ID: User-assigned managed identity client ID
            PROVIDER_TIMEOUT: Timeout for one provider call in seconds (default: 1800)
            PARALLELISM: Concurrent provider calls (default: 10)
            MAX_ATTEMPTS: Attempts per action for transient errors (default: 5)
            RETRY_BACKOFF_BASE: Backoff base in seconds (default: 2)
            RETRY_BACKOFF_MAX: Backoff cap in seconds (default: 60)
            LOCK_TIMEOUT: Seconds without heartbeat before a lock is abandoned (default: 300)
            LOCK_WAIT: Seconds to wait for a held lock, 0 fails fast (default: 0)
            TEARDOWN_MAX_ROUNDS: Defer-and-retry rounds during destroy (default: 10)
            REFRESH: If "false", skip drift detection reads (default: true)
            LOG_FORMAT: json or text (default: json)
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

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            config_path=Path(os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH)),
            state_path=Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH)),
            provider=os.environ.get("PROVIDER", DEFAULT_PROVIDER),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            provider_timeout_seconds=get_int(
                "PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            parallelism=get_int("PARALLELISM", DEFAULT_PARALLELISM),
            max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            lock_timeout_seconds=get_int("LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            lock_wait_seconds=get_int("LOCK_WAIT", DEFAULT_LOCK_WAIT_SECONDS),
            teardown_max_rounds=get_int("TEARDOWN_MAX_ROUNDS", DEFAULT_TEARDOWN_MAX_ROUNDS),
            refresh=get_bool("REFRESH", True),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

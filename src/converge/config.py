"""Configuration management with validation.

Every bound is enforced at load time so an invalid setting fails the run
before the first provider call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration is invalid.

    Base class for every fatal configuration problem: bad settings, an
    unreadable document, cycles, unresolved references and dependency
    violations. Raised before any remote call is made.
    """

    pass


# Configuration constants with documented bounds
DEFAULT_DOCUMENT_PATH = "resources.yaml"
DEFAULT_STATE_PATH = "converge.state.json"

DEFAULT_CONCURRENCY = 10
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 64

DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MIN_OPERATION_TIMEOUT_SECONDS = 1
MAX_OPERATION_TIMEOUT_SECONDS = 7200

DEFAULT_REFRESH_INTERVAL_SECONDS = 300
MIN_REFRESH_INTERVAL_SECONDS = 10
MAX_REFRESH_INTERVAL_SECONDS = 86400

DEFAULT_STATE_WRITE_RETRIES = 3
MAX_STATE_WRITE_RETRIES = 10

DEFAULT_PROVIDER_MAX_ATTEMPTS = 3
MAX_PROVIDER_MAX_ATTEMPTS = 10
DEFAULT_PROVIDER_BACKOFF_BASE_SECONDS = 2.0
MAX_PROVIDER_BACKOFF_SECONDS = 60.0

# Documents larger than this are rejected before parsing
MAX_DOCUMENT_SIZE_BYTES = 1024 * 1024
MAX_RESOURCES_PER_DOCUMENT = 2000

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Paths
    document_path: Path = field(default_factory=lambda: Path(DEFAULT_DOCUMENT_PATH))
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Execution
    concurrency: int = DEFAULT_CONCURRENCY
    operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS
    refresh_interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    state_write_retries: int = DEFAULT_STATE_WRITE_RETRIES

    # Provider retry policy for transient errors
    provider_max_attempts: int = DEFAULT_PROVIDER_MAX_ATTEMPTS
    provider_backoff_base_seconds: float = DEFAULT_PROVIDER_BACKOFF_BASE_SECONDS

    # Azure provider
    subscription_id: str | None = None
    client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY):
            errors.append(
                f"CONVERGE_CONCURRENCY must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"CONVERGE_OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_REFRESH_INTERVAL_SECONDS
            <= self.refresh_interval_seconds
            <= MAX_REFRESH_INTERVAL_SECONDS
        ):
            errors.append(
                f"CONVERGE_REFRESH_INTERVAL must be between {MIN_REFRESH_INTERVAL_SECONDS} "
                f"and {MAX_REFRESH_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.state_write_retries <= MAX_STATE_WRITE_RETRIES):
            errors.append(
                f"CONVERGE_STATE_WRITE_RETRIES must be between 0 and {MAX_STATE_WRITE_RETRIES}"
            )

        if not (1 <= self.provider_max_attempts <= MAX_PROVIDER_MAX_ATTEMPTS):
            errors.append(
                f"CONVERGE_PROVIDER_MAX_ATTEMPTS must be between 1 and {MAX_PROVIDER_MAX_ATTEMPTS}"
            )

        if not (0 <= self.provider_backoff_base_seconds <= MAX_PROVIDER_BACKOFF_SECONDS):
            errors.append(
                f"CONVERGE_PROVIDER_BACKOFF_BASE must be between 0 and "
                f"{MAX_PROVIDER_BACKOFF_SECONDS} seconds"
            )

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"State path is a directory: {self.state_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_DOCUMENT: Declared-state YAML document (default: resources.yaml)
            CONVERGE_STATE_PATH: JSON state file (default: converge.state.json)
            CONVERGE_CONCURRENCY: Max in-flight provider calls (default: 10)
            CONVERGE_OPERATION_TIMEOUT: Per-node provider timeout in seconds (default: 600)
            CONVERGE_REFRESH_INTERVAL: Seconds between watch refreshes (default: 300)
            CONVERGE_STATE_WRITE_RETRIES: Retries after a CAS conflict (default: 3)
            CONVERGE_PROVIDER_MAX_ATTEMPTS: Attempts for transient errors (default: 3)
            CONVERGE_PROVIDER_BACKOFF_BASE: Backoff base in seconds (default: 2)

        Azure Variables:
            AZURE_SUBSCRIPTION_ID: Subscription used by the Azure provider
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
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

        return cls(
            document_path=Path(os.environ.get("CONVERGE_DOCUMENT", DEFAULT_DOCUMENT_PATH)),
            state_path=Path(os.environ.get("CONVERGE_STATE_PATH", DEFAULT_STATE_PATH)),
            concurrency=get_int("CONVERGE_CONCURRENCY", DEFAULT_CONCURRENCY),
            operation_timeout_seconds=get_float(
                "CONVERGE_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            refresh_interval_seconds=get_int(
                "CONVERGE_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL_SECONDS
            ),
            state_write_retries=get_int(
                "CONVERGE_STATE_WRITE_RETRIES", DEFAULT_STATE_WRITE_RETRIES
            ),
            provider_max_attempts=get_int(
                "CONVERGE_PROVIDER_MAX_ATTEMPTS", DEFAULT_PROVIDER_MAX_ATTEMPTS
            ),
            provider_backoff_base_seconds=get_float(
                "CONVERGE_PROVIDER_BACKOFF_BASE", DEFAULT_PROVIDER_BACKOFF_BASE_SECONDS
            ),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
        )

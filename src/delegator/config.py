"""Runtime configuration with validation.

The declarative document (root zone, accounts, filter rules) lives in a YAML
file described by models.py. This module holds the process-level knobs read
from the environment: where that document is, how often to reconcile and how
hard to push the Azure APIs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_SCAN_CONCURRENCY = 8
MAX_SCAN_CONCURRENCY = 64

DEFAULT_API_TIMEOUT_SECONDS = 60
DEFAULT_API_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
MAX_RETRY_BACKOFF_SECONDS = 60.0

DEFAULT_APPLY_MAX_ATTEMPTS = 3
DEFAULT_MAX_CHANGES_PER_PASS = 100
MAX_CHANGES_PER_PASS_LIMIT = 1000

# Session lifetime: one pass must finish well within a managed identity token lifetime
DEFAULT_SESSION_TTL_SECONDS = 1800

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max config document

DEFAULT_CONFIG_FILE = "/config/delegator.yaml"


@dataclass(frozen=True)
class RetrySettings:
    """Call-site retry policy for transient Azure errors."""

    max_attempts: int = DEFAULT_API_MAX_RETRIES
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    max_backoff_seconds: float = MAX_RETRY_BACKOFF_SECONDS
    timeout_seconds: float = DEFAULT_API_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Config:
    """Operator runtime configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    config_file: Path = field(default_factory=lambda: Path(DEFAULT_CONFIG_FILE))

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS

    # Fan-out bound for account scans (protects against API throttling)
    scan_concurrency: int = DEFAULT_SCAN_CONCURRENCY

    retry: RetrySettings = field(default_factory=RetrySettings)

    # Whole-pass retries after a concurrent root-zone modification
    apply_max_attempts: int = DEFAULT_APPLY_MAX_ATTEMPTS

    # Refuse to submit larger batches; usually a sign of misconfiguration
    max_changes_per_pass: int = DEFAULT_MAX_CHANGES_PER_PASS

    # Behavior
    dry_run: bool = False
    run_once: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.scan_concurrency <= MAX_SCAN_CONCURRENCY:
            errors.append(f"SCAN_CONCURRENCY must be between 1 and {MAX_SCAN_CONCURRENCY}")

        if self.retry.max_attempts < 1:
            errors.append("API_MAX_RETRIES must be at least 1")
        if self.retry.timeout_seconds <= 0:
            errors.append("API_TIMEOUT must be positive")
        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.apply_max_attempts < 1:
            errors.append("APPLY_MAX_ATTEMPTS must be at least 1")

        if not 1 <= self.max_changes_per_pass <= MAX_CHANGES_PER_PASS_LIMIT:
            errors.append(
                f"MAX_CHANGES_PER_PASS must be between 1 and {MAX_CHANGES_PER_PASS_LIMIT}"
            )

        if self.session_ttl_seconds < 60:
            errors.append("SESSION_TTL must be at least 60 seconds")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONFIG_FILE: Path to the YAML document (default: /config/delegator.yaml)
            RECONCILE_INTERVAL: Seconds between passes (default: 300)
            SCAN_CONCURRENCY: Max accounts scanned in parallel (default: 8)
            API_TIMEOUT: Per-call timeout in seconds (default: 60)
            API_MAX_RETRIES: Attempts per call for transient errors (default: 3)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 2)
            APPLY_MAX_ATTEMPTS: Pass retries on concurrent root-zone changes (default: 3)
            MAX_CHANGES_PER_PASS: Max changes submitted in one batch (default: 100)
            SESSION_TTL: Account session lifetime in seconds (default: 1800)
            DRY_RUN: If "true", compute changes without applying (default: false)
            RUN_ONCE: If "true", run a single pass and exit (default: false)
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

        return cls(
            config_file=Path(os.environ.get("CONFIG_FILE", DEFAULT_CONFIG_FILE)),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            session_ttl_seconds=get_int("SESSION_TTL", DEFAULT_SESSION_TTL_SECONDS),
            scan_concurrency=get_int("SCAN_CONCURRENCY", DEFAULT_SCAN_CONCURRENCY),
            retry=RetrySettings(
                max_attempts=get_int("API_MAX_RETRIES", DEFAULT_API_MAX_RETRIES),
                backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
                ),
                timeout_seconds=get_float("API_TIMEOUT", DEFAULT_API_TIMEOUT_SECONDS),
            ),
            apply_max_attempts=get_int("APPLY_MAX_ATTEMPTS", DEFAULT_APPLY_MAX_ATTEMPTS),
            max_changes_per_pass=get_int("MAX_CHANGES_PER_PASS", DEFAULT_MAX_CHANGES_PER_PASS),
            dry_run=get_bool("DRY_RUN", False),
            run_once=get_bool("RUN_ONCE", False),
        )

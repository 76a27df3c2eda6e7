"""Main entry point for the DNS delegation operator.

SECRETLESS ARCHITECTURE:
- Every subscription is accessed with a managed identity
- NO service principal secrets or passwords are allowed
- Subdomain identities are read-only; only the root identity writes, and
  only to the root zone
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TextIO

from .azure_dns import AzureDnsProvider
from .config import Config, ConfigurationError
from .config_loader import ConfigLoadError, load_controller_spec
from .reconciler import PassStatus, Reconciler
from .security import SecretlessViolationError, enforce_secretless_architecture

# LogRecord attributes that are not structured extra fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: TextIO | None = None) -> None:
    """Configure structured logging with JSON output for production.

    Logs go to stdout unless another stream is given; the CLI keeps stdout
    for its own output.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code: 0 on success, 1 for configuration or fatal pass errors,
        2 for a security violation.
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        enforce_secretless_architecture()
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    try:
        spec = load_controller_spec(config.config_file)
    except ConfigLoadError as e:
        logger.error(
            "Failed to load operator config",
            extra={"error": str(e), "config_file": str(config.config_file)},
        )
        return 1

    logger.info(
        "Starting DNS delegation operator",
        extra={
            "root_domain": spec.domain,
            "root_subscription_id": spec.root_zone.subscription_id,
            "account_count": len(spec.accounts),
            "run_once": config.run_once,
            "dry_run": config.dry_run,
        },
    )

    provider = AzureDnsProvider(spec.root_zone, session_ttl_seconds=config.session_ttl_seconds)
    reconciler = Reconciler(spec, config, provider)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        if config.run_once:
            result = await reconciler.run_once()
            return 1 if result.status is PassStatus.ABORTED else 0
        await reconciler.run()
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator container."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

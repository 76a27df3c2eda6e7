"""Per-call timeout and retry for DNS service operations.

Every suspension point of a pass (session, scans, root zone read) goes
through call_with_retry. Only transient errors are retried; everything else
propagates immediately to the caller, which decides whether the failure is
per-account or fatal.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .config import RetrySettings
from .provider import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, settings: RetrySettings) -> float:
    """Exponential backoff with up to 20% jitter for a 1-based attempt number."""
    backoff = min(
        settings.backoff_base_seconds * (2 ** (attempt - 1)),
        settings.max_backoff_seconds,
    )
    jitter = random.uniform(0, backoff * 0.2)
    return backoff + jitter


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    settings: RetrySettings,
    operation_name: str,
    context: dict[str, Any] | None = None,
) -> T:
    """Run an async operation with a timeout and bounded retries.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per attempt.
        settings: Attempts, backoff and timeout.
        operation_name: Human-readable name for logging.
        context: Extra structured fields for log records.

    Returns:
        The operation result.

    Raises:
        TransientProviderError: If every attempt failed transiently or timed out.
        ProviderError: Non-transient failures, raised on first occurrence.
    """
    extra = dict(context or {})
    last_error: Exception | None = None

    for attempt in range(1, settings.max_attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=settings.timeout_seconds)
        except TimeoutError as e:
            last_error = TransientProviderError(
                f"{operation_name} timed out after {settings.timeout_seconds}s"
            )
            last_error.__cause__ = e
        except TransientProviderError as e:
            last_error = e

        if attempt < settings.max_attempts:
            wait_time = backoff_delay(attempt, settings)
            logger.warning(
                f"{operation_name} failed, retrying",
                extra={
                    **extra,
                    "attempt": attempt,
                    "max_attempts": settings.max_attempts,
                    "wait_seconds": round(wait_time, 2),
                    "error": str(last_error),
                },
            )
            await asyncio.sleep(wait_time)

    # SAFETY: max_attempts >= 1 is validated in Config, so last_error is set
    assert last_error is not None, "Retry loop completed without setting last_error"
    logger.error(
        f"{operation_name} failed after retries",
        extra={**extra, "max_attempts": settings.max_attempts, "error": str(last_error)},
    )
    raise last_error

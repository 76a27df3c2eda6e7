"""Change applier: the only code path that writes to the root zone."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from .config import DEFAULT_API_TIMEOUT_SECONDS
from .provider import (
    AccountSession,
    ApplyReport,
    DnsProvider,
    ProviderError,
    TransientProviderError,
)
from .records import ChangeAction

logger = logging.getLogger(__name__)


class ChangeApplier:
    """Submits a change list to the root zone as one batch.

    The submission runs in its own task and is shielded from cancellation:
    a shutdown that arrives mid-batch waits for the batch to finish or fail
    before it propagates. Both the submission and that wait are bounded by
    timeout_seconds; a batch that overruns it is abandoned and reported as a
    TransientProviderError. Concurrency conflicts and transient errors are
    raised to the caller, which retries the pass from the root zone read.
    """

    def __init__(
        self, provider: DnsProvider, timeout_seconds: float = DEFAULT_API_TIMEOUT_SECONDS
    ) -> None:
        self._provider = provider
        self._timeout_seconds = timeout_seconds

    async def apply(
        self,
        session: AccountSession,
        actions: Sequence[ChangeAction],
        expected_version: str,
    ) -> ApplyReport:
        if not actions:
            return ApplyReport()
        if not session.is_root:
            raise ProviderError(f"Session for '{session.account}' may not write the root zone")

        logger.info(
            "Submitting change batch",
            extra={
                "change_count": len(actions),
                "changes": [a.describe() for a in actions],
                "expected_version": expected_version,
            },
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout_seconds
        task = asyncio.ensure_future(
            self._provider.submit_change_batch(session, list(actions), expected_version)
        )
        try:
            report = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout_seconds)
        except TimeoutError as e:
            task.cancel()
            logger.error(
                "Batch submission timed out",
                extra={"change_count": len(actions), "timeout_seconds": self._timeout_seconds},
            )
            raise TransientProviderError(
                f"Change batch timed out after {self._timeout_seconds}s"
            ) from e
        except asyncio.CancelledError:
            logger.warning(
                "Cancellation requested during batch submission, waiting for batch to finish",
                extra={"change_count": len(actions)},
            )
            done, _ = await asyncio.wait({task}, timeout=max(0.0, deadline - loop.time()))
            if not done:
                task.cancel()
                logger.error(
                    "Batch submission still running at timeout, abandoned",
                    extra={"timeout_seconds": self._timeout_seconds},
                )
            elif not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Batch submission failed after cancellation request",
                    extra={"error": str(task.exception())},
                )
            raise

        logger.info(
            "Change batch applied",
            extra={"applied": {kind.value: count for kind, count in report.counts.items()}},
        )
        return report

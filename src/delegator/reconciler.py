"""Reconciliation orchestrator.

One pass is a bounded fan-out of account scans followed by a strictly
sequential read -> build -> diff -> apply pipeline against the root zone:

1. Assume the root account (fatal on failure)
2. Scan every subdomain account concurrently, plus the root subscription's
   own certificate validations; per-account failures are recorded, not raised
3. Read the root zone (fatal on failure)
4. Build the desired state and diff it against the root zone
5. Submit the change list as one batch under the per-call timeout; on a
   concurrent modification, throttling or timeout the pass is retried from
   step 3 with jittered backoff

Passes never run concurrently: the Reconciler loop awaits each pass before
starting the next, which makes the root-zone writer a single-writer section.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .applier import ChangeApplier
from .builder import DesiredStateBuilder
from .config import Config
from .diff import compute_changes
from .models import ControllerSpec
from .provenance import ChangeSummary, get_provenance_logger
from .provider import (
    AccountSession,
    ConcurrencyConflictError,
    DnsProvider,
    ProviderError,
    TransientProviderError,
)
from .records import ChangeAction, ChangeKind, Conflict, SkippedRecord
from .retry import backoff_delay, call_with_retry
from .scanner import AccountScan, AccountZoneScanner

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class PassStatus(str, Enum):
    """Terminal state of a reconciliation pass."""

    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AccountFailure:
    account: str
    error: str
    error_type: str | None = None


@dataclass
class PassResult:
    """Structured outcome of one pass; the only thing a pass returns.

    Per-account failures, conflicts and skipped records are warnings within
    a succeeded pass. Only a fatal problem (root account or root zone
    unreachable, oversized change list, failed batch, or a batch that kept
    failing transiently) aborts it.
    """

    root_domain: str
    status: PassStatus = PassStatus.SUCCEEDED
    abort_reason: str | None = None
    dry_run: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    accounts_scanned: list[str] = field(default_factory=list)
    accounts_failed: list[AccountFailure] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    # Version of the root zone the last plan was computed against
    root_zone_version: str = ""
    planned_changes: list[ChangeAction] = field(default_factory=list)
    changes_applied: dict[ChangeKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in ChangeKind}
    )
    # Concurrent root-zone modifications seen by this pass
    concurrency_conflicts: int = 0
    # True if every apply attempt hit a concurrent modification
    concurrency_exhausted: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return self.status is PassStatus.SUCCEEDED

    @property
    def added(self) -> int:
        return self.changes_applied.get(ChangeKind.CREATE, 0)

    @property
    def changed(self) -> int:
        return self.changes_applied.get(ChangeKind.UPSERT, 0)

    @property
    def removed(self) -> int:
        return self.changes_applied.get(ChangeKind.DELETE, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_domain": self.root_domain,
            "status": self.status.value,
            "abort_reason": self.abort_reason,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "accounts_scanned": list(self.accounts_scanned),
            "accounts_failed": [
                {"account": f.account, "error": f.error, "error_type": f.error_type}
                for f in self.accounts_failed
            ],
            "conflicts": [
                {"name": c.name, "type": c.type, "reason": c.reason, "claimants": list(c.claimants)}
                for c in self.conflicts
            ],
            "skipped": [{"name": s.name, "type": s.type, "reason": s.reason} for s in self.skipped],
            "root_zone_version": self.root_zone_version,
            "planned_changes": [a.describe() for a in self.planned_changes],
            "changes_applied": {kind.value: count for kind, count in self.changes_applied.items()},
            "concurrency_conflicts": self.concurrency_conflicts,
            "concurrency_exhausted": self.concurrency_exhausted,
        }


class _PassStopped(Exception):
    """Internal signal to leave a pass early while still closing sessions
    and logging provenance. Not a real error."""

    def __init__(self, status: PassStatus, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


class ReconciliationPass:
    """Runs exactly one pass; all state is local and discarded afterwards."""

    def __init__(
        self,
        spec: ControllerSpec,
        config: Config,
        provider: DnsProvider,
        *,
        shutdown_event: asyncio.Event | None = None,
        dry_run: bool | None = None,
    ) -> None:
        self._spec = spec
        self._config = config
        self._provider = provider
        self._shutdown_event = shutdown_event
        self._dry_run = config.dry_run if dry_run is None else dry_run
        self._scanner = AccountZoneScanner(
            provider,
            root_domain=spec.domain,
            retry=config.retry,
            concurrency=config.scan_concurrency,
        )
        self._builder = DesiredStateBuilder(spec.domain, spec.filter_evaluator(), spec.records)
        self._applier = ChangeApplier(provider, timeout_seconds=config.retry.timeout_seconds)

    def _check_shutdown(self, stage: str) -> None:
        if self._shutdown_event is not None and self._shutdown_event.is_set():
            raise _PassStopped(PassStatus.CANCELLED, f"shutdown requested {stage}")

    async def run(self) -> PassResult:
        result = PassResult(root_domain=self._spec.domain, dry_run=self._dry_run)
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            root_domain=self._spec.domain,
            root_subscription_id=self._spec.root_zone.subscription_id,
            owner_id=self._spec.records.owner_id,
            spec_file=str(self._config.config_file),
            dry_run=self._dry_run,
        )

        root_session: AccountSession | None = None
        try:
            root_session = await self._assume_root()
            scans = await self._scan(root_session, result)
            self._check_shutdown("after account scans")
            await self._converge(root_session, scans, result)
        except _PassStopped as stop:
            result.status = stop.status
            result.abort_reason = stop.reason
        finally:
            if root_session is not None:
                root_session.close()
            result.finished_at = datetime.now(UTC)

        provenance.status = result.status.value
        provenance.accounts_scanned = list(result.accounts_scanned)
        provenance.accounts_failed = [f.account for f in result.accounts_failed]
        provenance.root_zone_version = result.root_zone_version
        provenance.changes_applied = sum(result.changes_applied.values())
        provenance.concurrency_retries = result.concurrency_conflicts
        provenance.change_summary = ChangeSummary(
            create_count=sum(1 for a in result.planned_changes if a.kind is ChangeKind.CREATE),
            upsert_count=sum(1 for a in result.planned_changes if a.kind is ChangeKind.UPSERT),
            delete_count=sum(1 for a in result.planned_changes if a.kind is ChangeKind.DELETE),
            skipped_count=len(result.skipped),
            conflict_count=len(result.conflicts),
        )
        provenance.duration_seconds = result.duration_seconds
        if result.status is PassStatus.ABORTED:
            provenance.error = result.abort_reason
        provenance_logger.log_provenance(provenance)
        return result

    async def _assume_root(self) -> AccountSession:
        root = self._spec.root_zone.as_account()
        try:
            return await call_with_retry(
                lambda: self._provider.assume_account(root, is_root=True),
                settings=self._config.retry,
                operation_name="Assume root account",
                context={"account": root.name},
            )
        except ProviderError as e:
            raise _PassStopped(PassStatus.ABORTED, f"cannot assume root account: {e}") from e

    async def _scan(self, root_session: AccountSession, result: PassResult) -> list[AccountScan]:
        pending = [self._scanner.scan_all(self._spec.accounts, self._shutdown_event)]
        if self._spec.root_zone.certificates:
            pending.append(self._root_validations(root_session))
        batches = await asyncio.gather(*pending)
        scans = [scan for batch in batches for scan in batch]

        for scan in scans:
            if scan.cancelled:
                continue
            result.accounts_scanned.append(scan.account)
            if scan.error is not None:
                result.accounts_failed.append(
                    AccountFailure(
                        account=scan.account, error=scan.error, error_type=scan.error_type
                    )
                )
        if any(scan.cancelled for scan in scans):
            raise _PassStopped(PassStatus.CANCELLED, "shutdown requested during account scans")
        return scans

    async def _root_validations(self, root_session: AccountSession) -> list[AccountScan]:
        return [await self._scanner.scan_root_validations(root_session)]

    async def _converge(
        self,
        root_session: AccountSession,
        scans: list[AccountScan],
        result: PassResult,
    ) -> None:
        failed = frozenset(f.account for f in result.accounts_failed)
        owner_id = self._spec.records.owner_id
        attempts = self._config.apply_max_attempts

        for attempt in range(1, attempts + 1):
            try:
                snapshot = await call_with_retry(
                    lambda: self._provider.read_root_zone_records(root_session),
                    settings=self._config.retry,
                    operation_name="Read root zone",
                    context={"zone": self._spec.domain},
                )
            except ProviderError as e:
                raise _PassStopped(PassStatus.ABORTED, f"cannot read root zone: {e}") from e

            desired = self._builder.build(scans, snapshot.records)
            plan = compute_changes(desired, snapshot.records, owner_id, failed)
            result.conflicts = list(desired.conflicts)
            result.skipped = desired.skipped + plan.skipped
            result.planned_changes = list(plan.actions)
            result.root_zone_version = snapshot.version

            if len(plan.actions) > self._config.max_changes_per_pass:
                raise _PassStopped(
                    PassStatus.ABORTED,
                    f"{len(plan.actions)} changes exceed MAX_CHANGES_PER_PASS "
                    f"({self._config.max_changes_per_pass})",
                )
            if plan.empty:
                logger.info("Root zone in sync", extra={"zone": self._spec.domain})
                return
            if self._dry_run:
                logger.info(
                    "Dry run: changes not applied",
                    extra={"changes": [a.describe() for a in plan.actions]},
                )
                return

            self._check_shutdown("before applying changes")
            try:
                report = await self._applier.apply(root_session, plan.actions, snapshot.version)
            except ConcurrencyConflictError as e:
                result.concurrency_conflicts += 1
                if attempt == attempts:
                    result.concurrency_exhausted = True
                    logger.warning(
                        "Root zone kept changing, changes deferred to next pass",
                        extra={"attempts": attempts, "error": str(e)},
                    )
                    return
                wait_time = backoff_delay(attempt, self._config.retry)
                logger.warning(
                    "Root zone modified concurrently, retrying from root zone read",
                    extra={"attempt": attempt, "wait_seconds": round(wait_time, 2)},
                )
                await asyncio.sleep(wait_time)
                continue
            except TransientProviderError as e:
                # A timed-out or throttled batch may have partly landed; re-plan from a fresh read
                if attempt == attempts:
                    raise _PassStopped(
                        PassStatus.ABORTED,
                        f"change batch failed after {attempts} attempts: {e}",
                    ) from e
                wait_time = backoff_delay(attempt, self._config.retry)
                logger.warning(
                    "Change batch failed transiently, retrying from root zone read",
                    extra={
                        "attempt": attempt,
                        "wait_seconds": round(wait_time, 2),
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)
                continue
            except ProviderError as e:
                raise _PassStopped(PassStatus.ABORTED, f"change batch failed: {e}") from e

            result.changes_applied = dict(report.counts)
            return


async def run_reconciliation_pass(
    spec: ControllerSpec,
    config: Config,
    provider: DnsProvider,
    *,
    shutdown_event: asyncio.Event | None = None,
    dry_run: bool | None = None,
) -> PassResult:
    """Run one complete reconciliation pass.

    Never raises for DNS service failures: fatal problems come back as a
    PassResult with status ABORTED and an abort_reason.
    """
    return await ReconciliationPass(
        spec, config, provider, shutdown_event=shutdown_event, dry_run=dry_run
    ).run()


class Reconciler:
    """Periodic driver of reconciliation passes.

    Runs one pass per interval until shutdown. A circuit breaker pauses
    passes for CIRCUIT_BREAKER_RESET_SECONDS after MAX_CONSECUTIVE_FAILURES
    aborted passes in a row.
    """

    def __init__(self, spec: ControllerSpec, config: Config, provider: DnsProvider) -> None:
        self._spec = spec
        self._config = config
        self._provider = provider
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    async def run_once(self) -> PassResult:
        result = await run_reconciliation_pass(
            self._spec, self._config, self._provider, shutdown_event=self._shutdown_event
        )
        self._log_result(result)
        return result

    async def run(self) -> None:
        """Run passes at the configured interval until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "root_domain": self._spec.domain,
                "accounts": [a.name for a in self._spec.accounts],
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self.circuit_open:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "root_domain": self._spec.domain,
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                    continue
                logger.info(
                    "Circuit breaker reset, resuming reconciliation",
                    extra={"root_domain": self._spec.domain},
                )
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.run_once()

            if result.status is PassStatus.ABORTED:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "root_domain": self._spec.domain,
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            elif result.status is PassStatus.SUCCEEDED:
                self._consecutive_failures = 0

            await self._wait(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete", extra={"root_domain": self._spec.domain})

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def shutdown(self) -> None:
        """Signal the reconciler to stop after the current pass."""
        logger.info("Shutdown requested", extra={"root_domain": self._spec.domain})
        self._shutdown_event.set()

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    def _log_result(self, result: PassResult) -> None:
        extra: dict[str, Any] = {
            "root_domain": result.root_domain,
            "status": result.status.value,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "accounts_scanned": len(result.accounts_scanned),
            "accounts_failed": [f.account for f in result.accounts_failed],
            "added": result.added,
            "changed": result.changed,
            "removed": result.removed,
            "skipped": len(result.skipped),
            "conflicts": len(result.conflicts),
        }
        if result.abort_reason is not None:
            extra["abort_reason"] = result.abort_reason

        if result.status is PassStatus.ABORTED:
            logger.error("Reconciliation aborted", extra=extra)
        elif result.accounts_failed or result.conflicts or result.concurrency_exhausted:
            logger.warning("Reconciliation completed with warnings", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)

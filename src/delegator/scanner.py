"""Account zone scanner.

Scans every subdomain account concurrently, up to a configured bound, and
turns each account into an AccountScan. A failing account never aborts the
pass: its scan carries the error and the builder treats its zones as absent,
while the diff engine freezes every root record it owns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from .config import RetrySettings
from .models import AccountConfig
from .provider import AccountSession, DnsProvider, ProviderError
from .records import HostedZone, ValidationRequirement, is_subdomain
from .retry import call_with_retry

logger = logging.getLogger(__name__)


@dataclass
class AccountScan:
    """Scan outcome for one account.

    Attributes:
        account: Account name.
        zones: Public zones strictly below the root domain.
        validations: Pending certificate validations seen in the account.
        error: Failure message, None on success.
        error_type: Exception class name of the failure.
        cancelled: True if the scan never ran because shutdown was requested.
    """

    account: str
    zones: list[HostedZone] = field(default_factory=list)
    validations: list[ValidationRequirement] = field(default_factory=list)
    error: str | None = None
    error_type: str | None = None
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class AccountZoneScanner:
    """Discovers zones, records and validation requirements per account."""

    def __init__(
        self,
        provider: DnsProvider,
        root_domain: str,
        retry: RetrySettings,
        concurrency: int,
    ) -> None:
        self._provider = provider
        self._root_domain = root_domain
        self._retry = retry
        self._concurrency = concurrency

    async def scan_account(self, account: AccountConfig) -> AccountScan:
        """Scan one account; failures are captured, never raised."""
        start = time.monotonic()
        scan = AccountScan(account=account.name)
        session: AccountSession | None = None
        context = {"account": account.name}

        try:
            session = await call_with_retry(
                lambda: self._provider.assume_account(account),
                settings=self._retry,
                operation_name="Assume account",
                context=context,
            )
            zones = await call_with_retry(
                lambda: self._provider.list_zones_and_records(session),
                settings=self._retry,
                operation_name="List zones",
                context=context,
            )
            scan.zones = self._zones_under_root(zones, account.name)
            if account.certificates:
                scan.validations = await self.scan_validations(session)
        except ProviderError as e:
            scan.error = str(e)
            scan.error_type = type(e).__name__
            logger.warning(
                "Account scan failed, account excluded from this pass",
                extra={**context, "error": str(e), "error_type": scan.error_type},
            )
        finally:
            if session is not None:
                session.close()
            scan.duration_seconds = time.monotonic() - start

        if scan.ok:
            logger.info(
                "Account scanned",
                extra={
                    **context,
                    "zones": [z.name for z in scan.zones],
                    "validation_count": len(scan.validations),
                    "duration_seconds": round(scan.duration_seconds, 2),
                },
            )
        return scan

    async def scan_validations(self, session: AccountSession) -> list[ValidationRequirement]:
        """List pending certificate validations visible to a session."""
        return await call_with_retry(
            lambda: self._provider.list_certificate_validation_requirements(
                session, self._root_domain
            ),
            settings=self._retry,
            operation_name="List certificate validations",
            context={"account": session.account},
        )

    async def scan_root_validations(self, root_session: AccountSession) -> AccountScan:
        """Validations requested from the root subscription itself."""
        scan = AccountScan(account=root_session.account)
        try:
            scan.validations = await self.scan_validations(root_session)
        except ProviderError as e:
            scan.error = str(e)
            scan.error_type = type(e).__name__
            logger.warning(
                "Root account certificate scan failed",
                extra={"account": root_session.account, "error": str(e)},
            )
        return scan

    async def scan_all(
        self,
        accounts: Sequence[AccountConfig],
        shutdown_event: asyncio.Event | None = None,
    ) -> list[AccountScan]:
        """Scan accounts with bounded parallelism.

        Shutdown is honored between accounts: accounts not yet started when
        the event is set come back as cancelled scans.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def bounded(account: AccountConfig) -> AccountScan:
            async with semaphore:
                if shutdown_event is not None and shutdown_event.is_set():
                    return AccountScan(account=account.name, cancelled=True)
                return await self.scan_account(account)

        return list(await asyncio.gather(*(bounded(a) for a in accounts)))

    def _zones_under_root(self, zones: list[HostedZone], account: str) -> list[HostedZone]:
        kept = []
        for zone in zones:
            if is_subdomain(zone.name, self._root_domain):
                kept.append(zone)
            else:
                logger.debug(
                    "Ignoring zone outside root domain",
                    extra={"account": account, "zone": zone.name},
                )
        return kept

"""External DNS service boundary.

The reconciliation engine only talks to the outside world through the
operations declared by DnsProvider. Every operation takes an AccountSession:
an explicit, time-scoped capability for exactly one account. There are no
ambient credentials, so a scan can only ever read the account it was handed,
and only the root session can reach submit_change_batch.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from .models import AccountConfig
from .records import ChangeAction, ChangeKind, HostedZone, RootZoneSnapshot, ValidationRequirement


class ProviderError(Exception):
    """Raised when a DNS service call fails."""

    pass


class TransientProviderError(ProviderError):
    """Throttling, timeouts and transient network failures; safe to retry."""

    pass


class CredentialError(ProviderError):
    """The account could not be assumed or its session expired."""

    pass


class ConcurrencyConflictError(ProviderError):
    """The root zone changed between observation and submission."""

    pass


@dataclass
class AccountSession:
    """Capability handle scoped to one account for one pass.

    Attributes:
        account: Account name from the operator document.
        subscription_id: Azure subscription the session is bound to.
        credential: Opaque credential object; never shared across accounts.
        expires_at: Hard deadline after which the session refuses use.
        is_root: Only root sessions may submit change batches.
    """

    account: str
    subscription_id: str
    credential: Any = field(repr=False)
    expires_at: datetime
    is_root: bool = False

    @classmethod
    def open(
        cls,
        account: AccountConfig,
        credential: Any,
        ttl_seconds: int,
        is_root: bool = False,
    ) -> AccountSession:
        return cls(
            account=account.name,
            subscription_id=account.subscription_id,
            credential=credential,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
            is_root=is_root,
        )

    @property
    def expired(self) -> bool:
        return datetime.now(UTC) >= self.expires_at

    def ensure_valid(self) -> None:
        """Raise CredentialError when the session is past its deadline."""
        if self.expired:
            raise CredentialError(f"Session for account '{self.account}' has expired")

    def close(self) -> None:
        """Release the credential at the end of the pass."""
        close = getattr(self.credential, "close", None)
        if callable(close):
            close()


@dataclass
class ApplyReport:
    """Outcome of a successful batch submission."""

    counts: dict[ChangeKind, int] = field(
        default_factory=lambda: {kind: 0 for kind in ChangeKind}
    )

    def record(self, action: ChangeAction) -> None:
        self.counts[action.kind] = self.counts.get(action.kind, 0) + 1

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class DnsProvider(Protocol):
    """Operations the engine consumes from the DNS service."""

    async def assume_account(
        self, account: AccountConfig, *, is_root: bool = False
    ) -> AccountSession:
        """Return a time-scoped session for one account.

        Raises:
            CredentialError: If the identity cannot authenticate.
        """
        ...

    async def list_zones_and_records(self, session: AccountSession) -> list[HostedZone]:
        """List public hosted zones of the account with their record sets."""
        ...

    async def list_certificate_validation_requirements(
        self, session: AccountSession, domain_filter: str
    ) -> list[ValidationRequirement]:
        """List pending DNS validations for names at or below domain_filter."""
        ...

    async def read_root_zone_records(self, session: AccountSession) -> RootZoneSnapshot:
        """Read every record set of the root zone."""
        ...

    async def submit_change_batch(
        self,
        session: AccountSession,
        actions: Sequence[ChangeAction],
        expected_version: str,
    ) -> ApplyReport:
        """Apply the batch to the root zone.

        Raises:
            ConcurrencyConflictError: If the zone no longer matches expected_version.
        """
        ...

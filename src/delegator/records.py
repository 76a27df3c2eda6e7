"""DNS record data model for a reconciliation pass.

Every entity here lives for exactly one pass. Names are stored fully
qualified, lower-case and without the trailing dot so that keys built from
Azure record sets, Front Door host names and user-supplied tags compare equal.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

# Metadata keys written on every record set this operator creates in the root zone
MANAGED_BY_KEY = "managedby"
RECORD_CLASS_KEY = "recordclass"
SOURCE_ACCOUNT_KEY = "sourceaccount"

# Record types this operator is allowed to write
NS = "NS"
CNAME = "CNAME"
TXT = "TXT"
MANAGED_TYPES: frozenset[str] = frozenset({NS, CNAME, TXT})

RecordKey = tuple[str, str]


class RecordClass(str, Enum):
    """Origin of a desired root-zone record."""

    DELEGATION = "delegation"
    PROMOTION = "promotion"
    VALIDATION = "validation"


class ChangeKind(str, Enum):
    """Root-zone change actions."""

    CREATE = "Create"
    UPSERT = "Upsert"
    DELETE = "Delete"


def normalize_name(name: str) -> str:
    """Return a case-normalized fully qualified name without trailing dot."""
    return name.strip().rstrip(".").lower()


def normalize_value(record_type: str, value: str) -> str:
    """Normalize a record value; host-name valued types are case-insensitive."""
    if record_type.upper() in (NS, CNAME):
        return normalize_name(value)
    return value


def is_subdomain(name: str, parent: str) -> bool:
    """Check if name is strictly below parent."""
    name = normalize_name(name)
    parent = normalize_name(parent)
    return name != parent and name.endswith("." + parent)


def relative_name(name: str, zone: str) -> str:
    """Return the record set name relative to a zone ("@" for the apex)."""
    name = normalize_name(name)
    zone = normalize_name(zone)
    if name == zone:
        return "@"
    if not name.endswith("." + zone):
        raise ValueError(f"{name} is not inside zone {zone}")
    return name[: -(len(zone) + 1)]


def absolute_name(relative: str, zone: str) -> str:
    """Inverse of relative_name."""
    zone = normalize_name(zone)
    if relative in ("@", ""):
        return zone
    return f"{normalize_name(relative)}.{zone}"


def split_owners(value: str | None) -> frozenset[str]:
    """Parse the comma separated source account metadata value."""
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def join_owners(owners: frozenset[str]) -> str:
    return ",".join(sorted(owners))


def metadata_value(metadata: Mapping[str, str], key: str) -> str | None:
    """Case-insensitive metadata lookup; Azure does not preserve key case reliably."""
    key = key.lower()
    for k, v in metadata.items():
        if k.lower() == key:
            return v
    return None


@dataclass(frozen=True)
class ResourceRecord:
    """A record set as seen in any zone.

    Attributes:
        name: Fully qualified, normalized owner name.
        type: Record type (NS, CNAME, TXT, A, ...).
        ttl: Time to live in seconds.
        values: Record values in the order returned by the DNS service.
        tags: Key/value metadata attached by the owning account.
    """

    name: str
    type: str
    ttl: int
    values: tuple[str, ...] = ()
    tags: Mapping[str, str] = field(default_factory=dict)

    @property
    def key(self) -> RecordKey:
        return (self.name, self.type)


@dataclass(frozen=True)
class HostedZone:
    """Read-only snapshot of one hosted zone in one account."""

    zone_id: str
    name: str
    account: str
    name_servers: tuple[str, ...] = ()
    records: tuple[ResourceRecord, ...] = ()


@dataclass(frozen=True)
class PromotionIntent:
    """A tagged subdomain record asking to be exposed under a root-zone name."""

    source: ResourceRecord
    account: str
    zone: str
    root_name: str

    @property
    def claimant(self) -> str:
        return f"{self.account}:{self.source.name}/{self.source.type}"


@dataclass(frozen=True)
class DelegationRequirement:
    """A subdomain zone that needs an NS record in the root zone."""

    zone_name: str
    name_servers: frozenset[str]
    account: str
    zone_id: str = ""


@dataclass(frozen=True)
class ValidationRequirement:
    """A DNS record a certificate authority needs to see in the root zone."""

    name: str
    type: str
    value: str
    account: str
    domain: str = ""

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.name, self.type, self.value)


@dataclass(frozen=True)
class DesiredRecord:
    """Target root-zone entry produced by the builder."""

    name: str
    type: str
    values: frozenset[str]
    ttl: int
    record_class: RecordClass
    sources: frozenset[str]

    @property
    def key(self) -> RecordKey:
        return (self.name, self.type)

    def metadata(self, owner_id: str) -> dict[str, str]:
        """Ownership metadata stamped on the root-zone record set."""
        return {
            MANAGED_BY_KEY: owner_id,
            RECORD_CLASS_KEY: self.record_class.value,
            SOURCE_ACCOUNT_KEY: join_owners(self.sources),
        }


@dataclass(frozen=True)
class ObservedRecord:
    """Current root-zone record set, fetched fresh every pass."""

    name: str
    type: str
    ttl: int
    values: frozenset[str]
    metadata: Mapping[str, str] = field(default_factory=dict)
    etag: str | None = None

    @property
    def key(self) -> RecordKey:
        return (self.name, self.type)

    def is_managed_by(self, owner_id: str) -> bool:
        return metadata_value(self.metadata, MANAGED_BY_KEY) == owner_id

    @property
    def owners(self) -> frozenset[str]:
        return split_owners(metadata_value(self.metadata, SOURCE_ACCOUNT_KEY))

    @property
    def record_class(self) -> str | None:
        return metadata_value(self.metadata, RECORD_CLASS_KEY)


@dataclass(frozen=True)
class RootZoneSnapshot:
    """All record sets of the root zone plus an optimistic-concurrency version."""

    zone_name: str
    records: tuple[ObservedRecord, ...]
    version: str


@dataclass(frozen=True)
class ChangeAction:
    """One root-zone change; consumed once by the change applier.

    Attributes:
        kind: Create, Upsert or Delete.
        record: Record payload (for Delete, the observed values).
        metadata: Ownership metadata to write (empty for Delete).
        expected_etag: Precondition for Upsert/Delete; None for Create.
        record_class: Origin class for reporting.
    """

    kind: ChangeKind
    record: ResourceRecord
    metadata: Mapping[str, str] = field(default_factory=dict)
    expected_etag: str | None = None
    record_class: str | None = None

    @property
    def key(self) -> RecordKey:
        return self.record.key

    def describe(self) -> str:
        return f"{self.kind.value} {self.record.type} {self.record.name}"


@dataclass(frozen=True)
class Conflict:
    """A root-zone key that more than one source claims; nothing is applied for it."""

    name: str
    type: str
    reason: str
    claimants: tuple[str, ...] = ()


@dataclass(frozen=True)
class SkippedRecord:
    """A desired or discovered record deliberately left alone this pass."""

    name: str
    type: str
    reason: str

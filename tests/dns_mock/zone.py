"""In-memory root zone with etags and a zone version.

Every mutation, by the operator or by a simulated outside editor, bumps the
record's etag and the zone version, so stale preconditions fail the same way
Azure DNS answers 412 Precondition Failed.
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Mapping

from delegator.provider import ConcurrencyConflictError
from delegator.records import (
    ChangeAction,
    ChangeKind,
    ObservedRecord,
    RecordKey,
    RootZoneSnapshot,
    normalize_name,
    normalize_value,
)


class MockRootZone:
    """The root zone as the DNS service stores it."""

    def __init__(self, name: str) -> None:
        self.name = normalize_name(name)
        self._records: dict[RecordKey, ObservedRecord] = {}
        self._etags = itertools.count(1)
        self._version = 0

    @property
    def version(self) -> str:
        return f"v{self._version}"

    @property
    def records(self) -> list[ObservedRecord]:
        return [self._records[k] for k in sorted(self._records)]

    def get(self, name: str, record_type: str) -> ObservedRecord | None:
        return self._records.get((normalize_name(name), record_type))

    def put(
        self,
        name: str,
        record_type: str,
        values: Iterable[str],
        *,
        ttl: int = 3600,
        metadata: Mapping[str, str] | None = None,
    ) -> ObservedRecord:
        """Write a record set as an outside editor would."""
        record = ObservedRecord(
            name=normalize_name(name),
            type=record_type,
            ttl=ttl,
            values=frozenset(normalize_value(record_type, v) for v in values),
            metadata=dict(metadata or {}),
            etag=f"etag-{next(self._etags)}",
        )
        self._records[record.key] = record
        self._version += 1
        return record

    def remove(self, name: str, record_type: str) -> None:
        del self._records[(normalize_name(name), record_type)]
        self._version += 1

    def touch(self) -> None:
        """Simulate an unrelated concurrent edit."""
        self._version += 1

    def snapshot(self) -> RootZoneSnapshot:
        return RootZoneSnapshot(zone_name=self.name, records=tuple(self.records), version=self.version)

    def apply(self, action: ChangeAction) -> None:
        """Apply one change, enforcing If-Match / If-None-Match semantics."""
        current = self._records.get(action.key)
        match action.kind:
            case ChangeKind.CREATE:
                if current is not None:
                    raise ConcurrencyConflictError(f"{action.describe()}: record exists")
            case ChangeKind.UPSERT | ChangeKind.DELETE:
                if current is None or current.etag != action.expected_etag:
                    raise ConcurrencyConflictError(f"{action.describe()}: etag mismatch")

        if action.kind is ChangeKind.DELETE:
            self.remove(action.record.name, action.record.type)
        else:
            self.put(
                action.record.name,
                action.record.type,
                action.record.values,
                ttl=action.record.ttl,
                metadata=action.metadata,
            )

"""Diff engine: desired vs observed root-zone state.

SAFETY RULES:
1. Only record sets carrying our managedby marker are ever updated or deleted
2. A key the builder marked disputed gets no action at all
3. A record owned by an account that failed this pass gets no action at all
4. At most one action per (name, type), so the plan converges in any order
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .builder import DesiredState
from .records import (
    CNAME,
    ChangeAction,
    ChangeKind,
    DesiredRecord,
    ObservedRecord,
    RecordKey,
    ResourceRecord,
    SkippedRecord,
)

logger = logging.getLogger(__name__)


@dataclass
class ChangePlan:
    """Ordered change list plus the keys the diff refused to touch."""

    actions: list[ChangeAction] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    frozen_keys: set[RecordKey] = field(default_factory=set)

    @property
    def empty(self) -> bool:
        return not self.actions

    def count(self, kind: ChangeKind) -> int:
        return sum(1 for a in self.actions if a.kind is kind)


def _payload(record: DesiredRecord) -> ResourceRecord:
    return ResourceRecord(
        name=record.name,
        type=record.type,
        ttl=record.ttl,
        values=tuple(sorted(record.values)),
    )


def _needs_update(desired: DesiredRecord, observed: ObservedRecord) -> bool:
    return (
        desired.values != observed.values
        or desired.ttl != observed.ttl
        or desired.record_class.value != observed.record_class
        or desired.sources != observed.owners
    )


def _occupied(record: DesiredRecord, others: Iterable[ObservedRecord]) -> bool:
    """True if creating record would break CNAME exclusivity at its name."""
    for other in others:
        if other.type == record.type:
            continue
        if record.type == CNAME or other.type == CNAME:
            return True
    return False


def compute_changes(
    desired: DesiredState,
    observed: Sequence[ObservedRecord],
    owner_id: str,
    failed_accounts: Iterable[str] = (),
) -> ChangePlan:
    """Compute the minimal change list that converges the root zone.

    Args:
        desired: Builder output for this pass.
        observed: Every record set currently in the root zone.
        owner_id: managedby marker identifying record sets we own.
        failed_accounts: Accounts whose scan failed this pass.

    Returns:
        ChangePlan with deletes first, then creates and upserts, each sorted
        by (name, type).
    """
    failed = frozenset(failed_accounts)
    plan = ChangePlan()
    observed_by_key = {r.key: r for r in observed}

    def frozen(key: RecordKey) -> bool:
        if key in desired.disputed_keys:
            return True
        current = observed_by_key.get(key)
        return (
            current is not None
            and current.is_managed_by(owner_id)
            and bool(current.owners & failed)
        )

    deletes: list[ChangeAction] = []
    for key in sorted(observed_by_key):
        current = observed_by_key[key]
        if not current.is_managed_by(owner_id) or key in desired.records:
            continue
        if frozen(key):
            plan.frozen_keys.add(key)
            continue
        deletes.append(
            ChangeAction(
                kind=ChangeKind.DELETE,
                record=ResourceRecord(
                    name=current.name,
                    type=current.type,
                    ttl=current.ttl,
                    values=tuple(sorted(current.values)),
                ),
                expected_etag=current.etag,
                record_class=current.record_class,
            )
        )

    # Names as they will look once the deletes went through
    deleted = {a.key for a in deletes}
    by_name: dict[str, list[ObservedRecord]] = defaultdict(list)
    for record in observed:
        if record.key not in deleted:
            by_name[record.name].append(record)

    writes: list[ChangeAction] = []
    for key in sorted(desired.records):
        record = desired.records[key]
        if frozen(key):
            plan.frozen_keys.add(key)
            plan.skipped.append(
                SkippedRecord(record.name, record.type, "owner account failed this pass")
            )
            continue

        current = observed_by_key.get(key)
        if current is None:
            if _occupied(record, by_name.get(record.name, ())):
                plan.skipped.append(
                    SkippedRecord(
                        record.name, record.type, "name occupied by conflicting record type"
                    )
                )
                continue
            writes.append(
                ChangeAction(
                    kind=ChangeKind.CREATE,
                    record=_payload(record),
                    metadata=record.metadata(owner_id),
                    record_class=record.record_class.value,
                )
            )
        elif not current.is_managed_by(owner_id):
            plan.skipped.append(SkippedRecord(record.name, record.type, "unmanaged record exists"))
        elif _needs_update(record, current):
            writes.append(
                ChangeAction(
                    kind=ChangeKind.UPSERT,
                    record=_payload(record),
                    metadata=record.metadata(owner_id),
                    expected_etag=current.etag,
                    record_class=record.record_class.value,
                )
            )

    plan.actions = deletes + writes
    for skipped in plan.skipped:
        logger.info(
            "Desired record not applied",
            extra={
                "record_name": skipped.name,
                "record_type": skipped.type,
                "reason": skipped.reason,
            },
        )
    if plan.frozen_keys:
        logger.warning(
            "Records frozen this pass",
            extra={"frozen": sorted(f"{n}/{t}" for n, t in plan.frozen_keys)},
        )
    return plan

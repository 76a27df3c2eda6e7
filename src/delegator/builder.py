"""Desired-state builder.

Derives the root-zone records implied by one pass of account scans:

- Delegation: every discovered subdomain zone gets an NS record in the root
  zone with exactly the zone's own name servers. Delegation is structural,
  no tag is needed.
- Promotion: a subdomain record carrying the promote tag asks for a CNAME at
  the requested root-zone name pointing back at the record.
- Validation: pending certificate validations become TXT records.

The builder never resolves a dispute by picking a winner. Competing claims
are reported as conflicts and their keys are marked disputed, which makes the
diff engine leave whatever is in the root zone untouched.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .filters import FilterEvaluator
from .models import RecordSettings
from .records import (
    CNAME,
    NS,
    Conflict,
    DesiredRecord,
    HostedZone,
    ObservedRecord,
    PromotionIntent,
    RecordClass,
    RecordKey,
    SkippedRecord,
    ValidationRequirement,
    is_subdomain,
    metadata_value,
    normalize_name,
    normalize_value,
)
from .scanner import AccountScan

logger = logging.getLogger(__name__)


@dataclass
class DesiredState:
    """Target root-zone records plus everything the builder refused to emit."""

    records: dict[RecordKey, DesiredRecord] = field(default_factory=dict)
    conflicts: list[Conflict] = field(default_factory=list)
    skipped: list[SkippedRecord] = field(default_factory=list)
    disputed_keys: set[RecordKey] = field(default_factory=set)

    def add(self, record: DesiredRecord) -> None:
        # Keys are unique by construction; a second add is a builder bug
        assert record.key not in self.records, f"duplicate desired key {record.key}"
        self.records[record.key] = record

    def dispute(self, conflict: Conflict) -> None:
        self.conflicts.append(conflict)
        self.disputed_keys.add((conflict.name, conflict.type))
        logger.warning(
            "Conflicting claims, record left untouched",
            extra={
                "record_name": conflict.name,
                "record_type": conflict.type,
                "reason": conflict.reason,
                "claimants": list(conflict.claimants),
            },
        )

    def skip(self, name: str, record_type: str, reason: str) -> None:
        self.skipped.append(SkippedRecord(name=name, type=record_type, reason=reason))
        logger.info(
            "Record skipped",
            extra={"record_name": name, "record_type": record_type, "reason": reason},
        )

    def names(self, record_class: RecordClass) -> set[str]:
        return {r.name for r in self.records.values() if r.record_class is record_class}


def _within(name: str, zones: Iterable[str]) -> str | None:
    """Return the zone that contains name (at or below its apex), if any."""
    for zone in zones:
        if name == zone or is_subdomain(name, zone):
            return zone
    return None


class DesiredStateBuilder:
    """Pure derivation of desired root-zone records from account scans."""

    def __init__(
        self,
        root_domain: str,
        filters: FilterEvaluator,
        settings: RecordSettings,
    ) -> None:
        self._root = normalize_name(root_domain)
        self._filters = filters
        self._settings = settings

    def build(
        self,
        scans: Sequence[AccountScan],
        observed: Sequence[ObservedRecord] = (),
    ) -> DesiredState:
        """Build the desired state.

        Args:
            scans: Account scans of this pass; failed scans contribute nothing.
            observed: Current root-zone records, used only to recognize
                delegations this pass cannot vouch for (hand-made ones, and
                ones owned by an account whose scan failed).
        """
        state = DesiredState()
        ok_scans = [s for s in scans if s.ok]
        failed = frozenset(s.account for s in scans if not s.ok)

        delegated = self._build_delegations(ok_scans, observed, failed, state)
        self._build_validations(ok_scans, delegated, state)
        self._build_promotions(ok_scans, delegated, state)

        logger.debug(
            "Desired state built",
            extra={
                "desired_count": len(state.records),
                "conflict_count": len(state.conflicts),
                "skipped_count": len(state.skipped),
            },
        )
        return state

    def _build_delegations(
        self,
        scans: Sequence[AccountScan],
        observed: Sequence[ObservedRecord],
        failed: frozenset[str],
        state: DesiredState,
    ) -> set[str]:
        """Emit NS records and return every delegated zone name."""
        by_name: dict[str, list[HostedZone]] = defaultdict(list)
        for scan in scans:
            for zone in scan.zones:
                if not is_subdomain(zone.name, self._root):
                    continue
                if not self._filters.is_allowed(zone.name, zone.name, NS):
                    state.skip(zone.name, NS, "denied by filter")
                    continue
                by_name[zone.name].append(zone)

        # Delegations made by hand, and ours whose account could not be
        # scanned, still own their part of the namespace
        delegated = set(by_name)
        for r in observed:
            if r.type != NS or not is_subdomain(r.name, self._root):
                continue
            if not r.is_managed_by(self._settings.owner_id) or r.owners & failed:
                delegated.add(r.name)

        for name in sorted(by_name):
            zones = by_name[name]
            parent = _within(name, sorted(delegated - {name}))
            if parent is not None:
                state.skip(name, NS, f"nested under delegated zone {parent}")
                continue
            if len(zones) > 1:
                state.dispute(
                    Conflict(
                        name=name,
                        type=NS,
                        reason="zone hosted by multiple accounts",
                        claimants=tuple(sorted(z.account for z in zones)),
                    )
                )
                continue
            zone = zones[0]
            if not zone.name_servers:
                state.skip(name, NS, "zone has no name servers")
                continue
            state.add(
                DesiredRecord(
                    name=name,
                    type=NS,
                    values=frozenset(normalize_value(NS, ns) for ns in zone.name_servers),
                    ttl=self._settings.delegation_ttl,
                    record_class=RecordClass.DELEGATION,
                    sources=frozenset({zone.account}),
                )
            )
        return delegated

    def _build_validations(
        self,
        scans: Sequence[AccountScan],
        delegated: set[str],
        state: DesiredState,
    ) -> None:
        # The same requirement is often visible from both the root and the
        # requesting account; it counts once, with every account as a source.
        accounts: dict[tuple[str, str, str], set[str]] = defaultdict(set)
        requirements: dict[tuple[str, str, str], ValidationRequirement] = {}
        for scan in scans:
            for req in scan.validations:
                requirements.setdefault(req.identity, req)
                accounts[req.identity].add(req.account)

        values: dict[RecordKey, set[str]] = defaultdict(set)
        sources: dict[RecordKey, set[str]] = defaultdict(set)
        for identity in sorted(requirements):
            req = requirements[identity]
            name = normalize_name(req.name)
            if not is_subdomain(name, self._root):
                state.skip(name, req.type, "outside root zone")
                continue
            zone = _within(name, delegated)
            if zone is not None:
                state.skip(name, req.type, f"inside delegated zone {zone}")
                continue
            if not self._filters.is_allowed(req.domain or name, name, req.type):
                state.skip(name, req.type, "denied by filter")
                continue
            values[(name, req.type)].add(req.value)
            sources[(name, req.type)].update(accounts[identity])

        for key in sorted(values):
            name, record_type = key
            state.add(
                DesiredRecord(
                    name=name,
                    type=record_type,
                    values=frozenset(values[key]),
                    ttl=self._settings.validation_ttl,
                    record_class=RecordClass.VALIDATION,
                    sources=frozenset(sources[key]),
                )
            )

    def _promotion_intents(
        self,
        scans: Sequence[AccountScan],
        delegated: set[str],
        state: DesiredState,
    ) -> list[PromotionIntent]:
        intents: list[PromotionIntent] = []
        for scan in scans:
            for zone in scan.zones:
                for record in zone.records:
                    target = metadata_value(record.tags, self._settings.promote_tag)
                    if not target:
                        continue
                    root_name = normalize_name(target)
                    if not is_subdomain(root_name, self._root):
                        state.skip(
                            root_name, CNAME, f"promotion target outside root zone ({record.name})"
                        )
                        continue
                    inside = _within(root_name, delegated)
                    if inside is not None:
                        state.skip(
                            root_name, CNAME, f"promotion target inside delegated zone {inside}"
                        )
                        continue
                    if not self._filters.is_allowed(zone.name, record.name, record.type):
                        state.skip(record.name, record.type, "denied by filter")
                        continue
                    intents.append(
                        PromotionIntent(
                            source=record,
                            account=zone.account,
                            zone=zone.name,
                            root_name=root_name,
                        )
                    )
        return intents

    def _build_promotions(
        self,
        scans: Sequence[AccountScan],
        delegated: set[str],
        state: DesiredState,
    ) -> None:
        by_name: dict[str, list[PromotionIntent]] = defaultdict(list)
        for intent in self._promotion_intents(scans, delegated, state):
            by_name[intent.root_name].append(intent)

        # Delegation and validation win over a voluntary tag
        structural = state.names(RecordClass.DELEGATION) | state.names(RecordClass.VALIDATION)
        structural |= {name for name, _ in state.disputed_keys}

        for name in sorted(by_name):
            intents = by_name[name]
            claimants = tuple(sorted(i.claimant for i in intents))
            if len(intents) > 1:
                state.dispute(
                    Conflict(
                        name=name,
                        type=CNAME,
                        reason="multiple promotion claims",
                        claimants=claimants,
                    )
                )
                continue
            if name in structural:
                state.dispute(
                    Conflict(
                        name=name,
                        type=CNAME,
                        reason="collides with delegation or validation record",
                        claimants=claimants,
                    )
                )
                continue
            intent = intents[0]
            state.add(
                DesiredRecord(
                    name=name,
                    type=CNAME,
                    values=frozenset({intent.source.name}),
                    ttl=self._settings.promotion_ttl,
                    record_class=RecordClass.PROMOTION,
                    sources=frozenset({intent.account}),
                )
            )

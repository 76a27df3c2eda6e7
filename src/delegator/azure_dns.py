"""Azure implementation of the DNS provider.

Accounts are Azure subscriptions, zones are public Azure DNS zones and
certificate validations come from Azure Front Door custom domains whose
managed certificate is waiting for DNS validation.

CONCURRENCY:
Azure DNS has no multi-record transaction. The root zone version is a digest
of every record set etag. submit_change_batch re-reads that version and
refuses the batch if it moved, then writes each record set with If-Match /
If-None-Match preconditions so that a concurrent writer surfaces as
ConcurrencyConflictError instead of being overwritten.

All SDK clients are synchronous; calls run in the default executor like the
rest of the operator's Azure access.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.cdn import CdnManagementClient
from azure.mgmt.dns import DnsManagementClient
from azure.mgmt.dns.models import CnameRecord, NsRecord, RecordSet, TxtRecord

from .models import AccountConfig, RootZoneConfig
from .provider import (
    AccountSession,
    ApplyReport,
    ConcurrencyConflictError,
    CredentialError,
    ProviderError,
    TransientProviderError,
)
from .records import (
    TXT,
    ChangeAction,
    ChangeKind,
    HostedZone,
    ObservedRecord,
    ResourceRecord,
    RootZoneSnapshot,
    ValidationRequirement,
    absolute_name,
    is_subdomain,
    normalize_name,
    normalize_value,
    relative_name,
)
from .security import get_managed_identity_credential, log_security_audit_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANAGEMENT_SCOPE = "https://management.azure.com/.default"

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
PRECONDITION_FAILED = 412

# Front Door custom domain states in which a validation token must be published
PENDING_VALIDATION_STATES = frozenset({"Pending", "PendingRevalidation"})
FRONT_DOOR_SKU_MARKER = "AzureFrontDoor"
VALIDATION_RECORD_PREFIX = "_dnsauth"

# TXT strings are limited to 255 characters each
TXT_CHUNK_SIZE = 255


def _enum_value(value: Any) -> str:
    """Return the string value of an SDK enum or plain string."""
    if value is None:
        return ""
    return str(getattr(value, "value", value))


def _resource_group_from_id(resource_id: str | None) -> str:
    """Extract the resource group name from an Azure resource ID.

    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}
    """
    if not resource_id:
        raise ProviderError("Resource has no ID")
    parts = resource_id.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    raise ProviderError(f"Resource ID has no resource group: {resource_id}")


def _record_type(record_set: Any) -> str:
    # e.g. "Microsoft.Network/dnszones/CNAME"
    return _enum_value(record_set.type).split("/")[-1].upper()


def _record_values(record_set: Any, record_type: str) -> list[str]:
    """Flatten the type-specific record lists of an Azure RecordSet."""
    match record_type:
        case "NS":
            return [r.nsdname for r in record_set.ns_records or [] if r.nsdname]
        case "CNAME":
            cname = record_set.cname_record
            return [cname.cname] if cname is not None and cname.cname else []
        case "TXT":
            return ["".join(r.value or []) for r in record_set.txt_records or []]
        case "A":
            return [r.ipv4_address for r in record_set.a_records or [] if r.ipv4_address]
        case "AAAA":
            return [r.ipv6_address for r in record_set.aaaa_records or [] if r.ipv6_address]
        case "MX":
            return [f"{r.preference} {r.exchange}" for r in record_set.mx_records or []]
        case _:
            return []


def _chunk_txt(value: str) -> list[str]:
    if not value:
        return [""]
    return [value[i : i + TXT_CHUNK_SIZE] for i in range(0, len(value), TXT_CHUNK_SIZE)]


def build_record_set(action: ChangeAction) -> RecordSet:
    """Build the Azure RecordSet payload for a Create/Upsert action."""
    record = action.record
    values = sorted(record.values)
    match record.type:
        case "NS":
            return RecordSet(
                ttl=record.ttl,
                metadata=dict(action.metadata),
                ns_records=[NsRecord(nsdname=v) for v in values],
            )
        case "CNAME":
            if len(values) != 1:
                raise ProviderError(f"CNAME {record.name} must have exactly one value")
            return RecordSet(
                ttl=record.ttl,
                metadata=dict(action.metadata),
                cname_record=CnameRecord(cname=values[0]),
            )
        case "TXT":
            return RecordSet(
                ttl=record.ttl,
                metadata=dict(action.metadata),
                txt_records=[TxtRecord(value=_chunk_txt(v)) for v in values],
            )
        case _:
            raise ProviderError(f"Refusing to write unmanaged record type {record.type}")


def translate_azure_error(error: AzureError, operation: str) -> ProviderError:
    """Map an Azure SDK error onto the provider error taxonomy."""
    message = f"{operation} failed: {error}"
    if isinstance(error, ClientAuthenticationError):
        return CredentialError(message)
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(message)
    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status == PRECONDITION_FAILED:
            return ConcurrencyConflictError(message)
        if status in TRANSIENT_STATUS_CODES:
            return TransientProviderError(message)
        if status in (401, 403):
            return CredentialError(message)
    return ProviderError(message)


def compute_zone_version(records: Sequence[ObservedRecord]) -> str:
    """Digest of every record set identity and etag in the zone."""
    digest = hashlib.sha256()
    for record in sorted(records, key=lambda r: r.key):
        digest.update(f"{record.name}|{record.type}|{record.etag or ''}\n".encode())
    return digest.hexdigest()


class AzureDnsProvider:
    """DnsProvider backed by Azure DNS and Azure Front Door.

    Args:
        root_zone: Identity of the root zone; the only zone ever written.
        session_ttl_seconds: Lifetime of sessions handed out by assume_account.
    """

    def __init__(self, root_zone: RootZoneConfig, session_ttl_seconds: int) -> None:
        self._root_zone = root_zone
        self._session_ttl_seconds = session_ttl_seconds

    async def _run(self, operation: str, func: Callable[[], T]) -> T:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, func)
        except AzureError as e:
            raise translate_azure_error(e, operation) from e

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def assume_account(
        self, account: AccountConfig, *, is_root: bool = False
    ) -> AccountSession:
        credential = get_managed_identity_credential(account.client_id)
        # Surface identity problems here instead of halfway through a scan
        await self._run(
            f"Token request for account '{account.name}'",
            lambda: credential.get_token(MANAGEMENT_SCOPE),
        )
        log_security_audit_event(
            "session",
            account=account.name,
            target_resource=f"/subscriptions/{account.subscription_id}",
            action="write" if is_root else "read",
            result="success",
        )
        return AccountSession.open(
            account, credential, ttl_seconds=self._session_ttl_seconds, is_root=is_root
        )

    def _dns_client(self, session: AccountSession) -> DnsManagementClient:
        session.ensure_valid()
        return DnsManagementClient(
            credential=session.credential,
            subscription_id=session.subscription_id,
        )

    # -------------------------------------------------------------------------
    # Account scans
    # -------------------------------------------------------------------------

    async def list_zones_and_records(self, session: AccountSession) -> list[HostedZone]:
        client = self._dns_client(session)

        def list_sync() -> list[HostedZone]:
            zones: list[HostedZone] = []
            for zone in client.zones.list():
                zone_type = _enum_value(zone.zone_type) or "Public"
                if zone_type != "Public":
                    logger.debug(
                        "Skipping private zone",
                        extra={"account": session.account, "zone": zone.name},
                    )
                    continue
                resource_group = _resource_group_from_id(zone.id)
                records = tuple(
                    self._to_resource_record(record_set, zone.name)
                    for record_set in client.record_sets.list_by_dns_zone(
                        resource_group, zone.name
                    )
                )
                zones.append(
                    HostedZone(
                        zone_id=zone.id,
                        name=normalize_name(zone.name),
                        account=session.account,
                        name_servers=tuple(normalize_name(ns) for ns in zone.name_servers or []),
                        records=records,
                    )
                )
            return zones

        return await self._run(f"List zones in account '{session.account}'", list_sync)

    @staticmethod
    def _to_resource_record(record_set: Any, zone_name: str) -> ResourceRecord:
        record_type = _record_type(record_set)
        return ResourceRecord(
            name=absolute_name(record_set.name, zone_name),
            type=record_type,
            ttl=record_set.ttl or 0,
            values=tuple(
                normalize_value(record_type, v) for v in _record_values(record_set, record_type)
            ),
            tags=dict(record_set.metadata or {}),
        )

    async def list_certificate_validation_requirements(
        self, session: AccountSession, domain_filter: str
    ) -> list[ValidationRequirement]:
        session.ensure_valid()
        client = CdnManagementClient(
            credential=session.credential,
            subscription_id=session.subscription_id,
        )
        domain_filter = normalize_name(domain_filter)

        def list_sync() -> list[ValidationRequirement]:
            requirements: list[ValidationRequirement] = []
            for profile in client.profiles.list():
                sku = _enum_value(profile.sku.name if profile.sku else None)
                if FRONT_DOOR_SKU_MARKER not in sku:
                    continue
                resource_group = _resource_group_from_id(profile.id)
                for domain in client.afd_custom_domains.list_by_profile(
                    resource_group, profile.name
                ):
                    requirement = self._to_validation(domain, session.account, domain_filter)
                    if requirement is not None:
                        requirements.append(requirement)
            return requirements

        return await self._run(
            f"List certificate validations in account '{session.account}'", list_sync
        )

    @staticmethod
    def _to_validation(
        domain: Any, account: str, domain_filter: str
    ) -> ValidationRequirement | None:
        if _enum_value(domain.domain_validation_state) not in PENDING_VALIDATION_STATES:
            return None
        properties = domain.validation_properties
        token = properties.validation_token if properties is not None else None
        if not token or not domain.host_name:
            return None

        host = normalize_name(domain.host_name)
        # Wildcard domains validate on their base name
        base = host[2:] if host.startswith("*.") else host
        if base != domain_filter and not is_subdomain(base, domain_filter):
            return None

        return ValidationRequirement(
            name=f"{VALIDATION_RECORD_PREFIX}.{base}",
            type=TXT,
            value=token,
            account=account,
            domain=base,
        )

    # -------------------------------------------------------------------------
    # Root zone
    # -------------------------------------------------------------------------

    def _require_root(self, session: AccountSession) -> None:
        if not session.is_root:
            raise ProviderError(
                f"Account '{session.account}' is not the root account and cannot "
                "access the root zone"
            )

    def _read_root_sync(self, client: DnsManagementClient) -> list[ObservedRecord]:
        zone_name = self._root_zone.domain
        observed: list[ObservedRecord] = []
        for record_set in client.record_sets.list_by_dns_zone(
            self._root_zone.resource_group, zone_name
        ):
            record_type = _record_type(record_set)
            observed.append(
                ObservedRecord(
                    name=absolute_name(record_set.name, zone_name),
                    type=record_type,
                    ttl=record_set.ttl or 0,
                    values=frozenset(
                        normalize_value(record_type, v)
                        for v in _record_values(record_set, record_type)
                    ),
                    metadata=dict(record_set.metadata or {}),
                    etag=record_set.etag,
                )
            )
        return observed

    async def read_root_zone_records(self, session: AccountSession) -> RootZoneSnapshot:
        self._require_root(session)
        client = self._dns_client(session)
        records = await self._run(
            f"Read root zone '{self._root_zone.domain}'",
            lambda: self._read_root_sync(client),
        )
        return RootZoneSnapshot(
            zone_name=self._root_zone.domain,
            records=tuple(records),
            version=compute_zone_version(records),
        )

    async def submit_change_batch(
        self,
        session: AccountSession,
        actions: Sequence[ChangeAction],
        expected_version: str,
    ) -> ApplyReport:
        self._require_root(session)
        client = self._dns_client(session)
        zone_name = self._root_zone.domain
        resource_group = self._root_zone.resource_group

        def submit_sync() -> ApplyReport:
            current = compute_zone_version(self._read_root_sync(client))
            if current != expected_version:
                raise ConcurrencyConflictError(
                    f"Root zone '{zone_name}' changed since it was observed"
                )

            report = ApplyReport()
            for action in actions:
                relative = relative_name(action.record.name, zone_name)
                try:
                    self._apply_one(client, resource_group, zone_name, relative, action)
                except AzureError as e:
                    error = translate_azure_error(e, action.describe())
                    if report.total:
                        # Applied actions are individually valid; the retried pass
                        # re-derives the rest
                        logger.warning(
                            "Change batch interrupted",
                            extra={
                                "applied": report.total,
                                "remaining": len(actions) - report.total,
                            },
                        )
                    raise error from e
                report.record(action)
                logger.info(
                    "Applied root zone change",
                    extra={
                        "change_type": action.kind.value,
                        "record_name": action.record.name,
                        "record_type": action.record.type,
                        "record_class": action.record_class,
                    },
                )
            return report

        report = await self._run(f"Submit change batch to '{zone_name}'", submit_sync)
        log_security_audit_event(
            "root_zone_write",
            account=session.account,
            target_resource=f"/subscriptions/{session.subscription_id}/resourceGroups/"
            f"{resource_group}/providers/Microsoft.Network/dnszones/{zone_name}",
            action="change_batch",
            result="success",
        )
        return report

    @staticmethod
    def _apply_one(
        client: DnsManagementClient,
        resource_group: str,
        zone_name: str,
        relative: str,
        action: ChangeAction,
    ) -> None:
        record_type = action.record.type
        match action.kind:
            case ChangeKind.CREATE:
                client.record_sets.create_or_update(
                    resource_group,
                    zone_name,
                    relative,
                    record_type,
                    build_record_set(action),
                    if_none_match="*",
                )
            case ChangeKind.UPSERT:
                client.record_sets.create_or_update(
                    resource_group,
                    zone_name,
                    relative,
                    record_type,
                    build_record_set(action),
                    if_match=action.expected_etag,
                )
            case ChangeKind.DELETE:
                client.record_sets.delete(
                    resource_group,
                    zone_name,
                    relative,
                    record_type,
                    if_match=action.expected_etag,
                )

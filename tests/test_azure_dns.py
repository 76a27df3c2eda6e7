"""Tests for the Azure DNS / Front Door provider."""

from __future__ import annotations

from collections.abc import Iterator
from unittest.mock import patch

import pytest
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError
from conftest import make_spec
from dns_mock import (
    MockCdnManagementClient,
    MockDnsManagementClient,
    MockManagedIdentityCredential,
    a_record_set,
    cname_record_set,
    http_error,
    ns_record_set,
    txt_record_set,
)

from delegator.azure_dns import (
    AzureDnsProvider,
    build_record_set,
    compute_zone_version,
    translate_azure_error,
)
from delegator.provider import (
    AccountSession,
    ConcurrencyConflictError,
    CredentialError,
    ProviderError,
    TransientProviderError,
)
from delegator.records import ChangeAction, ChangeKind, ObservedRecord, ResourceRecord

RG = "rg-dns"
ZONE = "example.com"
MANAGED = {"managedby": "dns-delegation-operator", "recordclass": "delegation", "sourceaccount": "team-foo"}


@pytest.fixture
def dns_client() -> Iterator[MockDnsManagementClient]:
    client = MockDnsManagementClient()
    with patch("delegator.azure_dns.DnsManagementClient", return_value=client):
        yield client


@pytest.fixture
def cdn_client() -> Iterator[MockCdnManagementClient]:
    client = MockCdnManagementClient()
    with patch("delegator.azure_dns.CdnManagementClient", return_value=client):
        yield client


@pytest.fixture
def azure_provider() -> AzureDnsProvider:
    return AzureDnsProvider(make_spec().root_zone, session_ttl_seconds=600)


def _session(name: str = "team-foo", is_root: bool = False) -> AccountSession:
    spec = make_spec()
    account = spec.root_zone.as_account() if is_root else spec.accounts[0]
    assert account.name == name
    return AccountSession.open(account, MockManagedIdentityCredential(), 600, is_root=is_root)


def _create(name: str, record_type: str, values: tuple[str, ...], ttl: int = 86400) -> ChangeAction:
    return ChangeAction(
        kind=ChangeKind.CREATE,
        record=ResourceRecord(name=name, type=record_type, ttl=ttl, values=values),
        metadata=MANAGED,
    )


class TestTranslateAzureError:
    """Azure SDK errors map onto the provider error taxonomy."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ClientAuthenticationError(message="no token"), CredentialError),
            (ServiceRequestError(message="connection reset"), TransientProviderError),
            (http_error(412), ConcurrencyConflictError),
            (http_error(429), TransientProviderError),
            (http_error(503), TransientProviderError),
            (http_error(403), CredentialError),
            (http_error(404), ProviderError),
        ],
    )
    def test_mapping(self, error: Exception, expected: type[ProviderError]) -> None:
        translated = translate_azure_error(error, "List zones")

        assert type(translated) is expected
        assert str(translated).startswith("List zones failed:")


class TestBuildRecordSet:
    """Tests for build_record_set."""

    def test_ns_sorted_with_metadata(self) -> None:
        record_set = build_record_set(_create("foo.example.com", "NS", ("n2", "n1")))

        assert [r.nsdname for r in record_set.ns_records] == ["n1", "n2"]
        assert record_set.ttl == 86400
        assert record_set.metadata == MANAGED

    def test_cname(self) -> None:
        record_set = build_record_set(_create("app.example.com", "CNAME", ("app.foo.example.com",)))

        assert record_set.cname_record.cname == "app.foo.example.com"

    def test_long_txt_is_chunked(self) -> None:
        token = "x" * 300

        record_set = build_record_set(_create("_dnsauth.www.example.com", "TXT", (token,)))

        chunks = record_set.txt_records[0].value
        assert [len(c) for c in chunks] == [255, 45]
        assert "".join(chunks) == token

    def test_cname_with_two_targets_refused(self) -> None:
        with pytest.raises(ProviderError, match="exactly one value"):
            build_record_set(_create("app.example.com", "CNAME", ("a.example.com", "b.example.com")))

    def test_unmanaged_type_refused(self) -> None:
        with pytest.raises(ProviderError, match="unmanaged record type A"):
            build_record_set(_create("www.example.com", "A", ("10.0.0.1",)))


class TestComputeZoneVersion:
    """Tests for compute_zone_version."""

    def test_order_independent(self) -> None:
        a = ObservedRecord(name="a.example.com", type="NS", ttl=60, values=frozenset(), etag="1")
        b = ObservedRecord(name="b.example.com", type="NS", ttl=60, values=frozenset(), etag="2")

        assert compute_zone_version([a, b]) == compute_zone_version([b, a])

    def test_etag_change_moves_version(self) -> None:
        a = ObservedRecord(name="a.example.com", type="NS", ttl=60, values=frozenset(), etag="1")
        a2 = ObservedRecord(name="a.example.com", type="NS", ttl=60, values=frozenset(), etag="2")

        assert compute_zone_version([a]) != compute_zone_version([a2])


class TestAssumeAccount:
    """Tests for AzureDnsProvider.assume_account."""

    @pytest.mark.asyncio
    async def test_session_is_scoped_to_account(self, azure_provider: AzureDnsProvider) -> None:
        credential = MockManagedIdentityCredential(client_id="identity-foo")
        account = make_spec().accounts[0]

        with patch("delegator.azure_dns.get_managed_identity_credential", return_value=credential) as factory:
            session = await azure_provider.assume_account(account)

        factory.assert_called_once_with(account.client_id)
        assert session.account == "team-foo"
        assert session.subscription_id == account.subscription_id
        assert session.is_root is False
        assert credential.get_token_call_count == 1

    @pytest.mark.asyncio
    async def test_authentication_failure(self, azure_provider: AzureDnsProvider) -> None:
        credential = MockManagedIdentityCredential()
        credential.set_failure(True, "identity not assigned")

        with patch("delegator.azure_dns.get_managed_identity_credential", return_value=credential):
            with pytest.raises(CredentialError, match="identity not assigned"):
                await azure_provider.assume_account(make_spec().accounts[0])


class TestListZones:
    """Tests for zone and record discovery."""

    @pytest.mark.asyncio
    async def test_public_zones_with_records(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        dns_client.zones.add("rg-foo", "foo.example.com", ["NS1.AZURE-DNS.COM.", "ns2.azure-dns.net"])
        dns_client.zones.add("rg-foo", "internal.example.com", [], zone_type="Private")
        dns_client.record_sets.add("rg-foo", "foo.example.com", ns_record_set("@", ["ns1.azure-dns.com"]))
        dns_client.record_sets.add(
            "rg-foo",
            "foo.example.com",
            cname_record_set("app", "app-foo.azurefd.net", ttl=300, metadata={"promoteto": "app"}),
        )

        zones = await azure_provider.list_zones_and_records(_session())

        assert [z.name for z in zones] == ["foo.example.com"]
        zone = zones[0]
        assert zone.account == "team-foo"
        assert zone.name_servers == ("ns1.azure-dns.com", "ns2.azure-dns.net")
        records = {r.key: r for r in zone.records}
        assert records[("foo.example.com", "NS")].values == ("ns1.azure-dns.com",)
        app = records[("app.foo.example.com", "CNAME")]
        assert app.values == ("app-foo.azurefd.net",)
        assert app.tags == {"promoteto": "app"}
        assert app.ttl == 300

    @pytest.mark.asyncio
    async def test_service_error_translated(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        with patch.object(dns_client.zones, "list", side_effect=http_error(429)):
            with pytest.raises(TransientProviderError):
                await azure_provider.list_zones_and_records(_session())

    @pytest.mark.asyncio
    async def test_expired_session_refused(self, azure_provider: AzureDnsProvider) -> None:
        session = AccountSession.open(make_spec().accounts[0], MockManagedIdentityCredential(), 0)

        with pytest.raises(CredentialError, match="expired"):
            await azure_provider.list_zones_and_records(session)


class TestListValidations:
    """Tests for Front Door certificate validation discovery."""

    @pytest.mark.asyncio
    async def test_pending_domains_under_root(
        self, azure_provider: AzureDnsProvider, cdn_client: MockCdnManagementClient
    ) -> None:
        cdn_client.add_custom_domain("www.example.com", "tok-www")
        cdn_client.add_custom_domain("*.shop.example.com", "tok-shop", state="PendingRevalidation")
        cdn_client.add_custom_domain("done.example.com", "tok-done", state="Approved")
        cdn_client.add_custom_domain("www.example.org", "tok-other")
        cdn_client.add_custom_domain("nothing.example.com", None)

        validations = await azure_provider.list_certificate_validation_requirements(_session(), ZONE)

        assert [(v.name, v.value, v.domain) for v in validations] == [
            ("_dnsauth.www.example.com", "tok-www", "www.example.com"),
            ("_dnsauth.shop.example.com", "tok-shop", "shop.example.com"),
        ]
        assert all(v.type == "TXT" and v.account == "team-foo" for v in validations)

    @pytest.mark.asyncio
    async def test_classic_cdn_profiles_ignored(
        self, azure_provider: AzureDnsProvider, cdn_client: MockCdnManagementClient
    ) -> None:
        cdn_client.add_custom_domain("www.example.com", "tok", profile="cdn-classic", sku="Standard_Microsoft")

        assert await azure_provider.list_certificate_validation_requirements(_session(), ZONE) == []


class TestRootZone:
    """Tests for root zone read and batch submission."""

    @pytest.mark.asyncio
    async def test_read_requires_root_session(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        with pytest.raises(ProviderError, match="not the root account"):
            await azure_provider.read_root_zone_records(_session())

    @pytest.mark.asyncio
    async def test_read_snapshot(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        dns_client.record_sets.add(RG, ZONE, ns_record_set("foo", ["n1"], metadata=MANAGED))
        dns_client.record_sets.add(RG, ZONE, txt_record_set("_dnsauth.www", ["tok"]))
        dns_client.record_sets.add(RG, ZONE, a_record_set("www", ["10.0.0.1"]))

        snapshot = await azure_provider.read_root_zone_records(_session("root", is_root=True))

        records = {r.key: r for r in snapshot.records}
        assert records[("foo.example.com", "NS")].is_managed_by("dns-delegation-operator")
        assert records[("_dnsauth.www.example.com", "TXT")].values == frozenset({"tok"})
        assert records[("www.example.com", "A")].metadata == {}
        assert snapshot.version == compute_zone_version(snapshot.records)

    @pytest.mark.asyncio
    async def test_submit_applies_batch(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        dns_client.record_sets.add(RG, ZONE, ns_record_set("old", ["n1"], metadata=MANAGED))
        dns_client.record_sets.add(RG, ZONE, ns_record_set("bar", ["n1"], metadata=MANAGED))
        session = _session("root", is_root=True)
        snapshot = await azure_provider.read_root_zone_records(session)
        etags = {r.name: r.etag for r in snapshot.records}
        actions = [
            ChangeAction(
                kind=ChangeKind.DELETE,
                record=ResourceRecord(name="old.example.com", type="NS", ttl=86400, values=("n1",)),
                expected_etag=etags["old.example.com"],
            ),
            _create("foo.example.com", "NS", ("n1", "n2")),
            ChangeAction(
                kind=ChangeKind.UPSERT,
                record=ResourceRecord(name="bar.example.com", type="NS", ttl=86400, values=("n3",)),
                metadata=MANAGED,
                expected_etag=etags["bar.example.com"],
            ),
        ]

        report = await azure_provider.submit_change_batch(session, actions, snapshot.version)

        assert report.total == 3
        assert dns_client.record_sets.writes == [
            ("delete", "old", "NS"),
            ("create_or_update", "foo", "NS"),
            ("create_or_update", "bar", "NS"),
        ]
        assert dns_client.record_sets.get(RG, ZONE, "old", "NS") is None
        bar = dns_client.record_sets.get(RG, ZONE, "bar", "NS")
        assert [r.nsdname for r in bar.ns_records] == ["n3"]

    @pytest.mark.asyncio
    async def test_moved_zone_version_refused(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        session = _session("root", is_root=True)
        snapshot = await azure_provider.read_root_zone_records(session)
        dns_client.record_sets.add(RG, ZONE, a_record_set("www", ["10.0.0.1"]))

        with pytest.raises(ConcurrencyConflictError):
            await azure_provider.submit_change_batch(
                session, [_create("foo.example.com", "NS", ("n1",))], snapshot.version
            )
        assert dns_client.record_sets.writes == []

    @pytest.mark.asyncio
    async def test_create_over_existing_is_conflict(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        """If-None-Match catches a record created after the version check."""
        session = _session("root", is_root=True)
        snapshot = await azure_provider.read_root_zone_records(session)

        def create_concurrently(*args: object, **kwargs: object) -> None:
            raise http_error(412, "Record set already exists")

        with patch.object(dns_client.record_sets, "create_or_update", side_effect=create_concurrently):
            with pytest.raises(ConcurrencyConflictError):
                await azure_provider.submit_change_batch(
                    session, [_create("foo.example.com", "NS", ("n1",))], snapshot.version
                )

    @pytest.mark.asyncio
    async def test_stale_etag_is_conflict(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        dns_client.record_sets.add(RG, ZONE, ns_record_set("bar", ["n1"], metadata=MANAGED))
        session = _session("root", is_root=True)
        snapshot = await azure_provider.read_root_zone_records(session)
        action = ChangeAction(
            kind=ChangeKind.UPSERT,
            record=ResourceRecord(name="bar.example.com", type="NS", ttl=86400, values=("n3",)),
            metadata=MANAGED,
            expected_etag="etag-stale",
        )

        with pytest.raises(ConcurrencyConflictError):
            await azure_provider.submit_change_batch(session, [action], snapshot.version)

    @pytest.mark.asyncio
    async def test_forbidden_write_is_credential_error(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        session = _session("root", is_root=True)
        snapshot = await azure_provider.read_root_zone_records(session)
        dns_client.record_sets.fail_on_write = http_error(403, "AuthorizationFailed")

        with pytest.raises(CredentialError, match="AuthorizationFailed"):
            await azure_provider.submit_change_batch(
                session, [_create("foo.example.com", "NS", ("n1",))], snapshot.version
            )

    @pytest.mark.asyncio
    async def test_subdomain_session_cannot_write(
        self, azure_provider: AzureDnsProvider, dns_client: MockDnsManagementClient
    ) -> None:
        with pytest.raises(ProviderError, match="not the root account"):
            await azure_provider.submit_change_batch(
                _session(), [_create("foo.example.com", "NS", ("n1",))], "any"
            )
        assert dns_client.record_sets.writes == []

"""In-memory DNS service for reconciliation tests.

Provides a fake DnsProvider with subdomain subscriptions, a root zone with
etags and versions, and failure injection, so full passes run without Azure.
The sdk module mocks the Azure management clients underneath AzureDnsProvider.

Usage:
    from dns_mock import FakeDnsProvider, MockRootZone

    root = MockRootZone("example.com")
    provider = FakeDnsProvider(root)
    provider.add_zone("team-foo", "foo.example.com", ["ns1.azure-dns.com"])

    result = await run_reconciliation_pass(spec, config, provider)
    assert root.get("foo.example.com", "NS") is not None
"""

from .credential import MockAccessToken, MockManagedIdentityCredential, create_mock_credential
from .provider import FakeDnsProvider
from .sdk import (
    MockCdnManagementClient,
    MockDnsManagementClient,
    a_record_set,
    cname_record_set,
    http_error,
    ns_record_set,
    txt_record_set,
)
from .zone import MockRootZone

__all__ = [
    "FakeDnsProvider",
    "MockAccessToken",
    "MockCdnManagementClient",
    "MockDnsManagementClient",
    "MockManagedIdentityCredential",
    "MockRootZone",
    "a_record_set",
    "cname_record_set",
    "create_mock_credential",
    "http_error",
    "ns_record_set",
    "txt_record_set",
]

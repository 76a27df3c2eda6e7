"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for dns_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from delegator.config import Config, RetrySettings  # noqa: E402
from delegator.models import ControllerSpec  # noqa: E402
from dns_mock import FakeDnsProvider, MockRootZone  # noqa: E402

ROOT_SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"
FOO_SUBSCRIPTION = "00000000-0000-0000-0000-000000000002"
BAR_SUBSCRIPTION = "00000000-0000-0000-0000-000000000003"
BAZ_SUBSCRIPTION = "00000000-0000-0000-0000-000000000004"


def make_spec(**overrides: Any) -> ControllerSpec:
    """Operator document for example.com with three subdomain accounts."""
    data: dict[str, Any] = {
        "rootZone": {
            "domain": "example.com",
            "subscriptionId": ROOT_SUBSCRIPTION,
            "resourceGroup": "rg-dns",
        },
        "accounts": [
            {"name": "team-foo", "subscriptionId": FOO_SUBSCRIPTION},
            {"name": "team-bar", "subscriptionId": BAR_SUBSCRIPTION},
            {"name": "team-baz", "subscriptionId": BAZ_SUBSCRIPTION},
        ],
        "filters": [{"action": "allow", "subdomain": "*", "record": "*"}],
    }
    data.update(overrides)
    return ControllerSpec.model_validate(data)


def make_config(**overrides: Any) -> Config:
    """Runtime settings with instant retries for tests."""
    values: dict[str, Any] = {
        "retry": RetrySettings(max_attempts=2, backoff_base_seconds=0.0, timeout_seconds=5.0),
        "apply_max_attempts": 3,
    }
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def spec() -> ControllerSpec:
    return make_spec()


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def root_zone() -> MockRootZone:
    return MockRootZone("example.com")


@pytest.fixture
def provider(root_zone: MockRootZone) -> FakeDnsProvider:
    return FakeDnsProvider(root_zone)

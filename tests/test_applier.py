"""Tests for batch submission to the root zone."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest
from conftest import make_spec
from dns_mock import FakeDnsProvider, MockRootZone

from delegator.applier import ChangeApplier
from delegator.provider import (
    AccountSession,
    ApplyReport,
    ConcurrencyConflictError,
    ProviderError,
    TransientProviderError,
)
from delegator.records import ChangeAction, ChangeKind, ResourceRecord

CREATE_FOO = ChangeAction(
    kind=ChangeKind.CREATE,
    record=ResourceRecord(name="foo.example.com", type="NS", ttl=86400, values=("n1",)),
    metadata={"managedby": "dns-delegation-operator"},
)


class SlowProvider(FakeDnsProvider):
    """Holds batch submission until released."""

    def __init__(self, root_zone: MockRootZone) -> None:
        super().__init__(root_zone)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def submit_change_batch(
        self, session: AccountSession, actions: Sequence[ChangeAction], expected_version: str
    ) -> ApplyReport:
        self.started.set()
        await self.release.wait()
        return await super().submit_change_batch(session, actions, expected_version)


async def _root_session(provider: FakeDnsProvider) -> AccountSession:
    return await provider.assume_account(make_spec().root_zone.as_account(), is_root=True)


class TestChangeApplier:
    """Tests for ChangeApplier."""

    @pytest.mark.asyncio
    async def test_apply_counts_per_kind(self, provider: FakeDnsProvider, root_zone: MockRootZone) -> None:
        applier = ChangeApplier(provider)
        session = await _root_session(provider)

        report = await applier.apply(session, [CREATE_FOO], root_zone.version)

        assert report.counts[ChangeKind.CREATE] == 1
        assert report.total == 1
        assert root_zone.get("foo.example.com", "NS") is not None

    @pytest.mark.asyncio
    async def test_empty_list_not_submitted(self, provider: FakeDnsProvider, root_zone: MockRootZone) -> None:
        applier = ChangeApplier(provider)
        session = await _root_session(provider)

        report = await applier.apply(session, [], root_zone.version)

        assert report.total == 0
        assert provider.batches == []

    @pytest.mark.asyncio
    async def test_non_root_session_refused(self, provider: FakeDnsProvider, root_zone: MockRootZone) -> None:
        applier = ChangeApplier(provider)
        session = await provider.assume_account(make_spec().accounts[0])

        with pytest.raises(ProviderError, match="may not write the root zone"):
            await applier.apply(session, [CREATE_FOO], root_zone.version)
        assert provider.batches == []

    @pytest.mark.asyncio
    async def test_stale_version_raises_conflict(self, provider: FakeDnsProvider, root_zone: MockRootZone) -> None:
        applier = ChangeApplier(provider)
        session = await _root_session(provider)
        stale = root_zone.version
        root_zone.put("www.example.com", "A", ["10.0.0.1"])

        with pytest.raises(ConcurrencyConflictError):
            await applier.apply(session, [CREATE_FOO], stale)
        assert root_zone.get("foo.example.com", "NS") is None

    @pytest.mark.asyncio
    async def test_cancellation_waits_for_batch(self, root_zone: MockRootZone) -> None:
        provider = SlowProvider(root_zone)
        applier = ChangeApplier(provider)
        session = await _root_session(provider)

        task = asyncio.create_task(applier.apply(session, [CREATE_FOO], root_zone.version))
        await provider.started.wait()
        task.cancel()
        await asyncio.sleep(0)
        assert not task.done()

        provider.release.set()
        with pytest.raises(asyncio.CancelledError):
            await task
        # The batch ran to completion despite the cancellation
        assert root_zone.get("foo.example.com", "NS") is not None

    @pytest.mark.asyncio
    async def test_hung_batch_times_out(self, root_zone: MockRootZone) -> None:
        provider = SlowProvider(root_zone)
        applier = ChangeApplier(provider, timeout_seconds=0.05)
        session = await _root_session(provider)

        with pytest.raises(TransientProviderError, match="timed out"):
            await asyncio.wait_for(applier.apply(session, [CREATE_FOO], root_zone.version), 5)
        assert provider.started.is_set()
        assert root_zone.get("foo.example.com", "NS") is None

    @pytest.mark.asyncio
    async def test_cancellation_wait_is_bounded(self, root_zone: MockRootZone) -> None:
        provider = SlowProvider(root_zone)
        applier = ChangeApplier(provider, timeout_seconds=0.1)
        session = await _root_session(provider)

        task = asyncio.create_task(applier.apply(session, [CREATE_FOO], root_zone.version))
        await provider.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert root_zone.get("foo.example.com", "NS") is None

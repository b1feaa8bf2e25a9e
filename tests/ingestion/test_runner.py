"""Tests for the backfill job runner."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import FakeChain

from wallet_radar.config import BackfillSettings
from wallet_radar.domain import EconomicEventType, NetworkId, SyncState
from wallet_radar.events import RecalculateWalletRequested, SignalBus
from wallet_radar.ingestion.adapters import AdapterRegistry
from wallet_radar.ingestion.progress import SyncProgressTracker
from wallet_radar.ingestion.reclassifier import InternalTransferReclassifier
from wallet_radar.ingestion.runner import BackfillJobRunner
from wallet_radar.storage.repos import EconomicEventRepository

WALLET = "0x" + "a" * 40
OTHER = "0x" + "b" * 40
NOW = datetime(2025, 5, 1, 12, 0, tzinfo=UTC)


class FakeExecutor:
    """Completes every sync it is given, or raises when ``error`` is set."""

    def __init__(self, tracker: SyncProgressTracker) -> None:
        self.tracker = tracker
        self.calls: list[tuple[str, NetworkId]] = []
        self.error: Exception | None = None

    async def run(self, wallet_address, network, adapter, height_resolver, timestamp_resolver) -> bool:
        self.calls.append((wallet_address, network))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        await self.tracker.set_complete(wallet_address, network)
        return True


@pytest.fixture
def tracker(session_scope) -> SyncProgressTracker:
    return SyncProgressTracker(session_scope, clock=lambda: NOW, rng=random.Random(3))


@pytest.fixture
def executor(tracker: SyncProgressTracker) -> FakeExecutor:
    return FakeExecutor(tracker)


@pytest.fixture
def bus() -> SignalBus:
    return SignalBus()


@pytest.fixture
def make_runner(session_scope, tracker, executor, bus, fake_chain: FakeChain):
    def factory(now: datetime = NOW, **settings) -> BackfillJobRunner:
        return BackfillJobRunner(
            session_scope,
            settings=BackfillSettings(**settings),
            executor=executor,
            registry=AdapterRegistry([fake_chain], [fake_chain], [fake_chain]),
            tracker=tracker,
            reclassifier=InternalTransferReclassifier(session_scope),
            bus=bus,
            clock=lambda: now,
        )

    return factory


async def fail(tracker: SyncProgressTracker, wallet: str, times: int) -> None:
    await tracker.set_running(wallet, NetworkId.ETHEREUM, 10, None, "Fetching")
    for _ in range(times):
        await tracker.set_failed(wallet, NetworkId.ETHEREUM, "Backfill failed: timeout")


# ============================================================================
# Queueing
# ============================================================================


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_pair_in_flight_is_not_queued_twice(self, make_runner, tracker) -> None:
        runner = make_runner()

        assert await runner.enqueue(WALLET, [NetworkId.ETHEREUM]) == [NetworkId.ETHEREUM]
        assert await runner.enqueue(WALLET, [NetworkId.ETHEREUM]) == []

        assert runner.in_flight == {(WALLET, NetworkId.ETHEREUM)}
        assert not runner.is_idle()
        status = await tracker.get(WALLET, NetworkId.ETHEREUM)
        assert status is not None
        assert status.status is SyncState.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_enqueues_queue_pair_once(self, make_runner) -> None:
        runner = make_runner()

        first, second = await asyncio.gather(
            runner.enqueue(WALLET, [NetworkId.ETHEREUM]),
            runner.enqueue(WALLET, [NetworkId.ETHEREUM]),
        )

        assert sorted([first, second], key=len) == [[], [NetworkId.ETHEREUM]]
        assert runner._queue.qsize() == 1
        assert runner.in_flight == {(WALLET, NetworkId.ETHEREUM)}

    @pytest.mark.asyncio
    async def test_failed_pending_write_releases_pair(self, make_runner, tracker, monkeypatch) -> None:
        runner = make_runner()
        monkeypatch.setattr(tracker, "ensure_pending", AsyncMock(side_effect=RuntimeError("db down")))

        with pytest.raises(RuntimeError, match="db down"):
            await runner.enqueue(WALLET, [NetworkId.ETHEREUM])

        assert runner.in_flight == frozenset()
        assert runner._queue.qsize() == 0

    @pytest.mark.asyncio
    async def test_unsupported_network_is_marked_complete(self, make_runner, tracker) -> None:
        runner = make_runner()

        assert await runner.enqueue(WALLET, [NetworkId.SOLANA, NetworkId.ETHEREUM]) == [NetworkId.ETHEREUM]

        status = await tracker.get(WALLET, NetworkId.SOLANA)
        assert status is not None
        assert status.status is SyncState.COMPLETE
        assert not status.backfill_complete

    @pytest.mark.asyncio
    async def test_resume_incomplete_requeues_unfinished_syncs(self, make_runner, tracker) -> None:
        await tracker.ensure_pending("0x" + "1" * 40, NetworkId.ETHEREUM)
        await tracker.set_running("0x" + "2" * 40, NetworkId.ETHEREUM, 40, None, "Fetching")
        await fail(tracker, "0x" + "3" * 40, 1)
        await tracker.set_complete("0x" + "4" * 40, NetworkId.ETHEREUM)
        runner = make_runner()

        assert await runner.resume_incomplete() == 3

        assert {wallet for wallet, _ in runner.in_flight} == {"0x" + "1" * 40, "0x" + "2" * 40, "0x" + "3" * 40}


# ============================================================================
# Retry scheduling
# ============================================================================


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_waits_for_next_retry_after(self, make_runner, tracker) -> None:
        await fail(tracker, WALLET, 1)

        assert await make_runner(now=NOW).retry_failed() == 0

        later = make_runner(now=NOW + timedelta(hours=1))
        assert await later.retry_failed() == 1
        assert later.in_flight == {(WALLET, NetworkId.ETHEREUM)}
        assert later.stats.retries_enqueued == 1

    @pytest.mark.asyncio
    async def test_abandons_after_max_retries(self, make_runner, tracker) -> None:
        await fail(tracker, WALLET, 3)
        runner = make_runner(now=NOW + timedelta(days=1), BACKFILL_MAX_RETRIES=3)

        assert await runner.retry_failed() == 0

        status = await tracker.get(WALLET, NetworkId.ETHEREUM)
        assert status is not None
        assert status.status is SyncState.ABANDONED
        assert status.sync_banner_message == "Abandoned after 3 retries"
        assert runner.stats.syncs_abandoned == 1
        assert runner.is_idle()

    @pytest.mark.asyncio
    async def test_abandoned_syncs_are_not_resumed(self, make_runner, tracker) -> None:
        await fail(tracker, WALLET, 5)
        runner = make_runner(now=NOW + timedelta(days=1))
        await runner.retry_failed()

        assert await runner.resume_incomplete() == 0


# ============================================================================
# Workers
# ============================================================================


class TestWorkers:
    @pytest.mark.asyncio
    async def test_processes_queue_and_reclassifies_when_idle(self, make_runner, executor, tracker) -> None:
        runner = make_runner(BACKFILL_WORKER_COUNT=2)
        await runner.start()
        try:
            await runner.enqueue(WALLET, [NetworkId.ETHEREUM])
            await runner.enqueue(OTHER, [NetworkId.ETHEREUM])
            await runner.join()
        finally:
            await runner.stop()

        assert sorted(executor.calls) == [(WALLET, NetworkId.ETHEREUM), (OTHER, NetworkId.ETHEREUM)]
        assert runner.stats.jobs_completed == 2
        assert runner.stats.reclassify_passes >= 1
        assert runner.is_idle()
        assert not runner.is_running
        for wallet in (WALLET, OTHER):
            status = await tracker.get(wallet, NetworkId.ETHEREUM)
            assert status is not None
            assert status.status is SyncState.COMPLETE

    @pytest.mark.asyncio
    async def test_start_resumes_interrupted_syncs(self, make_runner, executor, tracker) -> None:
        await tracker.set_running(WALLET, NetworkId.ETHEREUM, 30, None, "Fetching")
        runner = make_runner()
        await runner.start()
        try:
            await runner.join()
        finally:
            await runner.stop()

        assert executor.calls == [(WALLET, NetworkId.ETHEREUM)]

    @pytest.mark.asyncio
    async def test_executor_crash_releases_pair(self, make_runner, executor) -> None:
        executor.error = RuntimeError("boom")
        runner = make_runner()
        await runner.start()
        try:
            await runner.enqueue(WALLET, [NetworkId.ETHEREUM])
            await runner.join()
        finally:
            await runner.stop()

        assert runner.stats.jobs_failed == 1
        assert runner.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, make_runner) -> None:
        runner = make_runner()
        await runner.start()
        try:
            with pytest.raises(RuntimeError):
                await runner.start()
        finally:
            await runner.stop()


# ============================================================================
# Reclassification
# ============================================================================


class TestReclassifyIfIdle:
    @pytest.mark.asyncio
    async def test_publishes_recalculation_for_changed_wallets(
        self, make_runner, tracker, session_scope, make_event, bus
    ) -> None:
        await tracker.set_complete(WALLET, NetworkId.ETHEREUM)
        await tracker.set_complete(OTHER, NetworkId.ETHEREUM)
        async with session_scope() as session:
            event_id = await EconomicEventRepository(session).upsert(
                make_event(EconomicEventType.EXTERNAL_INBOUND, "1", "2000", wallet=WALLET, counterparty_address=OTHER)
            )
        requested: list[RecalculateWalletRequested] = []

        async def record(signal: RecalculateWalletRequested) -> None:
            requested.append(signal)

        bus.subscribe(RecalculateWalletRequested, record)
        runner = make_runner()

        assert await runner.reclassify_if_idle()

        assert requested == [RecalculateWalletRequested(wallet_address=WALLET)]
        assert runner.stats.events_reclassified == 1
        async with session_scope() as session:
            event = await EconomicEventRepository(session).get(event_id)
        assert event is not None
        assert event.event_type is EconomicEventType.INTERNAL_TRANSFER

    @pytest.mark.asyncio
    async def test_skipped_while_a_sync_is_active(self, make_runner, tracker) -> None:
        await tracker.set_running(WALLET, NetworkId.ETHEREUM, 10, None, "Fetching")
        runner = make_runner()

        assert not await runner.reclassify_if_idle()
        assert runner.stats.reclassify_passes == 0

    @pytest.mark.asyncio
    async def test_skipped_while_jobs_are_queued(self, make_runner) -> None:
        runner = make_runner()
        await runner.enqueue(WALLET, [NetworkId.ETHEREUM])

        assert not await runner.reclassify_if_idle()

"""Backfill job runner: work queue, worker pool and retry scheduler."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from wallet_radar.config import BackfillSettings
from wallet_radar.domain import NetworkId, SyncState
from wallet_radar.events import RecalculateWalletRequested, SignalBus
from wallet_radar.ingestion.adapters import AdapterRegistry
from wallet_radar.ingestion.executor import BackfillNetworkExecutor
from wallet_radar.ingestion.progress import SyncProgressTracker
from wallet_radar.ingestion.reclassifier import InternalTransferReclassifier
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import SyncStatusRepository

logger = logging.getLogger(__name__)

JobKey = tuple[str, NetworkId]

_RESUMABLE_STATES = (SyncState.PENDING, SyncState.RUNNING, SyncState.FAILED)
_ACTIVE_STATES = (SyncState.PENDING, SyncState.RUNNING)


@dataclass
class RunnerStats:
    """Counters for the job runner."""

    started_at: datetime | None = None
    jobs_completed: int = 0
    jobs_failed: int = 0
    retries_enqueued: int = 0
    syncs_abandoned: int = 0
    reclassify_passes: int = 0
    events_reclassified: int = 0


class BackfillJobRunner:
    """Drains a FIFO queue of (wallet, network) backfills with N workers.

    A pair stays in the in-flight set from enqueue until its executor run
    returns, so a second enqueue of the same pair meanwhile is a no-op.
    When a worker finishes and nothing is queued, in flight, PENDING or
    RUNNING, the runner performs the cross-wallet reclassification pass.

    Example:
        ```python
        runner = BackfillJobRunner(session_scope, settings=..., executor=..., ...)
        await runner.start()
        await runner.enqueue("0xabc...", [NetworkId.ETHEREUM])
        await runner.stop()
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        settings: BackfillSettings,
        executor: BackfillNetworkExecutor,
        registry: AdapterRegistry,
        tracker: SyncProgressTracker,
        reclassifier: InternalTransferReclassifier,
        bus: SignalBus,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_scope = session_scope
        self._settings = settings
        self._executor = executor
        self._registry = registry
        self._tracker = tracker
        self._reclassifier = reclassifier
        self._bus = bus
        self._clock = clock

        self._queue: asyncio.Queue[JobKey] = asyncio.Queue()
        self._in_flight: set[JobKey] = set()
        self._reclassify_lock = asyncio.Lock()
        self._stats = RunnerStats()

        self._stop_event: asyncio.Event | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._retry_task: asyncio.Task[None] | None = None
        self._reclassify_task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> RunnerStats:
        return self._stats

    @property
    def in_flight(self) -> frozenset[JobKey]:
        return frozenset(self._in_flight)

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def is_idle(self) -> bool:
        """True when nothing is queued or being processed."""
        return self._queue.empty() and not self._in_flight

    async def start(self) -> None:
        """Start the workers and the scheduled loops, then resume interrupted syncs."""
        if self._workers:
            raise RuntimeError("Backfill job runner already started")

        self._stop_event = asyncio.Event()
        self._stats.started_at = self._clock()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"backfill-worker-{index}")
            for index in range(self._settings.worker_count)
        ]
        self._retry_task = asyncio.create_task(self._run_retry_loop())
        self._reclassify_task = asyncio.create_task(self._run_reclassify_loop())
        logger.info("Backfill job runner started with %d workers", len(self._workers))

        resumed = await self.resume_incomplete()
        if resumed:
            logger.info("Resumed %d interrupted backfills", resumed)

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()

        tasks = [*self._workers, self._retry_task, self._reclassify_task]
        for task in tasks:
            if task is not None:
                task.cancel()
        for task in tasks:
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._workers = []
        self._retry_task = None
        self._reclassify_task = None
        logger.info("Backfill job runner stopped")

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def enqueue(self, wallet_address: str, networks: Iterable[NetworkId]) -> list[NetworkId]:
        """Queue a backfill per network.

        Pairs already in flight are skipped. A network without an adapter
        or block resolvers has nothing to backfill and is marked COMPLETE.

        Returns:
            The networks that were queued.
        """
        queued: list[NetworkId] = []
        for network in networks:
            key = (wallet_address, network)
            if key in self._in_flight:
                logger.debug("Backfill %s %s already in flight", wallet_address, network.value)
                continue
            if not self._registry.is_supported(network):
                logger.info("No adapter for %s; marking %s complete", network.value, wallet_address)
                await self._tracker.set_complete(wallet_address, network)
                continue

            # Claimed before the first await so a concurrent enqueue sees it.
            self._in_flight.add(key)
            try:
                await self._tracker.ensure_pending(wallet_address, network)
            except Exception:
                self._in_flight.discard(key)
                raise
            self._queue.put_nowait(key)
            queued.append(network)
        return queued

    async def resume_incomplete(self) -> int:
        """Re-enqueue every PENDING, RUNNING or FAILED sync."""
        async with self._session_scope() as session:
            statuses = await SyncStatusRepository(session).list_by_status(_RESUMABLE_STATES)
        resumed = 0
        for status in statuses:
            resumed += len(await self.enqueue(status.wallet_address, [status.network_id]))
        return resumed

    async def retry_failed(self) -> int:
        """One retry-scheduler tick.

        FAILED syncs that used up ``max_retries`` become ABANDONED; the rest
        are re-enqueued once their ``next_retry_after`` has passed.

        Returns:
            Number of syncs re-enqueued.
        """
        async with self._session_scope() as session:
            failed = await SyncStatusRepository(session).list_by_status([SyncState.FAILED])

        now = self._clock()
        enqueued = 0
        for status in failed:
            if status.retry_count >= self._settings.max_retries:
                await self._tracker.set_abandoned(
                    status.wallet_address,
                    status.network_id,
                    f"Abandoned after {status.retry_count} retries",
                )
                self._stats.syncs_abandoned += 1
                continue
            if status.next_retry_after is not None and now < status.next_retry_after:
                continue
            if await self.enqueue(status.wallet_address, [status.network_id]):
                logger.info(
                    "Retrying backfill %s %s (retry %d)",
                    status.wallet_address,
                    status.network_id.value,
                    status.retry_count,
                )
                enqueued += 1
        self._stats.retries_enqueued += enqueued
        return enqueued

    async def reclassify_if_idle(self) -> bool:
        """Run the internal-transfer pass when no backfill is active.

        Returns:
            True when the pass ran.
        """
        if not self.is_idle() or self._reclassify_lock.locked():
            return False
        async with self._reclassify_lock:
            async with self._session_scope() as session:
                repo = SyncStatusRepository(session)
                if await repo.count_by_status(_ACTIVE_STATES):
                    return False
                tracked = await repo.list_wallets()

            updated = await self._reclassifier.reclassify(tracked)
            self._stats.reclassify_passes += 1
            self._stats.events_reclassified += len(updated)
            for wallet_address in sorted({e.wallet_address for e in updated}):
                await self._bus.publish(RecalculateWalletRequested(wallet_address=wallet_address))
        return True

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            try:
                try:
                    await self._execute(*key)
                except Exception:
                    self._stats.jobs_failed += 1
                    logger.exception("Backfill worker %d failed on %s %s", index, key[0], key[1].value)
                finally:
                    self._in_flight.discard(key)

                if self.is_idle():
                    await self.reclassify_if_idle()
            except Exception:
                logger.exception("Reclassification after %s %s failed", key[0], key[1].value)
            finally:
                self._queue.task_done()

    async def _execute(self, wallet_address: str, network: NetworkId) -> None:
        adapter = self._registry.adapter_for(network)
        height_resolver = self._registry.height_resolver_for(network)
        timestamp_resolver = self._registry.timestamp_resolver_for(network)
        if adapter is None or height_resolver is None or timestamp_resolver is None:
            await self._tracker.set_complete(wallet_address, network)
            return

        if await self._executor.run(wallet_address, network, adapter, height_resolver, timestamp_resolver):
            self._stats.jobs_completed += 1
        else:
            self._stats.jobs_failed += 1

    async def _run_retry_loop(self) -> None:
        if not self._stop_event:
            return
        interval = self._settings.retry_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            try:
                await self.retry_failed()
            except Exception as e:
                logger.warning("Retry scheduler tick failed: %s", e)

    async def _run_reclassify_loop(self) -> None:
        if not self._stop_event:
            return
        interval = self._settings.reclassify_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            try:
                await self.reclassify_if_idle()
            except Exception as e:
                logger.warning("Idle reclassification pass failed: %s", e)

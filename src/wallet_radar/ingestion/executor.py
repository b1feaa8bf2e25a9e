"""Three-phase backfill of one (wallet, network).

Phase 1 fetches raw transactions, phase 2 classifies what phase 1 stored
and phase 3 resolves deferred prices and asks for an AVCO replay. Each
phase runs over a persisted segment plan so an interrupted run resumes
from the last processed block of every segment instead of from scratch.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

from wallet_radar.config import BackfillSettings
from wallet_radar.domain import NetworkId, SegmentPhase, SegmentState, SyncState
from wallet_radar.events import RawFetchComplete, RecalculateWalletRequested, SignalBus
from wallet_radar.ingestion.adapters import BlockHeightResolver, BlockTimestampResolver, NetworkAdapter
from wallet_radar.ingestion.pricing import DeferredPriceResolver
from wallet_radar.ingestion.progress import SyncProgressTracker
from wallet_radar.ingestion.retry import RpcShutdownError
from wallet_radar.ingestion.segments import (
    BlockRange,
    ClassificationSegmentProcessor,
    ProgressCallback,
    RawFetchSegmentProcessor,
    partition_range,
)
from wallet_radar.ingestion.timestamps import BlockTimestampEstimator
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import (
    BackfillSegmentDTO,
    BackfillSegmentRepository,
    SyncStatusDTO,
    SyncStatusRepository,
)

logger = logging.getLogger(__name__)

# (segment, effective start block, progress callback)
SegmentWork = Callable[[BackfillSegmentDTO, int, ProgressCallback], Awaitable[None]]

# Sync progress bands per phase; phase 3 owns the rest up to 100.
RAW_FETCH_PROGRESS = (0, 50)
CLASSIFY_PROGRESS = (50, 95)

_MAX_ERROR_LENGTH = 500


class BackfillError(Exception):
    """Raised when a phase ends with segments that did not complete."""


def failure_banner(error: BaseException) -> str:
    """User-facing banner for a failed run: message plus root cause, if any."""
    detail = str(error) or type(error).__name__
    cause = getattr(error, "last_exception", None) or error.__cause__
    if cause is not None and cause is not error:
        return f"Backfill failed: {detail} ({str(cause) or type(cause).__name__})"
    return f"Backfill failed: {detail}"


def _block_percent(segment: BackfillSegmentDTO, last_block: int) -> int:
    done = last_block - segment.from_block + 1
    return max(0, min(100, done * 100 // (segment.to_block - segment.from_block + 1)))


class _PhaseProgress:
    """Mean segment progress mapped into a phase band; never decreases."""

    def __init__(self, segments: list[BackfillSegmentDTO], band: tuple[int, int]) -> None:
        self._by_key = {s.key: s.progress_pct for s in segments}
        self._complete = {s.key for s in segments if s.status is SegmentState.COMPLETE}
        self._low, self._high = band
        self._best = self._low

    @property
    def completed(self) -> int:
        return len(self._complete)

    @property
    def total(self) -> int:
        return len(self._by_key)

    def update(self, segment: BackfillSegmentDTO) -> int:
        self._by_key[segment.key] = segment.progress_pct
        if segment.status is SegmentState.COMPLETE:
            self._complete.add(segment.key)
        mean = sum(self._by_key.values()) // max(1, len(self._by_key))
        self._best = max(self._best, self._low + (self._high - self._low) * mean // 100)
        return self._best


class BackfillNetworkExecutor:
    """Runs the backfill phases for one (wallet, network) at a time.

    The executor holds no per-run state; every call builds its own
    timestamp estimator and price cache, so one instance can serve every
    worker of the job runner.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        settings: BackfillSettings,
        tracker: SyncProgressTracker,
        raw_processor: RawFetchSegmentProcessor,
        classification_processor: ClassificationSegmentProcessor,
        deferred_prices: DeferredPriceResolver,
        bus: SignalBus,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_scope = session_scope
        self._settings = settings
        self._tracker = tracker
        self._raw = raw_processor
        self._classify = classification_processor
        self._deferred = deferred_prices
        self._bus = bus
        self._clock = clock

    async def run(
        self,
        wallet_address: str,
        network: NetworkId,
        adapter: NetworkAdapter,
        height_resolver: BlockHeightResolver,
        timestamp_resolver: BlockTimestampResolver,
    ) -> bool:
        """Backfill one (wallet, network).

        Returns:
            True when the sync reached COMPLETE, False when it failed.
        """
        try:
            await self._run(wallet_address, network, adapter, height_resolver, timestamp_resolver)
        except RpcShutdownError:
            logger.info("Backfill %s %s interrupted by shutdown", wallet_address, network.value)
            return False
        except Exception as e:
            logger.exception("Backfill %s %s failed", wallet_address, network.value)
            await self._tracker.set_failed(wallet_address, network, failure_banner(e))
            return False
        return True

    async def _run(
        self,
        wallet_address: str,
        network: NetworkId,
        adapter: NetworkAdapter,
        height_resolver: BlockHeightResolver,
        timestamp_resolver: BlockTimestampResolver,
    ) -> None:
        existing = await self._tracker.get(wallet_address, network)
        last_block_synced = existing.last_block_synced if existing else None
        status = await self._tracker.set_running(
            wallet_address, network, 0, last_block_synced, f"Starting {network.value}..."
        )

        block_range = await self._resumable_range(status)
        if block_range is not None:
            logger.info(
                "Resuming %s %s over %d-%d",
                wallet_address,
                network.value,
                block_range.from_block,
                block_range.to_block,
            )
        else:
            to_block = await height_resolver.current_block(network)
            from_block = self._start_block(network, to_block, last_block_synced)
            if from_block > to_block:
                if self._prices_outstanding(existing):
                    logger.info("Finishing price resolution for %s %s", wallet_address, network.value)
                    await self._resolve_prices_and_complete(wallet_address, network)
                    return
                logger.info("Nothing to backfill for %s %s", wallet_address, network.value)
                await self._tracker.set_complete(wallet_address, network)
                return
            block_range = BlockRange(from_block, to_block)
            await self._reset_plan(status)

        estimator = BlockTimestampEstimator()
        await estimator.calibrate(
            network,
            block_range.from_block,
            block_range.to_block,
            timestamp_resolver,
            fallback_seconds=self._settings.fallback_block_time_seconds,
        )

        if not status.raw_fetch_complete:
            await self._run_raw_fetch(status, adapter, block_range)
            await self._tracker.set_raw_fetch_complete(wallet_address, network, block_range.to_block)
            await self._bus.publish(
                RawFetchComplete(
                    wallet_address=wallet_address,
                    network_id=network,
                    from_block=block_range.from_block,
                    to_block=block_range.to_block,
                )
            )

        if not status.classification_complete:
            await self._run_classification(status, block_range, estimator)
            await self._tracker.set_classification_complete(wallet_address, network)

        await self._resolve_prices_and_complete(wallet_address, network)
        logger.info(
            "Backfill %s %s complete over %d-%d",
            wallet_address,
            network.value,
            block_range.from_block,
            block_range.to_block,
        )

    @staticmethod
    def _prices_outstanding(existing: SyncStatusDTO | None) -> bool:
        """Both fetch phases finished but the run never reached COMPLETE."""
        return (
            existing is not None
            and existing.classification_complete
            and existing.status is not SyncState.COMPLETE
        )

    async def _resolve_prices_and_complete(self, wallet_address: str, network: NetworkId) -> None:
        await self._tracker.set_progress(wallet_address, network, CLASSIFY_PROGRESS[1], "Resolving prices...")
        await self._deferred.resolve_for_wallet(wallet_address)
        await self._bus.publish(RecalculateWalletRequested(wallet_address=wallet_address))
        await self._tracker.set_complete(wallet_address, network)

    def _start_block(self, network: NetworkId, to_block: int, last_block_synced: int | None) -> int:
        window_start = max(0, to_block - self._settings.window_blocks_for(network) + 1)
        if last_block_synced is not None and last_block_synced >= window_start:
            return last_block_synced + 1
        return window_start

    async def _resumable_range(self, status: SyncStatusDTO) -> BlockRange | None:
        """Range of an unfinished segment plan, if one exists."""
        if status.id is None or status.classification_complete:
            return None
        async with self._session_scope() as session:
            plan = await BackfillSegmentRepository(session).list_for_sync(status.id, SegmentPhase.RAW_FETCH)
        if not plan:
            return None
        return BlockRange(plan[0].from_block, plan[-1].to_block)

    async def _reset_plan(self, status: SyncStatusDTO) -> None:
        if status.id is not None:
            async with self._session_scope() as session:
                await BackfillSegmentRepository(session).delete_for_sync(status.id)
        await self._tracker.reset_phases(status.wallet_address, status.network_id)
        status.raw_fetch_complete = False
        status.classification_complete = False

    def _partition(self, block_range: BlockRange) -> list[BlockRange]:
        if self._settings.parallel_segments <= 1 or block_range.length < self._settings.parallel_threshold_blocks:
            return [block_range]
        return partition_range(block_range.from_block, block_range.to_block, self._settings.parallel_segments)

    async def _ensure_plan(
        self,
        status: SyncStatusDTO,
        phase: SegmentPhase,
        block_range: BlockRange,
    ) -> list[BackfillSegmentDTO]:
        """Load the phase's segment plan, creating it when absent or stale.

        RUNNING segments not touched for ``segment_stale_after_seconds``
        belong to a dead worker and go back to PENDING first.
        """
        if status.id is None:
            raise BackfillError(f"Sync row missing for {status.wallet_address} {status.network_id.value}")
        stale_before = self._clock() - timedelta(seconds=self._settings.segment_stale_after_seconds)
        async with self._session_scope() as session:
            repo = BackfillSegmentRepository(session)
            reset = await repo.reset_stale(status.id, updated_before=stale_before)
            if reset:
                logger.info("Reset %d stale segments of sync %d", reset, status.id)
            plan = await repo.list_for_sync(status.id, phase)
            if plan and plan[0].from_block == block_range.from_block and plan[-1].to_block == block_range.to_block:
                return plan
            return await repo.replace_plan(
                [
                    BackfillSegmentDTO(
                        sync_status_id=status.id,
                        phase=phase,
                        segment_index=index,
                        wallet_address=status.wallet_address,
                        network_id=status.network_id,
                        from_block=part.from_block,
                        to_block=part.to_block,
                    )
                    for index, part in enumerate(self._partition(block_range))
                ]
            )

    async def _run_raw_fetch(self, status: SyncStatusDTO, adapter: NetworkAdapter, block_range: BlockRange) -> None:
        network = status.network_id
        batch_size = self._settings.batch_size_for(network) or adapter.max_block_batch_size()

        async def fetch(segment: BackfillSegmentDTO, start: int, on_progress: ProgressCallback) -> None:
            await self._raw.process(
                adapter,
                status.wallet_address,
                network,
                start,
                segment.to_block,
                batch_size=batch_size,
                on_progress=on_progress,
            )

        await self._run_phase(status, SegmentPhase.RAW_FETCH, block_range, fetch, RAW_FETCH_PROGRESS, "Raw fetch")

    async def _run_classification(
        self,
        status: SyncStatusDTO,
        block_range: BlockRange,
        estimator: BlockTimestampEstimator,
    ) -> None:
        async with self._session_scope() as session:
            wallets = await SyncStatusRepository(session).list_wallets()
        tracked = frozenset(w.lower() for w in wallets)
        native_prices: dict[date, Decimal | None] = {}

        async def classify(segment: BackfillSegmentDTO, start: int, on_progress: ProgressCallback) -> None:
            await self._classify.process(
                status.wallet_address,
                status.network_id,
                start,
                segment.to_block,
                estimator=estimator,
                tracked_wallets=tracked,
                native_price_cache=native_prices,
                on_progress=on_progress,
            )

        await self._run_phase(status, SegmentPhase.CLASSIFY, block_range, classify, CLASSIFY_PROGRESS, "Classifying")

    async def _run_phase(
        self,
        status: SyncStatusDTO,
        phase: SegmentPhase,
        block_range: BlockRange,
        work: SegmentWork,
        band: tuple[int, int],
        label: str,
    ) -> None:
        plan = await self._ensure_plan(status, phase, block_range)
        runnable = [s for s in plan if s.status in (SegmentState.PENDING, SegmentState.FAILED)]
        progress = _PhaseProgress(plan, band)
        network = status.network_id

        async def report(segment: BackfillSegmentDTO) -> None:
            pct = progress.update(segment)
            await self._tracker.set_progress(
                status.wallet_address,
                network,
                pct,
                f"{label} {network.value}: {progress.completed}/{progress.total} segments complete",
            )

        if runnable:
            logger.info(
                "%s %s %s: %d/%d segments to run",
                label,
                status.wallet_address,
                network.value,
                len(runnable),
                len(plan),
            )
            semaphore = asyncio.Semaphore(max(1, min(self._settings.parallel_segment_workers, len(runnable))))

            async def bounded(segment: BackfillSegmentDTO) -> None:
                async with semaphore:
                    await self._run_segment(segment, work, report)

            tasks = [asyncio.create_task(bounded(segment)) for segment in runnable]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        async with self._session_scope() as session:
            final = await BackfillSegmentRepository(session).list_for_sync(plan[0].sync_status_id, phase)
        incomplete = [s for s in final if s.status is not SegmentState.COMPLETE]
        if incomplete:
            raise BackfillError(
                f"{label} {network.value}: {len(incomplete)}/{len(final)} segments incomplete"
            )

    async def _run_segment(
        self,
        segment: BackfillSegmentDTO,
        work: SegmentWork,
        report: Callable[[BackfillSegmentDTO], Awaitable[None]],
    ) -> None:
        start = segment.from_block
        if segment.last_processed_block is not None:
            start = max(segment.from_block, min(segment.last_processed_block + 1, segment.to_block))

        segment.status = SegmentState.RUNNING
        segment.error_message = None
        segment.started_at = segment.started_at or self._clock()
        await self._save_segment(segment)

        async def on_progress(_pct: int, last_block: int) -> None:
            segment.progress_pct = max(segment.progress_pct, _block_percent(segment, last_block))
            if segment.last_processed_block is None or last_block > segment.last_processed_block:
                segment.last_processed_block = last_block
            await self._save_segment(segment)
            await report(segment)

        try:
            await work(segment, start, on_progress)
        except asyncio.CancelledError:
            segment.status = SegmentState.PENDING
            await self._save_segment(segment)
            raise
        except Exception as e:
            segment.status = SegmentState.FAILED
            segment.retry_count += 1
            segment.error_message = (str(e) or type(e).__name__)[:_MAX_ERROR_LENGTH]
            await self._save_segment(segment)
            logger.warning(
                "Segment %s (%d-%d) failed: %s",
                segment.key,
                segment.from_block,
                segment.to_block,
                segment.error_message,
            )
            raise

        segment.status = SegmentState.COMPLETE
        segment.progress_pct = 100
        segment.last_processed_block = segment.to_block
        segment.completed_at = self._clock()
        await self._save_segment(segment)
        await report(segment)

    async def _save_segment(self, segment: BackfillSegmentDTO) -> None:
        async with self._session_scope() as session:
            await BackfillSegmentRepository(session).save(segment)


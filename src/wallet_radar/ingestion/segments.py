"""Segment partitioning and the two per-segment backfill phases.

A segment is a contiguous block sub-range of one backfill phase. The
processors here are stateless: everything they need arrives as arguments,
and everything they produce goes to the store, so any segment can be run,
retried or resumed independently.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, MutableMapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal

from wallet_radar.domain import ClassificationStatus, FlagCode, NetworkId
from wallet_radar.ingestion.adapters import NetworkAdapter
from wallet_radar.ingestion.classification import ClassifierDispatcher, EventNormalizer
from wallet_radar.ingestion.pricing import InlineSwapPriceEnricher, PriceResolverChain
from wallet_radar.ingestion.timestamps import BlockTimestampEstimator
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import (
    EconomicEventDTO,
    EconomicEventRepository,
    RawTransactionDTO,
    RawTransactionRepository,
)

logger = logging.getLogger(__name__)

# (progress percent within the segment, last block fully processed)
ProgressCallback = Callable[[int, int], Awaitable[None]]

# Classification reports progress every this many transactions.
CLASSIFY_PROGRESS_EVERY = 50


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range."""

    from_block: int
    to_block: int

    @property
    def length(self) -> int:
        return self.to_block - self.from_block + 1


def partition_range(from_block: int, to_block: int, parallel_segments: int) -> list[BlockRange]:
    """Split ``[from_block, to_block]`` into contiguous, gap-free ranges.

    Produces ``min(parallel_segments, total blocks)`` ranges of equal size;
    the last one absorbs the remainder. An empty range yields no segments.
    """
    if to_block < from_block:
        return []
    total = to_block - from_block + 1
    count = max(1, min(parallel_segments, total))
    size = total // count

    ranges: list[BlockRange] = []
    start = from_block
    for index in range(count):
        end = to_block if index == count - 1 else start + size - 1
        ranges.append(BlockRange(start, end))
        start = end + 1
    return ranges


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return max(0, min(100, done * 100 // total))


class RawFetchSegmentProcessor:
    """Phase 1: fetch raw transactions for one segment and store them."""

    def __init__(self, session_scope: SessionScope) -> None:
        self._session_scope = session_scope

    async def process(
        self,
        adapter: NetworkAdapter,
        wallet_address: str,
        network: NetworkId,
        from_block: int,
        to_block: int,
        *,
        batch_size: int,
        on_progress: ProgressCallback,
    ) -> int:
        """Walk the range in ``batch_size`` chunks, upserting every result.

        Returns:
            Number of raw transactions stored (re-stored ones included).
        """
        total = to_block - from_block + 1
        stored = 0
        for start in range(from_block, to_block + 1, max(1, batch_size)):
            end = min(to_block, start + batch_size - 1)
            transactions = await adapter.fetch_transactions(wallet_address, network, start, end)
            if transactions:
                async with self._session_scope() as session:
                    repo = RawTransactionRepository(session)
                    for tx in transactions:
                        await repo.upsert(tx)
                stored += len(transactions)
            await on_progress(_percent(end - from_block + 1, total), end)

        logger.debug(
            "Raw fetch %s %s %d-%d stored %d transactions",
            wallet_address,
            network.value,
            from_block,
            to_block,
            stored,
        )
        return stored


class ClassificationSegmentProcessor:
    """Phase 2: classify stored raw transactions of one segment.

    Reads only persisted data. Timestamps come from the calibrated
    estimator (slot-based chains carry ``blockTime`` in the payload); the
    native token price for gas is resolved once per UTC date through a
    cache the caller owns.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        dispatcher: ClassifierDispatcher,
        normalizer: EventNormalizer,
        enricher: InlineSwapPriceEnricher,
        price_chain: PriceResolverChain,
        native_contracts: Mapping[NetworkId, str] | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._dispatcher = dispatcher
        self._normalizer = normalizer
        self._enricher = enricher
        self._price_chain = price_chain
        self._native_contracts = dict(native_contracts or {})

    async def process(
        self,
        wallet_address: str,
        network: NetworkId,
        from_block: int,
        to_block: int,
        *,
        estimator: BlockTimestampEstimator,
        tracked_wallets: frozenset[str],
        native_price_cache: MutableMapping[date, Decimal | None],
        on_progress: ProgressCallback,
    ) -> int:
        """Classify every raw transaction in the range.

        A transaction that fails to classify is logged, marked FAILED and
        skipped.

        Returns:
            Number of economic events stored.
        """
        async with self._session_scope() as session:
            raws = await RawTransactionRepository(session).list_in_range(
                wallet_address, network, from_block, to_block
            )
        if not raws:
            await on_progress(100, to_block)
            return 0

        stored = 0
        failed = 0
        for index, raw in enumerate(raws, start=1):
            try:
                events = await self._classify(raw, wallet_address, estimator, tracked_wallets, native_price_cache)
            except Exception as e:
                failed += 1
                logger.warning(
                    "Classification failed for %s on %s: %s",
                    raw.tx_hash or raw.block_number,
                    network.value,
                    e,
                )
                await self._set_status(raw, ClassificationStatus.FAILED)
            else:
                async with self._session_scope() as session:
                    event_repo = EconomicEventRepository(session)
                    for event in events:
                        await event_repo.upsert(event)
                    if raw.id is not None:
                        await RawTransactionRepository(session).set_classification_status(
                            raw.id, ClassificationStatus.COMPLETE
                        )
                stored += len(events)

            if index % CLASSIFY_PROGRESS_EVERY == 0 or index == len(raws):
                if index == len(raws):
                    last_block = to_block
                elif raws[index].block_number == raw.block_number:
                    # Later transactions of this block are still pending.
                    last_block = raw.block_number - 1
                else:
                    last_block = raw.block_number
                await on_progress(_percent(index, len(raws)), last_block)

        if failed:
            logger.warning(
                "Classification of %s %s %d-%d skipped %d/%d transactions",
                wallet_address,
                network.value,
                from_block,
                to_block,
                failed,
                len(raws),
            )
        return stored

    async def _set_status(self, raw: RawTransactionDTO, status: ClassificationStatus) -> None:
        if raw.id is None:
            return
        async with self._session_scope() as session:
            await RawTransactionRepository(session).set_classification_status(raw.id, status)

    async def _classify(
        self,
        raw: RawTransactionDTO,
        wallet_address: str,
        estimator: BlockTimestampEstimator,
        tracked_wallets: frozenset[str],
        native_price_cache: MutableMapping[date, Decimal | None],
    ) -> list[EconomicEventDTO]:
        classified = self._dispatcher.classify(raw, wallet_address, tracked_wallets)
        if not classified:
            return []

        block_ts = self._block_timestamp(raw, estimator)
        native_price = await self._native_price(raw.network_id, block_ts, native_price_cache)
        events = self._normalizer.normalize_all(classified, raw.tx_hash, raw.network_id, block_ts, native_price)
        self._enricher.enrich(events)
        for event in events:
            if event.price_usd is None and event.flag_code is None:
                event.flag_code = FlagCode.PRICE_PENDING
                event.flag_resolved = False
        return events

    @staticmethod
    def _block_timestamp(raw: RawTransactionDTO, estimator: BlockTimestampEstimator) -> datetime:
        if raw.network_id.is_slot_based:
            block_time = raw.raw_data.get("blockTime")
            if block_time is not None:
                return datetime.fromtimestamp(int(block_time), tz=UTC)
        return estimator.estimate(raw.network_id, raw.block_number)

    async def _native_price(
        self,
        network: NetworkId,
        block_ts: datetime,
        cache: MutableMapping[date, Decimal | None],
    ) -> Decimal | None:
        contract = self._native_contracts.get(network)
        if contract is None:
            return None
        day = block_ts.date()
        if day not in cache:
            resolution = await self._price_chain.resolve(network, contract, block_ts)
            cache[day] = resolution.price_usd if resolution.is_known else None
        return cache[day]

"""Tests for segment partitioning and the per-segment backfill phases."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import KNOWN_TOKENS, ROUTER, FakeChain

from wallet_radar.domain import ClassificationStatus, EconomicEventType, FlagCode, NetworkId, PriceSource
from wallet_radar.ingestion import segments
from wallet_radar.ingestion.classification import ClassifierDispatcher, EventNormalizer, TransferClassifier
from wallet_radar.ingestion.pricing import InlineSwapPriceEnricher, PriceResolverChain, StablecoinPriceResolver
from wallet_radar.ingestion.retry import RpcError
from wallet_radar.ingestion.segments import (
    BlockRange,
    ClassificationSegmentProcessor,
    RawFetchSegmentProcessor,
    partition_range,
)
from wallet_radar.ingestion.timestamps import BlockTimestampEstimator
from wallet_radar.storage.repos import EconomicEventRepository, RawTransactionDTO, RawTransactionRepository

USDC, WETH = list(KNOWN_TOKENS)
WALLET = "0x" + "a" * 40
STRANGER = "0x" + "c" * 40


class ProgressLog:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    async def __call__(self, pct: int, last_block: int) -> None:
        self.calls.append((pct, last_block))


# ============================================================================
# Partitioning
# ============================================================================


class TestPartitionRange:
    @pytest.mark.parametrize(
        ("from_block", "to_block", "parts"),
        [(1000, 1099, 4), (0, 10, 3), (5, 5, 4), (0, 2_627_999, 4), (7, 9, 10)],
    )
    def test_contiguous_and_gap_free(self, from_block: int, to_block: int, parts: int) -> None:
        ranges = partition_range(from_block, to_block, parts)

        assert ranges[0].from_block == from_block
        assert ranges[-1].to_block == to_block
        assert len(ranges) == min(parts, to_block - from_block + 1)
        for left, right in zip(ranges, ranges[1:]):
            assert right.from_block == left.to_block + 1
        assert sum(r.length for r in ranges) == to_block - from_block + 1

    def test_last_segment_absorbs_remainder(self) -> None:
        assert partition_range(0, 10, 3) == [BlockRange(0, 2), BlockRange(3, 5), BlockRange(6, 10)]

    def test_equal_split(self) -> None:
        assert partition_range(1000, 1099, 4) == [
            BlockRange(1000, 1024),
            BlockRange(1025, 1049),
            BlockRange(1050, 1074),
            BlockRange(1075, 1099),
        ]

    def test_empty_range(self) -> None:
        assert partition_range(10, 9, 4) == []


# ============================================================================
# Phase 1
# ============================================================================


class TestRawFetchSegmentProcessor:
    @pytest.mark.asyncio
    async def test_stores_transactions_and_reports_each_batch(self, session_scope, fake_chain: FakeChain) -> None:
        fake_chain.add_swap(1010, WALLET, sold=(USDC, "100"), bought=(WETH, "0.05"))
        fake_chain.add_transfer(1060, STRANGER, WALLET, WETH, "1")
        progress = ProgressLog()

        stored = await RawFetchSegmentProcessor(session_scope).process(
            fake_chain, WALLET, NetworkId.ETHEREUM, 1000, 1099, batch_size=40, on_progress=progress
        )

        assert stored == 2
        assert fake_chain.fetch_calls == [(1000, 1039), (1040, 1079), (1080, 1099)]
        assert progress.calls == [(40, 1039), (80, 1079), (100, 1099)]
        async with session_scope() as session:
            assert await RawTransactionRepository(session).count(WALLET, NetworkId.ETHEREUM) == 2

    @pytest.mark.asyncio
    async def test_refetching_is_idempotent(self, session_scope, fake_chain: FakeChain) -> None:
        fake_chain.add_transfer(1010, STRANGER, WALLET, WETH, "1")
        processor = RawFetchSegmentProcessor(session_scope)

        for _ in range(2):
            await processor.process(
                fake_chain, WALLET, NetworkId.ETHEREUM, 1000, 1099, batch_size=1000, on_progress=ProgressLog()
            )

        async with session_scope() as session:
            assert await RawTransactionRepository(session).count(WALLET, NetworkId.ETHEREUM) == 1

    @pytest.mark.asyncio
    async def test_adapter_errors_propagate(self, session_scope, fake_chain: FakeChain) -> None:
        fake_chain.fail_blocks.add(1050)
        progress = ProgressLog()

        with pytest.raises(RpcError, match="upstream 503"):
            await RawFetchSegmentProcessor(session_scope).process(
                fake_chain, WALLET, NetworkId.ETHEREUM, 1000, 1099, batch_size=25, on_progress=progress
            )

        assert progress.calls == [(25, 1024), (50, 1049)]


# ============================================================================
# Phase 2
# ============================================================================


@pytest.fixture
def classifier(session_scope) -> ClassificationSegmentProcessor:
    return ClassificationSegmentProcessor(
        session_scope,
        dispatcher=ClassifierDispatcher([TransferClassifier()]),
        normalizer=EventNormalizer(),
        enricher=InlineSwapPriceEnricher([USDC]),
        price_chain=PriceResolverChain([StablecoinPriceResolver([USDC])]),
    )


@pytest.fixture
async def estimator(fake_chain: FakeChain) -> BlockTimestampEstimator:
    estimator = BlockTimestampEstimator()
    await estimator.calibrate(NetworkId.ETHEREUM, 1000, 1099, fake_chain, fallback_seconds=12)
    return estimator


async def store_raws(session_scope, chain: FakeChain) -> None:
    raws = await chain.fetch_transactions(WALLET, NetworkId.ETHEREUM, 0, chain.height)
    async with session_scope() as session:
        repo = RawTransactionRepository(session)
        for raw in raws:
            await repo.upsert(raw)


class TestClassificationSegmentProcessor:
    @pytest.mark.asyncio
    async def test_classifies_and_prices_swaps(
        self, session_scope, fake_chain: FakeChain, classifier, estimator
    ) -> None:
        fake_chain.add_swap(1010, WALLET, sold=(USDC, "3000"), bought=(WETH, "1"))
        await store_raws(session_scope, fake_chain)

        stored = await classifier.process(
            WALLET,
            NetworkId.ETHEREUM,
            1000,
            1099,
            estimator=estimator,
            tracked_wallets=frozenset({WALLET}),
            native_price_cache={},
            on_progress=ProgressLog(),
        )

        assert stored == 2
        async with session_scope() as session:
            (buy,) = await EconomicEventRepository(session).list_for_asset(WALLET, NetworkId.ETHEREUM, WETH)
            raws = await RawTransactionRepository(session).list_in_range(WALLET, NetworkId.ETHEREUM, 1000, 1099)
        assert buy.event_type is EconomicEventType.SWAP_BUY
        assert buy.price_usd == Decimal("3000")
        assert buy.price_source is PriceSource.SWAP_DERIVED
        assert buy.block_timestamp == await fake_chain.block_timestamp(NetworkId.ETHEREUM, 1010)
        assert buy.counterparty_address == ROUTER
        assert [r.classification_status for r in raws] == [ClassificationStatus.COMPLETE]

    @pytest.mark.asyncio
    async def test_unpriced_events_are_flagged_pending(
        self, session_scope, fake_chain: FakeChain, classifier, estimator
    ) -> None:
        fake_chain.add_transfer(1020, STRANGER, WALLET, WETH, "2")
        await store_raws(session_scope, fake_chain)

        await classifier.process(
            WALLET,
            NetworkId.ETHEREUM,
            1000,
            1099,
            estimator=estimator,
            tracked_wallets=frozenset({WALLET}),
            native_price_cache={},
            on_progress=ProgressLog(),
        )

        async with session_scope() as session:
            (event,) = await EconomicEventRepository(session).list_by_flag(WALLET, FlagCode.PRICE_PENDING)
        assert event.event_type is EconomicEventType.EXTERNAL_INBOUND
        assert event.price_usd is None
        assert not event.flag_resolved

    @pytest.mark.asyncio
    async def test_bad_transaction_is_marked_failed_and_skipped(
        self, session_scope, fake_chain: FakeChain, classifier, estimator
    ) -> None:
        fake_chain.add_transfer(1020, STRANGER, WALLET, WETH, "2")
        await store_raws(session_scope, fake_chain)
        async with session_scope() as session:
            await RawTransactionRepository(session).upsert(
                RawTransactionDTO(
                    tx_hash="0x" + "e" * 64,
                    network_id=NetworkId.ETHEREUM,
                    wallet_address=WALLET,
                    block_number=1030,
                    raw_data={
                        "from": STRANGER,
                        "transfers": [{"contract": WETH, "from": STRANGER, "to": WALLET, "amount": "not-a-number"}],
                    },
                )
            )

        stored = await classifier.process(
            WALLET,
            NetworkId.ETHEREUM,
            1000,
            1099,
            estimator=estimator,
            tracked_wallets=frozenset(),
            native_price_cache={},
            on_progress=ProgressLog(),
        )

        assert stored == 1
        async with session_scope() as session:
            raws = await RawTransactionRepository(session).list_in_range(WALLET, NetworkId.ETHEREUM, 1000, 1099)
        assert [(r.block_number, r.classification_status) for r in raws] == [
            (1020, ClassificationStatus.COMPLETE),
            (1030, ClassificationStatus.FAILED),
        ]

    @pytest.mark.asyncio
    async def test_progress_never_claims_a_partially_done_block(
        self, session_scope, fake_chain: FakeChain, classifier, estimator, monkeypatch
    ) -> None:
        monkeypatch.setattr(segments, "CLASSIFY_PROGRESS_EVERY", 1)
        fake_chain.add_transfer(1010, STRANGER, WALLET, WETH, "1")
        fake_chain.add_transfer(1010, STRANGER, WALLET, USDC, "5")
        fake_chain.add_transfer(1020, STRANGER, WALLET, WETH, "1")
        await store_raws(session_scope, fake_chain)
        progress = ProgressLog()

        await classifier.process(
            WALLET,
            NetworkId.ETHEREUM,
            1000,
            1099,
            estimator=estimator,
            tracked_wallets=frozenset(),
            native_price_cache={},
            on_progress=progress,
        )

        assert progress.calls == [(33, 1009), (66, 1010), (100, 1099)]

    @pytest.mark.asyncio
    async def test_empty_range_reports_done(self, classifier, estimator) -> None:
        progress = ProgressLog()

        stored = await classifier.process(
            WALLET,
            NetworkId.ETHEREUM,
            1000,
            1099,
            estimator=estimator,
            tracked_wallets=frozenset(),
            native_price_cache={},
            on_progress=progress,
        )

        assert stored == 0
        assert progress.calls == [(100, 1099)]

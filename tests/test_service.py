"""End-to-end tests for the service orchestrator on an in-memory network."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import KNOWN_TOKENS, FakeChain

from wallet_radar.config import BackfillSettings, DatabaseSettings, RedisSettings, Settings
from wallet_radar.domain import NetworkId, SyncState
from wallet_radar.ingestion.adapters import AdapterRegistry
from wallet_radar.service import ServiceState, WalletRadarService, normalize_wallet_address
from wallet_radar.storage.repos import EconomicEventRepository

USDC, WETH = list(KNOWN_TOKENS)
WALLET = "0x" + "a" * 40


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Same file the session_scope fixture uses, so tests can inspect the store directly.
    return Settings(
        database=DatabaseSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"),
        redis=RedisSettings(REDIS_URL=None),
        backfill=BackfillSettings(
            BACKFILL_WINDOW_BLOCKS=100,
            BACKFILL_WORKER_COUNT=1,
            BACKFILL_PARALLEL_SEGMENTS=4,
            BACKFILL_PARALLEL_THRESHOLD_BLOCKS=10,
        ),
    )


@pytest.fixture
def registry(fake_chain: FakeChain) -> AdapterRegistry:
    fake_chain.add_swap(1010, WALLET, sold=(USDC, "3000"), bought=(WETH, "1"))
    fake_chain.add_swap(1080, WALLET, sold=(WETH, "0.5"), bought=(USDC, "2000"))
    return AdapterRegistry([fake_chain], [fake_chain], [fake_chain])


def test_normalize_wallet_address() -> None:
    assert normalize_wallet_address("  0xABCdef ") == "0xabcdef"
    assert normalize_wallet_address("So1anaAddre55") == "So1anaAddre55"


class TestWalletRadarService:
    def test_components_unavailable_before_start(self, settings: Settings) -> None:
        service = WalletRadarService(settings)

        assert service.state is ServiceState.STOPPED
        with pytest.raises(RuntimeError):
            _ = service.runner

    @pytest.mark.asyncio
    async def test_add_wallet_backfills_and_builds_positions(
        self, settings: Settings, registry: AdapterRegistry
    ) -> None:
        async with WalletRadarService(settings, registry=registry, create_schema=True) as service:
            assert service.is_running
            address = await service.add_wallet(WALLET.replace("a", "A"), [NetworkId.ETHEREUM, NetworkId.SOLANA])
            await service.runner.join()

            positions = {p.asset_symbol: p for p in await service.positions(address)}
            eth_status = await service.sync_status(address, NetworkId.ETHEREUM)
            sol_status = await service.sync_status(address, NetworkId.SOLANA)

        assert address == WALLET
        assert service.state is ServiceState.STOPPED
        weth = positions["WETH"]
        assert weth.quantity == Decimal("0.5")
        assert weth.avco_usd == Decimal("3000")
        assert weth.total_realised_pnl_usd == Decimal("500")
        assert not weth.has_incomplete_history
        assert positions["USDC"].has_incomplete_history

        assert eth_status is not None
        assert eth_status.status is SyncState.COMPLETE
        assert eth_status.backfill_complete
        assert sol_status is not None
        assert sol_status.status is SyncState.COMPLETE
        assert not sol_status.backfill_complete

        assert service.stats.wallets_added == 1
        assert service.stats.raw_fetches_completed == 1
        assert service.stats.wallets_recalculated >= 1
        assert service.stats.errors == 0

    @pytest.mark.asyncio
    async def test_overrides_replay_positions(
        self, settings: Settings, registry: AdapterRegistry, session_scope
    ) -> None:
        async with WalletRadarService(settings, registry=registry, create_schema=True) as service:
            await service.add_wallet(WALLET, [NetworkId.ETHEREUM])
            await service.runner.join()
            async with session_scope() as session:
                buy, _ = await EconomicEventRepository(session).list_for_asset(WALLET, NetworkId.ETHEREUM, WETH)
            assert buy.id is not None

            await service.set_override(buy.id, Decimal("2000"))
            overridden = {p.asset_symbol: p for p in await service.positions(WALLET)}["WETH"]
            cross = await service.cross_wallet_avco([WALLET], "WETH")

            await service.revert_override(buy.id)
            reverted = {p.asset_symbol: p for p in await service.positions(WALLET)}["WETH"]

        assert overridden.avco_usd == Decimal("2000")
        assert overridden.total_realised_pnl_usd == Decimal("1000")
        assert cross.avco_usd == Decimal("2000")
        assert cross.quantity == Decimal("0.5")
        assert reverted.avco_usd == Decimal("3000")
        assert service.stats.overrides_replayed == 2

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, settings: Settings, registry: AdapterRegistry) -> None:
        service = WalletRadarService(settings, registry=registry, create_schema=True)
        await service.start()
        try:
            with pytest.raises(RuntimeError):
                await service.start()
        finally:
            await service.stop()

"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import itertools
from collections import defaultdict
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from wallet_radar.domain import EconomicEventType, NetworkId, PriceSource
from wallet_radar.ingestion.retry import RpcError
from wallet_radar.storage.database import SessionScope, session_scope_for
from wallet_radar.storage.models import Base
from wallet_radar.storage.repos import EconomicEventDTO, RawTransactionDTO

GENESIS = datetime(2025, 1, 1, tzinfo=UTC)
ROUTER = "0x" + "7" * 40

# contract -> (symbol, decimals)
KNOWN_TOKENS = {
    "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": ("USDC", 6),
    "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2": ("WETH", 18),
}


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file engine; a file keeps concurrent sessions on separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create an async session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def session_scope(session_factory) -> SessionScope:
    return session_scope_for(session_factory)


# ============================================================================
# Events
# ============================================================================


@pytest.fixture
def make_event() -> Callable[..., EconomicEventDTO]:
    """Factory for economic events; each call is one hour after the previous one."""
    counter = itertools.count(1)

    def factory(
        event_type: EconomicEventType,
        quantity: str | Decimal,
        price: str | Decimal | None = None,
        *,
        wallet: str = "0x" + "a" * 40,
        network: NetworkId = NetworkId.ETHEREUM,
        asset: str = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",
        symbol: str = "WETH",
        **overrides: Any,
    ) -> EconomicEventDTO:
        n = next(counter)
        manual = event_type is EconomicEventType.MANUAL_COMPENSATING
        values: dict[str, Any] = {
            "tx_hash": None if manual else f"0x{n:064x}",
            "client_id": f"manual-{n}" if manual else None,
            "network_id": network,
            "wallet_address": wallet,
            "block_timestamp": GENESIS + timedelta(hours=n),
            "log_index": 0,
            "event_type": event_type,
            "asset_symbol": symbol,
            "asset_contract": asset,
            "quantity_delta": Decimal(quantity),
            "price_usd": Decimal(price) if price is not None else None,
            "price_source": PriceSource.MANUAL if manual else PriceSource.SWAP_DERIVED,
        }
        values.update(overrides)
        return EconomicEventDTO(**values)

    return factory


# ============================================================================
# Fake network
# ============================================================================


class FakeChain:
    """In-memory EVM network acting as adapter, height resolver and timestamp resolver.

    Payloads have the same shape as the ones the EVM adapter builds, so the
    real transfer classifier can read them.
    """

    def __init__(
        self,
        network: NetworkId = NetworkId.ETHEREUM,
        *,
        height: int = 1099,
        block_seconds: int = 12,
        batch_size: int = 1000,
    ) -> None:
        self.network = network
        self.height = height
        self.block_seconds = block_seconds
        self.batch_size = batch_size
        self.payloads: dict[int, list[dict[str, Any]]] = defaultdict(list)
        self.fail_blocks: set[int] = set()
        self.fetch_calls: list[tuple[int, int]] = []
        self.timestamp_calls: list[int] = []
        self._hashes = itertools.count(1)

    def supports(self, network: NetworkId) -> bool:
        return network is self.network

    def max_block_batch_size(self) -> int:
        return self.batch_size

    async def fetch_transactions(
        self,
        wallet_address: str,
        network: NetworkId,
        from_block: int,
        to_block: int,
    ) -> list[RawTransactionDTO]:
        self.fetch_calls.append((from_block, to_block))
        for block in self.fail_blocks:
            if from_block <= block <= to_block:
                raise RpcError(f"upstream 503 at block {block}")
        wallet = wallet_address.lower()
        results = []
        for block in sorted(self.payloads):
            if not from_block <= block <= to_block:
                continue
            for payload in self.payloads[block]:
                parties = {t["from"] for t in payload["transfers"]} | {t["to"] for t in payload["transfers"]}
                if wallet in parties:
                    results.append(
                        RawTransactionDTO(
                            tx_hash=payload["hash"],
                            network_id=self.network,
                            wallet_address=wallet,
                            block_number=block,
                            raw_data=payload,
                        )
                    )
        return results

    async def current_block(self, network: NetworkId) -> int:
        return self.height

    async def block_timestamp(self, network: NetworkId, block_number: int) -> datetime:
        self.timestamp_calls.append(block_number)
        return GENESIS + timedelta(seconds=self.block_seconds * block_number)

    def _add(self, block: int, sender: str, transfers: list[dict[str, Any]]) -> str:
        tx_hash = f"0x{next(self._hashes):064x}"
        self.payloads[block].append(
            {
                "hash": tx_hash,
                "blockNumber": block,
                "from": sender,
                "to": ROUTER,
                "status": 1,
                "gasUsed": 150_000,
                "effectiveGasPrice": 20 * 10**9,
                "transfers": transfers,
                "tokens": {
                    t["contract"]: {"symbol": KNOWN_TOKENS[t["contract"]][0], "decimals": KNOWN_TOKENS[t["contract"]][1]}
                    for t in transfers
                },
            }
        )
        return tx_hash

    @staticmethod
    def _units(contract: str, amount: str | Decimal) -> str:
        return str(int(Decimal(amount) * (Decimal(10) ** KNOWN_TOKENS[contract][1])))

    def add_swap(
        self,
        block: int,
        wallet: str,
        sold: tuple[str, str | Decimal],
        bought: tuple[str, str | Decimal],
    ) -> str:
        """``wallet`` sends ``sold`` to the router and receives ``bought``."""
        return self._add(
            block,
            wallet,
            [
                {"contract": sold[0], "from": wallet, "to": ROUTER, "amount": self._units(*sold), "logIndex": 0},
                {"contract": bought[0], "from": ROUTER, "to": wallet, "amount": self._units(*bought), "logIndex": 1},
            ],
        )

    def add_transfer(self, block: int, sender: str, recipient: str, contract: str, amount: str | Decimal) -> str:
        return self._add(
            block,
            sender,
            [{"contract": contract, "from": sender, "to": recipient, "amount": self._units(contract, amount), "logIndex": 0}],
        )


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()

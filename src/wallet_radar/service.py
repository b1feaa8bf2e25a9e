"""Service orchestrator for Wallet Radar.

This module provides the WalletRadarService class that wires together the
store, the RPC clients, the backfill job runner and the cost-basis engine,
and routes in-process signals between them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from wallet_radar.config import Settings, get_settings
from wallet_radar.costbasis.avco import AvcoEngine
from wallet_radar.costbasis.cross_wallet import CrossWalletAvcoResult, CrossWalletAvcoService
from wallet_radar.costbasis.overrides import OverrideService
from wallet_radar.domain import NetworkId
from wallet_radar.events import (
    OverrideSaved,
    RawFetchComplete,
    RecalculateWalletRequested,
    SignalBus,
    WalletAdded,
)
from wallet_radar.ingestion.adapters import AdapterRegistry, build_evm_registry
from wallet_radar.ingestion.classification import ClassifierDispatcher, EventNormalizer, TransferClassifier
from wallet_radar.ingestion.executor import BackfillNetworkExecutor
from wallet_radar.ingestion.pricing import (
    DeferredPriceResolver,
    InlineSwapPriceEnricher,
    PriceResolverChain,
    StablecoinPriceResolver,
)
from wallet_radar.ingestion.progress import SyncProgressTracker
from wallet_radar.ingestion.reclassifier import InternalTransferReclassifier
from wallet_radar.ingestion.retry import RetryPolicy
from wallet_radar.ingestion.rpc import EvmRpcClient
from wallet_radar.ingestion.runner import BackfillJobRunner
from wallet_radar.ingestion.segments import ClassificationSegmentProcessor, RawFetchSegmentProcessor
from wallet_radar.storage.database import DatabaseManager
from wallet_radar.storage.repos import AssetPositionDTO, AssetPositionRepository, SyncStatusDTO, SyncStatusRepository

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    wallets_added: int = 0
    raw_fetches_completed: int = 0
    overrides_replayed: int = 0
    wallets_recalculated: int = 0
    errors: int = 0
    last_error: str | None = None


def normalize_wallet_address(address: str) -> str:
    """EVM addresses are case-insensitive and stored lower-case."""
    address = address.strip()
    return address.lower() if address.startswith("0x") else address


class WalletRadarService:
    """Main orchestrator for Wallet Radar.

    Signal routing:
        WalletAdded -> BackfillJobRunner.enqueue
        RawFetchComplete -> counted (classification runs inside the executor)
        OverrideSaved -> AvcoEngine.replay of the affected position
        RecalculateWalletRequested -> AvcoEngine.recalculate_for_wallet

    Example:
        ```python
        from wallet_radar.config import get_settings
        from wallet_radar.service import WalletRadarService

        service = WalletRadarService(get_settings())
        await service.start()
        await service.add_wallet("0xabc...", [NetworkId.ETHEREUM])
        await service.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        registry: AdapterRegistry | None = None,
        create_schema: bool = False,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            registry: Adapter registry to use instead of one built from the
                configured RPC endpoints.
            create_schema: Create missing tables on start (tests and local runs;
                deployments use Alembic).
        """
        self._settings = settings or get_settings()
        self._registry_override = registry
        self._create_schema = create_schema

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()
        self.bus = SignalBus()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = None
        self._rpc_clients: dict[NetworkId, EvmRpcClient] = {}
        self._registry: AdapterRegistry | None = None
        self._runner: BackfillJobRunner | None = None
        self._engine: AvcoEngine | None = None
        self._overrides: OverrideService | None = None
        self._cross_wallet: CrossWalletAvcoService | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def runner(self) -> BackfillJobRunner:
        if self._runner is None:
            raise RuntimeError("Service not started")
        return self._runner

    @property
    def engine(self) -> AvcoEngine:
        if self._engine is None:
            raise RuntimeError("Service not started")
        return self._engine

    @property
    def overrides(self) -> OverrideService:
        if self._overrides is None:
            raise RuntimeError("Service not started")
        return self._overrides

    async def start(self) -> None:
        """Start the service.

        Raises:
            RuntimeError: If the service is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting wallet radar with %s", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            self._subscribe()
            await self.runner.start()
            self._stats.started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Wallet radar started")
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start wallet radar: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the service gracefully."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping wallet radar...")

        if self._stop_event:
            self._stop_event.set()
        for client in self._rpc_clients.values():
            client.stop()
        if self._runner:
            await self._runner.stop()

        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Wallet radar stopped")

    async def _initialize_components(self) -> None:
        settings = self._settings

        if settings.redis.url:
            logger.debug("Connecting to Redis...")
            self._redis = Redis.from_url(settings.redis.url)

        logger.debug("Initializing database...")
        self._db_manager = DatabaseManager(settings.database.url)
        if self._create_schema:
            await self._db_manager.init_schema_async()
        session_scope = self._db_manager.get_async_session

        if self._registry_override is not None:
            self._registry = self._registry_override
        else:
            self._registry = self._build_registry()

        stablecoins = settings.pricing.stablecoins
        price_chain = PriceResolverChain([StablecoinPriceResolver(stablecoins)])
        tracker = SyncProgressTracker(
            session_scope,
            retry_base_delay_minutes=settings.backfill.retry_base_delay_minutes,
            retry_max_delay_minutes=settings.backfill.retry_max_delay_minutes,
        )
        executor = BackfillNetworkExecutor(
            session_scope,
            settings=settings.backfill,
            tracker=tracker,
            raw_processor=RawFetchSegmentProcessor(session_scope),
            classification_processor=ClassificationSegmentProcessor(
                session_scope,
                dispatcher=ClassifierDispatcher([TransferClassifier()]),
                normalizer=EventNormalizer(),
                enricher=InlineSwapPriceEnricher(stablecoins),
                price_chain=price_chain,
                native_contracts=settings.pricing.native_contracts,
            ),
            deferred_prices=DeferredPriceResolver(session_scope, price_chain),
            bus=self.bus,
        )
        self._runner = BackfillJobRunner(
            session_scope,
            settings=settings.backfill,
            executor=executor,
            registry=self._registry,
            tracker=tracker,
            reclassifier=InternalTransferReclassifier(session_scope),
            bus=self.bus,
        )
        self._engine = AvcoEngine(session_scope)
        self._overrides = OverrideService(session_scope, self.bus)
        self._cross_wallet = CrossWalletAvcoService(
            session_scope,
            redis=self._redis,
            cache_ttl_seconds=settings.cost_basis.cross_wallet_cache_ttl_seconds,
        )

    def _build_registry(self) -> AdapterRegistry:
        settings = self._settings
        policy = RetryPolicy.from_settings(
            settings.retry.base_delay_ms,
            settings.retry.jitter_factor,
            settings.retry.max_attempts,
        )
        for network, endpoints in settings.rpc.endpoints.items():
            if network.is_slot_based:
                logger.warning("No adapter for %s; its backfills complete immediately", network.value)
                continue
            self._rpc_clients[network] = EvmRpcClient(
                network,
                endpoints,
                policy=policy,
                redis=self._redis,
                max_requests_per_second=settings.rpc.max_requests_per_second,
                rate_limit_cooldown_seconds=settings.rpc.endpoint_cooldown_seconds,
                transient_cooldown_seconds=settings.rpc.transient_cooldown_seconds,
                request_timeout_seconds=settings.rpc.request_timeout_seconds,
                stop_event=self._stop_event,
            )
        batch_sizes = {
            network: size
            for network in self._rpc_clients
            if (size := settings.backfill.batch_size_for(network)) is not None
        }
        logger.info("Configured RPC clients for %s", ", ".join(n.value for n in self._rpc_clients) or "no networks")
        return build_evm_registry(
            self._rpc_clients,
            batch_sizes=batch_sizes,
            min_bisect_blocks=settings.rpc.min_bisect_blocks,
        )

    def _subscribe(self) -> None:
        self.bus.subscribe(WalletAdded, self._on_wallet_added)
        self.bus.subscribe(RawFetchComplete, self._on_raw_fetch_complete)
        self.bus.subscribe(OverrideSaved, self._on_override_saved)
        self.bus.subscribe(RecalculateWalletRequested, self._on_recalculate_wallet)

    async def _cleanup(self) -> None:
        """Clean up resources."""
        for client in self._rpc_clients.values():
            await client.aclose()
        self._rpc_clients = {}

        if self._db_manager:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    def _record_error(self, context: str, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = f"{context}: {error}"
        logger.error("%s failed: %s", context, error)

    async def _on_wallet_added(self, signal: WalletAdded) -> None:
        queued = await self.runner.enqueue(signal.wallet_address, signal.networks)
        self._stats.wallets_added += 1
        logger.info(
            "Wallet %s added; queued %s",
            signal.wallet_address,
            ", ".join(n.value for n in queued) or "nothing",
        )

    async def _on_raw_fetch_complete(self, signal: RawFetchComplete) -> None:
        self._stats.raw_fetches_completed += 1
        logger.info(
            "Raw fetch complete for %s %s (%d-%d)",
            signal.wallet_address,
            signal.network_id.value,
            signal.from_block,
            signal.to_block,
        )

    async def _on_override_saved(self, signal: OverrideSaved) -> None:
        try:
            await self.engine.replay(signal.wallet_address, signal.network_id, signal.asset_contract)
            self._stats.overrides_replayed += 1
        except Exception as e:
            self._record_error(f"Replay after override on event {signal.event_id}", e)
            raise

    async def _on_recalculate_wallet(self, signal: RecalculateWalletRequested) -> None:
        try:
            await self.engine.recalculate_for_wallet(signal.wallet_address)
            self._stats.wallets_recalculated += 1
        except Exception as e:
            self._record_error(f"Recalculation of {signal.wallet_address}", e)
            raise

    async def add_wallet(self, wallet_address: str, networks: Iterable[NetworkId]) -> str:
        """Track a wallet and backfill it on ``networks``.

        Returns:
            The normalized wallet address.
        """
        address = normalize_wallet_address(wallet_address)
        await self.bus.publish(WalletAdded(wallet_address=address, networks=tuple(networks)))
        return address

    async def set_override(self, event_id: int, price_usd: Decimal, note: str | None = None) -> None:
        await self.overrides.set_override(event_id, price_usd, note)

    async def revert_override(self, event_id: int) -> None:
        await self.overrides.revert_override(event_id)

    async def cross_wallet_avco(self, wallet_addresses: Iterable[str], asset_symbol: str) -> CrossWalletAvcoResult:
        if self._cross_wallet is None:
            raise RuntimeError("Service not started")
        wallets = [normalize_wallet_address(w) for w in wallet_addresses]
        return await self._cross_wallet.compute(wallets, asset_symbol)

    async def positions(self, wallet_address: str) -> list[AssetPositionDTO]:
        if self._db_manager is None:
            raise RuntimeError("Service not started")
        async with self._db_manager.get_async_session() as session:
            return await AssetPositionRepository(session).list_for_wallet(normalize_wallet_address(wallet_address))

    async def sync_status(self, wallet_address: str, network: NetworkId) -> SyncStatusDTO | None:
        if self._db_manager is None:
            raise RuntimeError("Service not started")
        async with self._db_manager.get_async_session() as session:
            return await SyncStatusRepository(session).get(normalize_wallet_address(wallet_address), network)

    async def run(self) -> None:
        """Start the service and run until stopped."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> WalletRadarService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

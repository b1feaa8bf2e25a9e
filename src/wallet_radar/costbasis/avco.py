"""Per-wallet AVCO (average cost) engine.

Positions are never updated incrementally. Every replay loads the full
event history of one (wallet, network, asset), re-sorts it by block
timestamp and folds it from an empty position, so overrides and late
backfills only ever need a fresh replay to be reflected.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from wallet_radar.domain import (
    ZERO,
    NetworkId,
    divide,
    is_inflow,
    is_outflow_without_pnl,
    is_sell,
    is_sell_type,
    quantize,
)
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import (
    AssetPositionDTO,
    AssetPositionRepository,
    CostBasisOverrideRepository,
    EconomicEventDTO,
    EconomicEventRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class FoldResult:
    """Running totals after folding an ordered event sequence."""

    quantity: Decimal = ZERO
    avco_usd: Decimal = ZERO
    total_gas_paid_usd: Decimal = ZERO
    total_realised_pnl_usd: Decimal = ZERO
    has_incomplete_history: bool = False
    unresolved_flag_count: int = 0
    last_event_timestamp: datetime | None = None
    sales: list[EconomicEventDTO] = field(default_factory=list)

    @property
    def clamped_quantity(self) -> Decimal:
        return max(self.quantity, ZERO)

    @property
    def total_cost_basis_usd(self) -> Decimal:
        return quantize(self.clamped_quantity * self.avco_usd)


def effective_price(event: EconomicEventDTO, overrides: Mapping[int, Decimal]) -> Decimal:
    """Active override price for on-chain events, else the stored price.

    Manual compensating events always use their own price.
    """
    if not event.is_manual and event.id is not None and event.id in overrides:
        return overrides[event.id]
    return event.price_usd if event.price_usd is not None else ZERO


def fold_events(events: Iterable[EconomicEventDTO], overrides: Mapping[int, Decimal]) -> FoldResult:
    """Fold events (already in replay order) into a position.

    Sell legs get ``realised_pnl_usd`` and ``avco_at_time_of_sale`` set in
    place and are collected in :attr:`FoldResult.sales`.
    """
    result = FoldResult()
    first = True
    for event in events:
        delta = event.quantity_delta
        price = effective_price(event, overrides)

        if first:
            result.has_incomplete_history = is_sell_type(event.event_type) or is_outflow_without_pnl(
                event.event_type, delta
            )
            first = False

        if event.has_unresolved_flag:
            result.unresolved_flag_count += 1
        result.total_gas_paid_usd += event.gas_cost_usd
        result.last_event_timestamp = event.block_timestamp

        if is_sell(event.event_type, delta):
            pnl = quantize((price - result.avco_usd) * abs(delta))
            event.avco_at_time_of_sale = result.avco_usd
            event.realised_pnl_usd = pnl
            result.sales.append(event)
            result.total_realised_pnl_usd += pnl
            result.quantity += delta
        elif is_inflow(event.event_type, delta):
            basis_price = price
            if event.gas_included_in_basis and event.gas_cost_usd > 0:
                basis_price = price + divide(event.gas_cost_usd, delta)
            new_quantity = result.quantity + delta
            if result.quantity <= 0:
                # A truncated history can leave the running quantity negative;
                # restart AVCO from the first lot that makes it positive.
                if new_quantity > 0:
                    result.avco_usd = basis_price
            else:
                result.avco_usd = divide(result.avco_usd * result.quantity + basis_price * delta, new_quantity)
            result.quantity = new_quantity
        elif delta < 0:
            result.quantity += delta

    return result


class AvcoEngine:
    """Replays event histories into ``asset_positions``.

    Example:
        ```python
        engine = AvcoEngine(db.get_async_session)
        position = await engine.replay("0xabc...", NetworkId.ETHEREUM, "0xc02a...")
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_scope = session_scope
        self._clock = clock

    async def replay(self, wallet_address: str, network: NetworkId, asset_contract: str) -> AssetPositionDTO | None:
        """Recompute one position from its full history.

        The position and the sale results are written in one transaction.

        Returns:
            The stored position, or None when the history is empty and the
            position was deleted.
        """
        async with self._session_scope() as session:
            event_repo = EconomicEventRepository(session)
            position_repo = AssetPositionRepository(session)

            events = await event_repo.list_for_asset(wallet_address, network, asset_contract)
            if not events:
                deleted = await position_repo.delete(wallet_address, network, asset_contract)
                if deleted:
                    logger.info("Deleted empty position %s %s %s", wallet_address, network.value, asset_contract)
                return None

            overrides = await CostBasisOverrideRepository(session).active_prices_for(
                e.id for e in events if e.id is not None and not e.is_manual
            )
            result = fold_events(events, overrides)
            await event_repo.save_sale_results(result.sales)

            position = AssetPositionDTO(
                wallet_address=wallet_address,
                network_id=network,
                asset_contract=asset_contract,
                asset_symbol=next((e.asset_symbol for e in events if e.asset_symbol), ""),
                quantity=result.clamped_quantity,
                avco_usd=result.avco_usd,
                total_cost_basis_usd=result.total_cost_basis_usd,
                total_gas_paid_usd=result.total_gas_paid_usd,
                total_realised_pnl_usd=result.total_realised_pnl_usd,
                has_incomplete_history=result.has_incomplete_history,
                has_unresolved_flags=result.unresolved_flag_count > 0,
                unresolved_flag_count=result.unresolved_flag_count,
                last_event_timestamp=result.last_event_timestamp,
                last_calculated_at=self._clock(),
            )
            await position_repo.upsert(position)

        logger.debug(
            "Replayed %s %s %s: %d events, qty=%s avco=%s",
            wallet_address,
            network.value,
            asset_contract,
            len(events),
            position.quantity,
            position.avco_usd,
        )
        return position

    async def recalculate_for_wallet(self, wallet_address: str) -> list[AssetPositionDTO]:
        """Replay every (network, asset) the wallet has events for."""
        async with self._session_scope() as session:
            keys = await EconomicEventRepository(session).list_asset_keys(wallet_address)

        positions: list[AssetPositionDTO] = []
        for network, asset_contract in keys:
            position = await self.replay(wallet_address, network, asset_contract)
            if position is not None:
                positions.append(position)
        logger.info("Recalculated %d positions for wallet %s", len(positions), wallet_address)
        return positions

"""USD price resolution for economic events.

Prices come from three places, cheapest first:

1. Inline swap derivation while classifying: a swap against a stablecoin
   prices both legs without any lookup.
2. A :class:`PriceResolverChain` of historical resolvers, consulted once
   per (network, asset, UTC date) after classification finishes.
3. Manual overrides, applied by the cost-basis engine at replay time.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol

from wallet_radar.domain import ZERO, EconomicEventType, FlagCode, NetworkId, PriceSource, divide, quantize
from wallet_radar.ingestion.classification import group_by_tx
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import EconomicEventDTO, EconomicEventRepository

logger = logging.getLogger(__name__)

ONE = Decimal(1)

_INLINE_SOURCES = frozenset({PriceSource.STABLECOIN, PriceSource.SWAP_DERIVED})


@dataclass(frozen=True)
class PriceResolution:
    """A known USD price with its source, or unknown."""

    price_usd: Decimal | None
    source: PriceSource

    @property
    def is_known(self) -> bool:
        return self.price_usd is not None and self.source is not PriceSource.UNKNOWN

    @classmethod
    def unknown(cls) -> PriceResolution:
        return cls(price_usd=None, source=PriceSource.UNKNOWN)


class PriceResolver(Protocol):
    async def resolve(self, network: NetworkId, asset_contract: str, at: datetime | None) -> PriceResolution:
        raise NotImplementedError


class PriceResolverChain:
    """Tries resolvers in order; the first known price wins."""

    def __init__(self, resolvers: Iterable[PriceResolver]) -> None:
        self._resolvers = list(resolvers)

    async def resolve(self, network: NetworkId, asset_contract: str, at: datetime | None) -> PriceResolution:
        for resolver in self._resolvers:
            try:
                result = await resolver.resolve(network, asset_contract, at)
            except Exception as e:
                logger.warning(
                    "Price resolver %s failed for %s on %s: %s",
                    type(resolver).__name__,
                    asset_contract,
                    network.value,
                    e,
                )
                continue
            if result.is_known:
                return result
        return PriceResolution.unknown()


class StablecoinPriceResolver:
    """Prices configured stablecoin contracts at exactly 1 USD."""

    def __init__(self, stablecoins: Iterable[str]) -> None:
        self._stablecoins = frozenset(c.lower() for c in stablecoins)

    def is_stablecoin(self, asset_contract: str) -> bool:
        return asset_contract.lower() in self._stablecoins

    async def resolve(self, network: NetworkId, asset_contract: str, at: datetime | None) -> PriceResolution:
        if self.is_stablecoin(asset_contract):
            return PriceResolution(price_usd=ONE, source=PriceSource.STABLECOIN)
        return PriceResolution.unknown()


def _abs_total(events: Iterable[EconomicEventDTO]) -> Decimal:
    return sum((abs(e.quantity_delta) for e in events), ZERO)


class InlineSwapPriceEnricher:
    """Prices both legs of a stablecoin swap from the swap itself.

    Applies to a transaction whose SWAP_SELL legs all share one asset and
    whose SWAP_BUY legs all share another. Stablecoin legs get 1 USD; the
    other asset gets ``stable total / other total``.
    """

    def __init__(self, stablecoins: Iterable[str]) -> None:
        self._stablecoins = frozenset(c.lower() for c in stablecoins)

    def enrich(self, events: list[EconomicEventDTO]) -> list[EconomicEventDTO]:
        if len(events) < 2:
            return events
        for tx_hash, tx_events in group_by_tx(events).items():
            if tx_hash is not None:
                self._enrich_tx(tx_events)
        return events

    def _enrich_tx(self, tx_events: list[EconomicEventDTO]) -> None:
        sells: dict[str, list[EconomicEventDTO]] = defaultdict(list)
        buys: dict[str, list[EconomicEventDTO]] = defaultdict(list)
        for event in tx_events:
            if event.event_type is EconomicEventType.SWAP_SELL:
                sells[event.asset_contract.lower()].append(event)
            elif event.event_type is EconomicEventType.SWAP_BUY:
                buys[event.asset_contract.lower()].append(event)

        if len(sells) != 1 or len(buys) != 1:
            return
        (sell_asset, sell_legs), (buy_asset, buy_legs) = next(iter(sells.items())), next(iter(buys.items()))
        if sell_asset == buy_asset:
            return

        sell_is_stable = sell_asset in self._stablecoins
        buy_is_stable = buy_asset in self._stablecoins
        if sell_is_stable and buy_is_stable:
            for event in sell_legs + buy_legs:
                self._apply_stablecoin(event)
        elif sell_is_stable:
            for event in sell_legs:
                self._apply_stablecoin(event)
            self._apply_derived(buy_legs, _abs_total(sell_legs))
        elif buy_is_stable:
            for event in buy_legs:
                self._apply_stablecoin(event)
            self._apply_derived(sell_legs, _abs_total(buy_legs))

    @staticmethod
    def _apply_stablecoin(event: EconomicEventDTO) -> None:
        event.price_usd = ONE
        event.price_source = PriceSource.STABLECOIN
        event.total_value_usd = quantize(abs(event.quantity_delta))

    @staticmethod
    def _apply_derived(legs: list[EconomicEventDTO], stable_total: Decimal) -> None:
        other_total = _abs_total(legs)
        if stable_total == 0 or other_total == 0:
            return
        price = divide(stable_total, other_total)
        for event in legs:
            event.price_usd = price
            event.price_source = PriceSource.SWAP_DERIVED
            event.total_value_usd = quantize(abs(event.quantity_delta) * price)


def _date_key(event: EconomicEventDTO) -> date | None:
    return event.block_timestamp.date() if event.block_timestamp else None


class DeferredPriceResolver:
    """Resolves PRICE_PENDING events after a backfill's classification phase.

    Lookups are grouped by (network, asset, UTC date) so a wallet with
    thousands of events on the same token and day costs one resolution.
    """

    def __init__(self, session_scope: SessionScope, chain: PriceResolverChain) -> None:
        self._session_scope = session_scope
        self._chain = chain

    async def resolve_for_wallet(self, wallet_address: str) -> int:
        """Resolve every PRICE_PENDING event of the wallet.

        Returns:
            Number of events that received a price.
        """
        async with self._session_scope() as session:
            pending = await EconomicEventRepository(session).list_by_flag(wallet_address, FlagCode.PRICE_PENDING)
        if not pending:
            logger.debug("No PRICE_PENDING events for wallet %s", wallet_address)
            return 0

        logger.info("Resolving prices for %d PRICE_PENDING events (wallet %s)", len(pending), wallet_address)

        cache: dict[tuple[NetworkId, str, date | None], PriceResolution] = {}
        results: list[tuple[EconomicEventDTO, PriceResolution]] = []
        for event in pending:
            if event.price_usd is not None or event.price_source in _INLINE_SOURCES:
                continue
            key = (event.network_id, event.asset_contract.lower(), _date_key(event))
            resolution = cache.get(key)
            if resolution is None:
                resolution = await self._chain.resolve(event.network_id, event.asset_contract, event.block_timestamp)
                cache[key] = resolution
            results.append((event, resolution))

        resolved = 0
        async with self._session_scope() as session:
            repo = EconomicEventRepository(session)
            for event, resolution in results:
                if event.id is None:
                    continue
                if resolution.is_known and resolution.price_usd is not None:
                    await repo.set_price(
                        event.id,
                        price_usd=resolution.price_usd,
                        price_source=resolution.source,
                        total_value_usd=quantize(resolution.price_usd * abs(event.quantity_delta)),
                        flag_code=None,
                        flag_resolved=True,
                    )
                    resolved += 1
                else:
                    await repo.set_flag(event.id, FlagCode.PRICE_UNKNOWN, flag_resolved=False)

        logger.info(
            "Price resolution complete for wallet %s: %d/%d resolved",
            wallet_address,
            resolved,
            len(pending),
        )
        return resolved

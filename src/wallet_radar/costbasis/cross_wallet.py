"""Read-only AVCO over the merged history of several wallets."""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from redis.asyncio import Redis

from wallet_radar.costbasis.avco import fold_events
from wallet_radar.domain import ZERO, EconomicEventType
from wallet_radar.storage.database import SessionScope
from wallet_radar.storage.repos import CostBasisOverrideRepository, EconomicEventRepository

logger = logging.getLogger(__name__)

CROSS_WALLET_KEY_PREFIX = "wallet_radar:cross_avco:"
DEFAULT_CACHE_TTL_SECONDS = 300


@dataclass(frozen=True)
class CrossWalletAvcoResult:
    avco_usd: Decimal
    quantity: Decimal

    @classmethod
    def empty(cls) -> CrossWalletAvcoResult:
        return cls(avco_usd=ZERO, quantity=ZERO)


def cache_key(wallet_addresses: Sequence[str], asset_symbol: str) -> str:
    """Sorted wallets joined by commas, then ``|`` and the asset symbol."""
    return ",".join(sorted(wallet_addresses)) + "|" + (asset_symbol or "")


class CrossWalletAvcoService:
    """Cross-wallet AVCO for one asset symbol.

    Internal transfers are left out because they only move value between
    the user's own wallets. Results are cached in Redis for a short TTL
    when a client is configured and are never written to the store.
    """

    def __init__(
        self,
        session_scope: SessionScope,
        *,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self._session_scope = session_scope
        self._redis = redis
        self._ttl = cache_ttl_seconds

    async def _get_cached(self, key: str) -> CrossWalletAvcoResult | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(CROSS_WALLET_KEY_PREFIX + key)
            if value is None:
                return None
            data = json.loads(value)
            return CrossWalletAvcoResult(avco_usd=Decimal(data["avco_usd"]), quantity=Decimal(data["quantity"]))
        except Exception as e:
            logger.warning("Cross-wallet cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, result: CrossWalletAvcoResult) -> None:
        if not self._redis:
            return
        try:
            payload = json.dumps({"avco_usd": str(result.avco_usd), "quantity": str(result.quantity)})
            await self._redis.set(CROSS_WALLET_KEY_PREFIX + key, payload, ex=self._ttl)
        except Exception as e:
            logger.warning("Cross-wallet cache set failed: %s", e)

    async def compute(self, wallet_addresses: Sequence[str], asset_symbol: str) -> CrossWalletAvcoResult:
        if not wallet_addresses:
            return CrossWalletAvcoResult.empty()

        key = cache_key(wallet_addresses, asset_symbol)
        cached = await self._get_cached(key)
        if cached is not None:
            return cached

        async with self._session_scope() as session:
            events = await EconomicEventRepository(session).list_for_wallets_and_symbol(
                wallet_addresses, asset_symbol
            )
            merged = [e for e in events if e.event_type is not EconomicEventType.INTERNAL_TRANSFER]
            overrides = await CostBasisOverrideRepository(session).active_prices_for(
                e.id for e in merged if e.id is not None and not e.is_manual
            )

        # The fold writes sale results onto the events; this view discards them.
        folded = fold_events(merged, overrides)
        result = CrossWalletAvcoResult(avco_usd=folded.avco_usd, quantity=folded.clamped_quantity)
        await self._set_cached(key, result)
        return result

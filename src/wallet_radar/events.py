"""In-process signals that connect ingestion, cost basis and the service.

Each signal is a frozen dataclass. Producers publish through a
:class:`SignalBus`; consumers subscribe explicitly, so the trigger graph
(who wakes whom) can be read from the wiring code and asserted in tests.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from wallet_radar.domain import NetworkId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletAdded:
    """A wallet was added and should be backfilled on ``networks``."""

    wallet_address: str
    networks: tuple[NetworkId, ...]


@dataclass(frozen=True)
class OverrideSaved:
    """A cost-basis override was set or reverted for one event."""

    event_id: int
    wallet_address: str
    network_id: NetworkId
    asset_contract: str


@dataclass(frozen=True)
class RawFetchComplete:
    """Phase 1 of a backfill stored every raw transaction in the range."""

    wallet_address: str
    network_id: NetworkId
    from_block: int
    to_block: int


@dataclass(frozen=True)
class RecalculateWalletRequested:
    """Every position of the wallet should be replayed."""

    wallet_address: str


Signal = WalletAdded | OverrideSaved | RawFetchComplete | RecalculateWalletRequested
S = TypeVar("S", WalletAdded, OverrideSaved, RawFetchComplete, RecalculateWalletRequested)
Handler = Callable[[Any], Awaitable[None]]


class SignalBus:
    """Typed publish/subscribe for in-process signals.

    Handlers run sequentially in subscription order. A failing handler is
    logged and does not stop delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, signal_type: type[S], handler: Callable[[S], Awaitable[None]]) -> None:
        self._handlers[signal_type].append(handler)

    def subscribers(self, signal_type: type) -> list[Handler]:
        return list(self._handlers.get(signal_type, ()))

    async def publish(self, signal: Signal) -> None:
        handlers = self._handlers.get(type(signal), ())
        if not handlers:
            logger.debug("No subscribers for %s", type(signal).__name__)
            return
        for handler in list(handlers):
            try:
                await handler(signal)
            except Exception as e:
                logger.warning("Handler for %s failed: %s", type(signal).__name__, e)

"""Domain enumerations and event-type semantics shared across the package.

Every monetary or quantity value in the system is a ``Decimal``. The AVCO
fold quantizes to :data:`SCALE` fractional digits with ``ROUND_HALF_UP`` so
repeated replays of the same history are reproducible bit for bit.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

SCALE = 18
QUANTUM = Decimal(1).scaleb(-SCALE)
ZERO = Decimal(0)


def quantize(value: Decimal) -> Decimal:
    """Round ``value`` to 18 fractional digits, half-up."""
    return value.quantize(QUANTUM, rounding=ROUND_HALF_UP)


def divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide and round the quotient to 18 fractional digits, half-up."""
    return quantize(numerator / denominator)


class NetworkId(str, Enum):
    """Supported blockchain networks."""

    ETHEREUM = "ETHEREUM"
    ARBITRUM = "ARBITRUM"
    OPTIMISM = "OPTIMISM"
    POLYGON = "POLYGON"
    BASE = "BASE"
    BSC = "BSC"
    AVALANCHE = "AVALANCHE"
    MANTLE = "MANTLE"
    SOLANA = "SOLANA"

    @property
    def is_slot_based(self) -> bool:
        """True for chains addressed by slot rather than block number."""
        return self is NetworkId.SOLANA


class EconomicEventType(str, Enum):
    """Closed set of economic effects a transaction can have on a wallet."""

    SWAP_BUY = "SWAP_BUY"
    SWAP_SELL = "SWAP_SELL"
    INTERNAL_TRANSFER = "INTERNAL_TRANSFER"
    STAKE_DEPOSIT = "STAKE_DEPOSIT"
    STAKE_WITHDRAWAL = "STAKE_WITHDRAWAL"
    LP_ENTRY = "LP_ENTRY"
    LP_EXIT = "LP_EXIT"
    LEND_DEPOSIT = "LEND_DEPOSIT"
    LEND_WITHDRAWAL = "LEND_WITHDRAWAL"
    BORROW = "BORROW"
    REPAY = "REPAY"
    EXTERNAL_TRANSFER_OUT = "EXTERNAL_TRANSFER_OUT"
    EXTERNAL_INBOUND = "EXTERNAL_INBOUND"
    MANUAL_COMPENSATING = "MANUAL_COMPENSATING"


class FlagCode(str, Enum):
    """Marker for events with missing data or needing review."""

    PRICE_PENDING = "PRICE_PENDING"
    PRICE_UNKNOWN = "PRICE_UNKNOWN"
    EXTERNAL_INBOUND = "EXTERNAL_INBOUND"
    LP_MANUAL_REQUIRED = "LP_MANUAL_REQUIRED"
    REWARD_INBOUND = "REWARD_INBOUND"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"


class PriceSource(str, Enum):
    """How an event's USD price was determined."""

    STABLECOIN = "STABLECOIN"
    SWAP_DERIVED = "SWAP_DERIVED"
    COINGECKO = "COINGECKO"
    MANUAL = "MANUAL"
    UNKNOWN = "UNKNOWN"


class SyncState(str, Enum):
    """Lifecycle of a (wallet, network) backfill."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"


class SegmentState(str, Enum):
    """Lifecycle of one backfill segment."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class SegmentPhase(str, Enum):
    """Backfill phase a segment belongs to."""

    RAW_FETCH = "RAW_FETCH"
    CLASSIFY = "CLASSIFY"


class ClassificationStatus(str, Enum):
    """Classification progress of a stored raw transaction."""

    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


_INFLOW_TYPES = frozenset(
    {
        EconomicEventType.SWAP_BUY,
        EconomicEventType.BORROW,
        EconomicEventType.STAKE_WITHDRAWAL,
        EconomicEventType.LEND_WITHDRAWAL,
        EconomicEventType.EXTERNAL_INBOUND,
        EconomicEventType.MANUAL_COMPENSATING,
        EconomicEventType.INTERNAL_TRANSFER,
    }
)

_SELL_TYPES = frozenset({EconomicEventType.SWAP_SELL, EconomicEventType.LP_EXIT})

_OUTFLOW_NO_PNL_TYPES = frozenset(
    {
        EconomicEventType.STAKE_DEPOSIT,
        EconomicEventType.LEND_DEPOSIT,
        EconomicEventType.REPAY,
        EconomicEventType.EXTERNAL_TRANSFER_OUT,
        EconomicEventType.INTERNAL_TRANSFER,
    }
)


def is_inflow(event_type: EconomicEventType, quantity_delta: Decimal) -> bool:
    """Acquisition that blends into AVCO."""
    return event_type in _INFLOW_TYPES and quantity_delta > 0


def is_sell(event_type: EconomicEventType, quantity_delta: Decimal) -> bool:
    """Disposal that realises P&L against AVCO."""
    return event_type in _SELL_TYPES and quantity_delta < 0


def is_sell_type(event_type: EconomicEventType) -> bool:
    return event_type in _SELL_TYPES


def is_outflow_without_pnl(event_type: EconomicEventType, quantity_delta: Decimal) -> bool:
    """Outflow that reduces quantity without realising P&L."""
    return event_type in _OUTFLOW_NO_PNL_TYPES and quantity_delta < 0

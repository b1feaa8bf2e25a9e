"""Transaction classification and event normalization.

Classifiers turn one stored raw payload into zero or more
:class:`RawClassifiedEvent` legs for a wallet; the normalizer attaches the
transaction context (hash, network, timestamp, gas) and produces
:class:`EconomicEventDTO` rows ready for the idempotent event store.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from wallet_radar.domain import (
    ZERO,
    EconomicEventType,
    FlagCode,
    NetworkId,
    PriceSource,
    quantize,
)
from wallet_radar.storage.repos import EconomicEventDTO, RawTransactionDTO

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = Decimal(10) ** 18

_GAS_IN_BASIS_TYPES = frozenset({EconomicEventType.SWAP_BUY, EconomicEventType.BORROW})


@dataclass
class RawClassifiedEvent:
    """One classified leg before transaction context is attached."""

    event_type: EconomicEventType
    wallet_address: str
    asset_contract: str
    quantity_delta: Decimal
    asset_symbol: str = ""
    price_usd: Decimal | None = None
    counterparty_address: str | None = None
    protocol_name: str | None = None
    gas_used: int | None = None
    gas_price_wei: int | None = None
    flag_code: FlagCode | None = None
    log_index: int | None = None


class TxClassifier(Protocol):
    def supports(self, network: NetworkId) -> bool:
        raise NotImplementedError

    def classify(
        self,
        raw: RawTransactionDTO,
        wallet_address: str,
        tracked_wallets: frozenset[str],
    ) -> list[RawClassifiedEvent]:
        raise NotImplementedError


class ClassifierDispatcher:
    """Routes a raw transaction to the first classifier supporting its network."""

    def __init__(self, classifiers: Iterable[TxClassifier]) -> None:
        self._classifiers = list(classifiers)

    def classify(
        self,
        raw: RawTransactionDTO,
        wallet_address: str,
        tracked_wallets: frozenset[str] = frozenset(),
    ) -> list[RawClassifiedEvent]:
        for classifier in self._classifiers:
            if classifier.supports(raw.network_id):
                return classifier.classify(raw, wallet_address, tracked_wallets)
        logger.debug("No classifier for %s; skipping %s", raw.network_id.value, raw.tx_hash)
        return []


@dataclass
class _Leg:
    contract: str
    net_amount: int = 0
    first_log_index: int | None = None
    counterparty: str | None = None
    counterparty_amount: int = 0


class TransferClassifier:
    """Classifies ERC-20 transfers recorded by the EVM adapter.

    Transfers are netted per token for the wallet. A transaction with one
    net outflow and one net inflow in different tokens is a swap; any
    other leg is an external (or, between tracked wallets, internal)
    transfer.
    """

    def supports(self, network: NetworkId) -> bool:
        return not network.is_slot_based

    def classify(
        self,
        raw: RawTransactionDTO,
        wallet_address: str,
        tracked_wallets: frozenset[str],
    ) -> list[RawClassifiedEvent]:
        payload = raw.raw_data
        wallet = wallet_address.lower()
        legs = self._net_legs(payload.get("transfers") or [], wallet)
        if not legs:
            return []

        tokens: dict[str, Any] = payload.get("tokens") or {}
        inflows = [leg for leg in legs if leg.net_amount > 0]
        outflows = [leg for leg in legs if leg.net_amount < 0]
        is_swap = len(inflows) == 1 and len(outflows) == 1 and inflows[0].contract != outflows[0].contract

        events: list[RawClassifiedEvent] = []
        if is_swap:
            events.append(self._event(EconomicEventType.SWAP_BUY, wallet, inflows[0], tokens))
            events.append(self._event(EconomicEventType.SWAP_SELL, wallet, outflows[0], tokens))
        else:
            for leg in legs:
                internal = leg.counterparty is not None and leg.counterparty in tracked_wallets
                if leg.net_amount > 0:
                    event_type = (
                        EconomicEventType.INTERNAL_TRANSFER if internal else EconomicEventType.EXTERNAL_INBOUND
                    )
                else:
                    event_type = (
                        EconomicEventType.INTERNAL_TRANSFER if internal else EconomicEventType.EXTERNAL_TRANSFER_OUT
                    )
                events.append(self._event(event_type, wallet, leg, tokens))

        if str(payload.get("from") or "").lower() == wallet:
            events[0].gas_used = int(payload.get("gasUsed") or 0)
            events[0].gas_price_wei = int(payload.get("effectiveGasPrice") or 0)
        return events

    @staticmethod
    def _net_legs(transfers: Sequence[dict[str, Any]], wallet: str) -> list[_Leg]:
        legs: dict[str, _Leg] = {}
        for transfer in transfers:
            sender = str(transfer.get("from") or "").lower()
            recipient = str(transfer.get("to") or "").lower()
            if wallet not in (sender, recipient) or sender == recipient:
                continue
            contract = str(transfer["contract"]).lower()
            amount = int(transfer.get("amount") or 0)
            log_index = transfer.get("logIndex")
            leg = legs.setdefault(contract, _Leg(contract=contract))
            counterparty = recipient if sender == wallet else sender
            leg.net_amount += -amount if sender == wallet else amount
            if log_index is not None and (leg.first_log_index is None or int(log_index) < leg.first_log_index):
                leg.first_log_index = int(log_index)
            if amount >= leg.counterparty_amount:
                leg.counterparty = counterparty
                leg.counterparty_amount = amount
        return sorted(
            (leg for leg in legs.values() if leg.net_amount != 0),
            key=lambda leg: (leg.first_log_index is None, leg.first_log_index or 0),
        )

    @staticmethod
    def _event(
        event_type: EconomicEventType,
        wallet: str,
        leg: _Leg,
        tokens: dict[str, Any],
    ) -> RawClassifiedEvent:
        metadata = tokens.get(leg.contract) or {}
        decimals = int(metadata.get("decimals", 18))
        quantity = quantize(Decimal(leg.net_amount) / (Decimal(10) ** decimals))
        return RawClassifiedEvent(
            event_type=event_type,
            wallet_address=wallet,
            asset_contract=leg.contract,
            asset_symbol=str(metadata.get("symbol") or ""),
            quantity_delta=quantity,
            counterparty_address=leg.counterparty,
            log_index=leg.first_log_index,
        )


def gas_cost_usd(gas_used: int | None, gas_price_wei: int | None, native_price_usd: Decimal | None) -> Decimal:
    """Gas fee in USD; zero when any input is missing."""
    if not gas_used or not gas_price_wei or native_price_usd is None:
        return ZERO
    native = Decimal(gas_used) * Decimal(gas_price_wei) / WEI_PER_NATIVE
    return quantize(native * native_price_usd)


class EventNormalizer:
    """Converts classified legs into economic events with transaction context."""

    def normalize(
        self,
        raw: RawClassifiedEvent,
        tx_hash: str | None,
        network: NetworkId,
        block_timestamp: datetime | None,
        native_price_usd: Decimal | None,
    ) -> EconomicEventDTO:
        total_value = ZERO
        if raw.price_usd is not None:
            total_value = quantize(raw.price_usd * abs(raw.quantity_delta))
        return EconomicEventDTO(
            tx_hash=tx_hash,
            network_id=network,
            wallet_address=raw.wallet_address,
            block_timestamp=block_timestamp,
            log_index=raw.log_index,
            event_type=raw.event_type,
            asset_symbol=raw.asset_symbol,
            asset_contract=raw.asset_contract,
            quantity_delta=raw.quantity_delta,
            price_usd=raw.price_usd,
            price_source=PriceSource.UNKNOWN,
            total_value_usd=total_value,
            gas_cost_usd=gas_cost_usd(raw.gas_used, raw.gas_price_wei, native_price_usd),
            gas_included_in_basis=raw.event_type in _GAS_IN_BASIS_TYPES,
            flag_code=raw.flag_code,
            flag_resolved=False,
            counterparty_address=raw.counterparty_address,
            is_internal_transfer=raw.event_type is EconomicEventType.INTERNAL_TRANSFER,
            protocol_name=raw.protocol_name,
        )

    def normalize_all(
        self,
        raw_events: Iterable[RawClassifiedEvent],
        tx_hash: str | None,
        network: NetworkId,
        block_timestamp: datetime | None,
        native_price_usd: Decimal | None,
    ) -> list[EconomicEventDTO]:
        return [self.normalize(raw, tx_hash, network, block_timestamp, native_price_usd) for raw in raw_events]


def group_by_tx(events: Iterable[EconomicEventDTO]) -> dict[str | None, list[EconomicEventDTO]]:
    grouped: dict[str | None, list[EconomicEventDTO]] = defaultdict(list)
    for event in events:
        grouped[event.tx_hash].append(event)
    return grouped

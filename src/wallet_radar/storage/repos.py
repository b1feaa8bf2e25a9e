"""Repository pattern implementations for data access.

This module provides data access abstractions for raw transactions,
economic events, asset positions, cost-basis overrides, sync status and
backfill segments. Writes that must be idempotent use dialect-specific
``INSERT ... ON CONFLICT`` statements keyed by natural identity.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from wallet_radar.domain import (
    ZERO,
    ClassificationStatus,
    EconomicEventType,
    FlagCode,
    NetworkId,
    PriceSource,
    SegmentPhase,
    SegmentState,
    SyncState,
)
from wallet_radar.storage.models import (
    AssetPositionModel,
    BackfillSegmentModel,
    CostBasisOverrideModel,
    EconomicEventModel,
    RawTransactionModel,
    SyncStatusModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Replay order: oldest first, undated last on every dialect.
_EVENT_ORDER = (
    EconomicEventModel.block_timestamp.is_(None),
    EconomicEventModel.block_timestamp,
    EconomicEventModel.log_index.is_(None),
    EconomicEventModel.log_index,
    EconomicEventModel.id,
)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _insert(session: AsyncSession, model: type[Any]) -> Any:
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class RawTransactionDTO:
    """Data transfer object for raw transactions."""

    network_id: NetworkId
    wallet_address: str
    block_number: int
    raw_data: dict[str, Any]
    tx_hash: str | None = None
    classification_status: ClassificationStatus = ClassificationStatus.PENDING
    id: int | None = None

    @property
    def natural_key(self) -> str:
        if self.tx_hash:
            return f"{self.network_id.value}:{self.wallet_address}:{self.tx_hash}"
        return f"{self.network_id.value}:{self.wallet_address}:slot:{self.block_number}"

    @classmethod
    def from_model(cls, model: RawTransactionModel) -> RawTransactionDTO:
        return cls(
            id=model.id,
            tx_hash=model.tx_hash,
            network_id=NetworkId(model.network_id),
            wallet_address=model.wallet_address,
            block_number=model.block_number,
            raw_data=dict(model.raw_data),
            classification_status=ClassificationStatus(model.classification_status),
        )


@dataclass
class EconomicEventDTO:
    """Data transfer object for economic events."""

    network_id: NetworkId
    wallet_address: str
    event_type: EconomicEventType
    asset_contract: str
    quantity_delta: Decimal
    block_timestamp: datetime | None = None
    tx_hash: str | None = None
    log_index: int | None = None
    asset_symbol: str = ""
    price_usd: Decimal | None = None
    price_source: PriceSource = PriceSource.UNKNOWN
    total_value_usd: Decimal = ZERO
    gas_cost_usd: Decimal = ZERO
    gas_included_in_basis: bool = False
    realised_pnl_usd: Decimal | None = None
    avco_at_time_of_sale: Decimal | None = None
    flag_code: FlagCode | None = None
    flag_resolved: bool = False
    counterparty_address: str | None = None
    is_internal_transfer: bool = False
    protocol_name: str | None = None
    client_id: str | None = None
    id: int | None = None

    @property
    def is_manual(self) -> bool:
        return self.event_type is EconomicEventType.MANUAL_COMPENSATING

    @property
    def has_unresolved_flag(self) -> bool:
        return self.flag_code is not None and not self.flag_resolved

    @classmethod
    def from_model(cls, model: EconomicEventModel) -> EconomicEventDTO:
        return cls(
            id=model.id,
            tx_hash=model.tx_hash,
            network_id=NetworkId(model.network_id),
            wallet_address=model.wallet_address,
            block_timestamp=_as_utc(model.block_timestamp),
            log_index=model.log_index,
            event_type=EconomicEventType(model.event_type),
            asset_symbol=model.asset_symbol,
            asset_contract=model.asset_contract,
            quantity_delta=model.quantity_delta,
            price_usd=model.price_usd,
            price_source=PriceSource(model.price_source),
            total_value_usd=model.total_value_usd,
            gas_cost_usd=model.gas_cost_usd,
            gas_included_in_basis=model.gas_included_in_basis,
            realised_pnl_usd=model.realised_pnl_usd,
            avco_at_time_of_sale=model.avco_at_time_of_sale,
            flag_code=FlagCode(model.flag_code) if model.flag_code else None,
            flag_resolved=model.flag_resolved,
            counterparty_address=model.counterparty_address,
            is_internal_transfer=model.is_internal_transfer,
            protocol_name=model.protocol_name,
            client_id=model.client_id,
        )


@dataclass
class AssetPositionDTO:
    """Data transfer object for derived asset positions."""

    wallet_address: str
    network_id: NetworkId
    asset_contract: str
    quantity: Decimal
    avco_usd: Decimal
    total_cost_basis_usd: Decimal
    total_gas_paid_usd: Decimal
    total_realised_pnl_usd: Decimal
    asset_symbol: str = ""
    has_incomplete_history: bool = False
    has_unresolved_flags: bool = False
    unresolved_flag_count: int = 0
    last_event_timestamp: datetime | None = None
    last_calculated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_model(cls, model: AssetPositionModel) -> AssetPositionDTO:
        return cls(
            wallet_address=model.wallet_address,
            network_id=NetworkId(model.network_id),
            asset_contract=model.asset_contract,
            asset_symbol=model.asset_symbol,
            quantity=model.quantity,
            avco_usd=model.avco_usd,
            total_cost_basis_usd=model.total_cost_basis_usd,
            total_gas_paid_usd=model.total_gas_paid_usd,
            total_realised_pnl_usd=model.total_realised_pnl_usd,
            has_incomplete_history=model.has_incomplete_history,
            has_unresolved_flags=model.has_unresolved_flags,
            unresolved_flag_count=model.unresolved_flag_count,
            last_event_timestamp=_as_utc(model.last_event_timestamp),
            last_calculated_at=_as_utc(model.last_calculated_at) or datetime.now(UTC),
        )


@dataclass
class CostBasisOverrideDTO:
    """Data transfer object for cost-basis overrides."""

    economic_event_id: int
    price_usd: Decimal
    is_active: bool = True
    note: str | None = None
    created_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: CostBasisOverrideModel) -> CostBasisOverrideDTO:
        return cls(
            id=model.id,
            economic_event_id=model.economic_event_id,
            price_usd=model.price_usd,
            is_active=model.is_active,
            note=model.note,
            created_at=_as_utc(model.created_at),
        )


@dataclass
class SyncStatusDTO:
    """Data transfer object for per-(wallet, network) sync status."""

    wallet_address: str
    network_id: NetworkId
    status: SyncState = SyncState.PENDING
    progress_pct: int = 0
    last_block_synced: int | None = None
    retry_count: int = 0
    next_retry_after: datetime | None = None
    sync_banner_message: str | None = None
    raw_fetch_complete: bool = False
    classification_complete: bool = False
    backfill_complete: bool = False
    updated_at: datetime | None = None
    id: int | None = None

    @classmethod
    def from_model(cls, model: SyncStatusModel) -> SyncStatusDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            network_id=NetworkId(model.network_id),
            status=SyncState(model.status),
            progress_pct=model.progress_pct,
            last_block_synced=model.last_block_synced,
            retry_count=model.retry_count,
            next_retry_after=_as_utc(model.next_retry_after),
            sync_banner_message=model.sync_banner_message,
            raw_fetch_complete=model.raw_fetch_complete,
            classification_complete=model.classification_complete,
            backfill_complete=model.backfill_complete,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class BackfillSegmentDTO:
    """Data transfer object for backfill segments."""

    sync_status_id: int
    phase: SegmentPhase
    segment_index: int
    wallet_address: str
    network_id: NetworkId
    from_block: int
    to_block: int
    status: SegmentState = SegmentState.PENDING
    progress_pct: int = 0
    last_processed_block: int | None = None
    retry_count: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def key(self) -> str:
        return f"{self.sync_status_id}:{self.phase.value}:{self.segment_index}"

    @classmethod
    def from_model(cls, model: BackfillSegmentModel) -> BackfillSegmentDTO:
        return cls(
            id=model.id,
            sync_status_id=model.sync_status_id,
            phase=SegmentPhase(model.phase),
            segment_index=model.segment_index,
            wallet_address=model.wallet_address,
            network_id=NetworkId(model.network_id),
            from_block=model.from_block,
            to_block=model.to_block,
            status=SegmentState(model.status),
            progress_pct=model.progress_pct,
            last_processed_block=model.last_processed_block,
            retry_count=model.retry_count,
            error_message=model.error_message,
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
            updated_at=_as_utc(model.updated_at),
        )


# ============================================================================
# Repositories
# ============================================================================


class RawTransactionRepository:
    """Idempotent store for raw on-chain payloads."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: RawTransactionDTO) -> None:
        """Insert or replace by natural key; repeated calls leave one row."""
        now = datetime.now(UTC)
        values = {
            "natural_key": dto.natural_key,
            "tx_hash": dto.tx_hash,
            "network_id": dto.network_id.value,
            "wallet_address": dto.wallet_address,
            "block_number": dto.block_number,
            "classification_status": dto.classification_status.value,
            "raw_data": dto.raw_data,
        }
        stmt = _insert(self.session, RawTransactionModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["natural_key"],
            set_={
                "block_number": stmt.excluded.block_number,
                "classification_status": stmt.excluded.classification_status,
                "raw_data": stmt.excluded.raw_data,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def list_in_range(
        self,
        wallet_address: str,
        network_id: NetworkId,
        from_block: int,
        to_block: int,
    ) -> list[RawTransactionDTO]:
        """Raw transactions with block (or slot) number in ``[from_block, to_block]``."""
        result = await self.session.execute(
            select(RawTransactionModel)
            .where(
                RawTransactionModel.wallet_address == wallet_address,
                RawTransactionModel.network_id == network_id.value,
                RawTransactionModel.block_number >= from_block,
                RawTransactionModel.block_number <= to_block,
            )
            .order_by(RawTransactionModel.block_number, RawTransactionModel.id)
        )
        return [RawTransactionDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, wallet_address: str, network_id: NetworkId) -> int:
        result = await self.session.execute(
            select(RawTransactionModel.id).where(
                RawTransactionModel.wallet_address == wallet_address,
                RawTransactionModel.network_id == network_id.value,
            )
        )
        return len(result.scalars().all())

    async def set_classification_status(self, raw_id: int, status: ClassificationStatus) -> None:
        await self.session.execute(
            update(RawTransactionModel)
            .where(RawTransactionModel.id == raw_id)
            .values(classification_status=status.value, updated_at=datetime.now(UTC))
        )


class EconomicEventRepository:
    """Repository for economic events.

    On-chain events are unique per (tx_hash, network, wallet, asset);
    manual compensating events are unique per ``client_id``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _values(dto: EconomicEventDTO) -> dict[str, Any]:
        return {
            "tx_hash": dto.tx_hash,
            "network_id": dto.network_id.value,
            "wallet_address": dto.wallet_address,
            "block_timestamp": dto.block_timestamp,
            "log_index": dto.log_index,
            "event_type": dto.event_type.value,
            "asset_symbol": dto.asset_symbol,
            "asset_contract": dto.asset_contract,
            "quantity_delta": dto.quantity_delta,
            "price_usd": dto.price_usd,
            "price_source": dto.price_source.value,
            "total_value_usd": dto.total_value_usd,
            "gas_cost_usd": dto.gas_cost_usd,
            "gas_included_in_basis": dto.gas_included_in_basis,
            "realised_pnl_usd": dto.realised_pnl_usd,
            "avco_at_time_of_sale": dto.avco_at_time_of_sale,
            "flag_code": dto.flag_code.value if dto.flag_code else None,
            "flag_resolved": dto.flag_resolved,
            "counterparty_address": dto.counterparty_address,
            "is_internal_transfer": dto.is_internal_transfer,
            "protocol_name": dto.protocol_name,
            "client_id": dto.client_id,
        }

    async def upsert(self, dto: EconomicEventDTO) -> int:
        """Idempotently store an event and return its id.

        An on-chain event replaces every mutable field of an existing leg
        while keeping its id, so overrides stay attached. A manual event
        with a known ``client_id`` is returned as-is.
        """
        now = datetime.now(UTC)
        values = self._values(dto)

        if dto.tx_hash is None:
            if dto.client_id is not None:
                result = await self.session.execute(
                    select(EconomicEventModel.id).where(EconomicEventModel.client_id == dto.client_id)
                )
                existing = result.scalar_one_or_none()
                if existing is not None:
                    return existing
            model = EconomicEventModel(**values, created_at=now, updated_at=now)
            self.session.add(model)
            await self.session.flush()
            return model.id

        stmt = _insert(self.session, EconomicEventModel).values(**values, created_at=now, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tx_hash", "network_id", "wallet_address", "asset_contract"],
            set_={
                "block_timestamp": stmt.excluded.block_timestamp,
                "log_index": stmt.excluded.log_index,
                "event_type": stmt.excluded.event_type,
                "asset_symbol": stmt.excluded.asset_symbol,
                "quantity_delta": stmt.excluded.quantity_delta,
                "price_usd": stmt.excluded.price_usd,
                "price_source": stmt.excluded.price_source,
                "total_value_usd": stmt.excluded.total_value_usd,
                "gas_cost_usd": stmt.excluded.gas_cost_usd,
                "gas_included_in_basis": stmt.excluded.gas_included_in_basis,
                "realised_pnl_usd": stmt.excluded.realised_pnl_usd,
                "avco_at_time_of_sale": stmt.excluded.avco_at_time_of_sale,
                "flag_code": stmt.excluded.flag_code,
                "flag_resolved": stmt.excluded.flag_resolved,
                "counterparty_address": stmt.excluded.counterparty_address,
                "is_internal_transfer": stmt.excluded.is_internal_transfer,
                "protocol_name": stmt.excluded.protocol_name,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(EconomicEventModel.id)
        result = await self.session.execute(stmt)
        event_id: int = result.scalar_one()
        await self.session.flush()
        return event_id

    async def get(self, event_id: int) -> EconomicEventDTO | None:
        model = await self.session.get(EconomicEventModel, event_id)
        return EconomicEventDTO.from_model(model) if model else None

    async def list_for_asset(
        self,
        wallet_address: str,
        network_id: NetworkId,
        asset_contract: str,
    ) -> list[EconomicEventDTO]:
        """Events of one (wallet, network, asset), oldest first, undated last."""
        result = await self.session.execute(
            select(EconomicEventModel)
            .where(
                EconomicEventModel.wallet_address == wallet_address,
                EconomicEventModel.network_id == network_id.value,
                EconomicEventModel.asset_contract == asset_contract,
            )
            .order_by(*_EVENT_ORDER)
        )
        return [EconomicEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_wallets_and_symbol(
        self,
        wallet_addresses: Sequence[str],
        asset_symbol: str,
    ) -> list[EconomicEventDTO]:
        """Events of one symbol across wallets, in the same order as :meth:`list_for_asset`."""
        if not wallet_addresses:
            return []
        result = await self.session.execute(
            select(EconomicEventModel)
            .where(
                EconomicEventModel.wallet_address.in_(list(wallet_addresses)),
                EconomicEventModel.asset_symbol == asset_symbol,
            )
            .order_by(*_EVENT_ORDER)
        )
        return [EconomicEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_asset_keys(self, wallet_address: str) -> list[tuple[NetworkId, str]]:
        """Distinct (network, asset_contract) pairs with at least one event."""
        result = await self.session.execute(
            select(EconomicEventModel.network_id, EconomicEventModel.asset_contract)
            .where(EconomicEventModel.wallet_address == wallet_address)
            .distinct()
            .order_by(EconomicEventModel.network_id, EconomicEventModel.asset_contract)
        )
        return [(NetworkId(network), asset) for network, asset in result.all()]

    async def list_by_flag(self, wallet_address: str, flag_code: FlagCode) -> list[EconomicEventDTO]:
        result = await self.session.execute(
            select(EconomicEventModel)
            .where(
                EconomicEventModel.wallet_address == wallet_address,
                EconomicEventModel.flag_code == flag_code.value,
            )
            .order_by(EconomicEventModel.id)
        )
        return [EconomicEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_external_inbound_from(self, counterparties: Iterable[str]) -> list[EconomicEventDTO]:
        """EXTERNAL_INBOUND events whose counterparty is one of ``counterparties``."""
        addresses = list(counterparties)
        if not addresses:
            return []
        result = await self.session.execute(
            select(EconomicEventModel)
            .where(
                EconomicEventModel.event_type == EconomicEventType.EXTERNAL_INBOUND.value,
                EconomicEventModel.counterparty_address.in_(addresses),
            )
            .order_by(EconomicEventModel.id)
        )
        return [EconomicEventDTO.from_model(m) for m in result.scalars().all()]

    async def set_price(
        self,
        event_id: int,
        *,
        price_usd: Decimal | None,
        price_source: PriceSource,
        total_value_usd: Decimal,
        flag_code: FlagCode | None,
        flag_resolved: bool,
    ) -> None:
        await self.session.execute(
            update(EconomicEventModel)
            .where(EconomicEventModel.id == event_id)
            .values(
                price_usd=price_usd,
                price_source=price_source.value,
                total_value_usd=total_value_usd,
                flag_code=flag_code.value if flag_code else None,
                flag_resolved=flag_resolved,
                updated_at=datetime.now(UTC),
            )
        )

    async def set_flag(self, event_id: int, flag_code: FlagCode | None, *, flag_resolved: bool) -> None:
        await self.session.execute(
            update(EconomicEventModel)
            .where(EconomicEventModel.id == event_id)
            .values(
                flag_code=flag_code.value if flag_code else None,
                flag_resolved=flag_resolved,
                updated_at=datetime.now(UTC),
            )
        )

    async def save_sale_results(self, events: Iterable[EconomicEventDTO]) -> int:
        """Persist realised P&L and AVCO-at-sale computed by a replay."""
        now = datetime.now(UTC)
        count = 0
        for event in events:
            if event.id is None:
                continue
            await self.session.execute(
                update(EconomicEventModel)
                .where(EconomicEventModel.id == event.id)
                .values(
                    realised_pnl_usd=event.realised_pnl_usd,
                    avco_at_time_of_sale=event.avco_at_time_of_sale,
                    updated_at=now,
                )
            )
            count += 1
        return count

    async def mark_internal_transfer(self, event_ids: Iterable[int]) -> None:
        ids = list(event_ids)
        if not ids:
            return
        await self.session.execute(
            update(EconomicEventModel)
            .where(EconomicEventModel.id.in_(ids))
            .values(
                event_type=EconomicEventType.INTERNAL_TRANSFER.value,
                is_internal_transfer=True,
                updated_at=datetime.now(UTC),
            )
        )


class AssetPositionRepository:
    """Repository for derived positions (last writer wins)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, dto: AssetPositionDTO) -> None:
        values = {
            "wallet_address": dto.wallet_address,
            "network_id": dto.network_id.value,
            "asset_contract": dto.asset_contract,
            "asset_symbol": dto.asset_symbol,
            "quantity": dto.quantity,
            "avco_usd": dto.avco_usd,
            "total_cost_basis_usd": dto.total_cost_basis_usd,
            "total_gas_paid_usd": dto.total_gas_paid_usd,
            "total_realised_pnl_usd": dto.total_realised_pnl_usd,
            "has_incomplete_history": dto.has_incomplete_history,
            "has_unresolved_flags": dto.has_unresolved_flags,
            "unresolved_flag_count": dto.unresolved_flag_count,
            "last_event_timestamp": dto.last_event_timestamp,
            "last_calculated_at": dto.last_calculated_at,
        }
        stmt = _insert(self.session, AssetPositionModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "network_id", "asset_contract"],
            set_={
                key: getattr(stmt.excluded, key)
                for key in values
                if key not in ("wallet_address", "network_id", "asset_contract")
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get(
        self,
        wallet_address: str,
        network_id: NetworkId,
        asset_contract: str,
    ) -> AssetPositionDTO | None:
        result = await self.session.execute(
            select(AssetPositionModel).where(
                AssetPositionModel.wallet_address == wallet_address,
                AssetPositionModel.network_id == network_id.value,
                AssetPositionModel.asset_contract == asset_contract,
            )
        )
        model = result.scalar_one_or_none()
        return AssetPositionDTO.from_model(model) if model else None

    async def list_for_wallet(self, wallet_address: str) -> list[AssetPositionDTO]:
        result = await self.session.execute(
            select(AssetPositionModel)
            .where(AssetPositionModel.wallet_address == wallet_address)
            .order_by(AssetPositionModel.network_id, AssetPositionModel.asset_contract)
        )
        return [AssetPositionDTO.from_model(m) for m in result.scalars().all()]

    async def delete(self, wallet_address: str, network_id: NetworkId, asset_contract: str) -> int:
        result = await self.session.execute(
            delete(AssetPositionModel).where(
                AssetPositionModel.wallet_address == wallet_address,
                AssetPositionModel.network_id == network_id.value,
                AssetPositionModel.asset_contract == asset_contract,
            )
        )
        return int(result.rowcount or 0)


class CostBasisOverrideRepository:
    """Repository for cost-basis overrides; at most one active row per event."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_active(self, economic_event_id: int) -> CostBasisOverrideDTO | None:
        result = await self.session.execute(
            select(CostBasisOverrideModel)
            .where(
                CostBasisOverrideModel.economic_event_id == economic_event_id,
                CostBasisOverrideModel.is_active.is_(True),
            )
            .order_by(CostBasisOverrideModel.id.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return CostBasisOverrideDTO.from_model(model) if model else None

    async def active_prices_for(self, event_ids: Iterable[int]) -> dict[int, Decimal]:
        """Map event id to active override price for the given events."""
        ids = list(event_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(CostBasisOverrideModel)
            .where(
                CostBasisOverrideModel.economic_event_id.in_(ids),
                CostBasisOverrideModel.is_active.is_(True),
            )
            .order_by(CostBasisOverrideModel.id)
        )
        prices: dict[int, Decimal] = {}
        for model in result.scalars().all():
            prices.setdefault(model.economic_event_id, model.price_usd)
        return prices

    async def list_for_event(self, economic_event_id: int) -> list[CostBasisOverrideDTO]:
        result = await self.session.execute(
            select(CostBasisOverrideModel)
            .where(CostBasisOverrideModel.economic_event_id == economic_event_id)
            .order_by(CostBasisOverrideModel.id)
        )
        return [CostBasisOverrideDTO.from_model(m) for m in result.scalars().all()]

    async def insert(self, dto: CostBasisOverrideDTO) -> CostBasisOverrideDTO:
        model = CostBasisOverrideModel(
            economic_event_id=dto.economic_event_id,
            price_usd=dto.price_usd,
            is_active=dto.is_active,
            note=dto.note,
            created_at=dto.created_at or datetime.now(UTC),
        )
        self.session.add(model)
        await self.session.flush()
        return CostBasisOverrideDTO.from_model(model)

    async def deactivate(self, economic_event_id: int) -> int:
        result = await self.session.execute(
            update(CostBasisOverrideModel)
            .where(
                CostBasisOverrideModel.economic_event_id == economic_event_id,
                CostBasisOverrideModel.is_active.is_(True),
            )
            .values(is_active=False)
        )
        return int(result.rowcount or 0)


class SyncStatusRepository:
    """Repository for per-(wallet, network) sync status rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str, network_id: NetworkId) -> SyncStatusDTO | None:
        result = await self.session.execute(
            select(SyncStatusModel).where(
                SyncStatusModel.wallet_address == wallet_address,
                SyncStatusModel.network_id == network_id.value,
            )
        )
        model = result.scalar_one_or_none()
        return SyncStatusDTO.from_model(model) if model else None

    async def ensure(self, wallet_address: str, network_id: NetworkId) -> SyncStatusDTO:
        """Return the row for (wallet, network), creating a PENDING one if missing."""
        now = datetime.now(UTC)
        stmt = _insert(self.session, SyncStatusModel).values(
            wallet_address=wallet_address,
            network_id=network_id.value,
            status=SyncState.PENDING.value,
            progress_pct=0,
            retry_count=0,
            raw_fetch_complete=False,
            classification_complete=False,
            backfill_complete=False,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address", "network_id"])
        await self.session.execute(stmt)
        await self.session.flush()
        dto = await self.get(wallet_address, network_id)
        if dto is None:
            raise RuntimeError(f"sync_status row missing after insert: {wallet_address}:{network_id.value}")
        return dto

    async def save(self, dto: SyncStatusDTO) -> None:
        if dto.id is None:
            raise ValueError("SyncStatusDTO.id is required for save")
        dto.updated_at = datetime.now(UTC)
        await self.session.execute(
            update(SyncStatusModel)
            .where(SyncStatusModel.id == dto.id)
            .values(
                status=dto.status.value,
                progress_pct=dto.progress_pct,
                last_block_synced=dto.last_block_synced,
                retry_count=dto.retry_count,
                next_retry_after=dto.next_retry_after,
                sync_banner_message=dto.sync_banner_message,
                raw_fetch_complete=dto.raw_fetch_complete,
                classification_complete=dto.classification_complete,
                backfill_complete=dto.backfill_complete,
                updated_at=dto.updated_at,
            )
        )

    async def list_by_status(self, states: Iterable[SyncState]) -> list[SyncStatusDTO]:
        values = [s.value for s in states]
        result = await self.session.execute(
            select(SyncStatusModel).where(SyncStatusModel.status.in_(values)).order_by(SyncStatusModel.id)
        )
        return [SyncStatusDTO.from_model(m) for m in result.scalars().all()]

    async def count_by_status(self, states: Iterable[SyncState]) -> int:
        return len(await self.list_by_status(states))

    async def list_wallets(self) -> set[str]:
        """Every wallet that has at least one sync row (the tracked set)."""
        result = await self.session.execute(select(SyncStatusModel.wallet_address).distinct())
        return set(result.scalars().all())


class BackfillSegmentRepository:
    """Repository for backfill segments."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_sync(self, sync_status_id: int, phase: SegmentPhase) -> list[BackfillSegmentDTO]:
        result = await self.session.execute(
            select(BackfillSegmentModel)
            .where(
                BackfillSegmentModel.sync_status_id == sync_status_id,
                BackfillSegmentModel.phase == phase.value,
            )
            .order_by(BackfillSegmentModel.segment_index)
        )
        return [BackfillSegmentDTO.from_model(m) for m in result.scalars().all()]

    async def replace_plan(self, segments: Sequence[BackfillSegmentDTO]) -> list[BackfillSegmentDTO]:
        """Drop the phase's existing segments and insert ``segments``."""
        if not segments:
            return []
        sync_status_id = segments[0].sync_status_id
        phase = segments[0].phase
        await self.session.execute(
            delete(BackfillSegmentModel).where(
                BackfillSegmentModel.sync_status_id == sync_status_id,
                BackfillSegmentModel.phase == phase.value,
            )
        )
        now = datetime.now(UTC)
        for seg in segments:
            self.session.add(
                BackfillSegmentModel(
                    sync_status_id=seg.sync_status_id,
                    phase=seg.phase.value,
                    segment_index=seg.segment_index,
                    wallet_address=seg.wallet_address,
                    network_id=seg.network_id.value,
                    from_block=seg.from_block,
                    to_block=seg.to_block,
                    status=seg.status.value,
                    progress_pct=seg.progress_pct,
                    last_processed_block=seg.last_processed_block,
                    retry_count=seg.retry_count,
                    updated_at=now,
                )
            )
        await self.session.flush()
        return await self.list_for_sync(sync_status_id, phase)

    async def delete_for_sync(self, sync_status_id: int) -> None:
        await self.session.execute(
            delete(BackfillSegmentModel).where(BackfillSegmentModel.sync_status_id == sync_status_id)
        )

    async def save(self, dto: BackfillSegmentDTO) -> None:
        if dto.id is None:
            raise ValueError("BackfillSegmentDTO.id is required for save")
        dto.updated_at = datetime.now(UTC)
        await self.session.execute(
            update(BackfillSegmentModel)
            .where(BackfillSegmentModel.id == dto.id)
            .values(
                status=dto.status.value,
                progress_pct=dto.progress_pct,
                last_processed_block=dto.last_processed_block,
                retry_count=dto.retry_count,
                error_message=dto.error_message,
                started_at=dto.started_at,
                completed_at=dto.completed_at,
                updated_at=dto.updated_at,
            )
        )

    async def reset_stale(self, sync_status_id: int, *, updated_before: datetime) -> int:
        """Return RUNNING segments untouched since ``updated_before`` to PENDING."""
        result = await self.session.execute(
            update(BackfillSegmentModel)
            .where(
                BackfillSegmentModel.sync_status_id == sync_status_id,
                BackfillSegmentModel.status == SegmentState.RUNNING.value,
                BackfillSegmentModel.updated_at < updated_before,
            )
            .values(status=SegmentState.PENDING.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

"""SQLAlchemy models for persistent storage.

This module defines the database schema for raw transactions, economic
events, derived asset positions, cost-basis overrides and backfill
progress (sync status and segments).
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# 38 digits total with 18 fractional digits covers token quantities and USD values.
_AMOUNT = Numeric(38, 18)


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class RawTransactionModel(Base):
    """Raw on-chain payload for one transaction touching a wallet."""

    __tablename__ = "raw_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # network:wallet:tx_hash, or network:wallet:slot:<n> for chains without a stable id.
    natural_key: Mapped[str] = mapped_column(String(200), nullable=False)

    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    classification_status: Mapped[str] = mapped_column(String(16), nullable=False)
    raw_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("natural_key", name="uq_raw_transactions_natural_key"),
        Index("idx_raw_transactions_wallet_network_block", "wallet_address", "network_id", "block_number"),
    )


class EconomicEventModel(Base):
    """One economically meaningful effect of a transaction on a wallet."""

    __tablename__ = "economic_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    log_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)

    asset_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    asset_contract: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity_delta: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    price_usd: Mapped[Decimal | None] = mapped_column(_AMOUNT, nullable=True)
    price_source: Mapped[str] = mapped_column(String(16), nullable=False)
    total_value_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    gas_cost_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    gas_included_in_basis: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    realised_pnl_usd: Mapped[Decimal | None] = mapped_column(_AMOUNT, nullable=True)
    avco_at_time_of_sale: Mapped[Decimal | None] = mapped_column(_AMOUNT, nullable=True)

    flag_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    flag_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    counterparty_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_internal_transfer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    protocol_name: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Idempotency key for manually entered compensating events (tx_hash is NULL).
    client_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint(
            "tx_hash",
            "network_id",
            "wallet_address",
            "asset_contract",
            name="uq_economic_events_tx_leg",
        ),
        UniqueConstraint("client_id", name="uq_economic_events_client_id"),
        Index("idx_economic_events_wallet_network_asset", "wallet_address", "network_id", "asset_contract"),
        Index("idx_economic_events_wallet_flag", "wallet_address", "flag_code"),
        Index("idx_economic_events_type_counterparty", "event_type", "counterparty_address"),
    )


class AssetPositionModel(Base):
    """Derived position for one (wallet, network, asset); rebuilt by replay."""

    __tablename__ = "asset_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    asset_contract: Mapped[str] = mapped_column(String(100), nullable=False)
    asset_symbol: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    quantity: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    avco_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    total_cost_basis_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    total_gas_paid_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    total_realised_pnl_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)

    has_incomplete_history: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_unresolved_flags: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unresolved_flag_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_event_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("wallet_address", "network_id", "asset_contract", name="uq_asset_positions_key"),
    )


class CostBasisOverrideModel(Base):
    """User-supplied price correction for one on-chain event."""

    __tablename__ = "cost_basis_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    economic_event_id: Mapped[int] = mapped_column(Integer, nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(_AMOUNT, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (Index("idx_cost_basis_overrides_event_active", "economic_event_id", "is_active"),)


class SyncStatusModel(Base):
    """Backfill state of one (wallet, network)."""

    __tablename__ = "sync_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    progress_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_block_synced: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sync_banner_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_fetch_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    classification_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backfill_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("wallet_address", "network_id", name="uq_sync_status_wallet_network"),
        Index("idx_sync_status_status", "status"),
    )


class BackfillSegmentModel(Base):
    """One contiguous block sub-range of a backfill phase."""

    __tablename__ = "backfill_segments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    sync_status_id: Mapped[int] = mapped_column(Integer, nullable=False)
    phase: Mapped[str] = mapped_column(String(16), nullable=False)
    segment_index: Mapped[int] = mapped_column(Integer, nullable=False)

    wallet_address: Mapped[str] = mapped_column(String(64), nullable=False)
    network_id: Mapped[str] = mapped_column(String(20), nullable=False)
    from_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)
    progress_pct: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processed_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("sync_status_id", "phase", "segment_index", name="uq_backfill_segments_key"),
        Index("idx_backfill_segments_sync_status", "sync_status_id", "status"),
    )

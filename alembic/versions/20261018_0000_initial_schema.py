"""Initial schema for wallet backfill and cost basis.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(38, 18)


def upgrade() -> None:
    # Raw transactions table
    op.create_table(
        "raw_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("natural_key", sa.String(200), nullable=False),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("network_id", sa.String(20), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("classification_status", sa.String(16), nullable=False),
        sa.Column("raw_data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("natural_key", name="uq_raw_transactions_natural_key"),
    )
    op.create_index(
        "idx_raw_transactions_wallet_network_block",
        "raw_transactions",
        ["wallet_address", "network_id", "block_number"],
    )

    # Economic events table
    op.create_table(
        "economic_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("network_id", sa.String(20), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("log_index", sa.Integer(), nullable=True),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("asset_symbol", sa.String(64), nullable=False),
        sa.Column("asset_contract", sa.String(100), nullable=False),
        sa.Column("quantity_delta", AMOUNT, nullable=False),
        sa.Column("price_usd", AMOUNT, nullable=True),
        sa.Column("price_source", sa.String(16), nullable=False),
        sa.Column("total_value_usd", AMOUNT, nullable=False),
        sa.Column("gas_cost_usd", AMOUNT, nullable=False),
        sa.Column("gas_included_in_basis", sa.Boolean(), nullable=False),
        sa.Column("realised_pnl_usd", AMOUNT, nullable=True),
        sa.Column("avco_at_time_of_sale", AMOUNT, nullable=True),
        sa.Column("flag_code", sa.String(32), nullable=True),
        sa.Column("flag_resolved", sa.Boolean(), nullable=False),
        sa.Column("counterparty_address", sa.String(64), nullable=True),
        sa.Column("is_internal_transfer", sa.Boolean(), nullable=False),
        sa.Column("protocol_name", sa.String(64), nullable=True),
        sa.Column("client_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tx_hash",
            "network_id",
            "wallet_address",
            "asset_contract",
            name="uq_economic_events_tx_leg",
        ),
        sa.UniqueConstraint("client_id", name="uq_economic_events_client_id"),
    )
    op.create_index(
        "idx_economic_events_wallet_network_asset",
        "economic_events",
        ["wallet_address", "network_id", "asset_contract"],
    )
    op.create_index("idx_economic_events_wallet_flag", "economic_events", ["wallet_address", "flag_code"])
    op.create_index(
        "idx_economic_events_type_counterparty",
        "economic_events",
        ["event_type", "counterparty_address"],
    )

    # Asset positions table
    op.create_table(
        "asset_positions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("network_id", sa.String(20), nullable=False),
        sa.Column("asset_contract", sa.String(100), nullable=False),
        sa.Column("asset_symbol", sa.String(64), nullable=False),
        sa.Column("quantity", AMOUNT, nullable=False),
        sa.Column("avco_usd", AMOUNT, nullable=False),
        sa.Column("total_cost_basis_usd", AMOUNT, nullable=False),
        sa.Column("total_gas_paid_usd", AMOUNT, nullable=False),
        sa.Column("total_realised_pnl_usd", AMOUNT, nullable=False),
        sa.Column("has_incomplete_history", sa.Boolean(), nullable=False),
        sa.Column("has_unresolved_flags", sa.Boolean(), nullable=False),
        sa.Column("unresolved_flag_count", sa.Integer(), nullable=False),
        sa.Column("last_event_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address", "network_id", "asset_contract", name="uq_asset_positions_key"),
    )

    # Cost basis overrides table
    op.create_table(
        "cost_basis_overrides",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("economic_event_id", sa.Integer(), nullable=False),
        sa.Column("price_usd", AMOUNT, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_cost_basis_overrides_event_active",
        "cost_basis_overrides",
        ["economic_event_id", "is_active"],
    )

    # Sync status table
    op.create_table(
        "sync_status",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("network_id", sa.String(20), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("progress_pct", sa.Integer(), nullable=False),
        sa.Column("last_block_synced", sa.BigInteger(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("next_retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_banner_message", sa.Text(), nullable=True),
        sa.Column("raw_fetch_complete", sa.Boolean(), nullable=False),
        sa.Column("classification_complete", sa.Boolean(), nullable=False),
        sa.Column("backfill_complete", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address", "network_id", name="uq_sync_status_wallet_network"),
    )
    op.create_index("idx_sync_status_status", "sync_status", ["status"])

    # Backfill segments table
    op.create_table(
        "backfill_segments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("sync_status_id", sa.Integer(), nullable=False),
        sa.Column("phase", sa.String(16), nullable=False),
        sa.Column("segment_index", sa.Integer(), nullable=False),
        sa.Column("wallet_address", sa.String(64), nullable=False),
        sa.Column("network_id", sa.String(20), nullable=False),
        sa.Column("from_block", sa.BigInteger(), nullable=False),
        sa.Column("to_block", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("progress_pct", sa.Integer(), nullable=False),
        sa.Column("last_processed_block", sa.BigInteger(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sync_status_id", "phase", "segment_index", name="uq_backfill_segments_key"),
    )
    op.create_index("idx_backfill_segments_sync_status", "backfill_segments", ["sync_status_id", "status"])


def downgrade() -> None:
    op.drop_index("idx_backfill_segments_sync_status", table_name="backfill_segments")
    op.drop_table("backfill_segments")

    op.drop_index("idx_sync_status_status", table_name="sync_status")
    op.drop_table("sync_status")

    op.drop_index("idx_cost_basis_overrides_event_active", table_name="cost_basis_overrides")
    op.drop_table("cost_basis_overrides")

    op.drop_table("asset_positions")

    op.drop_index("idx_economic_events_type_counterparty", table_name="economic_events")
    op.drop_index("idx_economic_events_wallet_flag", table_name="economic_events")
    op.drop_index("idx_economic_events_wallet_network_asset", table_name="economic_events")
    op.drop_table("economic_events")

    op.drop_index("idx_raw_transactions_wallet_network_block", table_name="raw_transactions")
    op.drop_table("raw_transactions")

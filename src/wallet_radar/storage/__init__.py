"""Storage layer - Database schemas and repositories."""

from wallet_radar.storage.database import (
    DatabaseManager,
    SessionScope,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    session_scope_for,
)
from wallet_radar.storage.models import (
    AssetPositionModel,
    BackfillSegmentModel,
    Base,
    CostBasisOverrideModel,
    EconomicEventModel,
    RawTransactionModel,
    SyncStatusModel,
)
from wallet_radar.storage.repos import (
    AssetPositionDTO,
    AssetPositionRepository,
    BackfillSegmentDTO,
    BackfillSegmentRepository,
    CostBasisOverrideDTO,
    CostBasisOverrideRepository,
    EconomicEventDTO,
    EconomicEventRepository,
    RawTransactionDTO,
    RawTransactionRepository,
    SyncStatusDTO,
    SyncStatusRepository,
)

__all__ = [
    "AssetPositionDTO",
    "AssetPositionModel",
    "AssetPositionRepository",
    "BackfillSegmentDTO",
    "BackfillSegmentModel",
    "BackfillSegmentRepository",
    "Base",
    "CostBasisOverrideDTO",
    "CostBasisOverrideModel",
    "CostBasisOverrideRepository",
    "DatabaseManager",
    "EconomicEventDTO",
    "EconomicEventModel",
    "EconomicEventRepository",
    "RawTransactionDTO",
    "RawTransactionModel",
    "RawTransactionRepository",
    "SessionScope",
    "SyncStatusDTO",
    "SyncStatusModel",
    "SyncStatusRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "session_scope_for",
]

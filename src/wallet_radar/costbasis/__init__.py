"""Cost basis layer - AVCO replay, cross-wallet view and overrides."""

from wallet_radar.costbasis.avco import AvcoEngine, FoldResult, fold_events
from wallet_radar.costbasis.cross_wallet import CrossWalletAvcoResult, CrossWalletAvcoService
from wallet_radar.costbasis.overrides import OverrideError, OverrideService

__all__ = [
    "AvcoEngine",
    "CrossWalletAvcoResult",
    "CrossWalletAvcoService",
    "FoldResult",
    "OverrideError",
    "OverrideService",
    "fold_events",
]

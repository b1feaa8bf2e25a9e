"""Wallet Radar - per-wallet cost basis and P&L tracking from on-chain history."""

__version__ = "0.1.0"

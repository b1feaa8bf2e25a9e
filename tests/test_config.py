"""Tests for settings parsing and validation."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from wallet_radar.config import (
    BackfillSettings,
    DatabaseSettings,
    PricingSettings,
    RedisSettings,
    RpcSettings,
    Settings,
)
from wallet_radar.domain import NetworkId


class TestRpcSettings:
    def test_parses_endpoint_lists_per_network(self) -> None:
        settings = RpcSettings(RPC_ENDPOINTS="ETHEREUM=https://a, https://b;base=https://c")

        assert settings.endpoints == {
            NetworkId.ETHEREUM: ("https://a", "https://b"),
            NetworkId.BASE: ("https://c",),
        }

    def test_rejects_unknown_network(self) -> None:
        with pytest.raises(ValidationError):
            RpcSettings(RPC_ENDPOINTS="DOGECHAIN=https://a")

    def test_rejects_non_http_endpoint(self) -> None:
        with pytest.raises(ValidationError):
            RpcSettings(RPC_ENDPOINTS="ETHEREUM=wss://a")

    def test_rejects_entry_without_equals(self) -> None:
        with pytest.raises(ValidationError):
            RpcSettings(RPC_ENDPOINTS="https://a")


class TestBackfillSettings:
    def test_network_overrides_fall_back_to_globals(self) -> None:
        settings = BackfillSettings(
            BACKFILL_WINDOW_BLOCKS=1000,
            BACKFILL_NETWORK_WINDOW_BLOCKS="ARBITRUM=5000",
            BACKFILL_NETWORK_BATCH_SIZE="BSC=200",
        )

        assert settings.window_blocks_for(NetworkId.ARBITRUM) == 5000
        assert settings.window_blocks_for(NetworkId.ETHEREUM) == 1000
        assert settings.batch_size_for(NetworkId.BSC) == 200
        assert settings.batch_size_for(NetworkId.ETHEREUM) is None

    def test_rejects_non_positive_override(self) -> None:
        with pytest.raises(ValidationError):
            BackfillSettings(BACKFILL_NETWORK_BATCH_SIZE="BSC=0")

    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ValidationError):
            BackfillSettings(BACKFILL_WORKER_COUNT=0)


class TestPricingSettings:
    def test_stablecoins_are_lower_cased(self) -> None:
        settings = PricingSettings(PRICING_STABLECOINS="0xABC, 0xDef")
        assert settings.stablecoins == frozenset({"0xabc", "0xdef"})

    def test_native_contracts(self) -> None:
        settings = PricingSettings(PRICING_NATIVE_CONTRACTS="ETHEREUM=0xC02A")
        assert settings.native_contracts == {NetworkId.ETHEREUM: "0xc02a"}


class TestSettings:
    def test_database_url_must_be_postgres_or_sqlite(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseSettings(DATABASE_URL="mysql://localhost/db")

    def test_redis_url_scheme(self) -> None:
        with pytest.raises(ValidationError):
            RedisSettings(REDIS_URL="http://localhost:6379")

    def test_redacted_summary_hides_secrets(self) -> None:
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL="postgresql+asyncpg://radar:hunter2@db:5432/radar"),
            redis=RedisSettings(REDIS_URL=None),
            rpc=RpcSettings(RPC_ENDPOINTS="ETHEREUM=https://eth.example.com/v2/secret-key"),
        )

        summary = settings.redacted_summary()

        assert summary["database_url"] == "postgresql+asyncpg://radar:***@db:5432/radar"
        assert summary["redis_url"] == "(not set)"
        assert summary["rpc"] == {"ETHEREUM": "https://eth.example.com"}
        assert "secret-key" not in str(summary)

    def test_logging_level(self) -> None:
        settings = Settings(
            database=DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///radar.db"),
            LOG_LEVEL="DEBUG",
        )
        assert settings.get_logging_level() == logging.DEBUG

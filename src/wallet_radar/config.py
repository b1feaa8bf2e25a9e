"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Wallet Radar service, loading and validating environment variables
at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wallet_radar.domain import NetworkId

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


def _parse_network_map(raw: str) -> dict[NetworkId, str]:
    """Parse ``NETWORK=value;NETWORK=value`` into a mapping.

    Raises:
        ValueError: On a malformed entry or an unknown network name.
    """
    result: dict[NetworkId, str] = {}
    for entry in raw.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ValueError(f"Expected NETWORK=value, got {entry!r}")
        name, value = entry.split("=", 1)
        try:
            network = NetworkId(name.strip().upper())
        except ValueError as e:
            raise ValueError(f"Unknown network {name.strip()!r}") from e
        result[network] = value.strip()
    return result


def _parse_int_map(raw: str) -> dict[NetworkId, int]:
    parsed = _parse_network_map(raw)
    result: dict[NetworkId, int] = {}
    for network, value in parsed.items():
        number = int(value)
        if number <= 0:
            raise ValueError(f"Value for {network.value} must be positive")
        result[network] = number
    return result


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL connection string (SQLite accepted for local runs)",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string")
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; caching is disabled when unset",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is not None and not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class RpcSettings(BaseSettings):
    """RPC endpoint lists and endpoint health settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    endpoints_raw: str = Field(
        default="",
        alias="RPC_ENDPOINTS",
        description="Per-network endpoint lists, e.g. ETHEREUM=https://a,https://b;BASE=https://c",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Local token-bucket limit shared by all endpoints of one network",
    )
    endpoint_cooldown_seconds: float = Field(
        default=60.0,
        alias="RPC_ENDPOINT_COOLDOWN_SECONDS",
        ge=1.0,
        le=3600.0,
        description="How long a rate-limited endpoint is skipped",
    )
    transient_cooldown_seconds: float = Field(
        default=15.0,
        alias="RPC_TRANSIENT_COOLDOWN_SECONDS",
        ge=1.0,
        le=3600.0,
        description="How long an endpoint failing with transient upstream errors is skipped",
    )
    min_bisect_blocks: int = Field(
        default=50,
        alias="RPC_MIN_BISECT_BLOCKS",
        ge=1,
        le=100_000,
        description="Smallest block range the adapter will still split on range-too-wide errors",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="RPC_REQUEST_TIMEOUT_SECONDS",
        gt=0.0,
        le=600.0,
        description="HTTP timeout for a single RPC request",
    )

    @field_validator("endpoints_raw")
    @classmethod
    def validate_endpoints(cls, v: str) -> str:
        """Validate endpoint map format and URL schemes."""
        for network, urls in _parse_network_map(v).items():
            parts = _split_csv(urls)
            if not parts:
                raise ValueError(f"RPC_ENDPOINTS for {network.value} is empty")
            for url in parts:
                if not url.startswith(("http://", "https://")):
                    raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @property
    def endpoints(self) -> dict[NetworkId, tuple[str, ...]]:
        """Endpoint lists keyed by network."""
        return {network: _split_csv(urls) for network, urls in _parse_network_map(self.endpoints_raw).items()}


class RetrySettings(BaseSettings):
    """RPC retry policy (exponential backoff with jitter)."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", extra="ignore")

    base_delay_ms: int = Field(
        default=1000,
        alias="RETRY_BASE_DELAY_MS",
        ge=0,
        le=600_000,
        description="Delay before the first retry; doubles every attempt",
    )
    jitter_factor: float = Field(
        default=0.2,
        alias="RETRY_JITTER_FACTOR",
        ge=0.0,
        le=1.0,
        description="Relative jitter applied to every delay (0.2 = +/-20%)",
    )
    max_attempts: int = Field(
        default=5,
        alias="RETRY_MAX_ATTEMPTS",
        ge=1,
        le=50,
        description="Attempts per RPC call before giving up",
    )


class BackfillSettings(BaseSettings):
    """Backfill job settings."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_", extra="ignore")

    window_blocks: int = Field(
        default=2_628_000,
        alias="BACKFILL_WINDOW_BLOCKS",
        ge=1,
        description="Blocks to backfill back from the current height (~1 year on Ethereum)",
    )
    worker_count: int = Field(
        default=4,
        alias="BACKFILL_WORKER_COUNT",
        ge=1,
        le=64,
        description="Worker tasks draining the backfill queue",
    )
    max_retries: int = Field(
        default=5,
        alias="BACKFILL_MAX_RETRIES",
        ge=0,
        le=100,
        description="Failed attempts before a sync is abandoned",
    )
    retry_base_delay_minutes: int = Field(
        default=2,
        alias="BACKFILL_RETRY_BASE_DELAY_MINUTES",
        ge=0,
        le=24 * 60,
        description="Base delay of the scheduled retry backoff",
    )
    retry_max_delay_minutes: int = Field(
        default=60,
        alias="BACKFILL_RETRY_MAX_DELAY_MINUTES",
        ge=0,
        le=7 * 24 * 60,
        description="Ceiling of the scheduled retry backoff",
    )
    retry_interval_seconds: float = Field(
        default=120.0,
        alias="BACKFILL_RETRY_INTERVAL_SECONDS",
        gt=0.0,
        description="How often the retry scheduler looks for failed syncs",
    )
    reclassify_interval_seconds: float = Field(
        default=300.0,
        alias="BACKFILL_RECLASSIFY_INTERVAL_SECONDS",
        gt=0.0,
        description="How often the idle reclassification pass runs",
    )
    parallel_segments: int = Field(
        default=4,
        alias="BACKFILL_PARALLEL_SEGMENTS",
        ge=1,
        le=365,
        description="Segments the block range is split into per phase",
    )
    parallel_segment_workers: int = Field(
        default=4,
        alias="BACKFILL_PARALLEL_SEGMENT_WORKERS",
        ge=1,
        le=64,
        description="Segments processed concurrently per (wallet, network)",
    )
    parallel_threshold_blocks: int = Field(
        default=10_000,
        alias="BACKFILL_PARALLEL_THRESHOLD_BLOCKS",
        ge=1,
        description="Ranges shorter than this run as a single segment",
    )
    segment_stale_after_seconds: float = Field(
        default=180.0,
        alias="BACKFILL_SEGMENT_STALE_AFTER_SECONDS",
        gt=0.0,
        description="RUNNING segments without updates for this long are reset to PENDING",
    )
    fallback_block_time_seconds: float = Field(
        default=12.0,
        alias="BACKFILL_FALLBACK_BLOCK_TIME_SECONDS",
        gt=0.0,
        description="Average block time used when the range is a single block",
    )
    network_window_blocks_raw: str = Field(
        default="",
        alias="BACKFILL_NETWORK_WINDOW_BLOCKS",
        description="Per-network window overrides, e.g. ARBITRUM=126000000;BASE=15768000",
    )
    network_batch_size_raw: str = Field(
        default="",
        alias="BACKFILL_NETWORK_BATCH_SIZE",
        description="Per-network fetch batch size overrides, e.g. BSC=1000",
    )

    @field_validator("network_window_blocks_raw", "network_batch_size_raw")
    @classmethod
    def validate_network_ints(cls, v: str) -> str:
        """Validate per-network integer overrides."""
        _parse_int_map(v)
        return v

    def window_blocks_for(self, network: NetworkId) -> int:
        """Backfill window for ``network``, falling back to the global window."""
        return _parse_int_map(self.network_window_blocks_raw).get(network, self.window_blocks)

    def batch_size_for(self, network: NetworkId) -> int | None:
        """Configured batch size for ``network``; ``None`` defers to the adapter."""
        return _parse_int_map(self.network_batch_size_raw).get(network)


class PricingSettings(BaseSettings):
    """Inline price resolution settings."""

    model_config = SettingsConfigDict(env_prefix="PRICING_", extra="ignore")

    stablecoins_raw: str = Field(
        default=(
            "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48,"  # USDC (Ethereum)
            "0xdac17f958d2ee523a2206206994597c13d831ec7,"  # USDT (Ethereum)
            "0x6b175474e89094c44da98b954eedeac495271d0f,"  # DAI (Ethereum)
            "0xaf88d065e77c8cc2239327c5edb3a432268e5831,"  # USDC (Arbitrum)
            "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913,"  # USDC (Base)
            "0x3c499c542cef5e3811e1192ce70d8cc03d5c3359"  # USDC (Polygon)
        ),
        alias="PRICING_STABLECOINS",
        description="Stablecoin contract addresses priced at 1 USD (comma-separated)",
    )
    native_contracts_raw: str = Field(
        default="",
        alias="PRICING_NATIVE_CONTRACTS",
        description="Per-network contract used to price the native gas token, e.g. ETHEREUM=0xc02a...",
    )

    @field_validator("native_contracts_raw")
    @classmethod
    def validate_native_contracts(cls, v: str) -> str:
        """Validate the native contract map."""
        _parse_network_map(v)
        return v

    @property
    def stablecoins(self) -> frozenset[str]:
        """Lower-cased stablecoin contracts."""
        return frozenset(c.lower() for c in _split_csv(self.stablecoins_raw))

    @property
    def native_contracts(self) -> dict[NetworkId, str]:
        """Native-token pricing contract per network."""
        return {n: c.lower() for n, c in _parse_network_map(self.native_contracts_raw).items()}


class CostBasisSettings(BaseSettings):
    """AVCO view settings."""

    model_config = SettingsConfigDict(env_prefix="COST_BASIS_", extra="ignore")

    cross_wallet_cache_ttl_seconds: int = Field(
        default=300,
        alias="COST_BASIS_CROSS_WALLET_CACHE_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="TTL of cached cross-wallet AVCO results",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from wallet_radar.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.backfill.window_blocks)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Each nested BaseSettings needs the env file passed explicitly to read `.env`.
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    backfill: BackfillSettings = Field(
        default_factory=lambda: BackfillSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    pricing: PricingSettings = Field(
        default_factory=lambda: PricingSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cost_basis: CostBasisSettings = Field(
        default_factory=lambda: CostBasisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        RPC URLs frequently embed provider API keys in their path, so only
        the host part of each endpoint is reported.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "rpc": {
                network.value: ",".join(self._endpoint_host(u) for u in urls)
                for network, urls in self.rpc.endpoints.items()
            },
            "backfill": {
                "window_blocks": str(self.backfill.window_blocks),
                "worker_count": str(self.backfill.worker_count),
                "parallel_segments": str(self.backfill.parallel_segments),
                "max_retries": str(self.backfill.max_retries),
            },
            "retry": {
                "base_delay_ms": str(self.retry.base_delay_ms),
                "jitter_factor": str(self.retry.jitter_factor),
                "max_attempts": str(self.retry.max_attempts),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url

    @staticmethod
    def _endpoint_host(url: str) -> str:
        if "://" not in url:
            return url
        protocol_end = url.index("://") + 3
        rest = url[protocol_end:]
        host = rest.split("/", 1)[0].split("@")[-1]
        return f"{url[:protocol_end]}{host}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()

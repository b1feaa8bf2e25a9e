"""EVM JSON-RPC client with endpoint rotation, retry and caching.

This module provides an RPC client for backfill queries with:
- Round-robin rotation across every configured endpoint of a network
- Cooldown of endpoints that rate-limit or fail transiently
- Exponential backoff with jitter, cancellable on shutdown
- Token-bucket rate limiting to respect provider limits
- Redis caching of immutable block timestamps and token metadata
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from aiohttp import ClientTimeout
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from wallet_radar.domain import NetworkId
from wallet_radar.ingestion.retry import (
    BlockRangeTooWideError,
    EndpointRotator,
    RetryError,
    RetryPolicy,
    RpcError,
    RpcShutdownError,
    is_range_too_wide,
    is_rate_limited,
    is_transient,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS = 60.0
DEFAULT_TRANSIENT_COOLDOWN_SECONDS = 15.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

# Block timestamps and token metadata never change.
IMMUTABLE_CACHE_TTL_SECONDS = 7 * 24 * 3600

_ERC20_METADATA_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

# Errors that a different endpoint or a later attempt cannot fix.
_NON_RETRYABLE = (ContractLogicError, BadFunctionCallOutput)


def _json_default(value: object) -> object:
    """Serialize Web3 RPC objects that stdlib json can't encode."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    hex_method = getattr(value, "hex", None)
    if callable(hex_method):
        hex_value = hex_method()
        if isinstance(hex_value, str):
            return hex_value if hex_value.startswith("0x") else "0x" + hex_value
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_plain(value: Any) -> Any:
    """Convert a web3 AttributeDict/HexBytes structure into JSON-safe primitives."""
    return json.loads(json.dumps(value, default=_json_default))


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class TokenMetadata:
    """ERC-20 symbol and decimals."""

    symbol: str
    decimals: int


class EvmRpcClient:
    """JSON-RPC client for one EVM network.

    Every call picks an endpoint from the rotator, skipping endpoints in
    cooldown. A failed attempt cools its endpoint down when the failure is
    a rate limit or a transient upstream error, then the next attempt runs
    on the next available endpoint after a jittered backoff.

    Example:
        ```python
        client = EvmRpcClient(
            NetworkId.ETHEREUM,
            ["https://eth.llamarpc.com", "https://rpc.ankr.com/eth"],
            redis=Redis.from_url("redis://localhost:6379"),
        )
        height = await client.get_block_number()
        ts = await client.get_block_timestamp(height)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        network: NetworkId,
        endpoints: Sequence[str],
        *,
        policy: RetryPolicy | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        rate_limit_cooldown_seconds: float = DEFAULT_RATE_LIMIT_COOLDOWN_SECONDS,
        transient_cooldown_seconds: float = DEFAULT_TRANSIENT_COOLDOWN_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        stop_event: asyncio.Event | None = None,
        web3_factory: Callable[[str], AsyncWeb3[Any]] | None = None,
    ) -> None:
        """Initialize the RPC client.

        Args:
            network: Network served by every endpoint.
            endpoints: RPC URLs, rotated round-robin.
            policy: Retry policy; defaults to 1s base, 20% jitter, 5 attempts.
            redis: Optional Redis client for caching.
            max_requests_per_second: Local rate limit across all endpoints.
            rate_limit_cooldown_seconds: Skip window for rate-limited endpoints.
            transient_cooldown_seconds: Skip window after transient failures.
            request_timeout_seconds: HTTP timeout of one request.
            stop_event: Event that aborts pending backoff sleeps when set.
            web3_factory: Builds the web3 client for an endpoint URL.
        """
        self.network = network
        self._rotator = EndpointRotator(endpoints, policy or RetryPolicy.default())
        self._redis = redis
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._rate_limit_cooldown = rate_limit_cooldown_seconds
        self._transient_cooldown = transient_cooldown_seconds
        self._timeout = request_timeout_seconds
        self._stop_event = stop_event or asyncio.Event()
        self._web3_factory = web3_factory or self._new_web3_client
        self._clients: dict[str, AsyncWeb3[Any]] = {}
        self._token_metadata: dict[str, TokenMetadata] = {}
        self._cache_prefix = f"rpc:{network.value.lower()}:"

    @property
    def rotator(self) -> EndpointRotator:
        return self._rotator

    @property
    def policy(self) -> RetryPolicy:
        return self._rotator.policy

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[Any]:
        provider = AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": ClientTimeout(total=self._timeout)})
        client: AsyncWeb3[Any] = AsyncWeb3(provider)
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (network=%s): %s", self.network.value, e)
        return client

    def _client_for(self, endpoint: str) -> AsyncWeb3[Any]:
        client = self._clients.get(endpoint)
        if client is None:
            client = self._web3_factory(endpoint)
            self._clients[endpoint] = client
        return client

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(self._cache_prefix + key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int = IMMUTABLE_CACHE_TTL_SECONDS) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(self._cache_prefix + key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def stop(self) -> None:
        """Abort pending and future retry sleeps."""
        self._stop_event.set()

    async def _sleep(self, seconds: float) -> None:
        """Backoff sleep that returns early with an error when stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise RpcShutdownError(f"RPC client for {self.network.value} is shutting down")

    async def _with_retry(self, label: str, operation: Callable[[AsyncWeb3[Any]], Awaitable[T]]) -> T:
        """Run ``operation`` against rotating endpoints until it succeeds.

        Raises:
            BlockRangeTooWideError: The provider rejected the query size.
            RpcError: The call failed in a way retrying cannot fix.
            RpcShutdownError: The client was stopped while retrying.
            RetryError: Every attempt failed.
        """
        await self._rate_limiter.acquire()

        max_attempts = self.policy.max_attempts
        last_error: Exception | None = None
        for attempt in range(max_attempts):
            if self._stop_event.is_set():
                raise RpcShutdownError(f"RPC client for {self.network.value} is shutting down")

            endpoint = self._rotator.next_available_endpoint()
            try:
                return await operation(self._client_for(endpoint))
            except _NON_RETRYABLE as e:
                raise RpcError(f"{label} failed: {e}") from e
            except Exception as e:
                if is_range_too_wide(e):
                    raise BlockRangeTooWideError(str(e)) from e
                last_error = e
                if is_rate_limited(e):
                    self._rotator.cool_down(endpoint, self._rate_limit_cooldown, reason="rate limited")
                elif is_transient(e):
                    self._rotator.cool_down(endpoint, self._transient_cooldown, reason="transient error")
                logger.warning(
                    "RPC %s on %s failed (attempt %d/%d): %s",
                    label,
                    self.network.value,
                    attempt + 1,
                    max_attempts,
                    e,
                )

            if attempt < max_attempts - 1:
                await self._sleep(self.policy.delay_seconds(attempt))

        raise RetryError(
            f"RPC {label} on {self.network.value} failed after {max_attempts} attempts: {last_error}",
            last_exception=last_error,
        )

    async def call(self, method: str, *args: Any) -> Any:
        """Call ``w3.eth.<method>(*args)`` with rotation and retry."""

        async def invoke(w3: AsyncWeb3[Any]) -> Any:
            return await getattr(w3.eth, method)(*args)

        return await self._with_retry(method, invoke)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        """Current chain height."""
        block = await self.call("get_block", "latest")
        return int(block["number"])

    async def get_block_timestamp(self, block_number: int) -> int:
        """Exact unix timestamp of ``block_number`` (cached)."""
        cache_key = f"block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self.call("get_block", block_number)
        timestamp = int(block["timestamp"])
        await self._set_cached(cache_key, str(timestamp))
        return timestamp

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` as JSON-safe dicts."""
        logs = await self.call("get_logs", filter_params)
        return [to_plain(dict(log)) for log in logs]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        tx = await self.call("get_transaction", tx_hash)
        return dict(to_plain(dict(tx)))

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        receipt = await self.call("get_transaction_receipt", tx_hash)
        return dict(to_plain(dict(receipt)))

    async def get_token_metadata(self, contract: str) -> TokenMetadata:
        """ERC-20 symbol and decimals of ``contract`` (cached).

        Contracts that do not implement the optional metadata methods get an
        empty symbol and 18 decimals.
        """
        contract = contract.lower()
        known = self._token_metadata.get(contract)
        if known is not None:
            return known

        cache_key = f"token:{contract}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            payload = json.loads(cached)
            metadata = TokenMetadata(symbol=str(payload["symbol"]), decimals=int(payload["decimals"]))
            self._token_metadata[contract] = metadata
            return metadata

        checksum = AsyncWeb3.to_checksum_address(contract)

        async def read_symbol(w3: AsyncWeb3[Any]) -> str:
            token = w3.eth.contract(address=checksum, abi=_ERC20_METADATA_ABI)
            return str(await token.functions.symbol().call())

        async def read_decimals(w3: AsyncWeb3[Any]) -> int:
            token = w3.eth.contract(address=checksum, abi=_ERC20_METADATA_ABI)
            return int(await token.functions.decimals().call())

        try:
            symbol = await self._with_retry("symbol", read_symbol)
        except (RetryError, RpcShutdownError):
            raise
        except RpcError as e:
            logger.warning("Token %s has no readable symbol: %s", contract, e)
            symbol = ""
        try:
            decimals = await self._with_retry("decimals", read_decimals)
        except (RetryError, RpcShutdownError):
            raise
        except RpcError as e:
            logger.warning("Token %s has no readable decimals, assuming 18: %s", contract, e)
            decimals = 18

        metadata = TokenMetadata(symbol=symbol, decimals=decimals)
        self._token_metadata[contract] = metadata
        await self._set_cached(cache_key, json.dumps({"symbol": symbol, "decimals": decimals}))
        return metadata

    async def health_check(self) -> bool:
        """Check if any endpoint answers.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            await self.get_block_number()
            return True
        except RpcError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        for client in self._clients.values():
            disconnect = getattr(client.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
        self._clients.clear()

"""Tests for the EVM RPC client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError

from wallet_radar.domain import NetworkId
from wallet_radar.ingestion.retry import (
    BlockRangeTooWideError,
    RetryError,
    RetryPolicy,
    RpcError,
    RpcShutdownError,
)
from wallet_radar.ingestion.rpc import EvmRpcClient, RateLimiter, TokenMetadata, to_plain

FAST_POLICY = RetryPolicy(base_delay_seconds=0.0, jitter_factor=0.0, max_attempts=3)


def make_w3(**eth_methods: AsyncMock) -> MagicMock:
    """Mock AsyncWeb3 client whose ``eth`` namespace has the given coroutines."""
    w3 = MagicMock()
    for name, method in eth_methods.items():
        setattr(w3.eth, name, method)
    return w3


def make_client(clients: dict[str, MagicMock], **kwargs) -> EvmRpcClient:
    return EvmRpcClient(
        NetworkId.ETHEREUM,
        list(clients),
        policy=kwargs.pop("policy", FAST_POLICY),
        web3_factory=clients.__getitem__,
        max_requests_per_second=1000,
        **kwargs,
    )


class TestRetryAndRotation:
    @pytest.mark.asyncio
    async def test_rate_limited_endpoint_rotates_and_cools_down(self) -> None:
        limited = AsyncMock(side_effect=Exception("429 Client Error: Too Many Requests"))
        healthy = AsyncMock(return_value={"number": 123, "timestamp": 1})
        client = make_client({"https://a": make_w3(get_block=limited), "https://b": make_w3(get_block=healthy)})

        assert await client.get_block_number() == 123
        assert limited.await_count == 1
        assert client.rotator.is_cooling_down("https://a")

    @pytest.mark.asyncio
    async def test_transient_error_cools_down_endpoint(self) -> None:
        flaky = AsyncMock(side_effect=Exception("503 Service Unavailable"))
        healthy = AsyncMock(return_value={"number": 5})
        client = make_client({"https://a": make_w3(get_block=flaky), "https://b": make_w3(get_block=healthy)})

        assert await client.get_block_number() == 5
        assert client.rotator.is_cooling_down("https://a")

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_retry_error(self) -> None:
        broken = AsyncMock(side_effect=Exception("connection reset"))
        client = make_client({"https://a": make_w3(get_block=broken)})

        with pytest.raises(RetryError) as exc_info:
            await client.get_block_number()

        assert broken.await_count == FAST_POLICY.max_attempts
        assert str(exc_info.value.last_exception) == "connection reset"

    @pytest.mark.asyncio
    async def test_range_too_wide_is_not_retried(self) -> None:
        get_logs = AsyncMock(side_effect=Exception("query returned more than 10000 results"))
        client = make_client({"https://a": make_w3(get_logs=get_logs)})

        with pytest.raises(BlockRangeTooWideError):
            await client.get_logs({"fromBlock": 0, "toBlock": 100_000})

        assert get_logs.await_count == 1

    @pytest.mark.asyncio
    async def test_contract_errors_are_not_retried(self) -> None:
        get_block = AsyncMock(side_effect=ContractLogicError("execution reverted"))
        client = make_client({"https://a": make_w3(get_block=get_block)})

        with pytest.raises(RpcError) as exc_info:
            await client.get_block_number()

        assert not isinstance(exc_info.value, RetryError)
        assert get_block.await_count == 1

    @pytest.mark.asyncio
    async def test_stopped_client_raises_shutdown(self) -> None:
        get_block = AsyncMock(return_value={"number": 1})
        client = make_client({"https://a": make_w3(get_block=get_block)})

        client.stop()

        with pytest.raises(RpcShutdownError):
            await client.get_block_number()
        get_block.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        broken = AsyncMock(side_effect=Exception("connection reset"))
        client = make_client({"https://a": make_w3(get_block=broken)})

        assert await client.health_check() is False


class TestCaching:
    @pytest.mark.asyncio
    async def test_block_timestamp_read_from_cache(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = b"1700000000"
        get_block = AsyncMock()
        client = make_client({"https://a": make_w3(get_block=get_block)}, redis=redis)

        assert await client.get_block_timestamp(42) == 1700000000
        get_block.assert_not_awaited()
        redis.get.assert_awaited_once_with("rpc:ethereum:block_ts:42")

    @pytest.mark.asyncio
    async def test_block_timestamp_written_to_cache(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = None
        get_block = AsyncMock(return_value={"number": 42, "timestamp": 1700000000})
        client = make_client({"https://a": make_w3(get_block=get_block)}, redis=redis)

        assert await client.get_block_timestamp(42) == 1700000000
        redis.set.assert_awaited_once()
        assert redis.set.await_args.args[:2] == ("rpc:ethereum:block_ts:42", "1700000000")

    @pytest.mark.asyncio
    async def test_cache_failure_falls_through_to_rpc(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis down")
        redis.set.side_effect = ConnectionError("redis down")
        get_block = AsyncMock(return_value={"number": 42, "timestamp": 1700000000})
        client = make_client({"https://a": make_w3(get_block=get_block)}, redis=redis)

        assert await client.get_block_timestamp(42) == 1700000000

    @pytest.mark.asyncio
    async def test_token_metadata_from_cache(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = b'{"symbol": "WETH", "decimals": 18}'
        client = make_client({"https://a": make_w3()}, redis=redis)

        metadata = await client.get_token_metadata("0xC02AAA39B223FE8D0A0E5C4F27EAD9083C756CC2")

        assert metadata == TokenMetadata(symbol="WETH", decimals=18)
        redis.get.assert_awaited_once_with("rpc:ethereum:token:0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2")


class TestHelpers:
    def test_to_plain_converts_bytes(self) -> None:
        plain = to_plain({"transactionHash": b"\x01\x02", "blockNumber": 7})
        assert plain == {"transactionHash": "0x0102", "blockNumber": 7}

    @pytest.mark.asyncio
    async def test_rate_limiter_consumes_tokens(self) -> None:
        limiter = RateLimiter.create(10)
        await limiter.acquire()
        assert limiter.tokens <= 9.5

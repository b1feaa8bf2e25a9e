"""Network adapters and block resolvers.

The backfill core never issues RPC methods itself. It asks an
:class:`AdapterRegistry` for the first implementation that supports a
network and treats it as a black box: adapters return raw transaction
payloads for a block range, resolvers return the chain height and exact
block timestamps.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar

from wallet_radar.domain import NetworkId
from wallet_radar.ingestion.retry import BlockRangeTooWideError
from wallet_radar.ingestion.rpc import EvmRpcClient
from wallet_radar.storage.repos import RawTransactionDTO

logger = logging.getLogger(__name__)

# ERC20 Transfer(address,address,uint256)
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_EVM_BATCH_SIZE = 2_000
DEFAULT_MIN_BISECT_BLOCKS = 50


class NetworkAdapter(Protocol):
    def supports(self, network: NetworkId) -> bool:
        raise NotImplementedError

    async def fetch_transactions(
        self,
        wallet_address: str,
        network: NetworkId,
        from_block: int,
        to_block: int,
    ) -> list[RawTransactionDTO]:
        raise NotImplementedError

    def max_block_batch_size(self) -> int:
        raise NotImplementedError


class BlockHeightResolver(Protocol):
    def supports(self, network: NetworkId) -> bool:
        raise NotImplementedError

    async def current_block(self, network: NetworkId) -> int:
        raise NotImplementedError


class BlockTimestampResolver(Protocol):
    def supports(self, network: NetworkId) -> bool:
        raise NotImplementedError

    async def block_timestamp(self, network: NetworkId, block_number: int) -> datetime:
        raise NotImplementedError


class _Supports(Protocol):
    def supports(self, network: NetworkId) -> bool: ...


C = TypeVar("C", bound=_Supports)


def _first_supporting(candidates: Iterable[C], network: NetworkId) -> C | None:
    for candidate in candidates:
        if candidate.supports(network):
            return candidate
    return None


class AdapterRegistry:
    """Capability-dispatch lists for adapters and resolvers.

    Lookups return the first registered implementation whose
    ``supports(network)`` is true, or ``None``.
    """

    def __init__(
        self,
        adapters: Iterable[NetworkAdapter] = (),
        height_resolvers: Iterable[BlockHeightResolver] = (),
        timestamp_resolvers: Iterable[BlockTimestampResolver] = (),
    ) -> None:
        self._adapters: list[NetworkAdapter] = list(adapters)
        self._height_resolvers: list[BlockHeightResolver] = list(height_resolvers)
        self._timestamp_resolvers: list[BlockTimestampResolver] = list(timestamp_resolvers)

    def register_adapter(self, adapter: NetworkAdapter) -> None:
        self._adapters.append(adapter)

    def register_height_resolver(self, resolver: BlockHeightResolver) -> None:
        self._height_resolvers.append(resolver)

    def register_timestamp_resolver(self, resolver: BlockTimestampResolver) -> None:
        self._timestamp_resolvers.append(resolver)

    def adapter_for(self, network: NetworkId) -> NetworkAdapter | None:
        return _first_supporting(self._adapters, network)

    def height_resolver_for(self, network: NetworkId) -> BlockHeightResolver | None:
        return _first_supporting(self._height_resolvers, network)

    def timestamp_resolver_for(self, network: NetworkId) -> BlockTimestampResolver | None:
        return _first_supporting(self._timestamp_resolvers, network)

    def is_supported(self, network: NetworkId) -> bool:
        """True when an adapter and both resolvers exist for ``network``."""
        return (
            self.adapter_for(network) is not None
            and self.height_resolver_for(network) is not None
            and self.timestamp_resolver_for(network) is not None
        )


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_address(topic: Any) -> str:
    hexed = topic.hex() if hasattr(topic, "hex") else str(topic)
    if hexed.startswith("0x"):
        hexed = hexed[2:]
    return ("0x" + hexed[-40:]).lower()


def _is_erc20_transfer(log: Mapping[str, Any]) -> bool:
    topics = log.get("topics") or []
    # ERC-721 Transfer shares the signature but indexes the token id as a fourth topic.
    return len(topics) == 3 and str(topics[0]).lower() == TRANSFER_TOPIC


class EvmNetworkAdapter:
    """ERC-20 transfer history of a wallet on one EVM network.

    For every chunk of at most ``batch_size`` blocks the adapter fetches
    ``Transfer`` logs where the wallet is the sender and where it is the
    recipient, groups them by transaction, loads each receipt and embeds
    the symbol and decimals of every touched token in the payload so
    classification needs no further RPC.
    """

    def __init__(
        self,
        network: NetworkId,
        client: EvmRpcClient,
        *,
        batch_size: int = DEFAULT_EVM_BATCH_SIZE,
        min_bisect_blocks: int = DEFAULT_MIN_BISECT_BLOCKS,
    ) -> None:
        if network.is_slot_based:
            raise ValueError(f"{network.value} is not an EVM network")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.network = network
        self._client = client
        self._batch_size = batch_size
        self._min_bisect_blocks = max(1, min_bisect_blocks)

    def supports(self, network: NetworkId) -> bool:
        return network is self.network

    def max_block_batch_size(self) -> int:
        return self._batch_size

    async def fetch_transactions(
        self,
        wallet_address: str,
        network: NetworkId,
        from_block: int,
        to_block: int,
    ) -> list[RawTransactionDTO]:
        """Raw transactions touching ``wallet_address`` in ``[from_block, to_block]``."""
        if not self.supports(network):
            raise ValueError(f"Adapter for {self.network.value} cannot fetch {network.value}")
        wallet = wallet_address.lower()

        by_hash: dict[str, RawTransactionDTO] = {}
        for start in range(from_block, to_block + 1, self._batch_size):
            end = min(to_block, start + self._batch_size - 1)
            for dto in await self._fetch_chunk(wallet, start, end):
                if dto.tx_hash:
                    by_hash[dto.tx_hash] = dto
        return sorted(by_hash.values(), key=lambda dto: dto.block_number)

    async def _fetch_chunk(self, wallet: str, from_block: int, to_block: int) -> list[RawTransactionDTO]:
        logs = await self._get_transfer_logs(wallet, from_block, to_block)

        hashes: dict[str, int] = {}
        for log in logs:
            tx_hash = str(log["transactionHash"]).lower()
            hashes.setdefault(tx_hash, int(log["blockNumber"]))

        results: list[RawTransactionDTO] = []
        for tx_hash, block_number in hashes.items():
            receipt = await self._client.get_transaction_receipt(tx_hash)
            results.append(
                RawTransactionDTO(
                    tx_hash=tx_hash,
                    network_id=self.network,
                    wallet_address=wallet,
                    block_number=block_number,
                    raw_data=await self._build_payload(tx_hash, block_number, receipt),
                )
            )
        return results

    async def _get_transfer_logs(self, wallet: str, from_block: int, to_block: int) -> list[dict[str, Any]]:
        """Sent and received Transfer logs, bisecting ranges the provider rejects."""
        padded = _pad_topic_address(wallet)
        try:
            sent = await self._client.get_logs(
                {"fromBlock": from_block, "toBlock": to_block, "topics": [TRANSFER_TOPIC, padded]}
            )
            received = await self._client.get_logs(
                {"fromBlock": from_block, "toBlock": to_block, "topics": [TRANSFER_TOPIC, None, padded]}
            )
        except BlockRangeTooWideError:
            if to_block - from_block <= self._min_bisect_blocks:
                raise
            mid = from_block + (to_block - from_block) // 2
            logger.debug(
                "Bisecting %s logs range %d-%d at %d",
                self.network.value,
                from_block,
                to_block,
                mid,
            )
            left = await self._get_transfer_logs(wallet, from_block, mid)
            right = await self._get_transfer_logs(wallet, mid + 1, to_block)
            return left + right

        seen: set[tuple[str, int]] = set()
        unique: list[dict[str, Any]] = []
        for log in sent + received:
            key = (str(log["transactionHash"]).lower(), int(log.get("logIndex", 0)))
            if key in seen:
                continue
            seen.add(key)
            unique.append(log)
        return unique

    async def _build_payload(self, tx_hash: str, block_number: int, receipt: dict[str, Any]) -> dict[str, Any]:
        transfers = []
        for log in receipt.get("logs") or []:
            if not _is_erc20_transfer(log):
                continue
            topics = log["topics"]
            data = str(log.get("data") or "0x0")
            transfers.append(
                {
                    "contract": str(log["address"]).lower(),
                    "from": _topic_to_address(topics[1]),
                    "to": _topic_to_address(topics[2]),
                    "amount": str(int(data, 16) if data not in ("0x", "") else 0),
                    "logIndex": int(log.get("logIndex", 0)),
                }
            )

        tokens: dict[str, dict[str, Any]] = {}
        for transfer in transfers:
            contract = transfer["contract"]
            if contract in tokens:
                continue
            metadata = await self._client.get_token_metadata(contract)
            tokens[contract] = {"symbol": metadata.symbol, "decimals": metadata.decimals}

        return {
            "hash": tx_hash,
            "blockNumber": block_number,
            "from": str(receipt.get("from") or "").lower(),
            "to": str(receipt.get("to") or "").lower(),
            "status": int(receipt.get("status", 1)),
            "gasUsed": int(receipt.get("gasUsed", 0)),
            "effectiveGasPrice": int(receipt.get("effectiveGasPrice", 0)),
            "transfers": transfers,
            "tokens": tokens,
        }


class EvmBlockResolver:
    """Chain height and exact block timestamps for EVM networks."""

    def __init__(self, clients: Mapping[NetworkId, EvmRpcClient]) -> None:
        self._clients = dict(clients)

    def supports(self, network: NetworkId) -> bool:
        return network in self._clients

    def _client(self, network: NetworkId) -> EvmRpcClient:
        client = self._clients.get(network)
        if client is None:
            raise ValueError(f"No RPC client configured for {network.value}")
        return client

    async def current_block(self, network: NetworkId) -> int:
        return await self._client(network).get_block_number()

    async def block_timestamp(self, network: NetworkId, block_number: int) -> datetime:
        ts = await self._client(network).get_block_timestamp(block_number)
        return datetime.fromtimestamp(ts, tz=UTC)


def build_evm_registry(
    clients: Mapping[NetworkId, EvmRpcClient],
    *,
    batch_sizes: Mapping[NetworkId, int] | None = None,
    min_bisect_blocks: int = DEFAULT_MIN_BISECT_BLOCKS,
) -> AdapterRegistry:
    """Registry with one EVM adapter per configured network and a shared resolver."""
    overrides = defaultdict(lambda: DEFAULT_EVM_BATCH_SIZE, batch_sizes or {})
    registry = AdapterRegistry()
    for network, client in clients.items():
        if network.is_slot_based:
            logger.warning("Skipping %s: no slot-based adapter is available", network.value)
            continue
        registry.register_adapter(
            EvmNetworkAdapter(
                network,
                client,
                batch_size=overrides[network],
                min_bisect_blocks=min_bisect_blocks,
            )
        )
    resolver = EvmBlockResolver({n: c for n, c in clients.items() if not n.is_slot_based})
    registry.register_height_resolver(resolver)
    registry.register_timestamp_resolver(resolver)
    return registry

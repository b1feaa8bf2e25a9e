"""Ingestion layer - Segmented, resumable wallet backfills."""

from wallet_radar.ingestion.adapters import AdapterRegistry, EvmNetworkAdapter, NetworkAdapter
from wallet_radar.ingestion.executor import BackfillError, BackfillNetworkExecutor
from wallet_radar.ingestion.retry import EndpointRotator, RetryError, RetryPolicy, RpcError
from wallet_radar.ingestion.rpc import EvmRpcClient
from wallet_radar.ingestion.runner import BackfillJobRunner

__all__ = [
    "AdapterRegistry",
    "BackfillError",
    "BackfillJobRunner",
    "BackfillNetworkExecutor",
    "EndpointRotator",
    "EvmNetworkAdapter",
    "EvmRpcClient",
    "NetworkAdapter",
    "RetryError",
    "RetryPolicy",
    "RpcError",
]

"""
Chain read layer for refnet.

Provides a factory `get_chain_client()` that returns a reader for the
configured staking contract. All readers implement ChainReader.

Usage:
    from refnet.chain import get_chain_client
    client = get_chain_client(config)
    results = await client.batch_read([ReadRequest.total_staked(address)])
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from refnet.chain.base import (
    ChainReader,
    LogRecord,
    ReadRequest,
    ReadResult,
    StakeRecord,
    StakeTokenAmount,
    read_one,
)
from refnet.exceptions import ConfigMissingError

if TYPE_CHECKING:
    from refnet.config import RefnetConfig

__all__ = [
    "ChainReader",
    "LogRecord",
    "ReadRequest",
    "ReadResult",
    "StakeRecord",
    "StakeTokenAmount",
    "get_chain_client",
    "read_one",
]


def get_chain_client(config: RefnetConfig) -> ChainReader:
    """
    Factory: return a JSON-RPC reader for the configured contract.

    Raises:
        ConfigMissingError: RPC URL or contract address not configured
    """
    if not config.chain.rpc_url:
        raise ConfigMissingError(
            "chain.rpc_url is not set. Run `refnet config set chain.rpc_url <url>` "
            "or export REFNET_RPC_URL."
        )
    if not config.chain.contract_address:
        raise ConfigMissingError(
            "chain.contract_address is not set. Run "
            "`refnet config set chain.contract_address <address>` "
            "or export REFNET_CONTRACT_ADDRESS."
        )

    from refnet.chain.rpc import JsonRpcChainClient

    return JsonRpcChainClient(
        rpc_url=config.chain.rpc_url,
        contract_address=config.chain.contract_address,
        timeout=config.chain.request_timeout,
        requests_per_second=config.chain.requests_per_second,
        batch_size=config.chain.batch_size,
    )

"""Tests for refnet/chain/rpc.py — JSON-RPC chain reader.

Uses respx to mock httpx calls (no real network I/O).
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx
from eth_abi import encode

from conftest import CONTRACT, ROOT, addr
from refnet.chain import get_chain_client
from refnet.chain.base import REFERRAL_ASSIGNED, ReadRequest, StakeRecord, StakeTokenAmount
from refnet.chain.rpc import REFERRAL_ASSIGNED_TOPIC, JsonRpcChainClient, decode_call, encode_call
from refnet.config import RefnetConfig
from refnet.exceptions import (
    ConfigMissingError,
    ConnectionFailedError,
    NetworkTimeoutError,
    RateLimitError,
    RPCError,
)

RPC_URL = "https://rpc.example.com/v1/key"


def _word(types: list[str], values: list) -> str:
    return "0x" + encode(types, values).hex()


def _client(batch_size: int = 500) -> JsonRpcChainClient:
    return JsonRpcChainClient(
        RPC_URL, CONTRACT, requests_per_second=1000, batch_size=batch_size
    )


def _pad(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


# ── encode / decode ───────────────────────────────────────────────────────────


def test_encode_call_selector_and_args() -> None:
    data = encode_call(ReadRequest.total_staked(ROOT))
    # 4-byte selector + one 32-byte word
    assert len(data) == 2 + 8 + 64
    assert data.endswith(ROOT[2:])


def test_encode_call_mixed_case_address() -> None:
    upper = "0x" + ROOT[2:].upper()
    assert encode_call(ReadRequest.referrer_of(upper)) == encode_call(ReadRequest.referrer_of(ROOT))


STAKE_TYPES = ["uint256", "uint256", "uint256", "uint40", "uint40", "uint40", "uint16", "bool"]


def _stake(package_id: int, closed: bool) -> str:
    return _word(STAKE_TYPES, [10, 1, 2, 1_700_000_000, 1_700_000_100, 0, package_id, closed])


def test_decode_stake_record() -> None:
    record = decode_call(ReadRequest.stake_record(ROOT, 0), _stake(package_id=1, closed=False))
    assert record == StakeRecord(
        total_staked=10,
        claimed_apr=1,
        withdrawn_principal=2,
        start_time=1_700_000_000,
        last_claimed_at=1_700_000_100,
        last_unstaked_at=0,
        package_id=1,
        is_fully_unstaked=False,
    )


@pytest.mark.parametrize(
    "package_id,closed",
    [(0, True), (0, False), (1, True), (3, False), (3, True)],
)
def test_decode_stake_record_flag_independent_of_package(package_id: int, closed: bool) -> None:
    record = decode_call(ReadRequest.stake_record(ROOT, 0), _stake(package_id, closed))
    assert record.package_id == package_id
    assert record.is_fully_unstaked is closed


def test_decode_stake_token_amount_lowercases() -> None:
    token = "0x" + "Ab" * 20
    data = _word(["address", "uint256"], [token.lower(), 7])
    pair = decode_call(ReadRequest.stake_token_amount(ROOT, 0, 1), data)
    assert pair == StakeTokenAmount(token=token.lower(), amount=7)


def test_decode_referred_users() -> None:
    data = _word(["address[]"], [[addr(1), addr(2)]])
    assert decode_call(ReadRequest.referred_users(ROOT), data) == [addr(1), addr(2)]


def test_unknown_function_rejected() -> None:
    with pytest.raises(ValueError):
        ReadRequest("transfer", (ROOT,))


def test_wrong_arity_rejected() -> None:
    with pytest.raises(ValueError):
        ReadRequest("userStakes", (ROOT,))


# ── batch_read ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_realigns_by_id() -> None:
    """Out-of-order batch responses land in request order."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert isinstance(body, list)
        out = [
            {"jsonrpc": "2.0", "id": item["id"], "result": _word(["uint256"], [100 + item["id"]])}
            for item in body
        ]
        return httpx.Response(200, json=list(reversed(out)))

    respx.post(RPC_URL).mock(side_effect=handler)

    client = _client()
    results = await client.batch_read(
        [ReadRequest.total_staked(addr(i)) for i in range(1, 4)]
    )
    await client.close()

    assert [r.value for r in results] == [100, 101, 102]
    assert all(r.ok for r in results)


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_error_slot_isolated() -> None:
    """One reverted call fails only its own slot."""
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(
            200,
            json=[
                {"jsonrpc": "2.0", "id": 0, "result": _word(["uint256"], [5])},
                {"jsonrpc": "2.0", "id": 1, "error": {"code": 3, "message": "execution reverted"}},
                {"jsonrpc": "2.0", "id": 2, "result": "0x"},
            ],
        )
    )
    client = _client()
    results = await client.batch_read(
        [ReadRequest.total_staked(addr(1)), ReadRequest.stake_count(addr(1)), ReadRequest.referrer_of(addr(1))]
    )
    await client.close()

    assert results[0].value == 5
    assert results[1].error == "execution reverted"
    assert not results[2].ok  # empty return data


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_missing_response() -> None:
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(200, json=[{"jsonrpc": "2.0", "id": 0, "result": _word(["uint256"], [1])}])
    )
    client = _client()
    results = await client.batch_read([ReadRequest.total_staked(addr(1)), ReadRequest.total_staked(addr(2))])
    await client.close()
    assert results[0].value == 1
    assert results[1].error == "missing response"


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_chunks_by_batch_size() -> None:
    sizes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        sizes.append(len(body))
        return httpx.Response(
            200,
            json=[{"jsonrpc": "2.0", "id": i["id"], "result": _word(["uint256"], [0])} for i in body],
        )

    respx.post(RPC_URL).mock(side_effect=handler)
    client = _client(batch_size=2)
    results = await client.batch_read([ReadRequest.stake_count(addr(i)) for i in range(1, 6)])
    await client.close()

    assert sizes == [2, 2, 1]
    assert len(results) == 5
    assert all(r.ok for r in results)


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_transport_failure_fails_all_slots() -> None:
    respx.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
    client = _client()
    results = await client.batch_read([ReadRequest.total_staked(addr(1)), ReadRequest.stake_count(addr(1))])
    await client.close()
    assert len(results) == 2
    assert not any(r.ok for r in results)


@pytest.mark.asyncio
@respx.mock
async def test_batch_read_rejected_batch() -> None:
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(
            200, json={"jsonrpc": "2.0", "id": None, "error": {"code": -32600, "message": "batch not supported"}}
        )
    )
    client = _client()
    results = await client.batch_read([ReadRequest.total_staked(addr(1))])
    await client.close()
    assert results[0].error == "batch not supported"


@pytest.mark.asyncio
async def test_batch_read_empty() -> None:
    client = _client()
    assert await client.batch_read([]) == []
    await client.close()


# ── query_logs / block_number ─────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_query_logs_filters_by_indexed_referrer() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.update(body)
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "result": [
                    {
                        "topics": [REFERRAL_ASSIGNED_TOPIC, _pad(addr(7)), _pad(ROOT)],
                        "blockNumber": "0x10",
                        "transactionHash": "0xfeed",
                    },
                    {"topics": [REFERRAL_ASSIGNED_TOPIC]},
                ],
            },
        )

    respx.post(RPC_URL).mock(side_effect=handler)
    client = _client()
    logs = await client.query_logs(REFERRAL_ASSIGNED, referrer=ROOT, from_block=256)
    await client.close()

    assert seen["method"] == "eth_getLogs"
    params = seen["params"][0]
    assert params["fromBlock"] == "0x100"
    assert params["toBlock"] == "latest"
    assert params["topics"] == [REFERRAL_ASSIGNED_TOPIC, None, _pad(ROOT)]

    assert len(logs) == 1
    assert logs[0].user == addr(7)
    assert logs[0].referrer == ROOT
    assert logs[0].block_number == 16


@pytest.mark.asyncio
async def test_query_logs_unknown_event() -> None:
    client = _client()
    with pytest.raises(ValueError):
        await client.query_logs("Transfer", referrer=ROOT, from_block=0)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_query_logs_rpc_error() -> None:
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "too many results"}}
        )
    )
    client = _client()
    with pytest.raises(RPCError, match="too many results"):
        await client.query_logs(REFERRAL_ASSIGNED, referrer=ROOT, from_block=0)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_block_number() -> None:
    respx.post(RPC_URL).mock(
        return_value=httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1e8480"})
    )
    client = _client()
    assert await client.block_number() == 2_000_000
    await client.close()


# ── transport errors ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_rate_limit_429() -> None:
    respx.post(RPC_URL).mock(return_value=httpx.Response(429, headers={"Retry-After": "12"}))
    client = _client()
    with pytest.raises(RateLimitError) as exc_info:
        await client.block_number()
    await client.close()
    assert exc_info.value.retry_after == 12


@pytest.mark.asyncio
@respx.mock
async def test_timeout_maps_to_network_timeout() -> None:
    respx.post(RPC_URL).mock(side_effect=httpx.ReadTimeout("slow"))
    client = _client()
    with pytest.raises(NetworkTimeoutError):
        await client.block_number()
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_connect_error_maps_to_connection_failed() -> None:
    respx.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
    client = _client()
    with pytest.raises(ConnectionFailedError):
        await client.block_number()
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_http_500_is_rpc_error() -> None:
    respx.post(RPC_URL).mock(return_value=httpx.Response(500, text="oops"))
    client = _client()
    with pytest.raises(RPCError):
        await client.block_number()
    await client.close()


# ── factory ───────────────────────────────────────────────────────────────────


def test_get_chain_client_requires_rpc_url() -> None:
    config = RefnetConfig()
    config.chain.contract_address = CONTRACT
    with pytest.raises(ConfigMissingError, match="rpc_url"):
        get_chain_client(config)


def test_get_chain_client_requires_contract() -> None:
    config = RefnetConfig()
    config.chain.rpc_url = RPC_URL
    with pytest.raises(ConfigMissingError, match="contract_address"):
        get_chain_client(config)


@pytest.mark.asyncio
async def test_get_chain_client_builds_rpc_client(sample_config) -> None:
    client = get_chain_client(sample_config)
    assert isinstance(client, JsonRpcChainClient)
    assert await client.validate_address(ROOT)
    assert not await client.validate_address("0x123")
    await client.close()

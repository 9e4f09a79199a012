"""
Ethereum JSON-RPC chain reader.

Reads the staking contract through eth_call and eth_getLogs.

Design decisions:
- Uses async httpx for all HTTP calls.
- Implements token bucket rate limiting.
- Independent eth_calls are bundled into JSON-RPC batch requests
  (one HTTP round trip per `batch_size` calls). Responses are realigned
  by id; a missing or erroring entry fails only its own slot.
- ABI encoding/decoding via eth-abi, selectors and topics via eth-utils.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
)
from loguru import logger

from refnet.chain.base import (
    CONTRACT_FUNCTIONS,
    REFERRAL_ASSIGNED,
    REFERRAL_ASSIGNED_SIGNATURE,
    LogRecord,
    ReadRequest,
    ReadResult,
    shape_result,
)
from refnet.exceptions import (
    ConnectionFailedError,
    NetworkTimeoutError,
    RateLimitError,
    RefnetError,
    RPCError,
)
from refnet.models import normalize_address

# ETH address regex (0x + 40 hex chars)
ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

REFERRAL_ASSIGNED_TOPIC = encode_hex(event_signature_to_log_topic(REFERRAL_ASSIGNED_SIGNATURE))

DEFAULT_BATCH_SIZE = 500


class _TokenBucket:
    """Simple token bucket rate limiter."""

    def __init__(self, calls: float, period: float) -> None:
        self._calls = calls
        self._period = period
        self._tokens: float = float(calls)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            # Refill tokens proportional to elapsed time
            refill = (elapsed / self._period) * self._calls
            self._tokens = min(self._calls, self._tokens + refill)
            self._last_refill = now

            if self._tokens < 1:
                wait = (1 - self._tokens) * (self._period / self._calls)
                await asyncio.sleep(wait)
                self._tokens = 0
            else:
                self._tokens -= 1


def encode_call(request: ReadRequest) -> str:
    """Return hex calldata for one contract read."""
    inputs, _ = CONTRACT_FUNCTIONS[request.function]
    selector = function_signature_to_4byte_selector(request.signature)
    args = [normalize_address(a) if t == "address" else a for t, a in zip(inputs, request.args)]
    return encode_hex(selector + encode(list(inputs), args))


def decode_call(request: ReadRequest, data: str) -> Any:
    """Decode eth_call return data for `request`. Raises DecodingError on junk."""
    _, outputs = CONTRACT_FUNCTIONS[request.function]
    raw = decode_hex(data)
    if not raw:
        # reverted without reason, or the target has no code
        raise DecodingError(f"empty return data for {request.function}")
    return shape_result(request.function, decode(list(outputs), raw))


def _topic_address(address: str) -> str:
    return "0x" + "0" * 24 + normalize_address(address)[2:]


class JsonRpcChainClient:
    """
    Async JSON-RPC client for the staking contract.

    Rate-limited per HTTP request (a whole batch counts as one request).
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        timeout: float = 30.0,
        requests_per_second: float = 10.0,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._rpc_url = rpc_url
        self._contract = normalize_address(contract_address)
        self._batch_size = max(1, batch_size)
        self._client = httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = _TokenBucket(requests_per_second, 1.0)

    async def batch_read(self, requests: list[ReadRequest]) -> list[ReadResult]:
        """Run eth_calls in JSON-RPC batches; one result per request."""
        results: list[ReadResult] = []
        for start in range(0, len(requests), self._batch_size):
            chunk = requests[start : start + self._batch_size]
            results.extend(await self._batch_chunk(chunk))
        return results

    async def query_logs(
        self,
        event: str,
        referrer: str,
        from_block: int,
        to_block: int | str = "latest",
    ) -> list[LogRecord]:
        """eth_getLogs for ReferralAssigned filtered by indexed referrer."""
        if event != REFERRAL_ASSIGNED:
            raise ValueError(f"Unsupported event: {event!r}")

        params = {
            "address": self._contract,
            "topics": [REFERRAL_ASSIGNED_TOPIC, None, _topic_address(referrer)],
            "fromBlock": hex(max(from_block, 0)),
            "toBlock": to_block if isinstance(to_block, str) else hex(to_block),
        }
        raw_logs = await self._call("eth_getLogs", [params])
        if not isinstance(raw_logs, list):
            raise RPCError("eth_getLogs returned a non-list result")

        records: list[LogRecord] = []
        for log in raw_logs:
            record = self._parse_log(log)
            if record:
                records.append(record)
        return records

    async def block_number(self) -> int:
        result = await self._call("eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise RPCError(f"Invalid block number: {result!r}") from e

    async def validate_address(self, address: str) -> bool:
        """Validate address format. No RPC call required."""
        return bool(ETH_ADDRESS_RE.match(address))

    async def close(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _post(self, payload: Any) -> Any:
        await self._rate_limiter.acquire()
        try:
            resp = await self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"RPC timeout: {e}") from e
        except httpx.ConnectError as e:
            raise ConnectionFailedError(f"Cannot connect to RPC endpoint: {e}") from e

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After", "60")
            raise RateLimitError(
                "RPC rate limit exceeded",
                retry_after=int(retry_after) if retry_after.isdigit() else 60,
            )
        if resp.status_code >= 400:
            raise RPCError(
                f"RPC endpoint returned HTTP {resp.status_code}",
                details={"status": resp.status_code},
            )

        try:
            return resp.json()
        except ValueError as e:
            raise RPCError(f"RPC endpoint returned invalid JSON: {e}") from e

    async def _call(self, method: str, params: list) -> Any:
        body = await self._post({"jsonrpc": "2.0", "id": 1, "method": method, "params": params})
        if not isinstance(body, dict):
            raise RPCError(f"{method}: unexpected response shape")
        if "error" in body:
            err = body["error"] or {}
            raise RPCError(
                f"{method} failed: {err.get('message', 'unknown error')}",
                details={"code": err.get("code")},
            )
        return body.get("result")

    async def _batch_chunk(self, chunk: list[ReadRequest]) -> list[ReadResult]:
        results: list[ReadResult | None] = [None] * len(chunk)
        payload: list[dict[str, Any]] = []

        for i, req in enumerate(chunk):
            try:
                data = encode_call(req)
            except (EncodingError, TypeError, ValueError) as e:
                results[i] = ReadResult.failed(f"cannot encode {req.function}: {e}")
                continue
            payload.append(
                {
                    "jsonrpc": "2.0",
                    "id": i,
                    "method": "eth_call",
                    "params": [{"to": self._contract, "data": data}, "latest"],
                }
            )

        if not payload:
            return [r or ReadResult.failed("not sent") for r in results]

        try:
            body = await self._post(payload)
        except RefnetError as e:
            logger.debug(f"batch of {len(payload)} eth_calls failed: {e}")
            return [r or ReadResult.failed(str(e)) for r in results]

        if isinstance(body, dict):
            # Whole-batch rejection, e.g. provider without batch support
            message = (body.get("error") or {}).get("message", "batch rejected")
            return [r or ReadResult.failed(message) for r in results]

        by_id: dict[int, dict[str, Any]] = {}
        for item in body if isinstance(body, list) else []:
            if isinstance(item, dict) and isinstance(item.get("id"), int):
                by_id[item["id"]] = item

        for i, req in enumerate(chunk):
            if results[i] is not None:
                continue
            item = by_id.get(i)
            if item is None:
                results[i] = ReadResult.failed("missing response")
            elif "error" in item:
                results[i] = ReadResult.failed(
                    str((item["error"] or {}).get("message", "execution reverted"))
                )
            else:
                try:
                    results[i] = ReadResult(value=decode_call(req, item.get("result") or "0x"))
                except (DecodingError, TypeError, ValueError) as e:
                    results[i] = ReadResult.failed(f"cannot decode {req.function}: {e}")

        return [r or ReadResult.failed("missing response") for r in results]

    def _parse_log(self, log: dict[str, Any]) -> LogRecord | None:
        """Decode user/referrer from indexed topics; skip malformed logs."""
        try:
            topics = log["topics"]
            if len(topics) < 3:
                return None
            return LogRecord(
                user=normalize_address("0x" + topics[1][-40:]),
                referrer=normalize_address("0x" + topics[2][-40:]),
                block_number=int(log.get("blockNumber") or "0x0", 16),
                tx_hash=log.get("transactionHash") or "",
            )
        except (KeyError, TypeError, ValueError):
            return None

"""Pytest fixtures shared across all refnet tests."""

from __future__ import annotations

import asyncio
import os
from collections import Counter

import pytest

from refnet.aggregator import TokenCategories
from refnet.chain.base import (
    LogRecord,
    ReadRequest,
    ReadResult,
    StakeRecord,
    StakeTokenAmount,
)
from refnet.config import (
    ChainConfig,
    OutputConfig,
    RefnetConfig,
    TokensConfig,
    TraversalSettings,
)
from refnet.exceptions import NetworkTimeoutError, RPCError
from refnet.models import ZERO_ADDRESS, normalize_address


def addr(n: int) -> str:
    """Deterministic, non-zero test address."""
    return f"0x{n:040x}"


ROOT = "0x" + "a" * 40
CONTRACT = "0x" + "c" * 40
YY_TOKEN = "0x" + "1" * 40
SY_TOKEN = "0x" + "2" * 40
PY_TOKEN = "0x" + "3" * 40

ETHER = 10**18


# ── Stub chain client ─────────────────────────────────────────────────────────


class StubChainClient:
    """
    In-memory ChainReader.

    stakes maps address → list of (is_fully_unstaked, [(token, amount), ...]).
    Every read is counted in `calls` by function name; log queries and tip
    reads are counted under "query_logs" and "block_number".
    """

    def __init__(
        self,
        referrals: dict[str, list[str]] | None = None,
        events: dict[str, list[str]] | None = None,
        totals: dict[str, int] | None = None,
        counts: dict[str, int] | None = None,
        stakes: dict[str, list[tuple[bool, list[tuple[str, int]]]]] | None = None,
        referrers: dict[str, str] | None = None,
        earnings: dict[tuple[str, str], int] | None = None,
        fail_functions: tuple[str, ...] = (),
        fail_addresses: tuple[str, ...] = (),
        fail_logs: bool = False,
        tip: int | None = 1_000_000,
        delay: float = 0.0,
    ) -> None:
        norm = normalize_address
        self.referrals = {norm(k): list(v) for k, v in (referrals or {}).items()}
        self.events = {norm(k): list(v) for k, v in (events or {}).items()}
        self.totals = {norm(k): v for k, v in (totals or {}).items()}
        self.counts = {norm(k): v for k, v in (counts or {}).items()}
        self.stakes = {norm(k): v for k, v in (stakes or {}).items()}
        self.referrers = {norm(k): v for k, v in (referrers or {}).items()}
        self.earnings = {(norm(a), norm(t)): v for (a, t), v in (earnings or {}).items()}
        self.fail_functions = set(fail_functions)
        self.fail_addresses = {norm(a) for a in fail_addresses}
        self.fail_logs = fail_logs
        self.tip = tip
        self.delay = delay

        self.calls: Counter[str] = Counter()
        self.batch_sizes: list[int] = []
        self.log_queries: list[tuple[str, int]] = []
        self.closed = False

    async def batch_read(self, requests: list[ReadRequest]) -> list[ReadResult]:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.batch_sizes.append(len(requests))
        results: list[ReadResult] = []
        for req in requests:
            self.calls[req.function] += 1
            address = normalize_address(req.args[0])
            if req.function in self.fail_functions or address in self.fail_addresses:
                results.append(ReadResult.failed("execution reverted"))
                continue
            results.append(ReadResult(value=self._value(req, address)))
        return results

    def _value(self, req: ReadRequest, address: str):
        fn = req.function
        if fn == "getReferredUsers":
            return list(self.referrals.get(address, []))
        if fn == "userTotalStaked":
            return self.totals.get(address, 0)
        if fn == "userStakeCounts":
            return self.counts.get(address, len(self.stakes.get(address, [])))
        if fn == "referrerOf":
            return self.referrers.get(address, ZERO_ADDRESS)
        if fn == "referralEarnings":
            return self.earnings.get((address, normalize_address(req.args[1])), 0)

        stakes = self.stakes.get(address, [])
        index = req.args[1]
        unstaked, slots = stakes[index] if index < len(stakes) else (False, [])
        if fn == "userStakes":
            return StakeRecord(0, 0, 0, 0, 0, 0, 0, is_fully_unstaked=unstaked)
        if fn == "userStakeTokenAmounts":
            slot = req.args[2]
            if slot < len(slots):
                token, amount = slots[slot]
                return StakeTokenAmount(token=normalize_address(token), amount=amount)
            return StakeTokenAmount(token=ZERO_ADDRESS, amount=0)
        raise ValueError(fn)

    async def query_logs(self, event, referrer, from_block, to_block="latest"):
        self.calls["query_logs"] += 1
        referrer = normalize_address(referrer)
        self.log_queries.append((referrer, from_block))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_logs:
            raise RPCError("eth_getLogs failed: query returned more than 10000 results")
        return [LogRecord(user=u, referrer=referrer) for u in self.events.get(referrer, [])]

    async def block_number(self) -> int:
        self.calls["block_number"] += 1
        if self.tip is None:
            raise NetworkTimeoutError("RPC timeout")
        return self.tip

    async def close(self) -> None:
        self.closed = True


# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def tokens() -> TokenCategories:
    return TokenCategories(yy=YY_TOKEN, sy=SY_TOKEN, py=PY_TOKEN)


@pytest.fixture
def sample_config() -> RefnetConfig:
    """Minimal valid RefnetConfig for tests."""
    return RefnetConfig(
        chain=ChainConfig(
            rpc_url="https://rpc.example.com/v1/secret-key",
            contract_address=CONTRACT,
        ),
        tokens=TokensConfig(yy=YY_TOKEN, sy=SY_TOKEN, py=PY_TOKEN),
        traversal=TraversalSettings(deadline_seconds=10.0),
        output=OutputConfig(default_format="json", color=False),
    )


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep real user config and REFNET_* variables out of every test."""
    for key in list(os.environ):
        if key.startswith("REFNET_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("REFNET_CONFIG_PATH", str(tmp_path / "no-such-config.toml"))


# ── Chain fixtures ────────────────────────────────────────────────────────────


@pytest.fixture
def empty_client() -> StubChainClient:
    return StubChainClient()


@pytest.fixture
def tree_client() -> StubChainClient:
    """
    ROOT → 1, 2, 3
    1 → 11, 12
    2 → 21
    11 → 111
    Node 1 holds one YY and one SY stake plus a closed PY stake.
    """
    return StubChainClient(
        referrals={
            ROOT: [addr(1), addr(2), addr(3)],
            addr(1): [addr(11), addr(12)],
            addr(2): [addr(21)],
            addr(11): [addr(111)],
        },
        totals={
            ROOT: 50 * ETHER,
            addr(1): 30 * ETHER,
            addr(2): 5 * ETHER,
            addr(11): 7 * ETHER,
            addr(12): 1 * ETHER,
            addr(21): 2 * ETHER,
            addr(111): 4 * ETHER,
        },
        stakes={
            addr(1): [
                (False, [(YY_TOKEN, 20 * ETHER)]),
                (False, [(SY_TOKEN, 10 * ETHER)]),
                (True, [(PY_TOKEN, 99 * ETHER)]),
            ],
        },
        counts={ROOT: 2, addr(2): 1},
        referrers={ROOT: addr(999)},
        earnings={(ROOT, YY_TOKEN): 3 * ETHER, (ROOT, PY_TOKEN): 1 * ETHER},
    )

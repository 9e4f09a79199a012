"""Per-node stake aggregation.

Every node gets two counter reads: userTotalStaked and userStakeCounts.
Level-1 nodes additionally get a token split: each open stake's token
slots are read and bucketed into the YY / SY / PY categories.

Nodes at depth >= 2 skip the split on purpose. The split costs
1 + STAKE_TOKEN_SLOTS reads per stake, and a deep tree would multiply
that across thousands of nodes; the display only needs the breakdown
for direct referrals. Their totals still come from the direct counter.

Any single read may fail. A failed read contributes zero to its field
and never aborts the aggregation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from refnet.chain.base import (
    ChainReader,
    ReadRequest,
    ReadResult,
    StakeRecord,
    StakeTokenAmount,
)
from refnet.models import NodeAggregate, TokenSplit, is_zero_address, normalize_address

if TYPE_CHECKING:
    from refnet.config import RefnetConfig

# Token slots the contract keeps per stake (one per category)
STAKE_TOKEN_SLOTS = 3

SPLIT_DEPTH = 1


@dataclass(frozen=True)
class TokenCategories:
    """Addresses of the three stake token categories. Unset ones never match."""

    yy: str = ""
    sy: str = ""
    py: str = ""

    @classmethod
    def from_config(cls, config: RefnetConfig) -> TokenCategories:
        return cls(
            yy=normalize_address(config.tokens.yy),
            sy=normalize_address(config.tokens.sy),
            py=normalize_address(config.tokens.py),
        )

    def items(self) -> list[tuple[str, str]]:
        return [("yy", self.yy), ("sy", self.sy), ("py", self.py)]

    def classify(self, token: str) -> str | None:
        """Category name for `token`, or None if it is not a stake token."""
        token = normalize_address(token)
        if is_zero_address(token):
            return None
        for name, address in self.items():
            if address and normalize_address(address) == token:
                return name
        return None


def _as_int(result: ReadResult) -> int:
    if result.ok and isinstance(result.value, int):
        return result.value
    return 0


class NodeAggregator:
    """Batched stake metrics for the nodes of one level."""

    def __init__(
        self,
        client: ChainReader,
        tokens: TokenCategories | None = None,
        max_stakes_per_node: int = 256,
    ) -> None:
        self._client = client
        self._tokens = tokens or TokenCategories()
        self._max_stakes = max_stakes_per_node

    async def aggregate_node(self, address: str, depth: int) -> NodeAggregate:
        (node,) = await self.aggregate_many([address], depth)
        return node

    async def aggregate_many(self, addresses: list[str], depth: int) -> list[NodeAggregate]:
        """Aggregate `addresses` at `depth`; output order follows input order."""
        if not addresses:
            return []

        requests: list[ReadRequest] = []
        for addr in addresses:
            requests.append(ReadRequest.total_staked(addr))
            requests.append(ReadRequest.stake_count(addr))
        results = await self._read(requests)

        nodes = [
            NodeAggregate(
                address=normalize_address(addr),
                total_staked=_as_int(results[2 * i]),
                stake_count=_as_int(results[2 * i + 1]),
            )
            for i, addr in enumerate(addresses)
        ]

        if depth == SPLIT_DEPTH:
            await self._attach_splits(nodes)
        return nodes

    async def _attach_splits(self, nodes: list[NodeAggregate]) -> None:
        # Pass 1: stake records for every node
        stake_keys: list[tuple[int, int]] = []
        for n, node in enumerate(nodes):
            for s in range(min(node.stake_count, self._max_stakes)):
                stake_keys.append((n, s))
        records = await self._read(
            [ReadRequest.stake_record(nodes[n].address, s) for n, s in stake_keys]
        )

        # Pass 2: token slots of stakes that are still open
        slot_keys: list[int] = []
        slot_requests: list[ReadRequest] = []
        for (n, s), record in zip(stake_keys, records):
            if _value_of(record, StakeRecord) is not None and record.value.is_fully_unstaked:
                continue
            for slot in range(STAKE_TOKEN_SLOTS):
                slot_keys.append(n)
                slot_requests.append(ReadRequest.stake_token_amount(nodes[n].address, s, slot))
        amounts = await self._read(slot_requests)

        splits = [TokenSplit() for _ in nodes]
        for n, result in zip(slot_keys, amounts):
            pair = _value_of(result, StakeTokenAmount)
            if pair is None or pair.amount <= 0:
                continue
            category = self._tokens.classify(pair.token)
            if category:
                splits[n].add(category, pair.amount)

        for node, split in zip(nodes, splits):
            node.token_split = split
            # The direct counter can lag the per-stake amounts; never report less
            if split.total > node.total_staked:
                node.total_staked = split.total

    async def _read(self, requests: list[ReadRequest]) -> list[ReadResult]:
        if not requests:
            return []
        try:
            results = await self._client.batch_read(requests)
        except Exception as e:
            logger.debug(f"batch of {len(requests)} reads failed, zero-filling: {e}")
            return [ReadResult.failed(str(e))] * len(requests)
        if len(results) != len(requests):
            logger.debug(f"batch returned {len(results)} results for {len(requests)} reads")
            results = list(results[: len(requests)])
            results += [ReadResult.failed("missing result")] * (len(requests) - len(results))
        return results


def _value_of(result: ReadResult, kind: type) -> Any:
    if result.ok and isinstance(result.value, kind):
        return result.value
    return None

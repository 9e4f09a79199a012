"""Breadth-first walk of the referral tree.

Levels are expanded strictly one after another: level L+1 is resolved
from the addresses admitted at level L. Within a level, referee
resolution fans out concurrently over the whole frontier and the
admitted nodes are aggregated in batched reads.

Global uniqueness comes from a single `visited` set seeded with the
root. A node admitted once is never admitted again at a deeper level,
which also ends the walk on cyclic or self-referencing graphs without a
separate cycle detector.

The walk is bounded by `max_level` and by `max_total_nodes`. When a level
would overflow the node budget it is cut to the remaining budget, in
resolver order, and the result is flagged as truncated.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from refnet.aggregator import NodeAggregator, TokenCategories
from refnet.chain.base import ChainReader
from refnet.exceptions import InvalidAddressError
from refnet.models import (
    LevelInfo,
    ReferralEdge,
    TraversalConfig,
    TraversalResult,
    is_zero_address,
    normalize_address,
)
from refnet.resolver import RefereeSource, build_referee_source, resolve_referees


class TraversalEngine:
    """Level-by-level expansion from one root address."""

    def __init__(
        self,
        source: RefereeSource,
        aggregator: NodeAggregator,
        config: TraversalConfig | None = None,
    ) -> None:
        self._source = source
        self._aggregator = aggregator
        self._config = config or TraversalConfig()
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)

    async def traverse(self, root: str) -> TraversalResult:
        root = normalize_address(root)
        if is_zero_address(root):
            raise InvalidAddressError("root address is required", details={"address": root})

        cfg = self._config
        visited: set[str] = {root}
        result = TraversalResult()
        total_nodes = 0
        frontier: list[str] = [root]

        for level in range(1, cfg.max_level + 1):
            if not frontier or total_nodes >= cfg.max_total_nodes:
                break

            candidates = await self._resolve_frontier(frontier)
            accepted = _admit(candidates, root, visited)

            remaining = cfg.max_total_nodes - total_nodes
            if len(accepted) > remaining:
                logger.warning(
                    f"node cap {cfg.max_total_nodes} reached at level {level}: "
                    f"keeping {remaining} of {len(accepted)} referees"
                )
                accepted = accepted[:remaining]
                result.truncated = True

            if not accepted:
                break

            visited.update(accepted)
            rows = await self._aggregator.aggregate_many(accepted, depth=level)
            result.levels.append(
                LevelInfo(level=level, total_staked=sum(r.total_staked for r in rows), rows=rows)
            )
            total_nodes += len(rows)
            frontier = accepted
            logger.info(f"level {level}: {len(rows)} referees ({total_nodes} total)")

        logger.info(
            f"walk from {root} done: {len(result.levels)} levels, {total_nodes} nodes"
            + (" (truncated)" if result.truncated else "")
        )
        return result

    async def _resolve_frontier(self, frontier: list[str]) -> list[str]:
        """Resolve every frontier address concurrently; flatten in frontier order."""

        async def _one(address: str) -> list[str]:
            async with self._semaphore:
                return await resolve_referees(address, self._source)

        batches = await asyncio.gather(*(_one(a) for a in frontier))
        return [referee for batch in batches for referee in batch]


def _admit(candidates: list[str], root: str, visited: set[str]) -> list[str]:
    """Drop zero, root, and already-visited addresses; dedupe keeping first-seen order."""
    admitted: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        addr = normalize_address(candidate)
        if is_zero_address(addr) or addr == root or addr in visited or addr in seen:
            continue
        seen.add(addr)
        admitted.append(addr)
    return admitted


async def traverse(
    root: str,
    client: ChainReader,
    config: TraversalConfig | None = None,
    tokens: TokenCategories | None = None,
    synthetic: ReferralEdge | None = None,
) -> TraversalResult:
    """Walk the referral tree under `root` using `client` for every read."""
    config = config or TraversalConfig()
    engine = TraversalEngine(
        source=build_referee_source(
            client, config.data_source, start_block=config.start_block, synthetic=synthetic
        ),
        aggregator=NodeAggregator(client, tokens, max_stakes_per_node=config.max_stakes_per_node),
        config=config,
    )
    return await engine.traverse(root)

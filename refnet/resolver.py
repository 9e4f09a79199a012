"""
Referee resolution: who did this address directly refer?

Two read-only views of the same relation exist on chain:
  list    — the contract's getReferredUsers(address) accessor
  events  — ReferralAssigned(user, referrer) logs filtered by referrer

Each view is a RefereeSource. Sources may raise; resolve_referees() is the
single entry point and never does, so callers treat "no data" and
"no referees" the same way.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from loguru import logger

from refnet.chain.base import REFERRAL_ASSIGNED, ChainReader, ReadRequest, read_one
from refnet.exceptions import RefnetError, RPCError
from refnet.models import DataSourceMode, ReferralEdge, normalize_address

if TYPE_CHECKING:
    from refnet.config import RefnetConfig

# Log scans start this many blocks behind the tip when no start block is set
DEFAULT_LOOKBACK_BLOCKS = 120_000


class RefereeSource(Protocol):
    async def fetch(self, address: str) -> list[str]:
        """Return direct referees of `address`. May raise."""
        ...


class ListSource:
    """Authoritative per-address list kept by the contract."""

    def __init__(self, client: ChainReader) -> None:
        self._client = client

    async def fetch(self, address: str) -> list[str]:
        result = await read_one(self._client, ReadRequest.referred_users(address))
        if not result.ok:
            raise RPCError(f"getReferredUsers({address}) failed: {result.error}")
        return list(result.value or [])


class EventSource:
    """ReferralAssigned log scan, filtered by indexed referrer."""

    def __init__(self, client: ChainReader, start_block: int = 0) -> None:
        self._client = client
        self._start_block = start_block
        self._from_block: int | None = None
        self._lock = asyncio.Lock()

    async def from_block(self) -> int:
        """Configured start block, else tip minus the lookback window."""
        async with self._lock:
            if self._from_block is None:
                self._from_block = await self._resolve_from_block()
            return self._from_block

    async def fetch(self, address: str) -> list[str]:
        logs = await self._client.query_logs(
            REFERRAL_ASSIGNED,
            referrer=address,
            from_block=await self.from_block(),
            to_block="latest",
        )
        return [log.user for log in logs]

    async def _resolve_from_block(self) -> int:
        if self._start_block > 0:
            return self._start_block
        try:
            tip = await self._client.block_number()
        except RefnetError as e:
            logger.debug(f"block number unavailable, scanning logs from genesis: {e}")
            return 0
        return max(tip - DEFAULT_LOOKBACK_BLOCKS, 0)


class AutoSource:
    """List first; the event log only when the list is empty or unreadable."""

    def __init__(self, primary: RefereeSource, fallback: RefereeSource) -> None:
        self._primary = primary
        self._fallback = fallback

    async def fetch(self, address: str) -> list[str]:
        try:
            referees = await self._primary.fetch(address)
        except RefnetError as e:
            logger.debug(f"list accessor failed for {address}, falling back to logs: {e}")
            referees = []
        if referees:
            return referees
        return await self._fallback.fetch(address)


class SyntheticEdgeSource:
    """
    Adds one fixed referrer → referee edge on top of another source.

    Used by verification environments to exercise the walk against a
    contract that has no real referrals yet.
    """

    def __init__(self, inner: RefereeSource, edge: ReferralEdge) -> None:
        self._inner = inner
        self._referrer = normalize_address(edge.referrer)
        self._referee = normalize_address(edge.referee)

    async def fetch(self, address: str) -> list[str]:
        if normalize_address(address) != self._referrer:
            return await self._inner.fetch(address)
        try:
            referees = await self._inner.fetch(address)
        except RefnetError as e:
            logger.debug(f"inner source failed for {address}, keeping synthetic edge only: {e}")
            referees = []
        if self._referee in (normalize_address(r) for r in referees):
            return referees
        return [*referees, self._referee]


def synthetic_edge(config: RefnetConfig) -> ReferralEdge | None:
    """The configured test edge, or None unless both ends are set."""
    if config.testing.referrer and config.testing.referee:
        return ReferralEdge(referrer=config.testing.referrer, referee=config.testing.referee)
    return None


def build_referee_source(
    client: ChainReader,
    mode: DataSourceMode | str = DataSourceMode.AUTO,
    start_block: int = 0,
    synthetic: ReferralEdge | None = None,
) -> RefereeSource:
    """Compose the source for `mode`, optionally wrapped with a synthetic edge."""
    mode = DataSourceMode(mode)
    source: RefereeSource
    if mode is DataSourceMode.LIST:
        source = ListSource(client)
    elif mode is DataSourceMode.EVENTS:
        source = EventSource(client, start_block=start_block)
    else:
        source = AutoSource(ListSource(client), EventSource(client, start_block=start_block))

    if synthetic is not None:
        source = SyntheticEdgeSource(source, synthetic)
    return source


async def resolve_referees(address: str, source: RefereeSource) -> list[str]:
    """
    Direct referees of `address`, lowercased, in source order.

    Never raises: any failure yields an empty list. No dedupe or filtering
    happens here; the traversal engine owns that.
    """
    addr = normalize_address(address)
    try:
        referees = await source.fetch(addr)
    except Exception as e:
        logger.debug(f"referee resolution failed for {addr}: {e}")
        return []
    return [normalize_address(r) for r in referees]

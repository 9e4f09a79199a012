"""Profile assembly and request lifecycle.

A ProfileAssembler serves one consumer (a dashboard, the CLI, the watch
loop). Each request(root, client) starts a ProfileTask that walks the
referral tree and reads the root's own metrics in parallel, then
replaces the assembler's Profile wholesale.

Starting a new request marks the previous task stale through its
cancellation token. A stale task still runs to completion but its result
is discarded, so an older walk can never overwrite a newer one.

Failures inside the walk are absorbed per node. Anything that escapes the
walk (missing client, missing root, deadline expiry, unexpected errors)
becomes Profile.error with no partial levels.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from refnet.aggregator import TokenCategories
from refnet.chain.base import ChainReader, ReadRequest, ReadResult
from refnet.exceptions import DataError, RefnetError, TraversalError, TraversalTimeoutError
from refnet.models import (
    ClaimableBalances,
    Profile,
    ReferralEdge,
    RootMetrics,
    TraversalConfig,
    is_zero_address,
    normalize_address,
)
from refnet.traversal import traverse


class CancellationToken:
    """Set once; checked before a task commits its result."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class ProfileTask:
    """One in-flight profile request."""

    generation: int
    address: str
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task | None = None

    @property
    def stale(self) -> bool:
        return self.token.cancelled

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> Profile:
        """Await the walk; returns its Profile even if it was discarded."""
        if self.task is None:
            raise TraversalError(f"profile request #{self.generation} was never started")
        return await self.task


async def read_root_metrics(
    client: ChainReader,
    root: str,
    tokens: TokenCategories | None = None,
) -> RootMetrics:
    """Root's own total, stake count, referrer and claimable earnings in one batch."""
    tokens = tokens or TokenCategories()
    requests = [
        ReadRequest.total_staked(root),
        ReadRequest.stake_count(root),
        ReadRequest.referrer_of(root),
    ]
    earning_slots: list[str] = []
    for name, address in tokens.items():
        if address:
            earning_slots.append(name)
            requests.append(ReadRequest.referral_earnings(root, address))

    try:
        results = await client.batch_read(requests)
    except Exception as e:
        logger.debug(f"root metrics read failed for {root}: {e}")
        results = [ReadResult.failed(str(e))] * len(requests)

    def _int(i: int) -> int:
        r = results[i] if i < len(results) else None
        return r.value if r is not None and r.ok and isinstance(r.value, int) else 0

    referrer_result = results[2] if len(results) > 2 else None
    referrer = None
    if referrer_result is not None and referrer_result.ok and isinstance(referrer_result.value, str):
        if not is_zero_address(referrer_result.value):
            referrer = normalize_address(referrer_result.value)

    claimable = ClaimableBalances()
    for offset, name in enumerate(earning_slots):
        setattr(claimable, name, _int(3 + offset))

    return RootMetrics(
        total_staked=_int(0),
        stake_count=_int(1),
        referrer=referrer,
        claimable=claimable,
    )


class ProfileAssembler:
    """Owns the load / error / success lifecycle of a referral profile."""

    def __init__(
        self,
        config: TraversalConfig | None = None,
        tokens: TokenCategories | None = None,
        synthetic: ReferralEdge | None = None,
    ) -> None:
        self._config = config or TraversalConfig()
        self._tokens = tokens or TokenCategories()
        self._synthetic = synthetic
        self._generation = 0
        self._current: ProfileTask | None = None
        self._profile = Profile(address="")

    @property
    def profile(self) -> Profile:
        return self._profile

    @property
    def current(self) -> ProfileTask | None:
        return self._current

    def request(self, root: str | None, client: ChainReader | None) -> ProfileTask:
        """Start a fresh walk for (root, client); any in-flight walk goes stale."""
        if self._current is not None and not self._current.done:
            logger.debug(f"superseding profile request #{self._current.generation}")
        if self._current is not None:
            self._current.token.cancel()

        self._generation += 1
        task = ProfileTask(generation=self._generation, address=normalize_address(root))
        self._current = task
        self._profile = Profile.pending(task.address)
        task.task = asyncio.create_task(self._run(task, client))
        return task

    async def cancel(self) -> None:
        """Mark the current request stale and stop its walk."""
        if self._current is None:
            return
        self._current.token.cancel()
        if self._current.task is not None and not self._current.task.done():
            self._current.task.cancel()
            try:
                await self._current.task
            except asyncio.CancelledError:
                pass
        if self._profile.loading:
            self._profile = Profile(address=self._current.address)

    async def _run(self, task: ProfileTask, client: ChainReader | None) -> Profile:
        try:
            profile = await self._build(task.address, client)
        except Exception as e:
            message = e.message if isinstance(e, RefnetError) else f"Failed to load referral profile: {e}"
            logger.error(f"profile for {task.address or '<none>'} failed: {message}")
            profile = Profile.failed(task.address, message)

        self._commit(task, profile)
        return profile

    async def _build(self, root: str, client: ChainReader | None) -> Profile:
        if client is None:
            raise TraversalError("chain client is not available")
        if is_zero_address(root):
            raise DataError("root address is required")

        work = asyncio.gather(
            traverse(root, client, self._config, self._tokens, self._synthetic),
            read_root_metrics(client, root, self._tokens),
        )
        deadline = self._config.deadline_seconds
        try:
            if deadline:
                result, metrics = await asyncio.wait_for(work, timeout=deadline)
            else:
                result, metrics = await work
        except asyncio.TimeoutError as e:
            raise TraversalTimeoutError(
                f"referral walk exceeded {deadline}s deadline",
                details={"deadline_seconds": deadline},
            ) from e

        return Profile.from_parts(root, result, metrics)

    def _commit(self, task: ProfileTask, profile: Profile) -> bool:
        """Publish `profile` unless a newer request has superseded `task`."""
        if task.stale or task is not self._current:
            logger.warning(f"discarding stale profile #{task.generation} for {task.address}")
            return False
        self._profile = profile
        return True


async def build_profile(
    root: str,
    client: ChainReader,
    config: TraversalConfig | None = None,
    tokens: TokenCategories | None = None,
    synthetic: ReferralEdge | None = None,
) -> Profile:
    """One-shot helper: assemble a single profile and return it."""
    assembler = ProfileAssembler(config=config, tokens=tokens, synthetic=synthetic)
    task = assembler.request(root, client)
    await task.wait()
    return assembler.profile

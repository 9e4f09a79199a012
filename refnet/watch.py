"""JSONL watch loop for refnet.

Implements the polling loop for `refnet watch`: the same root is
re-profiled every interval and each result is emitted as one JSON object
per line on stdout, for agent/pipe consumers.

Event types emitted:
  watch_start     — loop begins
  profile_result  — a walk completed; carries level totals and a changed flag
  profile_error   — the walk failed (recoverable, the loop continues)
  heartbeat       — after every cycle, even when nothing changed
  watch_end       — cycle limit reached, or SIGINT / cancel

stdout is flushed after each write (critical for pipe consumers).
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from refnet.aggregator import TokenCategories
from refnet.chain.base import ChainReader
from refnet.models import Profile, ReferralEdge, TraversalConfig, normalize_address
from refnet.profile import ProfileAssembler


def emit_event(event: dict[str, Any]) -> None:
    """
    Write a single JSONL event to stdout and flush.

    Never use print() — buffered output breaks pipe consumers.
    """
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _fingerprint(profile: Profile) -> tuple:
    """Level counts and totals; a change here is worth reporting."""
    return (
        profile.root_total_staked,
        profile.root_stake_count,
        tuple((lvl.level, lvl.count, lvl.total_staked) for lvl in profile.levels),
    )


async def run_watch(
    root: str,
    client: ChainReader,
    interval_seconds: float,
    config: TraversalConfig | None = None,
    tokens: TokenCategories | None = None,
    synthetic: ReferralEdge | None = None,
    cycles: int | None = None,
) -> int:
    """
    Re-profile `root` every `interval_seconds` until cancelled or `cycles` runs.

    Each cycle issues a fresh request on one ProfileAssembler, so an
    overrunning walk is superseded rather than stacked.

    Returns the number of completed cycles.
    """
    root = normalize_address(root)
    assembler = ProfileAssembler(config=config, tokens=tokens, synthetic=synthetic)
    cycle = 0
    errors = 0
    previous: tuple | None = None

    emit_event({
        "type": "watch_start",
        "timestamp": _now_iso(),
        "address": root,
        "interval_secs": interval_seconds,
        "cycles": cycles,
    })

    try:
        while cycles is None or cycle < cycles:
            cycle += 1
            task = assembler.request(root, client)
            await task.wait()
            profile = assembler.profile

            if profile.error:
                errors += 1
                emit_event({
                    "type": "profile_error",
                    "timestamp": _now_iso(),
                    "address": root,
                    "message": profile.error,
                    "recoverable": True,
                    "cycle": cycle,
                })
            else:
                fingerprint = _fingerprint(profile)
                changed = previous is not None and fingerprint != previous
                previous = fingerprint
                if changed:
                    logger.info(f"referral profile for {root} changed in cycle {cycle}")
                emit_event({
                    "type": "profile_result",
                    "timestamp": _now_iso(),
                    "address": root,
                    "cycle": cycle,
                    "changed": changed,
                    "root_total_staked": str(profile.root_total_staked),
                    "level1_count": profile.level1_count,
                    "total_nodes": profile.total_nodes,
                    "truncated": profile.truncated,
                    "levels": [
                        {"level": lvl.level, "count": lvl.count, "total_staked": str(lvl.total_staked)}
                        for lvl in profile.levels
                    ],
                })

            emit_event({
                "type": "heartbeat",
                "timestamp": _now_iso(),
                "cycle": cycle,
            })

            if cycles is not None and cycle >= cycles:
                break
            await asyncio.sleep(interval_seconds)

    except (KeyboardInterrupt, asyncio.CancelledError):
        await assembler.cancel()

    emit_event({
        "type": "watch_end",
        "timestamp": _now_iso(),
        "cycles_completed": cycle,
        "errors": errors,
    })
    return cycle

"""
Shared data models for refnet.

These dataclasses are the canonical data shapes used across all modules:
the resolver and aggregator produce them, the traversal engine collects
them into levels, the profile assembler folds them into a Profile, and
output renders them.

Amounts are raw fixed-point integers (18 decimals) exactly as read from
the contract. They are serialized as strings so uint256 values survive
JSON consumers that parse numbers as doubles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from refnet.exceptions import ConfigInvalidError

if TYPE_CHECKING:
    from refnet.config import RefnetConfig

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MAX_LEVEL = 15
MAX_TOTAL_NODES = 2000


def normalize_address(address: str | None) -> str:
    """Lowercase and strip an address. Comparison is case-insensitive."""
    return (address or "").strip().lower()


def is_zero_address(address: str | None) -> bool:
    """True for empty, '0x', or the all-zero account."""
    addr = normalize_address(address)
    if not addr or addr in ("0x", "0x0"):
        return True
    return addr == ZERO_ADDRESS


class DataSourceMode(str, Enum):
    """Where direct referees are read from."""

    LIST = "list"       # contract's per-address referred-users list only
    EVENTS = "events"   # ReferralAssigned log scan only
    AUTO = "auto"       # list first, events when the list is empty


@dataclass(frozen=True)
class ReferralEdge:
    """One referrer → referee relation."""

    referrer: str
    referee: str
    assigned_at: int | None = None


@dataclass
class TokenSplit:
    """A node's stake decomposed across the YY / SY / PY token categories."""

    yy: int = 0
    sy: int = 0
    py: int = 0

    @property
    def total(self) -> int:
        return self.yy + self.sy + self.py

    def add(self, category: str, amount: int) -> None:
        setattr(self, category, getattr(self, category) + amount)

    def to_dict(self) -> dict:
        return {"yy": str(self.yy), "sy": str(self.sy), "py": str(self.py)}


@dataclass
class NodeAggregate:
    """
    One address's metrics at the point of traversal.

    token_split is only populated for level-1 nodes. total_staked is the
    direct counter, raised to the split sum when the counter reads lower.
    """

    address: str
    stake_count: int = 0
    total_staked: int = 0
    token_split: TokenSplit | None = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake_count": self.stake_count,
            "total_staked": str(self.total_staked),
            "token_split": self.token_split.to_dict() if self.token_split else None,
        }


@dataclass
class LevelInfo:
    """All nodes found at one distance from the root."""

    level: int
    total_staked: int
    rows: list[NodeAggregate] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "count": self.count,
            "total_staked": str(self.total_staked),
            "rows": [r.to_dict() for r in self.rows],
        }


@dataclass(frozen=True)
class TraversalConfig:
    """Per-invocation limits for the referral walk."""

    max_level: int = MAX_LEVEL
    max_total_nodes: int = MAX_TOTAL_NODES
    data_source: DataSourceMode = DataSourceMode.AUTO
    deadline_seconds: float | None = 120.0
    start_block: int = 0
    max_stakes_per_node: int = 256
    max_concurrency: int = 16

    def __post_init__(self) -> None:
        if not 1 <= self.max_level <= MAX_LEVEL:
            raise ConfigInvalidError(f"max_level must be 1–{MAX_LEVEL}, got {self.max_level}")
        if self.max_total_nodes < 1:
            raise ConfigInvalidError(
                f"max_total_nodes must be positive, got {self.max_total_nodes}"
            )
        if self.max_concurrency < 1:
            raise ConfigInvalidError(
                f"max_concurrency must be positive, got {self.max_concurrency}"
            )
        # Accept plain strings ("auto") as well as the enum
        object.__setattr__(self, "data_source", DataSourceMode(self.data_source))

    @classmethod
    def from_config(cls, config: RefnetConfig, **overrides) -> TraversalConfig:
        """Build from loaded config; keyword overrides win when not None."""
        deadline = config.traversal.deadline_seconds
        values = {
            "max_level": config.traversal.max_level,
            "max_total_nodes": config.traversal.max_total_nodes,
            "data_source": config.traversal.data_source,
            "deadline_seconds": deadline if deadline > 0 else None,
            "start_block": config.chain.start_block,
            "max_stakes_per_node": config.traversal.max_stakes_per_node,
            "max_concurrency": config.traversal.max_concurrency,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if values["deadline_seconds"] is not None and values["deadline_seconds"] <= 0:
            values["deadline_seconds"] = None
        return cls(**values)


@dataclass
class TraversalResult:
    """Output of one walk: the emitted levels plus a truncation flag."""

    levels: list[LevelInfo] = field(default_factory=list)
    truncated: bool = False

    @property
    def total_nodes(self) -> int:
        return sum(lvl.count for lvl in self.levels)


@dataclass
class ClaimableBalances:
    """Referral earnings per token category."""

    yy: int = 0
    sy: int = 0
    py: int = 0

    def to_dict(self) -> dict:
        return {"yy": str(self.yy), "sy": str(self.sy), "py": str(self.py)}


@dataclass
class RootMetrics:
    """The root address's own figures, read alongside the walk."""

    total_staked: int = 0
    stake_count: int = 0
    referrer: str | None = None
    claimable: ClaimableBalances = field(default_factory=ClaimableBalances)


@dataclass
class Profile:
    """
    Assembled referral profile for one root address.

    Replaced wholesale when a walk completes; never mutated in place.
    A non-empty error means "try again" — levels are empty in that case.
    """

    address: str
    loading: bool = False
    error: str | None = None
    level1_rows: list[NodeAggregate] = field(default_factory=list)
    level1_count: int = 0
    levels: list[LevelInfo] = field(default_factory=list)
    root_total_staked: int = 0
    root_stake_count: int = 0
    root_referrer: str | None = None
    root_claimable: ClaimableBalances = field(default_factory=ClaimableBalances)
    truncated: bool = False

    @property
    def total_nodes(self) -> int:
        return sum(lvl.count for lvl in self.levels)

    @classmethod
    def pending(cls, address: str) -> Profile:
        return cls(address=normalize_address(address), loading=True)

    @classmethod
    def failed(cls, address: str, message: str) -> Profile:
        return cls(address=normalize_address(address), loading=False, error=message)

    @classmethod
    def from_parts(cls, address: str, result: TraversalResult, root: RootMetrics) -> Profile:
        level1 = result.levels[0].rows if result.levels and result.levels[0].level == 1 else []
        return cls(
            address=normalize_address(address),
            loading=False,
            error=None,
            level1_rows=list(level1),
            level1_count=len(level1),
            levels=list(result.levels),
            root_total_staked=root.total_staked,
            root_stake_count=root.stake_count,
            root_referrer=root.referrer,
            root_claimable=root.claimable,
            truncated=result.truncated,
        )

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "address": self.address,
            "loading": self.loading,
            "error": self.error,
            "truncated": self.truncated,
            "total_nodes": self.total_nodes,
            "root": {
                "total_staked": str(self.root_total_staked),
                "stake_count": self.root_stake_count,
                "referrer": self.root_referrer,
                "claimable": self.root_claimable.to_dict(),
            },
            "level1_count": self.level1_count,
            "level1_rows": [r.to_dict() for r in self.level1_rows],
            "levels": [lvl.to_dict() for lvl in self.levels],
        }

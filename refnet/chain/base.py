"""Chain reader protocol and shared request/result shapes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from refnet.models import normalize_address

REFERRAL_ASSIGNED = "ReferralAssigned"
REFERRAL_ASSIGNED_SIGNATURE = "ReferralAssigned(address,address)"

# Staking contract read surface: name → (input types, output types)
CONTRACT_FUNCTIONS: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "userTotalStaked": (("address",), ("uint256",)),
    "userStakeCounts": (("address",), ("uint256",)),
    "referrerOf": (("address",), ("address",)),
    "getReferredUsers": (("address",), ("address[]",)),
    "userStakes": (
        ("address", "uint256"),
        ("uint256", "uint256", "uint256", "uint40", "uint40", "uint40", "uint16", "bool"),
    ),
    "userStakeTokenAmounts": (("address", "uint256", "uint256"), ("address", "uint256")),
    "referralEarnings": (("address", "address"), ("uint256",)),
}


@dataclass(frozen=True)
class ReadRequest:
    """One independent contract read inside a batch."""

    function: str
    args: tuple = ()

    def __post_init__(self) -> None:
        if self.function not in CONTRACT_FUNCTIONS:
            raise ValueError(f"Unknown contract function: {self.function!r}")
        inputs, _ = CONTRACT_FUNCTIONS[self.function]
        if len(self.args) != len(inputs):
            raise ValueError(
                f"{self.function} takes {len(inputs)} arguments, got {len(self.args)}"
            )

    @property
    def signature(self) -> str:
        inputs, _ = CONTRACT_FUNCTIONS[self.function]
        return f"{self.function}({','.join(inputs)})"

    @classmethod
    def total_staked(cls, address: str) -> ReadRequest:
        return cls("userTotalStaked", (address,))

    @classmethod
    def stake_count(cls, address: str) -> ReadRequest:
        return cls("userStakeCounts", (address,))

    @classmethod
    def referrer_of(cls, address: str) -> ReadRequest:
        return cls("referrerOf", (address,))

    @classmethod
    def referred_users(cls, address: str) -> ReadRequest:
        return cls("getReferredUsers", (address,))

    @classmethod
    def stake_record(cls, address: str, index: int) -> ReadRequest:
        return cls("userStakes", (address, index))

    @classmethod
    def stake_token_amount(cls, address: str, stake_index: int, slot: int) -> ReadRequest:
        return cls("userStakeTokenAmounts", (address, stake_index, slot))

    @classmethod
    def referral_earnings(cls, address: str, token: str) -> ReadRequest:
        return cls("referralEarnings", (address, token))


@dataclass(frozen=True)
class ReadResult:
    """Outcome of one read: a decoded value, or an error message."""

    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, message: str) -> ReadResult:
        return cls(value=None, error=message)


@dataclass(frozen=True)
class StakeRecord:
    """Decoded userStakes(address, index) tuple."""

    total_staked: int
    claimed_apr: int
    withdrawn_principal: int
    start_time: int
    last_claimed_at: int
    last_unstaked_at: int
    package_id: int
    is_fully_unstaked: bool


@dataclass(frozen=True)
class StakeTokenAmount:
    """Decoded userStakeTokenAmounts(address, stake, slot) tuple."""

    token: str
    amount: int


@dataclass(frozen=True)
class LogRecord:
    """A decoded ReferralAssigned log."""

    user: str           # the referee
    referrer: str
    block_number: int = 0
    tx_hash: str = ""


def shape_result(function: str, decoded: tuple) -> Any:
    """Turn an ABI-decoded tuple into the value callers expect."""
    if function in ("userTotalStaked", "userStakeCounts", "referralEarnings"):
        return int(decoded[0])
    if function == "referrerOf":
        return normalize_address(decoded[0])
    if function == "getReferredUsers":
        return [normalize_address(a) for a in decoded[0]]
    if function == "userStakes":
        return StakeRecord(*(int(v) for v in decoded[:7]), is_fully_unstaked=bool(decoded[7]))
    if function == "userStakeTokenAmounts":
        return StakeTokenAmount(token=normalize_address(decoded[0]), amount=int(decoded[1]))
    raise ValueError(f"Unknown contract function: {function!r}")


@runtime_checkable
class ChainReader(Protocol):
    """
    Protocol that all chain read clients must implement.

    Readers are responsible for:
    - Encoding contract calls and decoding their return data
    - Bundling independent reads into batched requests
    - Querying ReferralAssigned logs by indexed referrer

    Readers are NOT responsible for:
    - Deciding which source of referees to trust (that's resolver.py)
    - Zero-filling failed reads (that's aggregator.py)
    - Walking the referral tree (that's traversal.py)
    """

    async def batch_read(self, requests: list[ReadRequest]) -> list[ReadResult]:
        """
        Execute independent reads, returning one result per request.

        Results are aligned positionally with `requests`. One failed read
        never aborts the others; it comes back as a failed ReadResult.
        """
        ...

    async def query_logs(
        self,
        event: str,
        referrer: str,
        from_block: int,
        to_block: int | str = "latest",
    ) -> list[LogRecord]:
        """
        Return ReferralAssigned logs whose indexed referrer matches.

        Raises:
            RPCError: The node rejected the query
            NetworkError: Connection or timeout issue
        """
        ...

    async def block_number(self) -> int:
        """Return the current chain tip."""
        ...

    async def close(self) -> None:
        ...


async def read_one(client: ChainReader, request: ReadRequest) -> ReadResult:
    """Single read through `batch_read`; a missing result counts as failed."""
    results = await client.batch_read([request])
    return results[0] if results else ReadResult.failed("missing result")

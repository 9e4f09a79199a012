"""
Custom exception hierarchy for refnet.

Each exception maps to a specific CLI exit code and JSON error_code field.
cli.py catches all RefnetError subclasses and formats them as JSON output.

Exit code mapping:
  1 — RefnetError (generic CLI error)
  2 — APIError (JSON-RPC error response, rate limit)
  3 — NetworkError (timeout, connection refused)
  4 — DataError (invalid or missing address)
  5 — ConfigError (missing/malformed config)
  7 — TraversalError (referral walk failed or exceeded its deadline)

Leaf read failures never surface as exceptions; they are absorbed as zero
values by the aggregator. Only the profile boundary turns an escaping
exception into a user-visible error.
"""


class RefnetError(Exception):
    """Base exception for all refnet errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class APIError(RefnetError):
    """Upstream node returned an error response."""

    exit_code = 2
    error_code = "api_error"


class RPCError(APIError):
    """JSON-RPC call failed or returned undecodable data."""

    error_code = "rpc_error"


class RateLimitError(APIError):
    """RPC provider rate limit exceeded."""

    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 60, **kwargs) -> None:
        super().__init__(message, details={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class NetworkError(RefnetError):
    """Network connectivity issue — timeout or connection failure."""

    exit_code = 3
    error_code = "network_error"


class NetworkTimeoutError(NetworkError):
    """Request timed out."""

    error_code = "network_timeout"


class ConnectionFailedError(NetworkError):
    """Could not connect to the RPC endpoint."""

    error_code = "connection_failed"


class DataError(RefnetError):
    """Data validation error."""

    exit_code = 4
    error_code = "data_error"


class InvalidAddressError(DataError):
    """Address is not a 20-byte hex account identifier."""

    error_code = "invalid_address"


class ConfigError(RefnetError):
    """Config file is missing or malformed."""

    exit_code = 5
    error_code = "config_error"


class ConfigMissingError(ConfigError):
    """A required setting (RPC URL, contract address) is not configured."""

    error_code = "config_missing"


class ConfigInvalidError(ConfigError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class TraversalError(RefnetError):
    """The referral walk could not be completed."""

    exit_code = 7
    error_code = "traversal_failed"


class TraversalTimeoutError(TraversalError):
    """The referral walk exceeded its deadline."""

    error_code = "traversal_timeout"

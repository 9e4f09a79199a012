"""
Config loading for refnet.

Sources (in precedence order, highest first):
  1. Environment variables (REFNET_*)
  2. ~/.refnet/config.toml
  3. Built-in defaults

Usage:
    from refnet.config import load_config
    config = load_config()
    print(config.chain.rpc_url)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import toml

from refnet.exceptions import ConfigInvalidError

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".refnet"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("REFNET_RPC_URL", "chain.rpc_url", str),
    ("REFNET_CONTRACT_ADDRESS", "chain.contract_address", str),
    ("REFNET_START_BLOCK", "chain.start_block", int),
    ("REFNET_REQUEST_TIMEOUT", "chain.request_timeout", float),
    ("REFNET_YY_ADDRESS", "tokens.yy", str),
    ("REFNET_SY_ADDRESS", "tokens.sy", str),
    ("REFNET_PY_ADDRESS", "tokens.py", str),
    ("REFNET_MAX_LEVEL", "traversal.max_level", int),
    ("REFNET_MAX_TOTAL_NODES", "traversal.max_total_nodes", int),
    ("REFNET_DATA_SOURCE", "traversal.data_source", str),
    ("REFNET_DEADLINE_SECONDS", "traversal.deadline_seconds", float),
    ("REFNET_TEST_REFERRER", "testing.referrer", str),
    ("REFNET_TEST_REFEREE", "testing.referee", str),
    ("REFNET_OUTPUT_FORMAT", "output.default_format", str),
]

VALID_FORMATS = {"json", "jsonl", "table", "csv"}
VALID_SOURCES = {"list", "events", "auto"}
MAX_SUPPORTED_LEVEL = 15

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


@dataclass
class ChainConfig:
    """RPC endpoint and staking contract."""

    rpc_url: str = ""
    contract_address: str = ""
    start_block: int = 0                # 0 → scan from tip - 120k blocks
    request_timeout: float = 30.0
    requests_per_second: float = 10.0
    batch_size: int = 500               # eth_calls per JSON-RPC batch


@dataclass
class TokensConfig:
    """Addresses of the three stake token categories."""

    yy: str = ""
    sy: str = ""
    py: str = ""


@dataclass
class TraversalSettings:
    """Defaults for the referral walk; CLI flags override per invocation."""

    max_level: int = 15
    max_total_nodes: int = 2000
    data_source: str = "auto"           # list | events | auto
    deadline_seconds: float = 120.0     # 0 disables the deadline
    max_stakes_per_node: int = 256
    max_concurrency: int = 16


@dataclass
class TestingConfig:
    """Synthetic referral edge for verification environments."""

    __test__ = False

    referrer: str = ""
    referee: str = ""


@dataclass
class OutputConfig:
    """Output formatting defaults."""

    default_format: str = "json"        # json | jsonl | table | csv
    color: bool = True


@dataclass
class RefnetConfig:
    """Full configuration object. Passed via Click context to all commands."""

    chain: ChainConfig = field(default_factory=ChainConfig)
    tokens: TokensConfig = field(default_factory=TokensConfig)
    traversal: TraversalSettings = field(default_factory=TraversalSettings)
    testing: TestingConfig = field(default_factory=TestingConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


def load_config(path: str | None = None) -> RefnetConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    Args:
        path: Override config file path. If None, uses REFNET_CONFIG_PATH
              env var or default (~/.refnet/config.toml).

    Returns:
        RefnetConfig with all values resolved.

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    config = _dict_to_config(raw)
    _apply_env_overrides(config)
    validate_config(config)

    return config


def save_config(config: RefnetConfig, path: str | None = None) -> Path:
    """
    Serialize RefnetConfig to TOML and write to disk.

    Returns the path where config was written.
    """
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "chain": {
            "rpc_url": config.chain.rpc_url,
            "contract_address": config.chain.contract_address,
            "start_block": config.chain.start_block,
            "request_timeout": config.chain.request_timeout,
            "requests_per_second": config.chain.requests_per_second,
            "batch_size": config.chain.batch_size,
        },
        "tokens": {
            "yy": config.tokens.yy,
            "sy": config.tokens.sy,
            "py": config.tokens.py,
        },
        "traversal": {
            "max_level": config.traversal.max_level,
            "max_total_nodes": config.traversal.max_total_nodes,
            "data_source": config.traversal.data_source,
            "deadline_seconds": config.traversal.deadline_seconds,
            "max_stakes_per_node": config.traversal.max_stakes_per_node,
            "max_concurrency": config.traversal.max_concurrency,
        },
        "testing": {
            "referrer": config.testing.referrer,
            "referee": config.testing.referee,
        },
        "output": {
            "default_format": config.output.default_format,
            "color": config.output.color,
        },
    }

    with open(config_path, "w") as f:
        toml.dump(data, f)

    return config_path


def get_default_config_path() -> Path:
    """Return the default config file path."""
    return DEFAULT_CONFIG_PATH


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("REFNET_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> RefnetConfig:
    """Build RefnetConfig from raw TOML dict, applying defaults for missing keys."""
    config = RefnetConfig()

    try:
        chain = raw.get("chain", {})
        config.chain.rpc_url = chain.get("rpc_url", "")
        config.chain.contract_address = chain.get("contract_address", "")
        config.chain.start_block = int(chain.get("start_block", 0))
        config.chain.request_timeout = float(chain.get("request_timeout", 30.0))
        config.chain.requests_per_second = float(chain.get("requests_per_second", 10.0))
        config.chain.batch_size = int(chain.get("batch_size", 500))

        tokens = raw.get("tokens", {})
        config.tokens.yy = tokens.get("yy", "")
        config.tokens.sy = tokens.get("sy", "")
        config.tokens.py = tokens.get("py", "")

        trav = raw.get("traversal", {})
        config.traversal.max_level = int(trav.get("max_level", 15))
        config.traversal.max_total_nodes = int(trav.get("max_total_nodes", 2000))
        config.traversal.data_source = str(trav.get("data_source", "auto")).lower()
        config.traversal.deadline_seconds = float(trav.get("deadline_seconds", 120.0))
        config.traversal.max_stakes_per_node = int(trav.get("max_stakes_per_node", 256))
        config.traversal.max_concurrency = int(trav.get("max_concurrency", 16))
    except (ValueError, TypeError) as e:
        raise ConfigInvalidError(f"Invalid config value: {e}") from e

    testing = raw.get("testing", {})
    config.testing.referrer = testing.get("referrer", "")
    config.testing.referee = testing.get("referee", "")

    output = raw.get("output", {})
    config.output.default_format = output.get("default_format", "json")
    config.output.color = bool(output.get("color", True))

    return config


def _apply_env_overrides(config: RefnetConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    if os.environ.get("REFNET_NO_COLOR"):
        config.output.color = False

    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        try:
            setattr(section_obj, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e

    config.traversal.data_source = config.traversal.data_source.lower()


def validate_config(config: RefnetConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    if not 1 <= config.traversal.max_level <= MAX_SUPPORTED_LEVEL:
        raise ConfigInvalidError(
            f"traversal.max_level must be 1–{MAX_SUPPORTED_LEVEL}, "
            f"got {config.traversal.max_level}"
        )
    if config.traversal.max_total_nodes < 1:
        raise ConfigInvalidError(
            f"traversal.max_total_nodes must be positive, "
            f"got {config.traversal.max_total_nodes}"
        )
    if config.traversal.data_source not in VALID_SOURCES:
        raise ConfigInvalidError(
            f"traversal.data_source must be one of {VALID_SOURCES}, "
            f"got {config.traversal.data_source!r}"
        )
    if config.traversal.deadline_seconds < 0:
        raise ConfigInvalidError(
            f"traversal.deadline_seconds must be non-negative, "
            f"got {config.traversal.deadline_seconds}"
        )
    if config.chain.batch_size < 1:
        raise ConfigInvalidError(
            f"chain.batch_size must be positive, got {config.chain.batch_size}"
        )
    if config.output.default_format not in VALID_FORMATS:
        raise ConfigInvalidError(
            f"output.default_format must be one of {VALID_FORMATS}, "
            f"got {config.output.default_format!r}"
        )

    addresses = {
        "chain.contract_address": config.chain.contract_address,
        "tokens.yy": config.tokens.yy,
        "tokens.sy": config.tokens.sy,
        "tokens.py": config.tokens.py,
        "testing.referrer": config.testing.referrer,
        "testing.referee": config.testing.referee,
    }
    for key, value in addresses.items():
        if value and not _ADDRESS_RE.match(value):
            raise ConfigInvalidError(f"{key} is not a valid address: {value!r}")

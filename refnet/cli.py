"""Click CLI entry point for refnet.

All commands are thin orchestration wrappers — business logic lives in
config, chain, resolver, aggregator, traversal, profile, output, and
watch modules.

Exit codes:
  0 — success
  1 — generic CLI error
  2 — RPC error, rate limit
  3 — network error
  4 — data error (invalid address)
  5 — config error
  7 — referral walk failed (Profile.error)
  130 — watch interrupted
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import sys
from pathlib import Path
from typing import Any

import click
from loguru import logger

from refnet import __version__
from refnet.aggregator import NodeAggregator, TokenCategories
from refnet.chain import get_chain_client
from refnet.chain.base import ChainReader
from refnet.config import (
    RefnetConfig,
    get_default_config_path,
    load_config,
    save_config,
    validate_config,
)
from refnet.exceptions import (
    ConfigInvalidError,
    InvalidAddressError,
    RefnetError,
    TraversalError,
)
from refnet.models import MAX_LEVEL, TraversalConfig, normalize_address
from refnet.output import format_output, mask_url
from refnet.profile import build_profile
from refnet.resolver import build_referee_source, resolve_referees, synthetic_edge

SUPPORTED_SOURCES = ["list", "events", "auto"]
SUPPORTED_FORMATS = ["json", "jsonl", "table", "csv"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: RefnetError | Exception) -> None:
    """Write error JSON to stderr."""
    if isinstance(err, RefnetError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _configure_logging(level: str) -> None:
    """Route loguru to stderr so stdout stays machine-readable."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def _require_address(address: str) -> str:
    if not _ADDRESS_RE.match(address.strip()):
        raise InvalidAddressError(
            f"Invalid address: {address!r}",
            details={"address": address},
        )
    return normalize_address(address)


def _open_client(config: RefnetConfig) -> ChainReader:
    """Chain reader for the configured contract. Raises ConfigMissingError."""
    return get_chain_client(config)


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__, prog_name="refnet")
@click.option(
    "--config",
    "config_path",
    envvar="REFNET_CONFIG",
    default=None,
    help="Config file path (default: ~/.refnet/config.toml)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(SUPPORTED_FORMATS),
    default=None,
    help="Output format (overrides config default)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="REFNET_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Diagnostics written to stderr",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    output_format: str | None,
    log_level: str,
) -> None:
    """refnet — on-chain referral network explorer."""
    ctx.ensure_object(dict)
    _configure_logging(log_level)
    try:
        config = load_config(config_path)
    except RefnetError as e:
        # On config errors, use defaults (so config init still works)
        logger.warning(f"config not loaded, using defaults: {e.message}")
        config = RefnetConfig()

    ctx.obj["config"] = config
    ctx.obj["format"] = output_format or config.output.default_format
    ctx.obj["config_path"] = config_path


# ── Profile command ───────────────────────────────────────────────────────────


@cli.command("profile")
@click.argument("address")
@click.option("--max-level", type=click.IntRange(1, MAX_LEVEL), default=None, help="Deepest level to walk")
@click.option("--max-nodes", type=click.IntRange(min=1), default=None, help="Total referee cap")
@click.option("--source", type=click.Choice(SUPPORTED_SOURCES), default=None, help="Referee data source")
@click.option("--deadline", type=click.FloatRange(min=0), default=None, help="Seconds before the walk is abandoned (0 = none)")
@click.option("--format", "fmt", type=click.Choice(SUPPORTED_FORMATS), default=None)
@click.pass_context
def profile_command(
    ctx: click.Context,
    address: str,
    max_level: int | None,
    max_nodes: int | None,
    source: str | None,
    deadline: float | None,
    fmt: str | None,
) -> None:
    """Walk the referral tree under ADDRESS and print its profile."""
    config: RefnetConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        root = _require_address(address)
        traversal = TraversalConfig.from_config(
            config,
            max_level=max_level,
            max_total_nodes=max_nodes,
            data_source=source,
            deadline_seconds=deadline,
        )
        client = _open_client(config)
        try:
            profile = await build_profile(
                root,
                client,
                config=traversal,
                tokens=TokenCategories.from_config(config),
                synthetic=synthetic_edge(config),
            )
        finally:
            await client.close()

        if profile.error:
            raise TraversalError(profile.error, details={"address": root})
        return profile.to_dict()

    try:
        result = asyncio.run(_run())
    except RefnetError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt, color=config.output.color))


# ── Referees command ──────────────────────────────────────────────────────────


@cli.command("referees")
@click.argument("address")
@click.option("--source", type=click.Choice(SUPPORTED_SOURCES), default=None, help="Referee data source")
@click.option("--format", "fmt", type=click.Choice(SUPPORTED_FORMATS), default=None)
@click.pass_context
def referees_command(ctx: click.Context, address: str, source: str | None, fmt: str | None) -> None:
    """List the direct referees of ADDRESS."""
    config: RefnetConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj.get("format", "json")
    mode = source or config.traversal.data_source

    async def _run() -> dict[str, Any]:
        addr = _require_address(address)
        client = _open_client(config)
        try:
            referee_source = build_referee_source(
                client,
                mode,
                start_block=config.chain.start_block,
                synthetic=synthetic_edge(config),
            )
            referees = await resolve_referees(addr, referee_source)
        finally:
            await client.close()
        return {
            "address": addr,
            "source": mode,
            "count": len(referees),
            "referees": referees,
        }

    try:
        result = asyncio.run(_run())
    except RefnetError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt, color=config.output.color))


# ── Node command ──────────────────────────────────────────────────────────────


@cli.command("node")
@click.argument("address")
@click.option(
    "--depth",
    type=click.IntRange(1, MAX_LEVEL),
    default=1,
    show_default=True,
    help="Aggregate as if found at this level (1 includes the token split)",
)
@click.option("--format", "fmt", type=click.Choice(["json", "table", "csv"]), default=None)
@click.pass_context
def node_command(ctx: click.Context, address: str, depth: int, fmt: str | None) -> None:
    """Show stake metrics for a single ADDRESS."""
    config: RefnetConfig = ctx.obj["config"]
    fmt = fmt or ctx.obj.get("format", "json")
    if fmt == "jsonl":
        fmt = "json"

    async def _run() -> dict[str, Any]:
        addr = _require_address(address)
        client = _open_client(config)
        try:
            aggregator = NodeAggregator(
                client,
                TokenCategories.from_config(config),
                max_stakes_per_node=config.traversal.max_stakes_per_node,
            )
            node = await aggregator.aggregate_node(addr, depth)
        finally:
            await client.close()
        return {**node.to_dict(), "depth": depth}

    try:
        result = asyncio.run(_run())
    except RefnetError as e:
        _output_error(e)
        return

    click.echo(format_output(result, fmt, color=config.output.color))


# ── Watch command ─────────────────────────────────────────────────────────────


@cli.command("watch")
@click.argument("address")
@click.option("--interval", default=60.0, type=click.FloatRange(min=0), show_default=True)
@click.option("--cycles", default=None, type=click.IntRange(min=1), help="Stop after N cycles")
@click.option("--source", type=click.Choice(SUPPORTED_SOURCES), default=None)
@click.pass_context
def watch_command(
    ctx: click.Context,
    address: str,
    interval: float,
    cycles: int | None,
    source: str | None,
) -> None:
    """Re-profile ADDRESS periodically, streaming JSONL events to stdout."""
    from refnet.watch import run_watch

    config: RefnetConfig = ctx.obj["config"]

    async def _run() -> None:
        root = _require_address(address)
        traversal = TraversalConfig.from_config(config, data_source=source)
        client = _open_client(config)
        try:
            await run_watch(
                root,
                client,
                interval_seconds=interval,
                config=traversal,
                tokens=TokenCategories.from_config(config),
                synthetic=synthetic_edge(config),
                cycles=cycles,
            )
        finally:
            await client.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        sys.exit(130)
    except RefnetError as e:
        _output_error(e)


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage refnet configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Initialize default config at ~/.refnet/config.toml."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    status = "initialized"
    backup = None

    if config_path.exists() and force:
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        status = "reinitialized"

    save_config(RefnetConfig(), str(config_path))

    result: dict[str, Any] = {
        "status": status,
        "config_path": str(config_path),
    }
    if backup:
        result["backup"] = backup
    click.echo(json.dumps(result))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a config value by dotted key path (e.g. chain.rpc_url)."""
    config_path = ctx.obj.get("config_path")
    config: RefnetConfig = ctx.obj["config"]

    parts = key.split(".", 1)
    if len(parts) != 2:
        sys.stderr.write(
            json.dumps(
                {
                    "error": "cli_error",
                    "message": f"Key must be in form section.key, got: {key!r}",
                }
            )
            + "\n"
        )
        sys.exit(1)

    section_name, field_name = parts
    section = getattr(config, section_name, None)
    if section is None or not hasattr(section, field_name) or field_name.startswith("_"):
        _output_error(ConfigInvalidError(f"Unknown config key: {key!r}"))
        return

    # Type-coerce
    current = getattr(section, field_name)
    try:
        if isinstance(current, bool):
            typed_value: Any = value.lower() in ("1", "true", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, float):
            typed_value = float(value)
        else:
            typed_value = value
        setattr(section, field_name, typed_value)
        validate_config(config)
    except (ValueError, TypeError) as e:
        _output_error(ConfigInvalidError(str(e)))
        return
    except RefnetError as e:
        _output_error(e)
        return

    save_config(config, config_path)

    display_value = mask_url(str(typed_value)) if field_name == "rpc_url" else typed_value
    click.echo(json.dumps({"status": "updated", "key": key, "value": display_value}))


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration (RPC URL masked)."""
    config: RefnetConfig = ctx.obj["config"]
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()

    result = {
        "config_path": str(config_path),
        "chain": {
            "rpc_url": mask_url(config.chain.rpc_url) if config.chain.rpc_url else "",
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

    click.echo(format_output(result, "json"))


if __name__ == "__main__":
    cli()

"""Output format routing for refnet.

Converts result dicts to the requested format: json, jsonl, table, csv.

Design rules:
- JSON: 2-space indent, deterministic key order, utf-8
- JSONL: one JSON object per line, no trailing whitespace
- Table: Rich-formatted, amounts rendered with 18 decimals
- CSV: RFC 4180, header row always present

All functions return strings. The caller writes to stdout.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

VALID_FORMATS = {"json", "jsonl", "table", "csv"}

TOKEN_DECIMALS = 18


def format_output(data: Any, fmt: str, color: bool = True) -> str:
    """
    Format data for stdout output.

    Args:
        data: Result dict, list, or any JSON-serialisable value.
        fmt: "json" | "jsonl" | "table" | "csv"

    Returns:
        Formatted string ready to write to stdout.

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "json":
        return format_json(data)
    elif fmt == "jsonl":
        return format_jsonl(data)
    elif fmt == "table":
        return format_table(data, color=color)
    elif fmt == "csv":
        return format_csv(data)

    return format_json(data)  # fallback


def format_amount(value: int | str | None, decimals: int = TOKEN_DECIMALS) -> str:
    """
    Render a raw fixed-point amount for humans.

    1500000000000000000000 → '1,500'
    1234500000000000000    → '1.2345'
    """
    try:
        v = int(value or 0)
    except (TypeError, ValueError):
        return str(value)
    if decimals <= 0:
        return f"{v:,}"
    sign = "-" if v < 0 else ""
    whole, frac = divmod(abs(v), 10**decimals)
    frac_str = str(frac).rjust(decimals, "0").rstrip("0")
    return f"{sign}{whole:,}.{frac_str}" if frac_str else f"{sign}{whole:,}"


def short_address(address: str | None) -> str:
    """0xd8da6bf2…a96045 for display."""
    address = address or ""
    return f"{address[:10]}…{address[-6:]}" if len(address) > 18 else address


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    """Pretty-print data as JSON (2-space indent)."""
    return json.dumps(data, indent=2, ensure_ascii=False)


# ── JSONL ────────────────────────────────────────────────────────────────────


def format_jsonl(data: Any) -> str:
    """
    Format as JSONL (one object per line).

    If data is a profile dict with a 'levels' key, emits the documented
    event sequence: profile_start, level_result*, profile_end.

    Otherwise falls back to a single-line JSON serialisation.
    """
    lines: list[str] = []

    if isinstance(data, dict) and "levels" in data:
        address = data.get("address", "")
        root = data.get("root", {})

        lines.append(
            json.dumps(
                {
                    "type": "profile_start",
                    "address": address,
                    "root_total_staked": root.get("total_staked", "0"),
                    "root_stake_count": root.get("stake_count", 0),
                    "root_referrer": root.get("referrer"),
                }
            )
        )

        for level in data.get("levels", []):
            lines.append(
                json.dumps(
                    {
                        "type": "level_result",
                        "address": address,
                        "level": level.get("level"),
                        "count": level.get("count", 0),
                        "total_staked": level.get("total_staked", "0"),
                        "referees": [r.get("address") for r in level.get("rows", [])],
                    }
                )
            )

        lines.append(
            json.dumps(
                {
                    "type": "profile_end",
                    "address": address,
                    "error": data.get("error"),
                    "levels": len(data.get("levels", [])),
                    "total_nodes": data.get("total_nodes", 0),
                    "truncated": data.get("truncated", False),
                }
            )
        )

    elif isinstance(data, list):
        for item in data:
            lines.append(json.dumps(item))

    else:
        lines.append(json.dumps(data))

    return "\n".join(lines)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any, color: bool = True) -> str:
    """Render data as Rich tables, captured to a string."""
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=color, no_color=not color, width=140)

    if isinstance(data, dict) and "levels" in data:
        _render_profile(console, data)
    elif isinstance(data, dict) and "referees" in data:
        _render_referees(console, data)
    elif isinstance(data, dict) and "stake_count" in data and "address" in data:
        _render_node_rows(console, "Node", [data])
    else:
        # Generic: dump as JSON
        console.print_json(json.dumps(data))

    return buf.getvalue()


def _render_profile(console: Console, data: dict[str, Any]) -> None:
    if data.get("error"):
        console.print(Text(f"Error: {data['error']}", style="bold red"))
        return

    root = data.get("root", {})
    claimable = root.get("claimable", {})
    console.print(f"[bold]Referral profile[/bold] {data.get('address', '')}")
    console.print(
        f"Own stake: [bold]{format_amount(root.get('total_staked'))}[/bold] "
        f"in {root.get('stake_count', 0)} stakes  "
        f"Referrer: {root.get('referrer') or '—'}"
    )
    console.print(
        "Claimable: "
        f"YY {format_amount(claimable.get('yy'))}  "
        f"SY {format_amount(claimable.get('sy'))}  "
        f"PY {format_amount(claimable.get('py'))}"
    )

    levels_table = Table(title="Levels", header_style="bold blue")
    levels_table.add_column("Level", justify="right")
    levels_table.add_column("Referees", justify="right")
    levels_table.add_column("Total Staked", justify="right")
    for level in data.get("levels", []):
        levels_table.add_row(
            str(level.get("level")),
            str(level.get("count", 0)),
            format_amount(level.get("total_staked")),
        )
    console.print(levels_table)

    if data.get("level1_rows"):
        _render_node_rows(console, "Direct Referrals", data["level1_rows"])

    footer = f"Total referees: [bold]{data.get('total_nodes', 0)}[/bold]"
    if data.get("truncated"):
        footer += "  [yellow](truncated at node cap)[/yellow]"
    console.print(footer)


def _render_node_rows(console: Console, title: str, rows: list[dict[str, Any]]) -> None:
    table = Table(title=title, header_style="bold blue")
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("Stakes", justify="right")
    table.add_column("Total Staked", justify="right")
    table.add_column("YY", justify="right")
    table.add_column("SY", justify="right")
    table.add_column("PY", justify="right")

    for row in rows:
        split = row.get("token_split") or {}
        table.add_row(
            short_address(row.get("address")),
            str(row.get("stake_count", 0)),
            format_amount(row.get("total_staked")),
            format_amount(split.get("yy")) if split else "—",
            format_amount(split.get("sy")) if split else "—",
            format_amount(split.get("py")) if split else "—",
        )
    console.print(table)


def _render_referees(console: Console, data: dict[str, Any]) -> None:
    table = Table(
        title=f"Direct referees of {short_address(data.get('address'))} ({data.get('source', '')})",
        header_style="bold blue",
    )
    table.add_column("#", justify="right")
    table.add_column("Address", style="cyan")
    for i, addr in enumerate(data.get("referees", []), start=1):
        table.add_row(str(i), addr)
    console.print(table)
    console.print(f"Total: [bold]{data.get('count', len(data.get('referees', [])))}[/bold]")


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    """
    Format as CSV with a header row.

    Profiles export one row per referee across all levels.
    """
    buf = io.StringIO()
    writer = csv.writer(buf)

    rows: list[dict[str, Any]] = []

    if isinstance(data, dict):
        if "levels" in data:
            for level in data.get("levels", []):
                for row in level.get("rows", []):
                    rows.append({"level": level.get("level"), **row})
        elif "referees" in data:
            rows = [{"address": a} for a in data.get("referees", [])]
        elif "address" in data and "stake_count" in data:
            rows = [data]

    elif isinstance(data, list):
        rows = data

    if not rows:
        writer.writerow(["value"])
        writer.writerow([json.dumps(data)])
        return buf.getvalue()

    flat_rows = [_flatten_dict(r) for r in rows]

    # Level-1 rows carry a split, deeper rows do not; union the headers
    headers: list[str] = []
    for row in flat_rows:
        for key in row:
            if key not in headers:
                headers.append(key)
    writer.writerow(headers)
    for row in flat_rows:
        writer.writerow([row.get(h, "") for h in headers])

    return buf.getvalue()


def _flatten_dict(d: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict for CSV output."""
    result: dict[str, Any] = {}
    for k, v in d.items():
        full_key = f"{prefix}{k}" if not prefix else f"{prefix}.{k}"
        if isinstance(v, dict):
            result.update(_flatten_dict(v, full_key))
        elif isinstance(v, (list, tuple)):
            result[full_key] = json.dumps(v)
        elif v is None:
            result[full_key] = ""
        else:
            result[full_key] = v
    return result


# ── Utility ──────────────────────────────────────────────────────────────────


def mask_url(url: str) -> str:
    """
    Hide the credential part of an RPC URL for safe display.

    'https://eth.example/v2/abcdef123' → 'https://eth.example/****'
    """
    if not url:
        return "****"
    scheme, sep, rest = url.partition("://")
    if not sep:
        return "****"
    host = rest.split("/", 1)[0]
    return f"{scheme}://{host}/****"

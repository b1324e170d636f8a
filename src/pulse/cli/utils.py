"""
CLI utility helpers: output formatting and scheduler construction.
"""

from __future__ import annotations

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from pulse.core.config import PulseSettings, get_settings
from pulse.core.errors import PulseError
from pulse.core.scheduling import HeartbeatScheduler, create_scheduler

console = Console()
err_console = Console(stderr=True)


# ── Scheduler helper ─────────────────────────────────────────────────────


def load_settings(state_dir: Path | None = None) -> PulseSettings:
    """Resolve settings, turning validation failures into a clean exit."""
    try:
        return get_settings(state_dir=state_dir, _force_reload=True)
    except ValueError as e:
        err_console.print(f"[bold red]Error[/bold red] (CONFIG): {e}")
        raise typer.Exit(code=2) from e


def make_scheduler(state_dir: Path | None = None) -> HeartbeatScheduler:
    """Build an unstarted scheduler for one-shot control commands."""
    settings = load_settings(state_dir)
    try:
        return create_scheduler(settings)
    except PulseError as e:
        fail(e)


# ── Output helpers ───────────────────────────────────────────────────────


def fail(error: PulseError) -> NoReturn:
    """Print a Pulse error and exit non-zero."""
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")
    raise typer.Exit(code=1)


def format_timestamp(ms: int | None, now_ms: int | None = None) -> str:
    """Render epoch-ms as local time with a relative hint."""
    if ms is None:
        return "never"
    now_ms = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    stamp = datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
    delta_min = round((ms - now_ms) / 60_000)
    if delta_min > 0:
        return f"{stamp} (in {delta_min}m)"
    if delta_min < 0:
        return f"{stamp} ({-delta_min}m ago)"
    return f"{stamp} (now)"


def output_json(data: dict[str, Any]) -> None:
    console.print_json(json.dumps(data, default=str))


def output_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as a two-column Rich table."""
    table = Table(title=title or None, show_header=False, pad_edge=False)
    table.add_column("field", style="cyan")
    table.add_column("value", overflow="fold")
    for k, v in data.items():
        table.add_row(k, "-" if v is None else str(v))
    console.print(table)

"""
Root Typer application for the pulse CLI.

Every command except ``run`` is one-shot: it builds an unstarted scheduler,
which behaves as a follower.  Settings changes go through the settings
channel and triggers through the trigger marker, so whichever process
currently leads picks them up on its next tick.
"""

from __future__ import annotations

from pathlib import Path

import typer
from typer import Typer

from pulse.cli.utils import (
    console,
    fail,
    format_timestamp,
    load_settings,
    make_scheduler,
    output_dict,
    output_json,
)
from pulse.core.errors import PulseError
from pulse.core.scheduling import TriggerOutcome

app = Typer(
    name="pulse",
    help="pulse: single-leader heartbeat scheduling over a shared state directory.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_STATE_DIR_HELP = "State directory (default: $PULSE_STATE_DIR or ~/.pulse)."


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("pulse-core")
        except PackageNotFoundError:
            from pulse import __version__ as v
        typer.echo(f"pulse-core {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """pulse CLI: inspect and control the heartbeat from any process."""
    if verbose:
        from pulse.core.logging import configure_logging

        configure_logging(level="DEBUG", json_format=False)


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("status")
def status(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show leadership and schedule state."""
    scheduler = make_scheduler(state_dir)
    snapshot = scheduler.status()
    if json_out:
        output_json(snapshot.to_dict())
        return

    if snapshot.leader_pid:
        leadership = f"leader pid {snapshot.leader_pid}"
    else:
        leadership = "no leader"
    now = scheduler.clock.now_ms()
    output_dict(
        {
            "enabled": snapshot.enabled,
            "role": snapshot.role.value,
            "leadership": leadership,
            "interval": snapshot.interval,
            "model": snapshot.pinned_model or "auto",
            "check-ins": snapshot.check_count,
            "last check-in": format_timestamp(snapshot.last_check_at, now),
            "next check-in": format_timestamp(snapshot.next_check_at, now)
            if snapshot.next_check_at
            else "-",
        },
        title="Heartbeat",
    )


@app.command("enable")
def enable(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
) -> None:
    """Enable the heartbeat."""
    scheduler = make_scheduler(state_dir)
    try:
        snapshot = scheduler.enable()
    except PulseError as e:
        fail(e)
    console.print(f"[green]Heartbeat enabled[/green] (every {snapshot.interval})")


@app.command("disable")
def disable(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
) -> None:
    """Disable the heartbeat."""
    scheduler = make_scheduler(state_dir)
    try:
        scheduler.disable()
    except PulseError as e:
        fail(e)
    console.print("[yellow]Heartbeat disabled[/yellow]")


@app.command("interval")
def interval(
    value: str | None = typer.Argument(None, help="e.g. 30m, 1h, or 0 to disable"),
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
) -> None:
    """Show or set the check-in interval."""
    scheduler = make_scheduler(state_dir)
    if value is None:
        console.print(f"Current interval: {scheduler.status().interval}")
        return
    try:
        snapshot = scheduler.set_interval(value)
    except PulseError as e:
        fail(e)
    if snapshot.interval_ms == 0:
        console.print("Heartbeat interval disabled")
    else:
        console.print(f"Heartbeat interval set to {snapshot.interval}")


@app.command("model")
def model(
    value: str | None = typer.Argument(None, help="provider/model-id, or 'auto'"),
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
) -> None:
    """Show or pin the model used for check-ins."""
    scheduler = make_scheduler(state_dir)
    if value is None:
        pinned = scheduler.status().pinned_model
        source = "pinned" if pinned else "auto"
        console.print(f"Heartbeat model: {pinned or 'auto'} ({source})")
        return
    try:
        snapshot = scheduler.set_model(value)
    except PulseError as e:
        fail(e)
    console.print(f"Heartbeat model set to {snapshot.pinned_model or 'auto'}")


@app.command("trigger")
def trigger(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
) -> None:
    """Ask the current leader to run a check-in now."""
    scheduler = make_scheduler(state_dir)
    receipt = scheduler.trigger()
    if receipt.outcome is TriggerOutcome.FAILED:
        console.print(f"[bold red]{receipt.message}[/bold red]")
        raise typer.Exit(code=1)
    console.print(receipt.message)


@app.command("lease")
def lease(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the raw lease record."""
    scheduler = make_scheduler(state_dir)
    record, mtime = scheduler.lease.read_with_mtime()
    if mtime is None:
        console.print("[dim]No lease held.[/dim]")
        return
    now = scheduler.clock.now_ms()
    stale = scheduler.lease.is_stale(record, now, mtime_ms=mtime)
    data = record.to_dict() if record is not None else {"unparseable": True}
    data["stale"] = stale
    if json_out:
        output_json(data)
        return
    output_dict(data, title=f"Lease: {scheduler.lease.path}")


@app.command("run")
def run(
    state_dir: Path | None = typer.Option(None, "--state-dir", "-s", help=_STATE_DIR_HELP),
    poll: float | None = typer.Option(
        None, "--poll", help="Refresh interval in seconds (default: PULSE_REFRESH_INTERVAL_SECONDS)."
    ),
) -> None:
    """Run the heartbeat in the foreground until interrupted."""
    from pulse.core.logging import configure_logging, get_logger
    from pulse.core.scheduling import HeartbeatRunner

    settings = load_settings(state_dir)
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")
    scheduler = make_scheduler(state_dir)
    runner = HeartbeatRunner(scheduler, poll_interval_seconds=poll or settings.refresh_interval_seconds)
    get_logger(__name__).info(
        "heartbeat_run",
        pid=scheduler.pid,
        state_dir=str(settings.state_dir),
        poll_seconds=runner.poll_interval,
    )
    console.print(f"[bold]pulse[/bold] heartbeat running (pid {scheduler.pid}, state {settings.state_dir})")
    runner.run_forever()

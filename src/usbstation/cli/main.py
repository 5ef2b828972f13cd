"""
USB Station CLI Main Entry Point.

Provides a command-line front end for watching, copying and wiping USB drives.
"""

from __future__ import annotations

import json
import sys
import threading
from collections.abc import Sequence
from pathlib import Path

import click
import humanize
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from usbstation import __version__
from usbstation.core.config import UsbStationConfig, load_config
from usbstation.core.models import DriveRecord, OperationState
from usbstation.core.session import Station

console = Console()

EXIT_CODES = {
    OperationState.COMPLETED: 0,
    OperationState.ERROR: 1,
    OperationState.CANCELED: 130,
}


def get_station(ctx: click.Context) -> Station:
    """Get or create the station from context, opening its drive monitor."""
    if "station" not in ctx.obj:
        config = ctx.obj.get("config") or load_config()
        station = Station(config=config)
        station.open()
        ctx.call_on_close(station.close)
        ctx.obj["station"] = station
    return ctx.obj["station"]


def format_size(size_bytes: int) -> str:
    if size_bytes < 0:
        return "?"
    return humanize.naturalsize(size_bytes)


def drives_table(drives: Sequence[DriveRecord], title: str = "USB Drives") -> Table:
    table = Table(title=title)
    table.add_column("Port", style="yellow", justify="right")
    table.add_column("Device", style="cyan")
    table.add_column("Label", style="white")
    table.add_column("Mount Point", style="magenta")
    table.add_column("Used", style="green", justify="right")
    table.add_column("Size", style="green", justify="right")

    for drive in drives:
        table.add_row(
            str(drive.port) if drive.port else "-",
            drive.partition_device,
            drive.label or "-",
            drive.mount_point or "(not mounted)",
            format_size(drive.used_bytes),
            format_size(drive.size_bytes),
        )
    return table


def resolve_drive(station: Station, device: str, settle: float) -> DriveRecord:
    drive = station.wait_for_drive(device, timeout=settle)
    if drive is None:
        console.print(f"[red]Drive not found: {device}[/red]")
        sys.exit(1)
    return drive


def wait_for_job(station: Station, job_id: str) -> OperationState:
    """Wait for a job, cancelling it on Ctrl-C and waiting for it to wind down."""
    try:
        state = station.wait(job_id, timeout=0.2)
        while state is OperationState.RUNNING:
            state = station.wait(job_id, timeout=0.2)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelling...[/yellow]")
        if not station.cancel(job_id):
            console.print("[yellow]This step cannot be cancelled, finishing up...[/yellow]")
        state = station.wait(job_id)
    return state


def report_outcome(station: Station, job_id: str, state: OperationState) -> None:
    result = station.get_result(job_id)
    if result is not None:
        for warning in result.warnings:
            console.print(f"[yellow]⚠ {warning}[/yellow]")

    if state is OperationState.COMPLETED:
        console.print("[green]✓ Completed[/green]")
    elif state is OperationState.CANCELED:
        console.print("[yellow]Canceled[/yellow]")
    else:
        error = result.error if result is not None else "unknown error"
        console.print(f"[red]✗ Error: {error}[/red]")

    sys.exit(EXIT_CODES.get(state, 1))


@click.group()
@click.version_option(version=__version__, prog_name="USB Station")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, json_output: bool, verbose: bool) -> None:
    """
    USB Station - copy and wipe USB drives.

    Watches drives as they are plugged in, copies one drive onto many,
    and securely wipes drives.
    """
    ctx.ensure_object(dict)

    if config:
        ctx.obj["config"] = UsbStationConfig.load(config)
    else:
        ctx.obj["config"] = load_config()

    if verbose:
        ctx.obj["config"].logging.level = "DEBUG"

    ctx.obj["json_output"] = json_output


@cli.command("drives")
@click.option("--settle", default=2.0, show_default=True, help="Seconds to wait for drive events")
@click.pass_context
def list_drives(ctx: click.Context, settle: float) -> None:
    """List plugged-in USB drives."""
    station = get_station(ctx)

    with console.status("Waiting for drives..."):
        threading.Event().wait(settle)
    drives = station.drives

    if ctx.obj.get("json_output", False):
        click.echo(json.dumps([d.to_dict() for d in drives], indent=2))
        return

    if not drives:
        console.print("[yellow]No USB drives found[/yellow]")
        return
    console.print(drives_table(drives))


@cli.command("watch")
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Print the drive list every time it changes, until interrupted."""
    station = get_station(ctx)
    json_output = ctx.obj.get("json_output", False)

    def on_drives_changed(drives: Sequence[DriveRecord]) -> None:
        if json_output:
            click.echo(json.dumps([d.to_dict() for d in drives]))
        else:
            console.print(drives_table(drives, title=f"USB Drives ({len(drives)})"))

    station.add_listener(on_drives_changed)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        station.remove_listener(on_drives_changed)


@cli.command("ls")
@click.argument("device")
@click.option("--settle", default=5.0, show_default=True, help="Seconds to wait for the drive")
@click.pass_context
def list_files(ctx: click.Context, device: str, settle: float) -> None:
    """List the files on a drive."""
    station = get_station(ctx)
    drive = resolve_drive(station, device, settle)

    with console.status(f"Listing files on {drive.partition_device}..."):
        entries = station.get_file_listing(drive).result()

    if ctx.obj.get("json_output", False):
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))
        return

    table = Table(title=f"Files on {drive.label or drive.partition_device}")
    table.add_column("Path", style="cyan")
    table.add_column("Size", style="green", justify="right")
    for entry in entries:
        table.add_row(entry.path, format_size(entry.size_bytes))
    console.print(table)
    total = sum(e.size_bytes for e in entries)
    console.print(f"{len(entries)} files, {format_size(total)}")


@cli.command("copy")
@click.argument("source")
@click.argument("destinations", nargs=-1, required=True)
@click.option("--settle", default=5.0, show_default=True, help="Seconds to wait for each drive")
@click.pass_context
def copy(ctx: click.Context, source: str, destinations: tuple[str, ...], settle: float) -> None:
    """Copy the contents of SOURCE onto every DESTINATION drive."""
    station = get_station(ctx)
    source_drive = resolve_drive(station, source, settle)
    dest_drives = [resolve_drive(station, dest, settle) for dest in destinations]

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        bars = {
            d.partition_device: progress.add_task(f"-> {d.display_name}", total=100)
            for d in dest_drives
        }

        def update_progress(device: str, current: int, total: int) -> None:
            if device in bars and total:
                progress.update(bars[device], completed=current * 100 / total)

        job_id = station.submit_copy(source_drive, dest_drives, on_progress=update_progress)
        state = wait_for_job(station, job_id)

    report_outcome(station, job_id, state)


@cli.command("wipe")
@click.argument("device")
@click.option("--quick", is_flag=True, help="Skip overwriting with zeros, only reformat")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--settle", default=5.0, show_default=True, help="Seconds to wait for the drive")
@click.pass_context
def wipe(ctx: click.Context, device: str, quick: bool, yes: bool, settle: float) -> None:
    """Erase and reformat a drive."""
    station = get_station(ctx)
    drive = resolve_drive(station, device, settle)

    if not yes:
        console.print(
            f"[red]⚠️  ALL DATA ON {drive.display_name} ({drive.partition_device}) WILL BE DESTROYED[/red]"
        )
        if not click.confirm("Continue?", default=False):
            console.print("[yellow]Wipe aborted[/yellow]")
            sys.exit(1)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        bar = progress.add_task(f"Erasing {drive.display_name}", total=100)

        def update_progress(current: int, total: int) -> None:
            if total:
                progress.update(bar, completed=current * 100 / total)

        job_id = station.submit_wipe(drive, quick=quick, on_progress=update_progress)
        state = wait_for_job(station, job_id)

    report_outcome(station, job_id, state)


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()

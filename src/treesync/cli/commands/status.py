"""Status command for treesync cli."""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from treesync.cli.app import app
from treesync.config import STATUS_FILE_NAME, default_state_dir
from treesync.sync.status import StatusRecord, read_status

console = Console()

PHASE_STYLES = {
    "completed": "green",
    "no_changes": "green",
    "cancelled": "yellow",
    "failed": "red",
    "restored_after_failure": "red",
    "restore_incomplete": "bold red",
}


def display_status(record: StatusRecord) -> None:
    """Display a status record as a small table."""
    style = PHASE_STYLES.get(record.phase.value, "cyan")
    table = Table(show_header=False, box=None)
    table.add_row("Phase", f"[{style}]{record.phase.value}[/{style}]")
    table.add_row("Progress", "error" if record.percent < 0 else f"{record.percent}%")
    table.add_row("Updated", record.timestamp.isoformat(timespec="seconds"))
    if record.cycle_id:
        table.add_row("Cycle", record.cycle_id)
    table.add_row("Pid", str(record.pid))
    if record.message:
        table.add_row("Message", record.message)
    title = "Sync status" if record.is_terminal else "Sync in progress"
    console.print(Panel(table, title=title, expand=False))


@app.command()
def status(
    status_file: Optional[Path] = typer.Option(
        None, "--status-file", help="Status record file (defaults to ~/.treesync/status.json)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the raw status record"),
):
    """Show the current status record of the last sync cycle."""
    path = status_file or Path(
        os.environ.get("TREESYNC_STATUS_PATH", default_state_dir() / STATUS_FILE_NAME)
    ).expanduser()
    record = read_status(path)
    if record is None:
        typer.echo(f"No status recorded at {path}", err=True)
        raise typer.Exit(1)

    if as_json:
        typer.echo(record.model_dump_json(indent=2))
    else:
        display_status(record)

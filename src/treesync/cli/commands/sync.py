"""Command module for treesync sync operations."""

import asyncio
import shlex
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.padding import Padding
from rich.panel import Panel
from rich.text import Text
from rich.tree import Tree

from treesync.cli.app import app
from treesync.config import SyncConfig
from treesync.sync import Changeset, SyncOrchestrator
from treesync.sync.checks import check_all, check_not_empty, check_python_syntax, command_check
from treesync.sync.exceptions import SyncInProgressError
from treesync.sync.fetch import DirectoryFetcher
from treesync.sync.status import SyncOutcome, SyncPhase
from treesync.sync.validation import CheckFunction
from treesync.utils import setup_logging
from treesync.utils.file_utils import FileError

console = Console()

EXIT_CODES = {
    SyncPhase.COMPLETED: 0,
    SyncPhase.NO_CHANGES: 0,
    SyncPhase.CANCELLED: 2,
    SyncPhase.FAILED: 1,
    SyncPhase.RESTORED_AFTER_FAILURE: 1,
    SyncPhase.RESTORE_INCOMPLETE: 3,
}


def build_config(
    candidate: Path,
    live: Path,
    backup: Optional[Path] = None,
    status_file: Optional[Path] = None,
    log_file: Optional[Path] = None,
    include: Optional[List[str]] = None,
    ignore: Optional[List[str]] = None,
) -> SyncConfig:
    """Build a SyncConfig from CLI options, leaving unset ones to env/defaults."""
    overrides = {
        "backup_root": backup,
        "status_path": status_file,
        "log_file": log_file,
        "include_patterns": include or None,
        "ignore_patterns": ignore or None,
    }
    try:
        return SyncConfig(
            candidate_root=candidate,
            live_root=live,
            **{key: value for key, value in overrides.items() if value is not None},
        )
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1)


def build_check(python_syntax: bool, check_cmd: Optional[str]) -> CheckFunction:
    """Assemble the per-file check from CLI flags."""
    checks = [check_not_empty]
    if python_syntax:
        checks.append(check_python_syntax)
    if check_cmd:
        checks.append(command_check(shlex.split(check_cmd)))
    return check_all(*checks)


def group_issues_by_directory(issues: Iterable[Tuple[str, str]]) -> Dict[str, List[Tuple[str, str]]]:
    """Group validation issues by directory."""
    grouped = defaultdict(list)
    for file_path, error in issues:
        dir_name = Path(file_path).parent.as_posix()
        grouped[dir_name].append((file_path, error))
    return dict(grouped)


def display_validation_errors(issues: List[Tuple[str, str]]):
    """Display validation errors in a rich, organized format."""
    console.print()
    console.print(
        Panel("[yellow bold]Cancelled:[/yellow bold] candidate tree failed validation", expand=False)
    )

    tree = Tree("Candidate Files")
    for dir_name, dir_issues in sorted(group_issues_by_directory(issues).items()):
        branch = tree.add(
            f"[bold blue]{dir_name}/[/bold blue] ([yellow]{len(dir_issues)} files[/yellow])"
        )
        for file_path, error in sorted(dir_issues):
            branch.add(
                Text.assemble(("└─ ", "dim"), (Path(file_path).name, "yellow"), ": ", (error, "red"))
            )

    console.print(Padding(tree, (1, 2)))
    console.print("The live tree was not touched.")
    console.print()


def display_sync_summary(changes: Changeset):
    """Display a one-line summary of sync changes."""
    if changes.total_changes == 0:
        console.print("[green]Everything up to date[/green]")
        return

    # Format as: "Synced X files (A new, B modified, C deleted)"
    parts = []
    if changes.new:
        parts.append(f"[green]{len(changes.new)} new[/green]")
    if changes.modified:
        parts.append(f"[yellow]{len(changes.modified)} modified[/yellow]")
    if changes.deleted:
        parts.append(f"[red]{len(changes.deleted)} deleted[/red]")

    console.print(f"Synced {changes.total_changes} files ({', '.join(parts)})")


def display_changes(title: str, changes: Changeset, verbose: bool = False):
    """Display a changeset as a tree, grouped by directory unless verbose."""
    tree = Tree(title)
    if changes.is_empty:
        tree.add("No changes")
        console.print(Panel(tree, expand=False))
        return

    if verbose:
        for label, color, paths in (
            ("New Files", "green", changes.new),
            ("Modified", "yellow", changes.modified),
            ("Deleted", "red", changes.deleted),
        ):
            if paths:
                branch = tree.add(f"[{color}]{label}[/{color}]")
                for path in sorted(paths):
                    branch.add(f"[{color}]{path}[/{color}]")
    else:
        by_dir: Dict[str, Dict[str, int]] = defaultdict(lambda: {"new": 0, "modified": 0, "deleted": 0})
        for kind, paths in (("new", changes.new), ("modified", changes.modified), ("deleted", changes.deleted)):
            for path in paths:
                by_dir[Path(path).parent.as_posix()][kind] += 1
        for dir_name, counts in sorted(by_dir.items()):
            summary_parts = []
            if counts["new"]:
                summary_parts.append(f"[green]+{counts['new']} new[/green]")
            if counts["modified"]:
                summary_parts.append(f"[yellow]~{counts['modified']} modified[/yellow]")
            if counts["deleted"]:
                summary_parts.append(f"[red]-{counts['deleted']} deleted[/red]")
            tree.add(f"[bold]{dir_name}/[/bold] {' '.join(summary_parts)}")

    console.print(Panel(tree, expand=False))


async def run_sync(orchestrator: SyncOrchestrator) -> SyncOutcome:
    """Run a cycle, showing progress while the background apply runs."""
    record = await orchestrator.start()
    if record is not None and record.is_terminal:
        return await orchestrator.wait()

    with console.status("Applying changes...") as status:
        while orchestrator.in_flight:
            current = orchestrator.reporter.current
            if current is not None:
                status.update(f"{current.phase.value.replace('_', ' ')} {current.percent}%")
            await asyncio.sleep(0.1)
    return await orchestrator.wait()


def report_outcome(outcome: SyncOutcome, verbose: bool = False) -> None:
    if outcome.phase == SyncPhase.CANCELLED:
        display_validation_errors(outcome.failures)
        return
    if outcome.phase in (SyncPhase.COMPLETED, SyncPhase.NO_CHANGES) and outcome.changeset:
        if verbose:
            display_changes("Applied", outcome.changeset, verbose=True)
        display_sync_summary(outcome.changeset)
        return
    if outcome.phase == SyncPhase.RESTORE_INCOMPLETE:
        lines = [f"[red bold]Restore incomplete:[/red bold] {outcome.message}"]
        if outcome.failed_path:
            lines.append(f"Failed on {outcome.failed_path}")
        lines.append("Manual intervention required.")
        console.print(Panel("\n".join(lines), expand=False))
        return
    console.print(f"[red]✗ Sync {outcome.phase.value.replace('_', ' ')}:[/red] {outcome.message}")
    if outcome.failed_path:
        console.print(f"Failed on [bold]{outcome.failed_path}[/bold]")


@app.command()
def sync(
    candidate: Path = typer.Argument(..., help="Candidate tree to sync from"),
    live: Path = typer.Argument(..., help="Live tree to update"),
    source: Optional[Path] = typer.Option(
        None, "--source", help="Copy this directory into the candidate location first"
    ),
    backup: Optional[Path] = typer.Option(None, "--backup", help="Backup root"),
    status_file: Optional[Path] = typer.Option(None, "--status-file", help="Status record file"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Append-only event log"),
    include: Optional[List[str]] = typer.Option(
        None, "--include", "-i", help="Glob of files to validate (repeatable)"
    ),
    ignore: Optional[List[str]] = typer.Option(
        None, "--ignore", help="Extra pattern to leave out of the sync (repeatable)"
    ),
    python_syntax: bool = typer.Option(False, "--python-syntax", help="Compile-check .py files"),
    check_cmd: Optional[str] = typer.Option(
        None, "--check-cmd", help="External checker run per file, e.g. 'bash -n'"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed file information"),
):
    """Validate the candidate tree and apply its changes to the live tree."""
    config = build_config(candidate, live, backup, status_file, log_file, include, ignore)
    setup_logging(log_file=config.log_file, level="DEBUG" if verbose else config.log_level)

    orchestrator = SyncOrchestrator(
        config,
        check=build_check(python_syntax, check_cmd),
        fetcher=DirectoryFetcher(source) if source else None,
    )
    try:
        outcome = asyncio.run(run_sync(orchestrator))
    except SyncInProgressError as e:
        console.print(f"[yellow]Sync already in progress:[/yellow] {e}")
        raise typer.Exit(4)
    except Exception as e:
        logger.exception("Sync failed")
        typer.echo(f"Error during sync: {e}", err=True)
        raise typer.Exit(1)

    report_outcome(outcome, verbose)
    raise typer.Exit(EXIT_CODES.get(outcome.phase, 1))


@app.command()
def diff(
    candidate: Path = typer.Argument(..., help="Candidate tree"),
    live: Path = typer.Argument(..., help="Live tree"),
    ignore: Optional[List[str]] = typer.Option(
        None, "--ignore", help="Extra pattern to leave out of the comparison (repeatable)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed file information"),
):
    """Show what a sync would change, without changing anything."""
    config = build_config(candidate, live, ignore=ignore)
    orchestrator = SyncOrchestrator(config, check=check_not_empty)
    try:
        changes = asyncio.run(orchestrator.preview())
    except FileError as e:
        typer.echo(f"Error comparing trees: {e}", err=True)
        raise typer.Exit(1)
    display_changes(f"{candidate} -> {live}", changes, verbose)

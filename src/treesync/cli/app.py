from typing import Optional

import typer


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:  # pragma: no cover
        import treesync

        typer.echo(f"treesync version: {treesync.__version__}")
        raise typer.Exit()


app = typer.Typer(name="treesync", no_args_is_help=True)


@app.callback()
def app_callback(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """treesync - keep a live directory in sync with a validated candidate tree."""

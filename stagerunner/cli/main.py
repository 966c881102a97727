"""Typer CLI for stagerunner: wiring hub for command modules."""

from __future__ import annotations

from typing import Annotated

import typer

from stagerunner.cli._helpers import console
from stagerunner.cli.history_cmd import app as history_app

app = typer.Typer(
    name="stagerunner",
    help="Run CI/CD pipelines: ordered stages that shell out to external tools.",
    no_args_is_help=True,
)

app.add_typer(history_app, name="history")


def version_callback(value: bool) -> None:
    if value:
        from stagerunner import __version__

        console.print(f"stagerunner {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable debug logging"),
    ] = False,
) -> None:
    """stagerunner: a sequential CI/CD stage runner."""
    from stagerunner._log import setup_logging

    setup_logging(verbose=verbose)


from stagerunner.cli.run_cmd import run, validate  # noqa: E402

app.command()(run)
app.command()(validate)


def app_entry() -> None:
    """Entry point for the CLI."""
    app()

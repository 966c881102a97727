"""Shared CLI helpers: console, pipeline loading and option parsing."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.markup import escape

from stagerunner.errors import ConfigError, ErrorCategory

if TYPE_CHECKING:
    from stagerunner.pipeline.model import Pipeline

console = Console()

STATUS_STYLES = {
    "succeeded": "[green]PASS[/green]",
    "failed": "[red]FAIL[/red]",
    "timed_out": "[red]TIMEOUT[/red]",
    "skipped": "[dim]SKIP[/dim]",
}


def parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options, exiting with the config code on bad input."""
    pairs: dict[str, str] = {}
    for v in values or []:
        if "=" not in v:
            console.print(
                f"[red]Error:[/red] Invalid {option} format: '{escape(v)}'. Use key=value."
            )
            raise typer.Exit(ErrorCategory.CONFIG.exit_code)
        key, value = v.split("=", 1)
        pairs[key] = value
    return pairs


def load_pipeline_or_exit(
    pipeline_file: Path,
    *,
    overrides: dict[str, str] | None = None,
    workspace: Path | None = None,
) -> Pipeline:
    from stagerunner.pipeline.loader import load_pipeline_file

    try:
        return load_pipeline_file(pipeline_file, overrides=overrides, base_dir=workspace)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(ErrorCategory.CONFIG.exit_code) from None

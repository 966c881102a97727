"""History commands: show, export, prune."""

from __future__ import annotations

import csv
import io
import json
import sys
from pathlib import Path
from typing import Annotated

import typer
from rich.markup import escape
from rich.table import Table

from stagerunner.cli._helpers import STATUS_STYLES, console

app = typer.Typer(help="Inspect, export and prune recorded runs.")


def _open_history(history_db: Path | None):
    from stagerunner.config import get_history_db_path
    from stagerunner.history import RunHistory

    db_path = history_db or get_history_db_path()
    if not db_path.exists():
        console.print(f"[red]Error:[/red] History database not found at {escape(str(db_path))}")
        raise typer.Exit(1)
    return RunHistory(db_path)


@app.command("show")
def history_show(
    run_id: Annotated[str, typer.Argument(help="Run ID to display")],
    history_db: Annotated[Path | None, typer.Option(help="Path to run history database")] = None,
    output: Annotated[bool, typer.Option("--output", help="Print each stage's output")] = False,
) -> None:
    """Show the stages of a recorded run."""
    with _open_history(history_db) as history:
        stages = history.get_stages(run_id)

    if not stages:
        console.print(f"[red]Error:[/red] No run with ID '{escape(run_id)}'")
        raise typer.Exit(1)

    table = Table(title=f"Run {escape(run_id)}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Exit")
    table.add_column("Duration")
    table.add_column("Notes")
    for s in stages:
        note = s.error or s.skip_reason or ""
        exit_code = "" if s.exit_code is None else str(s.exit_code)
        table.add_row(
            escape(s.stage),
            STATUS_STYLES.get(s.status, s.status),
            exit_code,
            f"{s.duration_ms}ms",
            escape(note),
        )
    console.print(table)

    if output:
        for s in stages:
            if s.output:
                console.rule(escape(s.stage))
                console.print(s.output, markup=False, highlight=False)


@app.command("export")
def history_export(
    format: Annotated[
        str, typer.Option("-f", "--format", help="Output format: json or csv")
    ] = "json",
    output: Annotated[
        Path | None, typer.Option("-o", "--output", help="Output file (default: stdout)")
    ] = None,
    pipeline: Annotated[str | None, typer.Option(help="Filter by pipeline name")] = None,
    status: Annotated[str | None, typer.Option(help="Filter by run status")] = None,
    since: Annotated[str | None, typer.Option(help="Filter: timestamp >= ISO string")] = None,
    until: Annotated[str | None, typer.Option(help="Filter: timestamp <= ISO string")] = None,
    limit: Annotated[int, typer.Option(help="Max runs to return")] = 100,
    history_db: Annotated[Path | None, typer.Option(help="Path to run history database")] = None,
) -> None:
    """Export recorded runs as JSON or CSV."""
    if format not in ("json", "csv"):
        console.print(f"[red]Error:[/red] Unknown format '{escape(format)}'. Use: json, csv")
        raise typer.Exit(1)

    from stagerunner.history import RUN_FIELDS, run_to_dict

    with _open_history(history_db) as history:
        records = history.query_runs(
            pipeline_name=pipeline,
            status=status,
            since=since,
            until=until,
            limit=limit,
        )

    if format == "json":
        data = [run_to_dict(r) for r in records]
        text = json.dumps(data, indent=2)
    else:
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=RUN_FIELDS)
        writer.writeheader()
        for r in records:
            writer.writerow(run_to_dict(r))
        text = buf.getvalue()

    if output is not None:
        output.write_text(text)
        console.print(f"[green]Exported[/green] {len(records)} run(s) to {escape(str(output))}.")
    else:
        sys.stdout.write(text)


@app.command("prune")
def history_prune(
    retention_days: Annotated[
        int, typer.Option(help="Delete runs older than this many days")
    ] = 90,
    max_runs: Annotated[int, typer.Option(help="Maximum runs to keep")] = 10_000,
    artifact_dir: Annotated[
        Path | None,
        typer.Option(help="Artifact store to prune (default: the data home's artifacts dir)"),
    ] = None,
    history_db: Annotated[Path | None, typer.Option(help="Path to run history database")] = None,
) -> None:
    """Prune old runs and stored artifacts."""
    with _open_history(history_db) as history:
        deleted = history.prune(retention_days=retention_days, max_runs=max_runs)
    console.print(f"[green]Pruned[/green] {deleted} run(s).")

    from stagerunner.artifacts import prune_artifacts
    from stagerunner.config import get_artifacts_dir

    removed = prune_artifacts(artifact_dir or get_artifacts_dir(), retention_days=retention_days)
    console.print(f"[green]Pruned[/green] {removed} stored artifact run(s).")

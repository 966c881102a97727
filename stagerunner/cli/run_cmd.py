"""Run and validate commands."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.markup import escape
from rich.table import Table

from stagerunner.cli._helpers import STATUS_STYLES, console, load_pipeline_or_exit, parse_pairs
from stagerunner.errors import ErrorCategory

if TYPE_CHECKING:
    from stagerunner.credentials import CredentialStore
    from stagerunner.pipeline.executor import ExecutionResult, RunResult
    from stagerunner.pipeline.model import Pipeline


def run(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
    var: Annotated[
        list[str] | None,
        typer.Option("--var", help="Override a pipeline env variable (key=value)"),
    ] = None,
    credential_env: Annotated[
        list[str] | None,
        typer.Option(
            "--credential-env",
            help="Read a credential from a specific env var (credential=ENV_VAR)",
        ),
    ] = None,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Validate and display stages without executing")
    ] = False,
    workspace: Annotated[
        Path | None,
        typer.Option(help="Working directory for the run (default: the pipeline file's dir)"),
    ] = None,
    artifact_dir: Annotated[
        Path | None, typer.Option(help="Copy declared artifacts into this directory")
    ] = None,
    report: Annotated[Path | None, typer.Option(help="Write a run summary report")] = None,
    report_format: Annotated[
        str | None, typer.Option(help="Report format: md or html (default: from suffix)")
    ] = None,
    history_db: Annotated[Path | None, typer.Option(help="Path to run history database")] = None,
    no_history: Annotated[bool, typer.Option(help="Do not record the run")] = False,
    no_inherit_env: Annotated[
        bool, typer.Option(help="Start stages from an empty environment")
    ] = False,
) -> None:
    """Run a pipeline's stages in order."""
    from stagerunner.credentials import EnvCredentialStore, load_dotenv_files
    from stagerunner.report import REPORT_FORMATS

    overrides = parse_pairs(var, "--var")
    credential_vars = parse_pairs(credential_env, "--credential-env")

    if report_format is not None and report_format not in REPORT_FORMATS:
        console.print(
            f"[red]Error:[/red] Unknown report format '{escape(report_format)}'. "
            f"Use: {', '.join(REPORT_FORMATS)}"
        )
        raise typer.Exit(ErrorCategory.CONFIG.exit_code)
    if workspace is not None and not workspace.is_dir():
        console.print(f"[red]Error:[/red] Workspace {escape(str(workspace))} is not a directory")
        raise typer.Exit(ErrorCategory.CONFIG.exit_code)

    load_dotenv_files(pipeline_file.parent)
    pipe = load_pipeline_or_exit(pipeline_file, overrides=overrides, workspace=workspace)
    store = EnvCredentialStore(credential_vars)

    if dry_run:
        _display_dry_run(pipe, store)
        return

    from stagerunner._signal import cancel_on_signal
    from stagerunner.artifacts import ArtifactPublisher
    from stagerunner.history import RunHistory
    from stagerunner.pipeline.executor import Executor, run_pipeline

    history = None if no_history else RunHistory(history_db)
    executor = Executor(
        store,
        publisher=ArtifactPublisher(pipe.base_dir, store_dir=artifact_dir),
        inherit_env=not no_inherit_env,
    )

    console.print(
        f"Running [cyan]{escape(pipe.name)}[/cyan] ({pipe.run_id}), "
        f"{len(pipe.stages)} stage(s) in {escape(str(pipe.base_dir))}"
    )
    try:
        with cancel_on_signal(executor.cancel):
            result = run_pipeline(pipe, executor, history=history, on_result=_display_stage_line)
    finally:
        if history is not None:
            history.close()

    _display_run_result(result)

    if report is not None:
        from stagerunner.report import export_report

        try:
            path = export_report(result, report, fmt=report_format)
            console.print(f"Report written to {escape(str(path))}")
        except OSError as e:
            console.print(f"[yellow]Warning:[/yellow] Could not write report: {escape(str(e))}")

    if not result.success:
        raise typer.Exit(result.exit_code)


def validate(
    pipeline_file: Annotated[Path, typer.Argument(help="Path to pipeline YAML")],
) -> None:
    """Validate a pipeline definition."""
    pipe = load_pipeline_or_exit(pipeline_file)
    console.print(
        f"[green]Valid[/green] pipeline [cyan]{escape(pipe.name)}[/cyan] "
        f"with {len(pipe.stages)} stage(s): {escape(', '.join(pipe.stage_names))}"
    )


def _display_dry_run(pipe: Pipeline, store: CredentialStore) -> None:
    table = Table(title=f"Pipeline: {escape(pipe.name)}")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Commands")
    table.add_column("Timeout")
    table.add_column("On failure")
    table.add_column("Artifacts")

    for i, stage in enumerate(pipe.stages, 1):
        commands = "\n".join(escape(shlex.join(argv)) for argv in stage.commands)
        timeout = f"{stage.timeout_seconds:g}s" if stage.timeout_seconds else "(none)"
        policy = "abort" if stage.abort_on_failure else "continue"
        artifacts = escape(", ".join(stage.artifacts)) if stage.artifacts else ""
        table.add_row(str(i), escape(stage.name), commands, timeout, policy, artifacts)

    console.print(table)

    if pipe.env:
        console.print("\n[bold]Environment:[/bold]")
        for k, v in pipe.env.items():
            console.print(f"  {escape(k)} = {escape(str(v))}")

    if pipe.credentials:
        console.print("\n[bold]Credentials:[/bold]")
        for ref in sorted(pipe.credentials):
            state = "[green]available[/green]" if ref in store else "[yellow]missing[/yellow]"
            console.print(f"  {escape(ref)}: {state}")

    console.print("\n[green]Pipeline definition is valid.[/green]")


def _display_stage_line(r: ExecutionResult) -> None:
    line = f"{STATUS_STYLES[str(r.status)]} {escape(r.stage)}"
    if not r.skipped:
        line += f" [dim]({r.duration_ms}ms)[/dim]"
    if r.error:
        line += f": {escape(r.error)}"
    console.print(line)
    for path, reason in r.missing_artifacts.items():
        console.print(f"  [yellow]missing artifact[/yellow] {escape(path)} ({escape(reason)})")


def _display_run_result(r: RunResult) -> None:
    table = Table(title=f"Pipeline: {escape(r.pipeline_name)} ({r.run_id})")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Exit")
    table.add_column("Duration")
    table.add_column("Artifacts")

    for sr in r.results:
        status = STATUS_STYLES[str(sr.status)]
        if sr.skipped and sr.skip_reason:
            status += f" ({escape(sr.skip_reason)})"
        exit_code = "" if sr.exit_code is None else str(sr.exit_code)
        duration = "" if sr.skipped else f"{sr.duration_ms}ms"
        artifacts = str(len(sr.artifacts)) if sr.declared_artifacts else ""
        if sr.missing_artifacts:
            artifacts += f" [yellow]({len(sr.missing_artifacts)} missing)[/yellow]"
        table.add_row(escape(sr.stage), status, exit_code, duration, artifacts)

    console.print(table)
    total = f"[bold]Total: {r.duration_ms}ms[/bold]"
    if r.success:
        console.print(f"\n{total} [green]Pipeline succeeded[/green]")
    else:
        failed = r.failed_stage
        where = f" at stage '{escape(failed.stage)}'" if failed is not None else ""
        console.print(f"\n{total} [red]Pipeline failed{where}[/red]")

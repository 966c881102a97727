"""Run summary reports rendered from pipeline run results."""

from __future__ import annotations

import importlib.resources
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Template

if TYPE_CHECKING:
    from stagerunner.pipeline.executor import RunResult

REPORT_FORMATS = ("md", "html")

# Failed-stage output included in reports, taken from the end of the log.
REPORT_OUTPUT_CHARS = 4000


@dataclass
class ReportContext:
    pipeline_name: str
    run_id: str
    status: str
    started_at: str
    duration_ms: int
    failed_stage: str | None
    stages: list[dict] = field(default_factory=list)
    artifacts: list[dict] = field(default_factory=list)
    missing: list[dict] = field(default_factory=list)


def _stage_note(r) -> str:
    if r.skipped:
        return r.skip_reason or ""
    if r.error:
        return r.error
    if r.missing_artifacts:
        return f"{len(r.missing_artifacts)} artifact(s) missing"
    return ""


def build_report_context(run: RunResult) -> ReportContext:
    """Build a ReportContext from a finished run."""
    from stagerunner.process import format_output

    failed = run.failed_stage
    return ReportContext(
        pipeline_name=run.pipeline_name,
        run_id=run.run_id,
        status=str(run.status),
        started_at=run.started_at,
        duration_ms=run.duration_ms,
        failed_stage=failed.stage if failed is not None else None,
        stages=[
            {
                "name": r.stage,
                "status": str(r.status),
                "exit_code": r.exit_code,
                "duration_ms": r.duration_ms,
                "note": _stage_note(r),
                "failed": r.failed,
                "output": format_output(
                    r.stdout, r.stderr, returncode=r.exit_code, max_chars=REPORT_OUTPUT_CHARS
                ),
            }
            for r in run.results
        ],
        artifacts=[
            {"name": a.name, "stage": a.stage, "size": a.size, "sha256": a.sha256}
            for a in run.artifacts
        ],
        missing=[
            {"stage": stage, "path": path, "reason": reason}
            for stage, paths in run.missing_artifacts.items()
            for path, reason in paths.items()
        ],
    )


def render_report(context: ReportContext, fmt: str = "md") -> str:
    """Render a report from a ReportContext in the given format.

    Raises ValueError if the format is not recognised.
    """
    if fmt not in REPORT_FORMATS:
        raise ValueError(f"Unknown report format '{fmt}'. Available: {', '.join(REPORT_FORMATS)}")

    filename = f"summary.{fmt}.j2"
    pkg_files = importlib.resources.files("stagerunner._report_templates")
    template_text = (pkg_files / filename).read_text(encoding="utf-8")
    template = Template(template_text, autoescape=fmt == "html")
    return template.render(**asdict(context))


def export_report(run: RunResult, output_path: Path, *, fmt: str | None = None) -> Path:
    """Build context, render template, and write report to disk.

    The format defaults to ``html`` for ``.html``/``.htm`` paths, else ``md``.
    """
    output_path = Path(output_path)
    if fmt is None:
        fmt = "html" if output_path.suffix.lower() in (".html", ".htm") else "md"
    content = render_report(build_report_context(run), fmt)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(content, encoding="utf-8")
    return output_path

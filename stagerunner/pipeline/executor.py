"""Sequential stage execution engine for pipelines."""

from __future__ import annotations

import shlex
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Set
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from stagerunner._log import get_logger
from stagerunner.artifacts import Artifact, ArtifactPublisher
from stagerunner.credentials import CredentialStore
from stagerunner.errors import (
    ArtifactMissing,
    CredentialNotFound,
    ErrorCategory,
    ProcessFailure,
    StageTimeout,
)
from stagerunner.pipeline.model import Pipeline
from stagerunner.pipeline.schema import CredentialRef, StageSpec
from stagerunner.pipeline.state import StageStatus, StageTracker
from stagerunner.process import (
    DEFAULT_KILL_GRACE,
    expand_placeholders,
    format_output,
    run_process,
    scrub_env,
)
from stagerunner.redact import Redactor

if TYPE_CHECKING:
    from stagerunner.history import RunHistory

logger = get_logger("executor")

CANCELLED_REASON = "run cancelled"


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionResult:
    """Immutable record of one stage's outcome. Output is already redacted."""

    stage: str
    run_id: str
    status: StageStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    started_at: str | None = None
    declared_artifacts: tuple[str, ...] = ()
    artifacts: tuple[Artifact, ...] = ()
    missing_artifacts: Mapping[str, str] = field(default_factory=dict)
    error: str | None = None
    category: ErrorCategory | None = None
    skip_reason: str | None = None
    abort_on_failure: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status is StageStatus.SUCCEEDED

    @property
    def skipped(self) -> bool:
        return self.status is StageStatus.SKIPPED

    @property
    def failed(self) -> bool:
        return self.status in (StageStatus.FAILED, StageStatus.TIMED_OUT)

    @property
    def artifact_paths(self) -> list[Path]:
        return [a.path for a in self.artifacts]

    @property
    def output(self) -> str:
        return format_output(self.stdout, self.stderr, returncode=self.exit_code)


@dataclass
class RunResult:
    run_id: str
    pipeline_name: str
    results: list[ExecutionResult] = field(default_factory=list)
    started_at: str = ""
    duration_ms: int = 0
    cancelled: bool = False

    @property
    def status(self) -> RunStatus:
        if self.cancelled or any(not r.succeeded for r in self.results if not r.skipped):
            return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def failed_stage(self) -> ExecutionResult | None:
        """The stage that aborted the run, else the first failing stage."""
        failures = [r for r in self.results if r.failed]
        for r in failures:
            if r.abort_on_failure or r.category is ErrorCategory.CANCELLED:
                return r
        return failures[0] if failures else None

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        failed = self.failed_stage
        if failed is not None and failed.category is not None:
            return failed.category.exit_code
        if self.cancelled:
            return ErrorCategory.CANCELLED.exit_code
        return ErrorCategory.PROCESS.exit_code

    @property
    def artifacts(self) -> list[Artifact]:
        return [a for r in self.results for a in r.artifacts]

    @property
    def missing_artifacts(self) -> dict[str, dict[str, str]]:
        return {r.stage: dict(r.missing_artifacts) for r in self.results if r.missing_artifacts}

    def statuses(self) -> list[StageStatus]:
        return [r.status for r in self.results]


def _now() -> str:
    return datetime.now(UTC).isoformat()


class Executor:
    """Runs a pipeline's stages in declared order, one subprocess at a time.

    Use one Executor per run: :meth:`cancel` is sticky, and the workspace,
    redactor and credential scope belong to a single run.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        *,
        workspace: Path | None = None,
        publisher: ArtifactPublisher | None = None,
        inherit_env: bool = True,
        base_env: Mapping[str, str] | None = None,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        self._store = credential_store
        self._workspace = workspace
        self._publisher = publisher
        self._inherit_env = inherit_env
        self._base_env = base_env
        self._kill_grace = kill_grace
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Terminate the running stage's process group and skip the rest."""
        logger.warning("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, pipeline: Pipeline) -> Iterator[ExecutionResult]:
        """Execute *pipeline*, yielding each stage's result as it completes."""
        workspace = (self._workspace or pipeline.base_dir).resolve()
        publisher = self._publisher or ArtifactPublisher(workspace)
        tracker = StageTracker(pipeline.stage_names)
        redactor = Redactor()
        hidden_vars = self._store.env_vars(pipeline.credentials)
        abort_reason: str | None = None

        logger.info(
            "Run %s: pipeline '%s' with %d stage(s) in %s",
            pipeline.run_id,
            pipeline.name,
            len(pipeline.stages),
            workspace,
        )

        for stage in pipeline.stages:
            if abort_reason is None and self._cancel.is_set():
                abort_reason = CANCELLED_REASON
            if abort_reason is not None:
                tracker.transition(stage.name, StageStatus.SKIPPED)
                logger.info("[%s] skipped: %s", stage.name, abort_reason)
                yield ExecutionResult(
                    stage=stage.name,
                    run_id=pipeline.run_id,
                    status=StageStatus.SKIPPED,
                    declared_artifacts=tuple(stage.artifacts),
                    skip_reason=abort_reason,
                    abort_on_failure=stage.abort_on_failure,
                )
                continue

            result = self._run_stage(pipeline, stage, workspace, tracker, redactor, hidden_vars)
            result = self._publish(publisher, result, redactor)
            yield result

            if result.category is ErrorCategory.CANCELLED:
                abort_reason = CANCELLED_REASON
            elif result.failed and stage.abort_on_failure:
                abort_reason = f"stage '{stage.name}' failed"

    def _resolve_secrets(
        self, refs: Mapping[str, CredentialRef], redactor: Redactor
    ) -> dict[str, str]:
        secrets: dict[str, str] = {}
        for var, ref in refs.items():
            secret = self._store.resolve(ref.credential)
            redactor.register(secret)
            secrets[var] = secret
        return secrets

    def _build_env(
        self,
        pipeline: Pipeline,
        stage: StageSpec,
        workspace: Path,
        secrets: Mapping[str, str],
        hidden_vars: Set[str] = frozenset(),
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Return ``(process_env, expansion_env)``; the latter excludes secrets.

        *hidden_vars* back declared credentials and are never inherited, so a
        secret only reaches the stage that references it.
        """
        env = scrub_env(self._base_env) if self._inherit_env else {}
        for name in hidden_vars:
            env.pop(name, None)
        env.update(
            {
                "STAGERUNNER_RUN_ID": pipeline.run_id,
                "STAGERUNNER_PIPELINE": pipeline.name,
                "STAGERUNNER_STAGE": stage.name,
                "STAGERUNNER_WORKSPACE": str(workspace),
            }
        )
        merged = {**pipeline.env, **stage.env}
        literals = {k: v for k, v in merged.items() if isinstance(v, str)}
        lookup = {**env, **literals}
        env.update({k: expand_placeholders(v, lookup) for k, v in literals.items()})
        expansion_env = dict(env)
        env.update(secrets)
        return env, expansion_env

    def _run_stage(
        self,
        pipeline: Pipeline,
        stage: StageSpec,
        workspace: Path,
        tracker: StageTracker,
        redactor: Redactor,
        hidden_vars: Set[str] = frozenset(),
    ) -> ExecutionResult:
        started_at = _now()
        start = time.monotonic()
        base = {
            "stage": stage.name,
            "run_id": pipeline.run_id,
            "started_at": started_at,
            "declared_artifacts": tuple(stage.artifacts),
            "abort_on_failure": stage.abort_on_failure,
        }

        refs = {
            k: v for k, v in {**pipeline.env, **stage.env}.items() if isinstance(v, CredentialRef)
        }
        try:
            secrets = self._resolve_secrets(refs, redactor)
        except CredentialNotFound as e:
            tracker.transition(stage.name, StageStatus.FAILED)
            logger.error("[%s] %s", stage.name, e)
            return ExecutionResult(
                status=StageStatus.FAILED,
                error=str(e),
                category=ErrorCategory.CREDENTIAL,
                **base,
            )

        env, expansion_env = self._build_env(pipeline, stage, workspace, secrets, hidden_vars)
        cwd = workspace / stage.working_dir if stage.working_dir else workspace
        tracker.transition(stage.name, StageStatus.RUNNING)
        logger.info("[%s] running (%d command(s))", stage.name, len(stage.commands))

        if not cwd.is_dir():
            tracker.transition(stage.name, StageStatus.FAILED)
            error = f"working directory does not exist: {cwd}"
            logger.error("[%s] %s", stage.name, error)
            return ExecutionResult(
                status=StageStatus.FAILED,
                error=error,
                category=ErrorCategory.PROCESS,
                duration_ms=int((time.monotonic() - start) * 1000),
                **base,
            )

        deadline = start + stage.timeout_seconds if stage.timeout_seconds is not None else None
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        exit_code: int | None = None
        status = StageStatus.SUCCEEDED
        error: str | None = None
        category: ErrorCategory | None = None

        for raw_argv in stage.commands:
            argv = [expand_placeholders(arg, expansion_env) for arg in raw_argv]
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    status, category = StageStatus.TIMED_OUT, ErrorCategory.TIMEOUT
                    error = str(StageTimeout(stage.timeout_seconds))  # type: ignore[arg-type]
                    break
            if self._cancel.is_set():
                status, category = StageStatus.FAILED, ErrorCategory.CANCELLED
                error = "cancelled before command started"
                break

            logger.info("[%s] $ %s", stage.name, redactor.redact(shlex.join(argv)))
            outcome = run_process(
                argv,
                env=env,
                cwd=cwd,
                timeout=remaining,
                cancel_event=self._cancel,
                kill_grace=self._kill_grace,
            )
            stdout_parts.append(redactor.redact(outcome.stdout))
            stderr_parts.append(redactor.redact(outcome.stderr))
            exit_code = outcome.returncode

            if outcome.cancelled:
                status, category = StageStatus.FAILED, ErrorCategory.CANCELLED
                error = "cancelled while running"
                break
            if outcome.timed_out:
                status, category = StageStatus.TIMED_OUT, ErrorCategory.TIMEOUT
                error = str(StageTimeout(stage.timeout_seconds))  # type: ignore[arg-type]
                break
            if outcome.returncode != 0:
                status, category = StageStatus.FAILED, ErrorCategory.PROCESS
                error = outcome.launch_error or str(ProcessFailure(argv[0], outcome.returncode))
                break

        tracker.transition(stage.name, status)
        duration_ms = int((time.monotonic() - start) * 1000)
        if status is StageStatus.SUCCEEDED:
            logger.info("[%s] succeeded in %dms", stage.name, duration_ms)
        else:
            logger.warning("[%s] %s: %s", stage.name, status, redactor.redact(error or ""))

        return ExecutionResult(
            status=status,
            exit_code=exit_code,
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            duration_ms=duration_ms,
            error=redactor.redact(error) if error else None,
            category=category,
            **base,
        )

    def _publish(
        self,
        publisher: ArtifactPublisher,
        result: ExecutionResult,
        redactor: Redactor,
    ) -> ExecutionResult:
        # Stages that never launched or were cancelled have nothing to collect.
        if not result.declared_artifacts or result.category in (
            ErrorCategory.CANCELLED,
            ErrorCategory.CREDENTIAL,
        ):
            return result
        try:
            artifacts = publisher.publish(result)
            missing: dict[str, str] = {}
        except ArtifactMissing as e:
            artifacts = e.published
            missing = e.missing
            logger.warning("%s", redactor.redact(str(e)))
        except OSError as e:
            logger.error("[%s] failed to publish artifacts: %s", result.stage, e)
            artifacts = []
            missing = {declared: f"publish failed: {e}" for declared in result.declared_artifacts}
        return replace(result, artifacts=tuple(artifacts), missing_artifacts=missing)


def run_pipeline(
    pipeline: Pipeline,
    executor: Executor,
    *,
    history: RunHistory | None = None,
    on_result: Callable[[ExecutionResult], None] | None = None,
) -> RunResult:
    """Drive *executor* over *pipeline* and aggregate the results.

    *on_result* is called with each stage result as soon as it is available.
    The finished run is recorded in *history* when given; recording never
    raises.
    """
    run = RunResult(
        run_id=pipeline.run_id,
        pipeline_name=pipeline.name,
        started_at=_now(),
    )
    start = time.monotonic()
    for result in executor.run(pipeline):
        run.results.append(result)
        if on_result is not None:
            on_result(result)
    run.duration_ms = int((time.monotonic() - start) * 1000)
    run.cancelled = any(
        r.category is ErrorCategory.CANCELLED or r.skip_reason == CANCELLED_REASON
        for r in run.results
    )

    if history is not None:
        history.record(run)
    return run

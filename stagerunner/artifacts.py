"""Artifact collection: verify declared stage outputs and keep them after the run."""

from __future__ import annotations

import hashlib
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from stagerunner._log import get_logger
from stagerunner.errors import ArtifactMissing

if TYPE_CHECKING:
    from stagerunner.pipeline.executor import ExecutionResult

logger = get_logger("artifacts")

_GLOB_CHARS = frozenset("*?[")
_SLUG_RE = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class Artifact:
    """Handle to a file a stage produced."""

    name: str  # workspace-relative POSIX path
    stage: str
    run_id: str
    source: Path
    path: Path  # where the file lives after the run
    size: int
    sha256: str


def stage_slug(name: str) -> str:
    return _SLUG_RE.sub("-", name).strip("-") or "stage"


def _sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


class ArtifactPublisher:
    """Collects declared outputs from a run's workspace.

    With *store_dir* set, files are copied to
    ``<store_dir>/<run_id>/<stage>/<relative path>``; otherwise handles point
    at the files in place. Paths are resolved with symlinks followed and
    anything that lands outside the workspace is refused.
    """

    def __init__(self, workspace: Path, store_dir: Path | None = None) -> None:
        self._workspace = workspace.resolve()
        self._store_dir = store_dir

    @property
    def workspace(self) -> Path:
        return self._workspace

    def publish(self, result: ExecutionResult) -> list[Artifact]:
        """Return handles for every declared artifact of *result*.

        Raises:
            ArtifactMissing: If any declared path or pattern produced no file.
                The exception carries the artifacts that were published.
        """
        published: list[Artifact] = []
        missing: dict[str, str] = {}
        for declared in result.declared_artifacts:
            files, reason = self._resolve(declared)
            if not files:
                missing[declared] = reason
                continue
            for rel, real in files:
                published.append(self._store(result, rel, real))
        if missing:
            raise ArtifactMissing(result.stage, missing, published)
        return published

    def _inside(self, path: Path) -> bool:
        return path.is_relative_to(self._workspace)

    def _resolve(self, declared: str) -> tuple[list[tuple[str, Path]], str]:
        if _GLOB_CHARS.intersection(declared):
            candidates = sorted(self._workspace.glob(declared))
            if not candidates:
                return [], "no files match"
        else:
            candidate = self._workspace / declared
            if not candidate.exists():
                return [], "not found"
            candidates = [candidate]

        files: list[tuple[str, Path]] = []
        escaped = False
        for candidate in candidates:
            real = candidate.resolve()
            if not self._inside(real):
                escaped = True
                logger.warning("Refusing artifact %s: resolves outside the workspace", candidate)
                continue
            if real.is_dir():
                for child in sorted(candidate.rglob("*")):
                    child_real = child.resolve()
                    if not self._inside(child_real):
                        escaped = True
                        logger.warning(
                            "Refusing artifact %s: resolves outside the workspace", child
                        )
                        continue
                    if child_real.is_file():
                        files.append((child.relative_to(self._workspace).as_posix(), child_real))
            elif real.is_file():
                files.append((candidate.relative_to(self._workspace).as_posix(), real))

        if not files:
            return [], "outside the workspace" if escaped else "not a regular file"
        return files, ""

    def _store(self, result: ExecutionResult, rel: str, real: Path) -> Artifact:
        path = real
        if self._store_dir is not None:
            path = self._store_dir / result.run_id / stage_slug(result.stage) / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(real, path)
        return Artifact(
            name=rel,
            stage=result.stage,
            run_id=result.run_id,
            source=real,
            path=path,
            size=real.stat().st_size,
            sha256=_sha256(real),
        )


def prune_artifacts(store_dir: Path, retention_days: int = 30) -> int:
    """Delete stored run directories older than *retention_days*. Returns count deleted."""
    if not store_dir.is_dir():
        return 0
    cutoff = time.time() - retention_days * 86400
    deleted = 0
    for run_dir in store_dir.iterdir():
        if not run_dir.is_dir() or run_dir.is_symlink():
            continue
        try:
            if run_dir.stat().st_mtime < cutoff:
                shutil.rmtree(run_dir)
                deleted += 1
        except OSError as e:
            logger.warning("Failed to prune %s: %s", run_dir, e)
    return deleted

"""Tests for artifact collection and retention."""

from __future__ import annotations

import hashlib
import os
import sys
import time

import pytest

from stagerunner.artifacts import ArtifactPublisher, prune_artifacts, stage_slug
from stagerunner.errors import ArtifactMissing
from stagerunner.pipeline.executor import ExecutionResult
from stagerunner.pipeline.state import StageStatus

needs_symlinks = pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges")


def _result(*declared: str, stage: str = "Scan") -> ExecutionResult:
    return ExecutionResult(
        stage=stage,
        run_id="run123",
        status=StageStatus.SUCCEEDED,
        declared_artifacts=declared,
    )


class TestStageSlug:
    def test_plain(self):
        assert stage_slug("Build") == "Build"

    def test_unsafe_characters(self):
        assert stage_slug("Build & Test") == "Build-Test"
        assert stage_slug("docker/push") == "docker-push"

    def test_empty_after_cleanup(self):
        assert stage_slug("///") == "stage"


class TestPublish:
    def test_single_file(self, workspace):
        report = workspace / "report.html"
        report.write_text("<html>ok</html>")
        [artifact] = ArtifactPublisher(workspace).publish(_result("report.html"))
        assert artifact.name == "report.html"
        assert artifact.stage == "Scan"
        assert artifact.run_id == "run123"
        assert artifact.path == report.resolve()
        assert artifact.size == len("<html>ok</html>")
        assert artifact.sha256 == hashlib.sha256(b"<html>ok</html>").hexdigest()

    def test_nested_path(self, workspace):
        target = workspace / "target"
        target.mkdir()
        (target / "app.jar").write_bytes(b"PK")
        [artifact] = ArtifactPublisher(workspace).publish(_result("target/app.jar"))
        assert artifact.name == "target/app.jar"

    def test_glob(self, workspace):
        reports = workspace / "reports"
        reports.mkdir()
        for name in ("TEST-b.xml", "TEST-a.xml", "notes.txt"):
            (reports / name).write_text("x")
        artifacts = ArtifactPublisher(workspace).publish(_result("reports/*.xml"))
        assert [a.name for a in artifacts] == ["reports/TEST-a.xml", "reports/TEST-b.xml"]

    def test_directory_collects_files(self, workspace):
        site = workspace / "site"
        (site / "css").mkdir(parents=True)
        (site / "index.html").write_text("i")
        (site / "css" / "style.css").write_text("c")
        artifacts = ArtifactPublisher(workspace).publish(_result("site"))
        assert sorted(a.name for a in artifacts) == ["site/css/style.css", "site/index.html"]

    def test_missing_file(self, workspace):
        with pytest.raises(ArtifactMissing) as exc_info:
            ArtifactPublisher(workspace).publish(_result("report.html"))
        assert exc_info.value.missing == {"report.html": "not found"}
        assert exc_info.value.published == []
        assert "report.html" in str(exc_info.value)

    def test_glob_without_matches(self, workspace):
        with pytest.raises(ArtifactMissing) as exc_info:
            ArtifactPublisher(workspace).publish(_result("reports/*.xml"))
        assert exc_info.value.missing == {"reports/*.xml": "no files match"}

    def test_partial_publish_carries_found_artifacts(self, workspace):
        (workspace / "found.txt").write_text("x")
        with pytest.raises(ArtifactMissing) as exc_info:
            ArtifactPublisher(workspace).publish(_result("found.txt", "lost.txt"))
        assert [a.name for a in exc_info.value.published] == ["found.txt"]
        assert list(exc_info.value.missing) == ["lost.txt"]

    def test_empty_directory_is_missing(self, workspace):
        (workspace / "empty").mkdir()
        with pytest.raises(ArtifactMissing) as exc_info:
            ArtifactPublisher(workspace).publish(_result("empty"))
        assert exc_info.value.missing == {"empty": "not a regular file"}

    @needs_symlinks
    def test_symlink_escaping_workspace_refused(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "id_rsa").write_text("private")
        os.symlink(outside / "id_rsa", workspace / "report.html")
        with pytest.raises(ArtifactMissing) as exc_info:
            ArtifactPublisher(workspace).publish(_result("report.html"))
        assert exc_info.value.missing == {"report.html": "outside the workspace"}

    @needs_symlinks
    def test_symlink_inside_directory_skipped(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("private")
        site = workspace / "site"
        site.mkdir()
        (site / "index.html").write_text("ok")
        os.symlink(outside / "secret.txt", site / "leak.txt")
        artifacts = ArtifactPublisher(workspace).publish(_result("site"))
        assert [a.name for a in artifacts] == ["site/index.html"]

    @needs_symlinks
    def test_symlink_within_workspace_allowed(self, workspace):
        (workspace / "real.txt").write_text("data")
        os.symlink(workspace / "real.txt", workspace / "link.txt")
        [artifact] = ArtifactPublisher(workspace).publish(_result("link.txt"))
        assert artifact.path == (workspace / "real.txt").resolve()


class TestStore:
    def test_copies_into_run_layout(self, workspace, tmp_path):
        (workspace / "app.jar").write_bytes(b"jar-bytes")
        store = tmp_path / "store"
        publisher = ArtifactPublisher(workspace, store_dir=store)
        [artifact] = publisher.publish(_result("app.jar", stage="Build & Package"))
        expected = store / "run123" / "Build-Package" / "app.jar"
        assert artifact.path == expected
        assert expected.read_bytes() == b"jar-bytes"
        assert artifact.source == (workspace / "app.jar").resolve()

    def test_copy_survives_workspace_cleanup(self, workspace, tmp_path):
        src = workspace / "report.html"
        src.write_text("kept")
        [artifact] = ArtifactPublisher(workspace, store_dir=tmp_path / "store").publish(
            _result("report.html")
        )
        src.unlink()
        assert artifact.path.read_text() == "kept"


class TestPruneArtifacts:
    def test_removes_old_runs(self, tmp_path):
        store = tmp_path / "store"
        old = store / "old-run" / "Build"
        new = store / "new-run" / "Build"
        old.mkdir(parents=True)
        new.mkdir(parents=True)
        (old / "app.jar").write_text("x")
        stale = time.time() - 40 * 86400
        os.utime(store / "old-run", (stale, stale))

        assert prune_artifacts(store, retention_days=30) == 1
        assert not (store / "old-run").exists()
        assert (store / "new-run").exists()

    def test_missing_store(self, tmp_path):
        assert prune_artifacts(tmp_path / "absent") == 0

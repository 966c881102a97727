"""Shared test fixtures and helpers."""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path

import pytest

from stagerunner.credentials import CredentialStore, StaticCredentialStore
from stagerunner.pipeline.executor import Executor, RunResult, run_pipeline
from stagerunner.pipeline.model import Pipeline, define_pipeline


def py(code: str, *args: str) -> list[str]:
    """Argv running *code* with the current interpreter."""
    return [sys.executable, "-c", code, *args]


def make_stage(name: str, *commands: list[str], **kwargs) -> dict:
    """Stage mapping; defaults to a single successful command."""
    return {"name": name, "commands": list(commands) or [py("pass")], **kwargs}


def make_pipeline(
    stages: list[dict],
    workspace: Path,
    *,
    env: dict | None = None,
    credentials: list[str] | None = None,
    name: str = "test-pipeline",
) -> Pipeline:
    return define_pipeline(
        stages,
        env or {},
        credentials=credentials or [],
        name=name,
        base_dir=workspace,
    )


def run_all(
    pipeline: Pipeline,
    store: CredentialStore | None = None,
    **executor_kwargs,
) -> RunResult:
    executor_kwargs.setdefault("kill_grace", 1.0)
    executor = Executor(store or StaticCredentialStore(), **executor_kwargs)
    return run_pipeline(pipeline, executor)


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    """Keep history, artifacts and the global .env inside the test's tmp dir."""
    monkeypatch.setenv("STAGERUNNER_HOME", str(tmp_path / "home"))


@pytest.fixture
def workspace(tmp_path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture()
def _caplog_stagerunner(caplog):
    """Attach caplog handler to the ``stagerunner`` logger so records are captured
    even though ``propagate=False``."""
    root = logging.getLogger("stagerunner")
    root.addHandler(caplog.handler)
    yield
    root.removeHandler(caplog.handler)


def wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def pid_alive(pid: int) -> bool:
    """True while *pid* exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
        except (OSError, IndexError):
            return False
    return True

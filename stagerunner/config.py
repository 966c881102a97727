"""Centralized path configuration for stagerunner.

Respects ``STAGERUNNER_HOME`` env var, then ``XDG_DATA_HOME/stagerunner``,
and falls back to ``~/.stagerunner``.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def get_home_dir() -> Path:
    """Return the stagerunner data directory.

    Resolution order:
    1. ``STAGERUNNER_HOME`` environment variable
    2. ``XDG_DATA_HOME/stagerunner`` (if ``XDG_DATA_HOME`` is set)
    3. ``~/.stagerunner``
    """
    env = os.environ.get("STAGERUNNER_HOME")
    if env:
        return Path(env)
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "stagerunner"
    return Path.home() / ".stagerunner"


def get_history_db_path() -> Path:
    return get_home_dir() / "history.db"


def get_artifacts_dir() -> Path:
    return get_home_dir() / "artifacts"


def get_global_env_path() -> Path:
    return get_home_dir() / ".env"


def ensure_private_dir(path: Path) -> None:
    """Create (or tighten) a directory to mode 0o700."""
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    if sys.platform != "win32":
        path.chmod(0o700)


def secure_database(db_path: Path) -> None:
    """chmod an existing database file to 0o600 (owner-only)."""
    if sys.platform != "win32" and db_path.exists():
        db_path.chmod(0o600)

"""Append-only SQLite history of pipeline runs and stage results."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from stagerunner._log import get_logger
from stagerunner.config import ensure_private_dir, secure_database
from stagerunner.redact import scrub_secrets

if TYPE_CHECKING:
    from stagerunner.pipeline.executor import RunResult

logger = get_logger("history")

# Stage output is stored as a tail; build logs put the failure summary last.
OUTPUT_TAIL_CHARS = 8000


@dataclass
class RunRecord:
    run_id: str
    pipeline_name: str
    timestamp: str
    duration_ms: int
    status: str
    failed_stage: str | None
    exit_code: int
    stage_count: int


@dataclass
class StageRecord:
    run_id: str
    position: int
    stage: str
    status: str
    exit_code: int | None
    duration_ms: int
    error: str | None
    category: str | None
    skip_reason: str | None
    output: str
    artifacts: str  # JSON list of workspace-relative names
    missing_artifacts: str | None  # JSON object, None when nothing was missing


_CREATE_RUNS_TABLE = """\
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL UNIQUE,
    pipeline_name TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    failed_stage TEXT,
    exit_code INTEGER NOT NULL,
    stage_count INTEGER NOT NULL
);
"""

_CREATE_STAGES_TABLE = """\
CREATE TABLE IF NOT EXISTS stage_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    exit_code INTEGER,
    duration_ms INTEGER NOT NULL,
    error TEXT,
    category TEXT,
    skip_reason TEXT,
    output TEXT NOT NULL,
    artifacts TEXT NOT NULL,
    missing_artifacts TEXT
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_runs_pipeline ON runs (pipeline_name);",
    "CREATE INDEX IF NOT EXISTS idx_runs_timestamp ON runs (timestamp);",
    "CREATE INDEX IF NOT EXISTS idx_runs_status ON runs (status);",
    "CREATE INDEX IF NOT EXISTS idx_stages_run_id ON stage_results (run_id);",
]

_INSERT_RUN = """\
INSERT INTO runs (
    run_id, pipeline_name, timestamp, duration_ms, status,
    failed_stage, exit_code, stage_count
) VALUES (?, ?, ?, ?, ?, ?, ?, ?);
"""

_INSERT_STAGE = """\
INSERT INTO stage_results (
    run_id, position, stage, status, exit_code, duration_ms, error,
    category, skip_reason, output, artifacts, missing_artifacts
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

RUN_FIELDS = [
    "run_id",
    "pipeline_name",
    "timestamp",
    "duration_ms",
    "status",
    "failed_stage",
    "exit_code",
    "stage_count",
]


def _default_db_path() -> Path:
    from stagerunner.config import get_history_db_path

    return get_history_db_path()


def _build_where(
    filters: list[tuple[str, object]],
) -> tuple[str, list[object]]:
    """Build a WHERE clause from (column_expr, value) pairs.

    Returns (where_fragment, params). If no filters, returns ("", []).
    """
    clauses: list[str] = []
    params: list[object] = []
    for clause, value in filters:
        clauses.append(clause)
        params.append(value)
    where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return where, params


def _row_to_run(row: sqlite3.Row) -> RunRecord:
    return RunRecord(**{f: row[f] for f in RUN_FIELDS})


def _row_to_stage(row: sqlite3.Row) -> StageRecord:
    return StageRecord(
        run_id=row["run_id"],
        position=row["position"],
        stage=row["stage"],
        status=row["status"],
        exit_code=row["exit_code"],
        duration_ms=row["duration_ms"],
        error=row["error"],
        category=row["category"],
        skip_reason=row["skip_reason"],
        output=row["output"],
        artifacts=row["artifacts"],
        missing_artifacts=row["missing_artifacts"],
    )


def run_to_dict(record: RunRecord) -> dict:
    """Convert a RunRecord to a dict suitable for JSON/CSV export."""
    return {f: getattr(record, f) for f in RUN_FIELDS}


_T = TypeVar("_T")


class RunHistory:
    """Append-only run history backed by SQLite."""

    def __init__(self, db_path: Path | None = None) -> None:
        resolved_path = db_path or _default_db_path()
        self._db_path = resolved_path
        ensure_private_dir(resolved_path.parent)
        self._conn = sqlite3.connect(str(resolved_path), check_same_thread=False, timeout=30)
        try:
            self._conn.row_factory = sqlite3.Row
            self._lock = threading.Lock()
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute(_CREATE_RUNS_TABLE)
            self._conn.execute(_CREATE_STAGES_TABLE)
            for idx in _CREATE_INDEXES:
                self._conn.execute(idx)
            self._conn.commit()
            secure_database(resolved_path)
        except Exception:
            self._conn.close()
            raise

    @property
    def db_path(self) -> Path:
        return self._db_path

    def record(self, run: RunResult) -> None:
        """Insert a finished run and its stage results. Never raises."""
        failed = run.failed_stage
        run_row = (
            run.run_id,
            run.pipeline_name,
            run.started_at or datetime.now(UTC).isoformat(),
            run.duration_ms,
            str(run.status),
            failed.stage if failed is not None else None,
            run.exit_code,
            len(run.results),
        )
        stage_rows = [
            (
                run.run_id,
                position,
                r.stage,
                str(r.status),
                r.exit_code,
                r.duration_ms,
                scrub_secrets(r.error) if r.error else r.error,
                str(r.category) if r.category is not None else None,
                r.skip_reason,
                scrub_secrets(r.output[-OUTPUT_TAIL_CHARS:]) if not r.skipped else "",
                json.dumps([a.name for a in r.artifacts]),
                json.dumps(dict(r.missing_artifacts)) if r.missing_artifacts else None,
            )
            for position, r in enumerate(run.results)
        ]
        try:
            with self._lock:
                with self._conn:
                    self._conn.execute(_INSERT_RUN, run_row)
                    self._conn.executemany(_INSERT_STAGE, stage_rows)
        except Exception as e:
            logger.error("Failed to record run %s: %s", run.run_id, e)

    def _query_table(
        self,
        table: str,
        filter_clauses: list[tuple[str, object | None]],
        order_by: str,
        limit: int,
        row_mapper: Callable[[sqlite3.Row], _T],
    ) -> list[_T]:
        """Generic filtered query on *table*. Skips clauses whose value is ``None``."""
        filters = [(clause, val) for clause, val in filter_clauses if val is not None]
        where, params = _build_where(filters)
        sql = f"SELECT * FROM {table} {where} ORDER BY {order_by} LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [row_mapper(row) for row in rows]

    def query_runs(
        self,
        *,
        pipeline_name: str | None = None,
        status: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int = 100,
    ) -> list[RunRecord]:
        """Query runs with optional filters, newest first."""
        return self._query_table(
            "runs",
            [
                ("pipeline_name = ?", pipeline_name),
                ("status = ?", status),
                ("timestamp >= ?", since),
                ("timestamp <= ?", until),
            ],
            "timestamp DESC",
            limit,
            _row_to_run,
        )

    def get_stages(self, run_id: str) -> list[StageRecord]:
        """Stage results for *run_id* in execution order."""
        return self._query_table(
            "stage_results",
            [("run_id = ?", run_id)],
            "position ASC",
            10_000,
            _row_to_stage,
        )

    def prune(self, retention_days: int = 90, max_runs: int = 10_000) -> int:
        """Delete runs older than *retention_days* and trim to *max_runs*.

        Returns the number of runs deleted.
        """
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()
        with self._lock:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM runs WHERE timestamp < ?", (cutoff,))
                deleted = cursor.rowcount
                cursor = self._conn.execute(
                    "DELETE FROM runs WHERE id NOT IN "
                    "(SELECT id FROM runs ORDER BY timestamp DESC LIMIT ?)",
                    (max_runs,),
                )
                deleted += cursor.rowcount
                self._conn.execute(
                    "DELETE FROM stage_results WHERE run_id NOT IN (SELECT run_id FROM runs)"
                )
        return deleted

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> RunHistory:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

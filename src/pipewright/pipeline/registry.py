"""Pipeline registry — SQLite persistence for pipeline runs and job states.

Key exports:
    PipelineRegistry — CRUD operations for pipeline_runs and job_runs.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from pipewright.pipeline.models import (
    ErrorKind,
    EventSource,
    ExecutionReport,
    JobInstance,
    JobStatus,
    PipelineRunContext,
    PipelineRunRecord,
    PipelineStatus,
    TestSummary,
)

logger = logging.getLogger("pipewright.pipeline.registry")

_ACTIVE_RUN_STATUSES = (PipelineStatus.PENDING.value, PipelineStatus.RUNNING.value)


class PipelineRegistry:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection with ``row_factory`` set to
    ``aiosqlite.Row``. Call ``initialize()`` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all pipeline tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Pipeline registry tables initialized")

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_run(self, context: PipelineRunContext) -> PipelineRunRecord:
        """Insert a new pipeline run in ``pending`` state."""
        record = PipelineRunRecord(
            run_id=context.run_id,
            pipeline_name=context.pipeline_name,
            concurrency_group=context.concurrency_group,
            source=context.trigger.source,
            ref=context.trigger.ref,
            interruptible=context.interruptible,
            created_at=context.created_at,
        )
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, concurrency_group, source, ref,
                status, interruptible, trigger_context, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.run_id,
                record.pipeline_name,
                record.concurrency_group,
                record.source.value,
                record.ref,
                record.status.value,
                int(record.interruptible),
                context.trigger.model_dump_json(),
                _dt_to_str(record.created_at),
            ),
        )
        await self._db.commit()
        return record

    async def get_run(self, run_id: str) -> PipelineRunRecord | None:
        """Fetch a pipeline run by ID."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_run(row)

    async def list_runs(
        self, *, status: PipelineStatus | None = None, limit: int = 50
    ) -> list[PipelineRunRecord]:
        """Most recent runs first, optionally filtered by status."""
        if status:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_runs(self, concurrency_group: str | None = None) -> list[PipelineRunRecord]:
        """Runs that are pending or running, oldest first."""
        if concurrency_group is not None:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE status IN (?, ?) AND concurrency_group = ? "
                "ORDER BY created_at",
                (*_ACTIVE_RUN_STATUSES, concurrency_group),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM pipeline_runs WHERE status IN (?, ?) ORDER BY created_at",
                _ACTIVE_RUN_STATUSES,
            )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def mark_run_started(self, run_id: str) -> None:
        await self._db.execute(
            "UPDATE pipeline_runs SET status = ?, started_at = ? WHERE run_id = ?",
            (PipelineStatus.RUNNING.value, _dt_to_str(datetime.now(timezone.utc)), run_id),
        )
        await self._db.commit()

    async def complete_run(self, report: ExecutionReport) -> None:
        """Store the final status and report of a run."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, exit_code = ?, completed_at = ?, report = ?
            WHERE run_id = ?
            """,
            (
                report.status.value,
                report.exit_code,
                _dt_to_str(report.completed_at),
                report.model_dump_json(),
                report.run_id,
            ),
        )
        await self._db.commit()

    async def mark_stale_runs_canceled(self) -> list[str]:
        """Cancel runs left pending/running by a previous process.

        Their job processes are gone; nothing can resume them.
        """
        cursor = await self._db.execute(
            "SELECT run_id FROM pipeline_runs WHERE status IN (?, ?)", _ACTIVE_RUN_STATUSES
        )
        run_ids = [row["run_id"] for row in await cursor.fetchall()]
        if not run_ids:
            return []
        now = _dt_to_str(datetime.now(timezone.utc))
        placeholders = ", ".join("?" for _ in run_ids)
        await self._db.execute(
            f"UPDATE pipeline_runs SET status = ?, exit_code = 0, completed_at = ? "
            f"WHERE run_id IN ({placeholders})",
            (PipelineStatus.CANCELED.value, now, *run_ids),
        )
        await self._db.execute(
            f"UPDATE job_runs SET status = ?, cancel_reason = ?, completed_at = ? "
            f"WHERE run_id IN ({placeholders}) AND status NOT IN (?, ?, ?, ?)",
            (
                JobStatus.CANCELED.value,
                "orchestrator restarted",
                now,
                *run_ids,
                JobStatus.SUCCEEDED.value,
                JobStatus.FAILED.value,
                JobStatus.CANCELED.value,
                JobStatus.SKIPPED.value,
            ),
        )
        await self._db.commit()
        return run_ids

    # ── Job Run CRUD ─────────────────────────────────────────────────────────

    async def upsert_job(self, run_id: str, instance: JobInstance) -> None:
        """Insert or update the persisted state of one job instance."""
        await self._db.execute(
            """
            INSERT INTO job_runs (
                run_id, instance_key, template, stage, matrix_cell, status, attempt,
                runner, exit_code, error_kind, error_message, cancel_reason,
                allow_failure, artifacts, tests, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(run_id, instance_key) DO UPDATE SET
                status = excluded.status,
                attempt = excluded.attempt,
                runner = excluded.runner,
                exit_code = excluded.exit_code,
                error_kind = excluded.error_kind,
                error_message = excluded.error_message,
                cancel_reason = excluded.cancel_reason,
                artifacts = excluded.artifacts,
                tests = excluded.tests,
                started_at = excluded.started_at,
                completed_at = excluded.completed_at
            """,
            (
                run_id,
                instance.key,
                instance.template,
                instance.stage,
                json.dumps(instance.matrix_cell),
                instance.status.value,
                instance.attempt,
                instance.runner,
                instance.exit_code,
                instance.error_kind.value if instance.error_kind else None,
                instance.error_message,
                instance.cancel_reason,
                int(instance.allow_failure),
                json.dumps(instance.artifacts),
                instance.tests.model_dump_json() if instance.tests else None,
                _dt_to_str(instance.started_at),
                _dt_to_str(instance.completed_at),
            ),
        )
        await self._db.commit()

    async def get_jobs(self, run_id: str) -> list[JobInstance]:
        """All persisted job instances of a run, in insertion order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_job(r) for r in rows]


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    concurrency_group TEXT NOT NULL,

    source TEXT NOT NULL,
    ref TEXT DEFAULT '',
    trigger_context TEXT DEFAULT '{}',

    status TEXT DEFAULT 'pending',
    interruptible INTEGER DEFAULT 1,
    exit_code INTEGER,
    report TEXT,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_group
    ON pipeline_runs(concurrency_group, status);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
    ON pipeline_runs(status);

CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    instance_key TEXT NOT NULL,
    template TEXT NOT NULL,
    stage TEXT NOT NULL,
    matrix_cell TEXT DEFAULT '{}',

    status TEXT DEFAULT 'pending',
    attempt INTEGER DEFAULT 0,
    runner TEXT,
    exit_code INTEGER,
    error_kind TEXT,
    error_message TEXT,
    cancel_reason TEXT,
    allow_failure INTEGER DEFAULT 0,

    artifacts TEXT DEFAULT '[]',
    tests TEXT,

    started_at TEXT,
    completed_at TEXT,

    UNIQUE(run_id, instance_key)
);

CREATE INDEX IF NOT EXISTS idx_job_runs_run
    ON job_runs(run_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(row: aiosqlite.Row) -> PipelineRunRecord:
    """Convert a database row to a PipelineRunRecord model."""
    report = row["report"]
    return PipelineRunRecord(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        concurrency_group=row["concurrency_group"],
        source=EventSource(row["source"]),
        ref=row["ref"] or "",
        status=PipelineStatus(row["status"]),
        interruptible=bool(row["interruptible"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        report=ExecutionReport.model_validate_json(report) if report else None,
    )


def _row_to_job(row: aiosqlite.Row) -> JobInstance:
    """Convert a database row to a JobInstance model."""
    matrix_cell = row["matrix_cell"]
    if isinstance(matrix_cell, str):
        matrix_cell = json.loads(matrix_cell)
    artifacts = row["artifacts"]
    if isinstance(artifacts, str):
        artifacts = json.loads(artifacts)
    tests = row["tests"]

    return JobInstance(
        key=row["instance_key"],
        template=row["template"],
        stage=row["stage"],
        matrix_cell=matrix_cell or {},
        status=JobStatus(row["status"]),
        attempt=row["attempt"] or 0,
        runner=row["runner"],
        exit_code=row["exit_code"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        error_message=row["error_message"],
        cancel_reason=row["cancel_reason"],
        allow_failure=bool(row["allow_failure"]),
        artifacts=artifacts or [],
        tests=TestSummary.model_validate_json(tests) if tests else None,
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )

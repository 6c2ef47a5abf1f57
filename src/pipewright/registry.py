"""Run Repository: SQLite-backed storage for pipeline runs and task runs.

All writes go through :meth:`RunRepository.transaction`, which serialises
writers on an asyncio lock and opens a ``BEGIN IMMEDIATE`` transaction so
the database write lock is held from the first read.  Admission counting
and run-number allocation therefore happen atomically with the insert
that depends on them, both within this process and against any other
process sharing the same database file.

The transaction is re-entrant for the task that owns it: repository calls
made from inside an open transaction join it instead of deadlocking.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable

import aiosqlite

from pipewright.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    GroupStatistics,
    PipelineRun,
    RunFilter,
    RunStatistics,
    RunStatus,
    TaskRun,
    TaskRunStatus,
    TriggerType,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL,
    run_number INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    trigger_type TEXT NOT NULL DEFAULT 'manual',
    trigger_by TEXT,
    trigger_data TEXT NOT NULL DEFAULT '{}',
    parameters TEXT NOT NULL DEFAULT '{}',
    retried_from TEXT,
    started_at TEXT,
    finished_at TEXT,
    duration INTEGER,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(pipeline_id, run_number)
);

CREATE TABLE IF NOT EXISTS task_runs (
    id TEXT PRIMARY KEY,
    pipeline_run_id TEXT NOT NULL REFERENCES pipeline_runs(id) ON DELETE CASCADE,
    task_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    started_at TEXT,
    finished_at TEXT,
    exit_code INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(pipeline_run_id, name)
);

-- Admission accounting
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_pipeline_status ON pipeline_runs(pipeline_id, status);
-- Retention sweep
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status_finished ON pipeline_runs(status, finished_at);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_created ON pipeline_runs(created_at);
CREATE INDEX IF NOT EXISTS idx_task_runs_run ON task_runs(pipeline_run_id);
CREATE INDEX IF NOT EXISTS idx_task_runs_status_finished ON task_runs(status, finished_at);
"""

_TERMINAL_RUN_VALUES = tuple(s.value for s in TERMINAL_STATUSES)
_ACTIVE_RUN_VALUES = tuple(s.value for s in ACTIVE_STATUSES)
_TERMINAL_TASK_VALUES = tuple(s.value for s in TaskRunStatus if s.is_terminal)

_GROUP_EXPRESSIONS = {
    "status": "status",
    "pipeline": "pipeline_id",
    "day": "substr(created_at, 1, 10)",
    "hour": "substr(created_at, 1, 13)",
}


class RunRepository:
    """SQLite-backed run storage with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        # Autocommit mode: transactions are opened explicitly below.
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.executescript(SCHEMA)
        logger.info("Run repository initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Repository not initialized; call initialize() first")
        return self._db

    # ── Transactions ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock for the enclosed block; commit on success."""
        if self._owner is asyncio.current_task():
            yield self.db
            return
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                await self.db.execute("BEGIN IMMEDIATE")
                try:
                    yield self.db
                    await self.db.execute("COMMIT")
                except BaseException:
                    if self.db.in_transaction:
                        await self.db.execute("ROLLBACK")
                    raise
            finally:
                self._owner = None

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise a read against open transactions on the shared connection."""
        if self._owner is asyncio.current_task():
            yield self.db
            return
        async with self._lock:
            yield self.db

    async def ping(self) -> None:
        async with self._reading() as db:
            await db.execute("SELECT 1")

    # ── Pipeline Run CRUD ────────────────────────────────────────────────

    async def insert_run(self, run: PipelineRun) -> PipelineRun:
        """Insert a new run row. Sets created_at/updated_at if missing."""
        now = _utcnow()
        run.created_at = run.created_at or now
        run.updated_at = now
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO pipeline_runs (
                    id, pipeline_id, run_number, status, trigger_type, trigger_by,
                    trigger_data, parameters, retried_from, started_at, finished_at,
                    duration, error_message, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.pipeline_id,
                    run.run_number,
                    run.status.value,
                    run.trigger_type.value,
                    run.trigger_by,
                    json.dumps(run.trigger_data),
                    json.dumps(run.parameters),
                    run.retried_from,
                    _dt_to_str(run.started_at),
                    _dt_to_str(run.finished_at),
                    run.duration,
                    run.error_message,
                    _dt_to_str(run.created_at),
                    _dt_to_str(run.updated_at),
                ),
            )
        return run

    async def next_run_number(self, pipeline_id: str) -> int:
        """Highest run number for the pipeline plus one.

        Only meaningful inside :meth:`transaction`, where the result stays
        valid until the matching insert commits.
        """
        async with self._reading() as db:
            cursor = await db.execute(
                "SELECT COALESCE(MAX(run_number), 0) FROM pipeline_runs WHERE pipeline_id = ?",
                (pipeline_id,),
            )
            row = await cursor.fetchone()
        return int(row[0]) + 1

    async def count_active(self, pipeline_id: str) -> int:
        """Number of pending or running runs for a pipeline."""
        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM pipeline_runs WHERE pipeline_id = ? "
                f"AND status IN ({_placeholders(_ACTIVE_RUN_VALUES)})",
                (pipeline_id, *_ACTIVE_RUN_VALUES),
            )
            row = await cursor.fetchone()
        return int(row[0])

    async def count_by_status(self, status: RunStatus) -> int:
        async with self._reading() as db:
            cursor = await db.execute(
                "SELECT COUNT(*) FROM pipeline_runs WHERE status = ?", (status.value,)
            )
            row = await cursor.fetchone()
        return int(row[0])

    async def get_run(self, run_id: str) -> PipelineRun | None:
        async with self._reading() as db:
            cursor = await db.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()
        return _row_to_run(row) if row else None

    async def get_runs_by_pipeline(self, pipeline_id: str, limit: int = 20) -> list[PipelineRun]:
        """Most recent runs for a pipeline, newest first."""
        async with self._reading() as db:
            cursor = await db.execute(
                "SELECT * FROM pipeline_runs WHERE pipeline_id = ? "
                "ORDER BY created_at DESC, run_number DESC LIMIT ?",
                (pipeline_id, limit),
            )
            rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def get_active_runs(self) -> list[PipelineRun]:
        """All pending or running runs, oldest first."""
        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT * FROM pipeline_runs WHERE status IN ({_placeholders(_ACTIVE_RUN_VALUES)}) "
                "ORDER BY created_at",
                _ACTIVE_RUN_VALUES,
            )
            rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def list_runs(self, run_filter: RunFilter) -> tuple[list[PipelineRun], int]:
        """Filtered, sorted, paginated listing. Returns (page, total matches)."""
        where, params = _filter_clause(
            pipeline_id=run_filter.pipeline_id,
            start=run_filter.start_date,
            end=run_filter.end_date,
        )
        if run_filter.status is not None:
            where.append("status = ?")
            params.append(run_filter.status.value)
        if run_filter.trigger_type is not None:
            where.append("trigger_type = ?")
            params.append(run_filter.trigger_type.value)
        if run_filter.trigger_by:
            where.append("trigger_by = ?")
            params.append(run_filter.trigger_by)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        # sort_by is validated against SORTABLE_FIELDS by RunFilter
        direction = "DESC" if run_filter.sort_desc else "ASC"
        offset = (run_filter.page - 1) * run_filter.limit

        async with self._reading() as db:
            cursor = await db.execute(f"SELECT COUNT(*) FROM pipeline_runs {where_sql}", params)
            total = int((await cursor.fetchone())[0])
            cursor = await db.execute(
                f"SELECT * FROM pipeline_runs {where_sql} "
                f"ORDER BY {run_filter.sort_by} {direction}, id {direction} LIMIT ? OFFSET ?",
                (*params, run_filter.limit, offset),
            )
            rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows], total

    async def compare_and_set_status(self, run: PipelineRun, expected: RunStatus) -> bool:
        """Persist ``run``'s mutable fields only if the stored status is ``expected``.

        Returns True if the row was updated.  A False return means another
        writer moved the run first (or it was deleted).
        """
        run.updated_at = _utcnow()
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE pipeline_runs SET
                    status = ?, started_at = ?, finished_at = ?, duration = ?,
                    error_message = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    run.status.value,
                    _dt_to_str(run.started_at),
                    _dt_to_str(run.finished_at),
                    run.duration,
                    run.error_message,
                    _dt_to_str(run.updated_at),
                    run.id,
                    expected.value,
                ),
            )
            return cursor.rowcount == 1

    async def delete_expired_runs(self, cutoff: datetime) -> int:
        """Delete terminal runs that finished before ``cutoff``. Returns rows deleted."""
        async with self.transaction() as db:
            cursor = await db.execute(
                f"DELETE FROM pipeline_runs WHERE status IN ({_placeholders(_TERMINAL_RUN_VALUES)}) "
                "AND finished_at IS NOT NULL AND finished_at < ?",
                (*_TERMINAL_RUN_VALUES, _dt_to_str(cutoff)),
            )
            return max(cursor.rowcount, 0)

    # ── Task Run CRUD ────────────────────────────────────────────────────

    async def insert_task_runs(self, task_runs: Iterable[TaskRun]) -> None:
        now = _utcnow()
        rows = []
        for tr in task_runs:
            tr.created_at = tr.created_at or now
            rows.append(
                (
                    tr.id,
                    tr.pipeline_run_id,
                    tr.task_id,
                    tr.name,
                    tr.status.value,
                    _dt_to_str(tr.started_at),
                    _dt_to_str(tr.finished_at),
                    tr.exit_code,
                    tr.retry_count,
                    _dt_to_str(tr.created_at),
                )
            )
        async with self.transaction() as db:
            await db.executemany(
                """
                INSERT OR IGNORE INTO task_runs (
                    id, pipeline_run_id, task_id, name, status, started_at,
                    finished_at, exit_code, retry_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )

    async def get_task_runs(self, pipeline_run_id: str) -> list[TaskRun]:
        async with self._reading() as db:
            cursor = await db.execute(
                "SELECT * FROM task_runs WHERE pipeline_run_id = ? ORDER BY created_at, rowid",
                (pipeline_run_id,),
            )
            rows = await cursor.fetchall()
        return [_row_to_task_run(r) for r in rows]

    async def update_task_run(
        self,
        pipeline_run_id: str,
        name: str,
        status: TaskRunStatus,
        *,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
        exit_code: int | None = None,
    ) -> bool:
        """Advance a non-terminal task run. Terminal task runs are never touched."""
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE task_runs SET
                    status = ?,
                    started_at = COALESCE(started_at, ?),
                    finished_at = COALESCE(finished_at, ?),
                    exit_code = COALESCE(?, exit_code)
                WHERE pipeline_run_id = ? AND name = ? AND status IN ('pending', 'running')
                """,
                (
                    status.value,
                    _dt_to_str(started_at),
                    _dt_to_str(finished_at),
                    exit_code,
                    pipeline_run_id,
                    name,
                ),
            )
            return cursor.rowcount == 1

    async def close_out_task_runs(
        self, pipeline_run_id: str, status: RunStatus, finished_at: datetime
    ) -> None:
        """Finish a run's open task runs after the run itself went terminal.

        Pending task runs never started, so they become ``skipped``; running
        ones inherit the run's terminal status.
        """
        ts = _dt_to_str(finished_at)
        async with self.transaction() as db:
            await db.execute(
                "UPDATE task_runs SET status = 'skipped', finished_at = ? "
                "WHERE pipeline_run_id = ? AND status = 'pending'",
                (ts, pipeline_run_id),
            )
            await db.execute(
                "UPDATE task_runs SET status = ?, finished_at = ? "
                "WHERE pipeline_run_id = ? AND status = 'running'",
                (status.value, ts, pipeline_run_id),
            )

    async def delete_expired_task_runs(self, cutoff: datetime) -> int:
        async with self.transaction() as db:
            cursor = await db.execute(
                f"DELETE FROM task_runs WHERE status IN ({_placeholders(_TERMINAL_TASK_VALUES)}) "
                "AND finished_at IS NOT NULL AND finished_at < ?",
                (*_TERMINAL_TASK_VALUES, _dt_to_str(cutoff)),
            )
            return max(cursor.rowcount, 0)

    # ── Statistics ───────────────────────────────────────────────────────

    async def get_statistics(
        self,
        *,
        pipeline_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        group_by: str | None = None,
    ) -> RunStatistics:
        """Aggregate status counts and succeeded-run durations.

        ``group_by`` may be ``status``, ``pipeline``, ``day`` or ``hour``.
        """
        if group_by is not None and group_by not in _GROUP_EXPRESSIONS:
            raise ValueError(
                f"Cannot group by '{group_by}'; expected one of {sorted(_GROUP_EXPRESSIONS)}"
            )
        where, params = _filter_clause(pipeline_id=pipeline_id, start=start, end=end)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT status, COUNT(*) FROM pipeline_runs {where_sql} GROUP BY status",
                params,
            )
            status_counts = {row[0]: int(row[1]) for row in await cursor.fetchall()}

            duration_where = where + ["status = 'succeeded'", "duration IS NOT NULL"]
            cursor = await db.execute(
                f"SELECT duration FROM pipeline_runs WHERE {' AND '.join(duration_where)} "
                "ORDER BY duration",
                params,
            )
            durations = [int(row[0]) for row in await cursor.fetchall()]

            groups: dict[str, GroupStatistics] = {}
            if group_by is not None:
                expr = _GROUP_EXPRESSIONS[group_by]
                cursor = await db.execute(
                    f"SELECT {expr} AS grp, status, COUNT(*), SUM(duration), COUNT(duration) "
                    f"FROM pipeline_runs {where_sql} GROUP BY grp, status ORDER BY grp",
                    params,
                )
                for grp, status, count, duration_sum, duration_count in await cursor.fetchall():
                    bucket = groups.setdefault(str(grp), GroupStatistics())
                    bucket.status_counts[status] = int(count)
                    bucket.total += int(count)
                    if status == RunStatus.SUCCEEDED.value and duration_count:
                        bucket.average_duration = round(duration_sum / duration_count, 2)
                for bucket in groups.values():
                    bucket.success_rate = _success_rate(bucket.status_counts, bucket.total)

        total = sum(status_counts.values())
        return RunStatistics(
            total_runs=total,
            status_counts=status_counts,
            success_rate=_success_rate(status_counts, total),
            average_duration=round(sum(durations) / len(durations), 2) if durations else None,
            median_duration=_median(durations),
            group_by=group_by,
            groups=groups,
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _success_rate(status_counts: dict[str, int], total: int) -> float:
    succeeded = status_counts.get(RunStatus.SUCCEEDED.value, 0)
    return round(succeeded / total * 100, 2) if total else 0.0


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a fixed-width UTC ISO string.

    Fixed width keeps lexical order equal to time order, which the
    retention and date-range queries rely on.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)


def _filter_clause(
    *, pipeline_id: str | None, start: datetime | None, end: datetime | None
) -> tuple[list[str], list]:
    where: list[str] = []
    params: list = []
    if pipeline_id:
        where.append("pipeline_id = ?")
        params.append(pipeline_id)
    if start is not None:
        where.append("created_at >= ?")
        params.append(_dt_to_str(start))
    if end is not None:
        where.append("created_at <= ?")
        params.append(_dt_to_str(end))
    return where, params


def _median(sorted_values: list[int]) -> float | None:
    if not sorted_values:
        return None
    mid = len(sorted_values) // 2
    if len(sorted_values) % 2:
        return float(sorted_values[mid])
    return (sorted_values[mid - 1] + sorted_values[mid]) / 2


def _row_to_run(row: aiosqlite.Row) -> PipelineRun:
    return PipelineRun(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        run_number=row["run_number"],
        status=RunStatus(row["status"]),
        trigger_type=TriggerType(row["trigger_type"]),
        trigger_by=row["trigger_by"],
        trigger_data=json.loads(row["trigger_data"] or "{}"),
        parameters=json.loads(row["parameters"] or "{}"),
        retried_from=row["retried_from"],
        started_at=_str_to_dt(row["started_at"]),
        finished_at=_str_to_dt(row["finished_at"]),
        duration=row["duration"],
        error_message=row["error_message"],
        created_at=_str_to_dt(row["created_at"]),
        updated_at=_str_to_dt(row["updated_at"]),
    )


def _row_to_task_run(row: aiosqlite.Row) -> TaskRun:
    return TaskRun(
        id=row["id"],
        pipeline_run_id=row["pipeline_run_id"],
        task_id=row["task_id"],
        name=row["name"],
        status=TaskRunStatus(row["status"]),
        started_at=_str_to_dt(row["started_at"]),
        finished_at=_str_to_dt(row["finished_at"]),
        exit_code=row["exit_code"],
        retry_count=row["retry_count"] or 0,
        created_at=_str_to_dt(row["created_at"]),
    )

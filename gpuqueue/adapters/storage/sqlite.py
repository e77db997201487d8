"""
SQLiteJobStore — durable job store on a local SQLite file.

Suitable for a single-process control panel. Every call opens a short-lived
connection inside a worker thread (asyncio.to_thread), so the event loop
never blocks on disk I/O and no connection is shared across threads.

Schema
------
jobs               one row per job; input/output stored as JSON text
dead_letter_queue  append-only; job_data holds the full job snapshot
cost_log           spend ledger read by the budget gate

Timestamps are stored as fixed-width ISO-8601 UTC strings
(microsecond precision), so lexical order in SQL equals time order.

`:memory:` is not supported: each connection would see its own database.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sqlite3
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

from gpuqueue.domain.errors import (
    GpuQueueError,
    JobNotFoundError,
    StatusConflictError,
    StorageError,
)
from gpuqueue.domain.models import (
    DEDUP_STATUSES,
    CostEntry,
    DeadLetter,
    Job,
    JobStats,
    JobStatus,
    as_status_set,
)

T = TypeVar("T")

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    remote_job_id TEXT,
    endpoint_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    input_hash TEXT NOT NULL,
    input JSON,
    output JSON,
    duration_ms REAL,
    attempts INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    not_before TEXT
);
CREATE TABLE IF NOT EXISTS dead_letter_queue (
    id TEXT PRIMARY KEY,
    original_job_id TEXT NOT NULL,
    endpoint_id TEXT NOT NULL,
    job_data JSON NOT NULL,
    error TEXT,
    attempts INTEGER,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS cost_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    resource_id TEXT,
    resource_type TEXT,
    resource_name TEXT,
    cost_usd REAL NOT NULL,
    duration_seconds INTEGER,
    gpu_type TEXT,
    logged_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_hash ON jobs(input_hash);
CREATE INDEX IF NOT EXISTS idx_cost_log_date ON cost_log(logged_at);
"""

_JOB_COLUMNS = (
    "id",
    "remote_job_id",
    "endpoint_id",
    "status",
    "input_hash",
    "input",
    "output",
    "duration_ms",
    "attempts",
    "error",
    "created_at",
    "started_at",
    "completed_at",
    "not_before",
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


@dataclasses.dataclass
class SQLiteJobStore:
    """
    Parameters
    ----------
    path    : SQLite database file (parent directory created if absent)
    timeout : seconds a connection waits on a locked database
    """

    path: Path
    timeout: float = 30.0

    def __init__(self, path: str | Path, timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self._initialized = False

    # ------------------------------------------------------------------ #
    # Jobs                                                                 #
    # ------------------------------------------------------------------ #

    async def create_job(self, job: Job) -> None:
        await self._run(self._sync_create_job, job)

    async def update_job(
        self,
        job_id: str,
        *,
        expected_status: JobStatus | Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> Job:
        return await self._run(
            self._sync_update_job, job_id, fields, as_status_set(expected_status)
        )

    async def get_job(self, job_id: str) -> Job | None:
        rows = await self._run(
            self._sync_query, "SELECT * FROM jobs WHERE id = ?", (job_id,)
        )
        return _row_to_job(rows[0]) if rows else None

    async def get_job_by_hash(self, input_hash: str) -> Job | None:
        placeholders = ", ".join("?" for _ in DEDUP_STATUSES)
        rows = await self._run(
            self._sync_query,
            f"""SELECT * FROM jobs
                WHERE input_hash = ? AND status IN ({placeholders})
                ORDER BY created_at DESC, rowid DESC LIMIT 1""",
            (input_hash, *(s.value for s in DEDUP_STATUSES)),
        )
        return _row_to_job(rows[0]) if rows else None

    async def get_jobs(
        self, limit: int = 100, status: JobStatus | None = None
    ) -> list[Job]:
        query = "SELECT * FROM jobs"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        rows = await self._run(self._sync_query, query, (*params, limit))
        return [_row_to_job(r) for r in rows]

    async def get_pending_jobs(
        self, limit: int, now: datetime | None = None
    ) -> list[Job]:
        if limit <= 0:
            return []
        rows = await self._run(
            self._sync_query,
            """SELECT * FROM jobs
               WHERE status = ? AND (not_before IS NULL OR not_before <= ?)
               ORDER BY created_at ASC, rowid ASC LIMIT ?""",
            (JobStatus.PENDING.value, _ts(now or datetime.now(UTC)), limit),
        )
        return [_row_to_job(r) for r in rows]

    async def get_active_jobs(self) -> list[Job]:
        rows = await self._run(
            self._sync_query,
            """SELECT * FROM jobs
               WHERE status IN (?, ?) AND remote_job_id IS NOT NULL
               ORDER BY created_at ASC, rowid ASC""",
            (JobStatus.RUNNING.value, JobStatus.IN_QUEUE.value),
        )
        return [_row_to_job(r) for r in rows]

    async def get_job_stats(self) -> JobStats:
        rows = await self._run(
            self._sync_query,
            """SELECT
                 COUNT(*) AS total,
                 COALESCE(SUM(status = 'PENDING'), 0) AS pending,
                 COALESCE(SUM(status = 'RUNNING'), 0) AS running,
                 COALESCE(SUM(status = 'IN_QUEUE'), 0) AS in_queue,
                 COALESCE(SUM(status = 'COMPLETED'), 0) AS completed,
                 COALESCE(SUM(status = 'FAILED'), 0) AS failed,
                 COALESCE(SUM(status = 'CANCELLED'), 0) AS cancelled,
                 AVG(duration_ms) AS avg_duration_ms
               FROM jobs""",
            (),
        )
        return JobStats.model_validate(dict(rows[0]))

    # ------------------------------------------------------------------ #
    # Dead letters                                                         #
    # ------------------------------------------------------------------ #

    async def add_to_dead_letter(self, job: Job, error: str) -> DeadLetter:
        record = DeadLetter.from_job(job, error)
        await self._run(
            self._sync_execute,
            """INSERT INTO dead_letter_queue
               (id, original_job_id, endpoint_id, job_data, error, attempts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.original_job_id,
                record.endpoint_id,
                record.job.model_dump_json(),
                record.error,
                record.attempts,
                _ts(record.created_at),
            ),
        )
        return record

    async def get_dead_letter_jobs(self) -> list[DeadLetter]:
        rows = await self._run(
            self._sync_query,
            "SELECT * FROM dead_letter_queue ORDER BY created_at DESC, rowid DESC",
            (),
        )
        return [_row_to_dead_letter(r) for r in rows]

    async def get_dead_letter(self, dlq_id: str) -> DeadLetter | None:
        rows = await self._run(
            self._sync_query, "SELECT * FROM dead_letter_queue WHERE id = ?", (dlq_id,)
        )
        return _row_to_dead_letter(rows[0]) if rows else None

    # ------------------------------------------------------------------ #
    # Cost ledger                                                          #
    # ------------------------------------------------------------------ #

    async def log_cost(self, entry: CostEntry) -> None:
        await self._run(
            self._sync_execute,
            """INSERT INTO cost_log
               (resource_id, resource_type, resource_name, cost_usd,
                duration_seconds, gpu_type, logged_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.resource_id,
                entry.resource_type,
                entry.resource_name,
                entry.cost_usd,
                entry.duration_seconds,
                entry.gpu_type,
                _ts(entry.logged_at),
            ),
        )

    async def get_today_spend(self) -> float:
        start = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
        return await self._spend_between(start, start + timedelta(days=1))

    async def get_month_spend(self) -> float:
        start = datetime.now(UTC).replace(
            day=1, hour=0, minute=0, second=0, microsecond=0
        )
        return await self._spend_between(start, None)

    async def _spend_between(self, start: datetime, end: datetime | None) -> float:
        query = "SELECT COALESCE(SUM(cost_usd), 0) AS total FROM cost_log WHERE logged_at >= ?"
        params: tuple[Any, ...] = (_ts(start),)
        if end is not None:
            query += " AND logged_at < ?"
            params = (*params, _ts(end))
        rows = await self._run(self._sync_query, query, params)
        return float(rows[0]["total"])

    # ------------------------------------------------------------------ #
    # Synchronous implementations (executed in a thread-pool worker)      #
    # ------------------------------------------------------------------ #

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except GpuQueueError:
            raise
        except sqlite3.Error as exc:
            raise StorageError(f"SQLite operation on {self.path} failed", exc) from exc

    def _connect(self) -> sqlite3.Connection:
        if not self._initialized:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        if not self._initialized:
            conn.executescript(SCHEMA)
            self._initialized = True
        return conn

    def _sync_query(self, query: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    def _sync_execute(self, query: str, params: tuple[Any, ...]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(query, params)
        finally:
            conn.close()

    def _sync_create_job(self, job: Job) -> None:
        row = _job_to_row(job)
        columns = ", ".join(_JOB_COLUMNS)
        placeholders = ", ".join("?" for _ in _JOB_COLUMNS)
        self._sync_execute(
            f"INSERT INTO jobs ({columns}) VALUES ({placeholders})",
            tuple(row[c] for c in _JOB_COLUMNS),
        )

    def _sync_update_job(
        self,
        job_id: str,
        fields: dict[str, Any],
        expected: frozenset[JobStatus] | None,
    ) -> Job:
        conn = self._connect()
        try:
            with conn:
                # write lock before the read: status check and write are one step
                conn.execute("BEGIN IMMEDIATE")
                current = conn.execute(
                    "SELECT * FROM jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if current is None:
                    raise JobNotFoundError(job_id)
                if expected is not None and current["status"] not in {
                    s.value for s in expected
                }:
                    raise StatusConflictError(
                        job_id, frozenset(s.value for s in expected), current["status"]
                    )
                updated = _row_to_job(current).with_fields(**fields)
                row = _job_to_row(updated)
                assignments = ", ".join(f"{c} = ?" for c in _JOB_COLUMNS if c != "id")
                conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE id = ?",
                    (*(row[c] for c in _JOB_COLUMNS if c != "id"), job_id),
                )
            return updated
        finally:
            conn.close()


# ---------------------------------------------------------------------- #
# Row mapping                                                              #
# ---------------------------------------------------------------------- #


def _job_to_row(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "remote_job_id": job.remote_job_id,
        "endpoint_id": job.endpoint_id,
        "status": job.status.value,
        "input_hash": job.input_hash,
        "input": json.dumps(job.input),
        "output": None if job.output is None else json.dumps(job.output),
        "duration_ms": job.duration_ms,
        "attempts": job.attempts,
        "error": job.error,
        "created_at": _ts(job.created_at),
        "started_at": _ts(job.started_at),
        "completed_at": _ts(job.completed_at),
        "not_before": _ts(job.not_before),
    }


def _row_to_job(row: sqlite3.Row) -> Job:
    data = dict(row)
    data["input"] = json.loads(data["input"]) if data["input"] is not None else None
    data["output"] = json.loads(data["output"]) if data["output"] is not None else None
    return Job.model_validate(data)


def _row_to_dead_letter(row: sqlite3.Row) -> DeadLetter:
    data = dict(row)
    data["job"] = Job.model_validate_json(data.pop("job_data"))
    return DeadLetter.model_validate(data)

"""
InMemoryJobStore — dict-backed job store for testing and development.

Jobs are kept in insertion order, which doubles as the tie-breaker when two
jobs share a created_at timestamp.

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop (no method awaits between reading and writing state).
NOT safe across processes or threads.
"""
from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from gpuqueue.domain.errors import JobNotFoundError, StatusConflictError
from gpuqueue.domain.models import (
    DEDUP_STATUSES,
    CostEntry,
    DeadLetter,
    Job,
    JobStats,
    JobStatus,
    as_status_set,
)


@dataclasses.dataclass
class InMemoryJobStore:
    """
    Parameters
    ----------
    initial_jobs : optional pre-populated jobs (useful for test setup)
    """

    initial_jobs: list[Job] = dataclasses.field(default_factory=list)

    def __post_init__(self) -> None:
        self._jobs: dict[str, Job] = {job.id: job for job in self.initial_jobs}
        self._dead_letters: list[DeadLetter] = []
        self._costs: list[CostEntry] = []

    # ------------------------------------------------------------------ #
    # Jobs                                                                 #
    # ------------------------------------------------------------------ #

    async def create_job(self, job: Job) -> None:
        self._jobs[job.id] = job

    async def update_job(
        self,
        job_id: str,
        *,
        expected_status: JobStatus | Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        expected = as_status_set(expected_status)
        if expected is not None and job.status not in expected:
            raise StatusConflictError(
                job_id, frozenset(s.value for s in expected), job.status.value
            )
        updated = job.with_fields(**fields)
        self._jobs[job_id] = updated
        return updated

    async def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def get_job_by_hash(self, input_hash: str) -> Job | None:
        matches = [
            j
            for j in self._jobs.values()
            if j.input_hash == input_hash and j.status in DEDUP_STATUSES
        ]
        return _newest_first(matches)[0] if matches else None

    async def get_jobs(
        self, limit: int = 100, status: JobStatus | None = None
    ) -> list[Job]:
        candidates = [
            j for j in self._jobs.values() if status is None or j.status == status
        ]
        return _newest_first(candidates)[:limit]

    async def get_pending_jobs(
        self, limit: int, now: datetime | None = None
    ) -> list[Job]:
        if limit <= 0:
            return []
        now = now or datetime.now(UTC)
        pending = [
            j
            for j in self._jobs.values()
            if j.status == JobStatus.PENDING
            and (j.not_before is None or j.not_before <= now)
        ]
        # sorted() is stable, so insertion order breaks created_at ties
        return sorted(pending, key=lambda j: j.created_at)[:limit]

    async def get_active_jobs(self) -> list[Job]:
        return [
            j
            for j in self._jobs.values()
            if j.status in (JobStatus.RUNNING, JobStatus.IN_QUEUE)
            and j.remote_job_id is not None
        ]

    async def get_job_stats(self) -> JobStats:
        jobs = list(self._jobs.values())
        counts = {status: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status] += 1
        durations = [j.duration_ms for j in jobs if j.duration_ms is not None]
        return JobStats(
            total=len(jobs),
            pending=counts[JobStatus.PENDING],
            running=counts[JobStatus.RUNNING],
            in_queue=counts[JobStatus.IN_QUEUE],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            avg_duration_ms=sum(durations) / len(durations) if durations else None,
        )

    # ------------------------------------------------------------------ #
    # Dead letters                                                         #
    # ------------------------------------------------------------------ #

    async def add_to_dead_letter(self, job: Job, error: str) -> DeadLetter:
        record = DeadLetter.from_job(job, error)
        self._dead_letters.append(record)
        return record

    async def get_dead_letter_jobs(self) -> list[DeadLetter]:
        return list(reversed(self._dead_letters))

    async def get_dead_letter(self, dlq_id: str) -> DeadLetter | None:
        return next((d for d in self._dead_letters if d.id == dlq_id), None)

    # ------------------------------------------------------------------ #
    # Cost ledger                                                          #
    # ------------------------------------------------------------------ #

    async def log_cost(self, entry: CostEntry) -> None:
        self._costs.append(entry)

    async def get_today_spend(self) -> float:
        today = datetime.now(UTC).date()
        return float(
            sum(
                c.cost_usd
                for c in self._costs
                if c.logged_at.astimezone(UTC).date() == today
            )
        )

    async def get_month_spend(self) -> float:
        start = datetime.now(UTC).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return float(sum(c.cost_usd for c in self._costs if c.logged_at >= start))


def _newest_first(jobs: list[Job]) -> list[Job]:
    # reversed() before a stable sort keeps later inserts first on ties
    return sorted(reversed(jobs), key=lambda j: j.created_at, reverse=True)

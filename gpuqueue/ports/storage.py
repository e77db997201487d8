"""
JobStorePort — the persistence contract the queue manager relies on.

Any object satisfying this structural Protocol can act as the job store.
No base class or registration is required — Python's structural subtyping
(duck typing + Protocol) is sufficient.

The store is the source of truth for job state. Calls are assumed fast and
local; they are awaited but are not meaningful concurrency boundaries.

Ordering contract
-----------------
get_pending_jobs  → oldest first (created_at ascending, insertion order on ties)
get_jobs          → newest first
get_job_by_hash   → newest matching job in DEDUP_STATUSES
get_dead_letter_jobs → newest first
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from gpuqueue.domain.models import CostEntry, DeadLetter, Job, JobStats, JobStatus


@runtime_checkable
class JobStorePort(Protocol):
    """
    Minimal interface required by gpuqueue core.

    Implementing adapters (built-in):
      - InMemoryJobStore — dict-backed, for testing
      - SQLiteJobStore   — sqlite3 file, durable single-machine store
    """

    # ------------------------------------------------------------------ #
    # Jobs                                                                 #
    # ------------------------------------------------------------------ #

    async def create_job(self, job: Job) -> None:
        """Persist a new job row."""
        ...

    async def update_job(
        self,
        job_id: str,
        *,
        expected_status: JobStatus | Iterable[JobStatus] | None = None,
        **fields: Any,
    ) -> Job:
        """
        Apply a partial update and return the updated job.

        With `expected_status`, the read, the status check and the write are
        one atomic step: the update only lands if the job is currently in one
        of those statuses. This is how state transitions avoid overwriting a
        concurrent cancel (or a concurrent completion).

        Raises
        ------
        JobNotFoundError      if job_id is unknown
        StatusConflictError   if the job is not in `expected_status`
        """
        ...

    async def get_job(self, job_id: str) -> Job | None: ...

    async def get_job_by_hash(self, input_hash: str) -> Job | None:
        """Newest job with this hash whose status is in DEDUP_STATUSES."""
        ...

    async def get_jobs(
        self, limit: int = 100, status: JobStatus | None = None
    ) -> list[Job]: ...

    async def get_pending_jobs(
        self, limit: int, now: datetime | None = None
    ) -> list[Job]:
        """
        Up to `limit` PENDING jobs, oldest first.

        Jobs whose not_before lies after `now` are skipped. limit <= 0 → [].
        """
        ...

    async def get_active_jobs(self) -> list[Job]:
        """RUNNING / IN_QUEUE jobs that carry a remote_job_id."""
        ...

    async def get_job_stats(self) -> JobStats: ...

    # ------------------------------------------------------------------ #
    # Dead letters                                                         #
    # ------------------------------------------------------------------ #

    async def add_to_dead_letter(self, job: Job, error: str) -> DeadLetter:
        """Append a dead-letter record snapshotting `job`."""
        ...

    async def get_dead_letter_jobs(self) -> list[DeadLetter]: ...

    async def get_dead_letter(self, dlq_id: str) -> DeadLetter | None: ...

    # ------------------------------------------------------------------ #
    # Cost ledger                                                          #
    # ------------------------------------------------------------------ #

    async def log_cost(self, entry: CostEntry) -> None: ...

    async def get_today_spend(self) -> float:
        """Sum of ledger costs logged during the current UTC day."""
        ...

    async def get_month_spend(self) -> float:
        """Sum of ledger costs logged since the first of the current UTC month."""
        ...

"""
QueueManager — submission, scheduling and tracking of remote GPU jobs.

Submission
----------
submit_job() fingerprints the input, returns an existing job instead of
creating a new one when an identical input is already PENDING, RUNNING,
IN_QUEUE or COMPLETED, checks the daily budget, then persists a PENDING job.

Scheduler tick (every `settings.tick_interval` seconds)
-------------------------------------------------------
  1. fetch up to (max_concurrent_jobs - active) PENDING jobs, oldest first
  2. dispatch them concurrently; each dispatch waits for a rate-limit token
  3. poll every active job once

    PENDING ──► RUNNING ──► IN_QUEUE ──► COMPLETED | FAILED
       ▲           │
       └── retry ──┤  (attempts < max_retry_attempts, not_before = now + backoff)
                   └──► FAILED + dead letter

A tick that is still running when the next one is due causes that next one
to be skipped, never queued, so only one tick ever touches a job at a time.

cancel_job() can still land at any await point of a tick. Every transition
is therefore a conditional store write (`expected_status`): the first writer
of a terminal status wins, the loser sees StatusConflictError and backs off
without publishing, and whichever side pops the job from the active table
sends the remote cancel.

Per-job error isolation
-----------------------
Dispatch and poll failures are absorbed: they become persisted state and a
broadcast event, never an exception out of the loop. Only the public
operations (submit_job, cancel_job, retry_dead_letter) raise to callers.

Usage
-----
    async with QueueManager(store, client, settings=Settings.from_env()) as qm:
        result = await qm.submit_job("endpoint-id", {"prompt": "cat"})
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from types import TracebackType
from typing import Any

from gpuqueue.config import Settings
from gpuqueue.core.backoff import backoff_delay
from gpuqueue.core.budget import BudgetGate
from gpuqueue.core.codec import hash_input
from gpuqueue.core.notifier import Notifier
from gpuqueue.core.rate_limit import TokenBucket
from gpuqueue.domain.errors import (
    DeadLetterNotFoundError,
    JobNotFoundError,
    StatusConflictError,
)
from gpuqueue.domain.models import (
    ACTIVE_STATUSES,
    CancelResult,
    DeadLetter,
    Job,
    JobStatus,
    QueueStats,
    SubmitResult,
)
from gpuqueue.ports.dispatch import DispatchClientPort
from gpuqueue.ports.storage import JobStorePort

logger = logging.getLogger(__name__)

BackoffFn = Callable[[int], float]


@dataclasses.dataclass
class ActiveJob:
    """Polling bookkeeping for a job the backend has accepted."""

    remote_job_id: str
    endpoint_id: str
    started: float  # time.monotonic() at dispatch start


@dataclasses.dataclass
class QueueManager:
    """
    Parameters
    ----------
    store    : job store (source of truth)
    client   : remote dispatch client
    settings : limits and timings
    notifier : event fan-out; a private one is created when omitted
    budget   : admission gate; built from store + settings when omitted and
               kept as `budget_gate`
    backoff  : attempts → retry delay in ms (default: exponential + jitter)
    """

    store: JobStorePort
    client: DispatchClientPort
    settings: Settings = dataclasses.field(default_factory=Settings)
    notifier: Notifier = dataclasses.field(default_factory=Notifier)
    budget: dataclasses.InitVar[BudgetGate | None] = None
    backoff: BackoffFn = backoff_delay

    budget_gate: BudgetGate = dataclasses.field(init=False)
    rate_limiter: TokenBucket = dataclasses.field(init=False)
    _active: dict[str, ActiveJob] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _processing: bool = dataclasses.field(default=False, init=False, repr=False)
    _submit_lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )
    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _tick_task: asyncio.Task[bool] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self, budget: BudgetGate | None) -> None:
        self.rate_limiter = TokenBucket(capacity=self.settings.rate_limit_per_second)
        if budget is None:
            budget = BudgetGate(
                store=self.store,
                daily_limit=self.settings.budget_limit_daily,
                monthly_limit=self.settings.budget_limit_monthly,
            )
        self.budget_gate = budget

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Rebuild the active table, then start the refill and scheduler loops."""
        if self._task is not None:
            raise RuntimeError("QueueManager is already running")
        await self.rebuild_active_jobs()
        await self.rate_limiter.start()
        self._task = asyncio.create_task(self._run(), name="gpuqueue-scheduler")
        logger.info(
            "Queue manager started (concurrency=%d, rate=%d/s, retries=%d)",
            self.settings.max_concurrent_jobs,
            self.settings.rate_limit_per_second,
            self.settings.max_retry_attempts,
        )

    async def stop(self) -> None:
        """Stop scheduling. Waits for an in-flight tick to finish."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._tick_task is not None:
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None
        await self.rate_limiter.stop()
        logger.info("Queue manager stopped")

    async def __aenter__(self) -> QueueManager:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def rebuild_active_jobs(self) -> int:
        """
        Re-register RUNNING / IN_QUEUE jobs with a remote handle for polling.

        The active table lives in memory only; without this, jobs accepted by
        the backend before a restart would never be polled again.
        """
        now_wall = datetime.now(UTC)
        now_mono = time.monotonic()
        restored = 0
        for job in await self.store.get_active_jobs():
            if job.id in self._active or job.remote_job_id is None:
                continue
            elapsed = (now_wall - (job.started_at or job.created_at)).total_seconds()
            self._active[job.id] = ActiveJob(
                remote_job_id=job.remote_job_id,
                endpoint_id=job.endpoint_id,
                started=now_mono - max(elapsed, 0.0),
            )
            restored += 1
        if restored:
            logger.info("Restored %d active job(s) for polling", restored)
        return restored

    # ------------------------------------------------------------------ #
    # Public operations                                                    #
    # ------------------------------------------------------------------ #

    async def submit_job(
        self,
        endpoint_id: str,
        input: Any,
        *,
        skip_deduplication: bool = False,
    ) -> SubmitResult:
        """
        Queue `input` for `endpoint_id`.

        Raises
        ------
        BudgetExceededError   when today's spend has reached the daily limit
        """
        input_hash = hash_input(input)

        async with self._submit_lock:
            if not skip_deduplication:
                existing = await self.store.get_job_by_hash(input_hash)
                if existing is not None:
                    logger.debug("Deduplicated submission onto job %s", existing.id)
                    return SubmitResult(
                        id=existing.id,
                        status=existing.status,
                        deduplicated=True,
                        message="Job with identical input already exists",
                    )

            await self.budget_gate.check_admission()

            job = Job(endpoint_id=endpoint_id, input_hash=input_hash, input=input)
            await self.store.create_job(job)

        self.notifier.publish("job:created", id=job.id, status=job.status.value)
        return SubmitResult(
            id=job.id, status=job.status, message="Job queued successfully"
        )

    async def cancel_job(self, job_id: str) -> CancelResult:
        """
        Cancel a job that has not finished yet.

        Terminal jobs are left untouched and their current status is reported,
        including a job that finishes while the cancel is being written.

        Raises
        ------
        JobNotFoundError   if job_id is unknown
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.is_terminal:
            return CancelResult(id=job.id, status=job.status)

        try:
            updated = await self.store.update_job(
                job_id,
                expected_status=ACTIVE_STATUSES,
                status=JobStatus.CANCELLED,
                completed_at=datetime.now(UTC),
            )
        except StatusConflictError:
            # Finished between the read above and the write.
            current = await self.get_job(job_id)
            return CancelResult(id=current.id, status=current.status)

        # After the CANCELLED write: whoever pops the entry cancels remotely.
        info = self._active.pop(job_id, None)
        if info is not None:
            await self._cancel_remote(info.endpoint_id, info.remote_job_id)
        self.notifier.publish("job:cancelled", id=job_id)
        return CancelResult(id=updated.id, status=updated.status)

    async def retry_dead_letter(self, dlq_id: str) -> SubmitResult:
        """
        Resubmit a dead-lettered job as a brand-new job, bypassing dedup.

        The dead-letter record itself is kept as is.

        Raises
        ------
        DeadLetterNotFoundError   if dlq_id is unknown
        BudgetExceededError       as for submit_job
        """
        record = await self.store.get_dead_letter(dlq_id)
        if record is None:
            raise DeadLetterNotFoundError(dlq_id)
        return await self.submit_job(
            record.job.endpoint_id, record.job.input, skip_deduplication=True
        )

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self, limit: int = 100, status: JobStatus | None = None
    ) -> list[Job]:
        return await self.store.get_jobs(limit, status)

    async def list_dead_letters(self) -> list[DeadLetter]:
        return await self.store.get_dead_letter_jobs()

    async def get_stats(self) -> QueueStats:
        """Store counts plus in-memory counters; an approximate snapshot."""
        db_stats = await self.store.get_job_stats()
        return QueueStats(
            **db_stats.model_dump(),
            active_jobs=len(self._active),
            rate_limit_tokens=self.rate_limiter.tokens,
            connected_clients=self.notifier.connected_clients,
        )

    @property
    def active_jobs(self) -> dict[str, ActiveJob]:
        """Read-only view of jobs awaiting a terminal remote status."""
        return dict(self._active)

    # ------------------------------------------------------------------ #
    # Scheduler                                                            #
    # ------------------------------------------------------------------ #

    async def tick(self) -> bool:
        """
        Run one scheduler iteration: dispatch, then poll.

        Returns False without doing anything when a tick is already running.
        """
        if self._processing:
            logger.debug("Previous tick still running; skipping")
            return False
        self._processing = True
        try:
            slots = self.settings.max_concurrent_jobs - len(self._active)
            pending = await self.store.get_pending_jobs(max(slots, 0))
            # failures stay isolated per job
            results = await asyncio.gather(
                *(self._dispatch(job) for job in pending), return_exceptions=True
            )
            for job, result in zip(pending, results):
                if isinstance(result, Exception):
                    logger.error("Dispatch bookkeeping for job %s failed: %s", job.id, result)
            await self.poll_active_jobs()
        except Exception:
            logger.exception("Queue processing error")
        finally:
            self._processing = False
        return True

    async def _run(self) -> None:
        interval = self.settings.tick_interval
        while True:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(
                    self.tick(), name="gpuqueue-tick"
                )
            else:
                logger.debug("Previous tick still running; skipping")
            await asyncio.sleep(interval)

    async def _dispatch(self, job: Job) -> None:
        started = time.monotonic()
        attempts = job.attempts + 1
        try:
            await self.store.update_job(
                job.id,
                expected_status=JobStatus.PENDING,
                status=JobStatus.RUNNING,
                started_at=datetime.now(UTC),
                attempts=attempts,
            )
        except StatusConflictError:
            logger.debug("Job %s is no longer pending; not dispatching", job.id)
            return
        self.notifier.publish("job:running", id=job.id, attempt=attempts)

        try:
            await self.rate_limiter.acquire()
            remote_job_id = await self.client.submit(job.endpoint_id, job.input)
        except Exception as exc:
            await self._handle_dispatch_failure(job, attempts, str(exc) or type(exc).__name__)
            return

        # Registered before the IN_QUEUE write so a concurrent cancel_job can find it.
        self._active[job.id] = ActiveJob(
            remote_job_id=remote_job_id, endpoint_id=job.endpoint_id, started=started
        )
        try:
            await self.store.update_job(
                job.id,
                expected_status=JobStatus.RUNNING,
                remote_job_id=remote_job_id,
                status=JobStatus.IN_QUEUE,
            )
        except StatusConflictError:
            # Cancelled while the submit call was in flight.
            if self._active.pop(job.id, None) is not None:
                await self._cancel_remote(job.endpoint_id, remote_job_id)
            await self.store.update_job(job.id, remote_job_id=remote_job_id)
            return
        except Exception:
            # The entry stays registered; polling records the outcome and the handle.
            logger.exception(
                "Job %s was accepted as %s on %s but the handle could not be saved",
                job.id,
                remote_job_id,
                job.endpoint_id,
            )
            return
        self.notifier.publish("job:queued", id=job.id, remote_job_id=remote_job_id)

    async def _handle_dispatch_failure(self, job: Job, attempts: int, error: str) -> None:
        if attempts >= self.settings.max_retry_attempts:
            try:
                failed = await self.store.update_job(
                    job.id,
                    expected_status=JobStatus.RUNNING,
                    status=JobStatus.FAILED,
                    error=error,
                    completed_at=datetime.now(UTC),
                )
            except StatusConflictError:
                await self.store.update_job(job.id, error=error)
                return
            record = await self.store.add_to_dead_letter(failed, error)
            logger.info(
                "Job %s dead-lettered as %s after %d attempt(s): %s",
                job.id,
                record.id,
                attempts,
                error,
            )
            self.notifier.publish(
                "job:failed",
                id=job.id,
                error=error,
                dead_lettered=True,
                dlq_id=record.id,
            )
            return

        delay_ms = self.backoff(attempts)
        try:
            await self.store.update_job(
                job.id,
                expected_status=JobStatus.RUNNING,
                status=JobStatus.PENDING,
                error=error,
                not_before=datetime.now(UTC) + timedelta(milliseconds=delay_ms),
            )
        except StatusConflictError:
            # Cancelled during the attempt; keep the error, never requeue.
            await self.store.update_job(job.id, error=error)
            return
        logger.warning(
            "Dispatch of job %s failed (attempt %d/%d), retrying in %.0f ms: %s",
            job.id,
            attempts,
            self.settings.max_retry_attempts,
            delay_ms,
            error,
        )
        self.notifier.publish("job:retry", id=job.id, attempt=attempts, retry_in=delay_ms)

    async def poll_active_jobs(self) -> None:
        """Query the backend once for every active job."""
        for job_id, info in list(self._active.items()):
            try:
                await self._poll_one(job_id, info)
            except Exception as exc:
                logger.warning("Error polling job %s: %s", job_id, exc)

    async def _poll_one(self, job_id: str, info: ActiveJob) -> None:
        remote = await self.client.get_status(info.endpoint_id, info.remote_job_id)
        if job_id not in self._active:
            # Cancelled while the status query was in flight.
            return

        now = datetime.now(UTC)
        if remote.status.is_success:
            duration_ms = (time.monotonic() - info.started) * 1000
            fields: dict[str, Any] = dict(
                status=JobStatus.COMPLETED, output=remote.output, duration_ms=duration_ms
            )
            event: dict[str, Any] = dict(
                id=job_id, output=remote.output, duration_ms=duration_ms
            )
        elif remote.status.is_failure:
            error = remote.error or "Job failed"
            fields = dict(status=JobStatus.FAILED, error=error)
            event = dict(id=job_id, error=error)
        else:
            return

        try:
            await self.store.update_job(
                job_id,
                expected_status=(JobStatus.RUNNING, JobStatus.IN_QUEUE),
                remote_job_id=info.remote_job_id,
                completed_at=now,
                **fields,
            )
        except StatusConflictError:
            # Cancelled between the status query and the write; cancel_job owns the event.
            self._active.pop(job_id, None)
            return
        self._active.pop(job_id, None)
        name = "job:completed" if remote.status.is_success else "job:failed"
        self.notifier.publish(name, **event)

    async def _cancel_remote(self, endpoint_id: str, remote_job_id: str) -> None:
        try:
            await self.client.cancel(endpoint_id, remote_job_id)
        except Exception as exc:
            logger.warning(
                "Remote cancel of %s on %s failed: %s", remote_job_id, endpoint_id, exc
            )

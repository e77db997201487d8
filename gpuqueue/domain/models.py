"""
Domain models for gpuqueue — backed by Pydantic v2.

Pydantic handles:
  - JSON serialization / deserialization (SQLite JSON columns, event payloads)
  - datetime parsing (ISO-8601 with timezone)
  - field validation and type coercion

All models are frozen (immutable). Mutations return new instances via
model_copy(update=...), following a functional-update style.
"""

import time
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Lifecycle states for a submitted job."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    IN_QUEUE = "IN_QUEUE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Not finished yet; DEDUP_STATUSES adds COMPLETED so finished work is reused.
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.IN_QUEUE})
DEDUP_STATUSES = ACTIVE_STATUSES | {JobStatus.COMPLETED}
TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


def as_status_set(
    statuses: JobStatus | Iterable[JobStatus] | None,
) -> frozenset[JobStatus] | None:
    """Normalise one status or a collection of them; None passes through."""
    if statuses is None:
        return None
    if isinstance(statuses, JobStatus):
        return frozenset({statuses})
    return frozenset(statuses)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Job(BaseModel):
    """
    A single unit of work submitted to a remote endpoint.

    id            — stable identifier, assigned at submission
    endpoint_id   — remote backend resource the job runs on
    input_hash    — deduplication key, see codec.hash_input
    input         — opaque JSON payload forwarded to the backend
    status        — current lifecycle state
    attempts      — dispatch attempts so far (never decreases)
    remote_job_id — backend handle, set once the backend accepts the job
    output        — result payload, set on COMPLETED
    error         — last error message
    duration_ms   — dispatch start to completion, set on COMPLETED
    not_before    — earliest time a retried job may be dispatched again
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    endpoint_id: str
    input_hash: str
    input: Any = None
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    remote_job_id: str | None = None
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    not_before: datetime | None = None

    @classmethod
    def new(cls, endpoint_id: str, input: Any) -> "Job":
        """Factory — assigns a fresh UUID, hashes the input, status PENDING."""
        from gpuqueue.core.codec import hash_input

        return cls(endpoint_id=endpoint_id, input_hash=hash_input(input), input=input)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_status(self, status: JobStatus) -> "Job":
        """Return a new Job with an updated status."""
        return self.model_copy(update={"status": status})

    def with_fields(self, **fields: Any) -> "Job":
        """Return a new Job with the given fields replaced (validated)."""
        return self.model_validate({**self.model_dump(), **fields})


class DeadLetter(BaseModel):
    """Terminal failure snapshot of a job that exhausted its retries."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"dlq_{uuid.uuid4().hex}")
    original_job_id: str
    endpoint_id: str
    job: Job
    error: str
    attempts: int
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_job(cls, job: Job, error: str) -> "DeadLetter":
        return cls(
            original_job_id=job.id,
            endpoint_id=job.endpoint_id,
            job=job,
            error=error,
            attempts=job.attempts,
        )


class CostEntry(BaseModel):
    """One row of the spend ledger."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    resource_type: str = "pod"
    resource_name: str | None = None
    cost_usd: float
    duration_seconds: int | None = None
    gpu_type: str | None = None
    logged_at: datetime = Field(default_factory=utcnow)


class RemoteJobState(str, Enum):
    """Job states reported by the remote execution backend."""

    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_success(self) -> bool:
        return self is RemoteJobState.COMPLETED

    @property
    def is_failure(self) -> bool:
        return self in (
            RemoteJobState.FAILED,
            RemoteJobState.CANCELLED,
            RemoteJobState.TIMED_OUT,
        )


class RemoteStatus(BaseModel):
    """Result of a remote status query."""

    model_config = ConfigDict(frozen=True)

    status: RemoteJobState
    output: Any = None
    error: str | None = None


class SubmitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus
    deduplicated: bool = False
    message: str


class CancelResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    id: str
    status: JobStatus


class JobStats(BaseModel):
    """Aggregate job counts as reported by the job store."""

    model_config = ConfigDict(frozen=True)

    total: int = 0
    pending: int = 0
    running: int = 0
    in_queue: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    avg_duration_ms: float | None = None


class QueueStats(JobStats):
    """JobStats plus the queue manager's in-memory counters (approximate)."""

    active_jobs: int = 0
    rate_limit_tokens: int = 0
    connected_clients: int = 0


class QueueEvent(BaseModel):
    """
    A state-transition notification fanned out to live observers.

    event     — name, e.g. "job:created"
    data      — event payload; always carries the job "id"
    timestamp — epoch milliseconds
    """

    model_config = ConfigDict(frozen=True)

    event: str
    data: dict[str, Any]
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    def to_json(self) -> str:
        """Wire message: {"event": ..., "data": {...}, "timestamp": ...}."""
        return self.model_dump_json()


class BudgetAlert(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str
    message: str


class BudgetWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    spent: float
    limit: float

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit - self.spent)

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 100.0
        return self.spent / self.limit * 100


class BudgetStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    today: BudgetWindow
    month: BudgetWindow
    alerts: tuple[BudgetAlert, ...] = ()

"""
Exception hierarchy for gpuqueue.

GpuQueueError
├── BudgetExceededError      — submission blocked by the daily budget gate
├── NotFoundError
│   ├── JobNotFoundError         — job_id unknown to the job store
│   └── DeadLetterNotFoundError  — dlq_id unknown to the dead-letter log
├── StatusConflictError      — conditional job update found another status
├── DispatchError            — remote backend rejected or timed out a call
├── PollError                — remote status query failed (transient)
└── StorageError             — underlying persistence failure (wraps original)
"""

from __future__ import annotations


class GpuQueueError(Exception):
    """Base class for all gpuqueue exceptions."""


class BudgetExceededError(GpuQueueError):
    """
    Raised by submit_job when today's spend has reached the daily limit.

    No job row is created.
    """

    def __init__(self, limit: float, spent: float) -> None:
        self.limit = limit
        self.spent = spent
        super().__init__(
            f"Daily budget limit (${limit:.2f}) exceeded. Current spend: ${spent:.2f}"
        )


class NotFoundError(GpuQueueError):
    """Base class for lookups of unknown ids."""


class JobNotFoundError(NotFoundError):
    """Raised when a job_id is not present in the job store."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id!r} not found")


class DeadLetterNotFoundError(NotFoundError):
    """Raised when a dead-letter id is not present in the dead-letter log."""

    def __init__(self, dlq_id: str) -> None:
        self.dlq_id = dlq_id
        super().__init__(f"Dead letter job {dlq_id!r} not found")


class StatusConflictError(GpuQueueError):
    """
    Raised when a conditional update_job finds the job in another status.

    Another actor (typically cancel_job) moved the job first. The caller should
    re-read the job instead of retrying the write.

    Attributes
    ----------
    job_id   : str
    expected : frozenset[str]  status values the write required
    actual   : str             status value the job was found in
    """

    def __init__(
        self, job_id: str, expected: frozenset[str], actual: str
    ) -> None:
        self.job_id = job_id
        self.expected = expected
        self.actual = actual
        wanted = ", ".join(sorted(expected))
        super().__init__(
            f"Job {job_id!r} is {actual}, expected one of: {wanted}"
        )


class DispatchError(GpuQueueError):
    """
    The remote backend rejected a request or the request never completed.

    Attributes
    ----------
    cause : Exception | None
        The transport-level exception, when there was one.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message if cause is None else f"{message}: {cause}")


class PollError(GpuQueueError):
    """
    A status query against the remote backend failed.

    Never fatal to a job on its own; the poll is repeated on the next tick.
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message if cause is None else f"{message}: {cause}")


class StorageError(GpuQueueError):
    """
    Wraps an underlying I/O failure from a job store adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the storage backend.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from gpuqueue.adapters.storage.memory import InMemoryJobStore
from gpuqueue.adapters.storage.sqlite import SQLiteJobStore
from gpuqueue.config import Settings
from gpuqueue.core.manager import QueueManager
from gpuqueue.domain.models import RemoteJobState, RemoteStatus
from gpuqueue.ports.storage import JobStorePort

# ---------------------------------------------------------------------------
# Scriptable remote backend
# ---------------------------------------------------------------------------


class FakeDispatchClient:
    """
    In-process stand-in for the remote backend.

    submit_error   — raised by every submit() when set
    statuses       — remote_job_id → list of RemoteStatus returned in order
                     (the last one repeats); default IN_QUEUE
    poll_error     — raised by every get_status() when set
    cancel_error   — raised by every cancel() when set
    """

    def __init__(self) -> None:
        self.submit_error: Exception | None = None
        self.poll_error: Exception | None = None
        self.cancel_error: Exception | None = None
        self.statuses: dict[str, list[RemoteStatus]] = {}
        self.handle_factory: Callable[[int], str] = lambda n: f"r{n}"
        self.submitted: list[tuple[str, Any]] = []
        self.polled: list[str] = []
        self.cancelled: list[tuple[str, str]] = []

    async def submit(self, endpoint_id: str, input: Any) -> str:
        self.submitted.append((endpoint_id, input))
        if self.submit_error is not None:
            raise self.submit_error
        return self.handle_factory(len(self.submitted))

    async def get_status(self, endpoint_id: str, remote_job_id: str) -> RemoteStatus:
        self.polled.append(remote_job_id)
        if self.poll_error is not None:
            raise self.poll_error
        queue = self.statuses.get(remote_job_id)
        if not queue:
            return RemoteStatus(status=RemoteJobState.IN_QUEUE)
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def cancel(self, endpoint_id: str, remote_job_id: str) -> None:
        self.cancelled.append((endpoint_id, remote_job_id))
        if self.cancel_error is not None:
            raise self.cancel_error

    def complete(self, remote_job_id: str, output: Any) -> None:
        self.statuses[remote_job_id] = [
            RemoteStatus(status=RemoteJobState.COMPLETED, output=output)
        ]

    def fail(self, remote_job_id: str, error: str | None = None) -> None:
        self.statuses[remote_job_id] = [
            RemoteStatus(status=RemoteJobState.FAILED, error=error)
        ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> JobStorePort:
    """Every manager and scheduler test runs against both built-in stores."""
    if request.param == "memory":
        return InMemoryJobStore()
    return SQLiteJobStore(tmp_path / "jobs.db")


@pytest.fixture
def client() -> FakeDispatchClient:
    return FakeDispatchClient()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_concurrent_jobs=5,
        rate_limit_per_second=100,
        max_retry_attempts=3,
        budget_limit_daily=50.0,
        tick_interval=0.01,
    )


@pytest.fixture
def manager(
    store: JobStorePort, client: FakeDispatchClient, settings: Settings
) -> QueueManager:
    """Manager with zero back-off so retried jobs are eligible on the next tick."""
    return QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)


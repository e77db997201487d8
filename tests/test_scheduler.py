import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from conftest import FakeDispatchClient

from gpuqueue.config import Settings
from gpuqueue.core.manager import QueueManager
from gpuqueue.domain.errors import DispatchError, PollError, StorageError
from gpuqueue.domain.models import CancelResult, Job, JobStatus, QueueEvent
from gpuqueue.ports.storage import JobStorePort

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class GatedDispatchClient(FakeDispatchClient):
    """submit() parks until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def submit(self, endpoint_id: str, input: Any) -> str:
        self.entered.set()
        await self.gate.wait()
        return await super().submit(endpoint_id, input)


@pytest.fixture
def events(manager: QueueManager) -> list[QueueEvent]:
    seen: list[QueueEvent] = []
    manager.notifier.add_listener(seen.append)
    return seen


async def _job(store: JobStorePort, job_id: str) -> Job:
    job = await store.get_job(job_id)
    assert job is not None
    return job


async def _until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def wait() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(wait(), timeout)


def _run_before_update(
    store: JobStorePort,
    matches: Callable[[dict[str, Any]], bool],
    action: Callable[[], Awaitable[Any]],
) -> None:
    """Run `action` once, just before the first update_job whose fields match."""
    original = store.update_job
    fired = False

    async def update_job(job_id: str, **fields: Any) -> Job:
        nonlocal fired
        if not fired and matches(fields):
            fired = True
            await action()
        return await original(job_id, **fields)

    store.update_job = update_job  # type: ignore[method-assign]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


async def test_job_runs_to_completion(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})

    assert await manager.tick() is True
    job = await _job(store, result.id)
    assert job.status == JobStatus.IN_QUEUE
    assert job.remote_job_id == "r1"
    assert job.attempts == 1
    assert job.started_at is not None
    assert client.submitted == [("ep1", {"prompt": "cat"})]

    client.complete("r1", {"url": "x.png"})
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.COMPLETED
    assert job.output == {"url": "x.png"}
    assert job.duration_ms is not None and job.duration_ms > 0
    assert job.completed_at is not None
    assert manager.active_jobs == {}
    assert [e.event for e in events] == [
        "job:created",
        "job:running",
        "job:queued",
        "job:completed",
    ]
    assert events[2].data == {"id": result.id, "remote_job_id": "r1"}
    assert events[3].data["output"] == {"url": "x.png"}


async def test_remote_failure_marks_job_failed(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()
    client.fail("r1")
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Job failed"
    assert job.completed_at is not None
    assert result.id not in manager.active_jobs
    assert events[-1].event == "job:failed"
    assert events[-1].data == {"id": result.id, "error": "Job failed"}
    assert await store.get_dead_letter_jobs() == []


async def test_remote_error_message_is_kept(
    manager: QueueManager, store: JobStorePort, client: FakeDispatchClient
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()
    client.fail("r1", "CUDA out of memory")
    await manager.tick()
    assert (await _job(store, result.id)).error == "CUDA out of memory"


async def test_poll_error_keeps_job_active(
    manager: QueueManager, store: JobStorePort, client: FakeDispatchClient
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()
    client.poll_error = PollError("gateway timeout")
    await manager.tick()

    assert (await _job(store, result.id)).status == JobStatus.IN_QUEUE
    assert result.id in manager.active_jobs

    client.poll_error = None
    client.complete("r1", {"ok": True})
    await manager.tick()
    assert (await _job(store, result.id)).status == JobStatus.COMPLETED


# ---------------------------------------------------------------------------
# Retries and dead letters
# ---------------------------------------------------------------------------


async def test_failing_dispatch_is_dead_lettered_after_max_attempts(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    client.submit_error = DispatchError("endpoint down")
    result = await manager.submit_job("ep1", {"prompt": "cat"})

    await manager.tick()
    job = await _job(store, result.id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.error == "endpoint down"

    await manager.tick()
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.completed_at is not None
    assert len(client.submitted) == 3

    (record,) = await store.get_dead_letter_jobs()
    assert record.original_job_id == result.id
    assert record.attempts == 3
    assert record.error == "endpoint down"

    retries = [e for e in events if e.event == "job:retry"]
    assert [e.data["attempt"] for e in retries] == [1, 2]
    assert events[-1].event == "job:failed"
    assert events[-1].data == {
        "id": result.id,
        "error": "endpoint down",
        "dead_lettered": True,
        "dlq_id": record.id,
    }

    # Nothing left to dispatch.
    await manager.tick()
    assert len(client.submitted) == 3


async def test_retry_waits_for_backoff(
    store: JobStorePort, client: FakeDispatchClient, settings: Settings
):
    manager = QueueManager(store, client, settings=settings)
    seen: list[QueueEvent] = []
    manager.notifier.add_listener(seen.append)
    client.submit_error = DispatchError("endpoint down")
    result = await manager.submit_job("ep1", {"prompt": "cat"})

    before = datetime.now(UTC)
    await manager.tick()
    await manager.tick()

    assert len(client.submitted) == 1
    job = await _job(store, result.id)
    assert job.status == JobStatus.PENDING
    assert job.not_before is not None
    assert job.not_before >= before + timedelta(milliseconds=1000)

    (retry,) = [e for e in seen if e.event == "job:retry"]
    assert retry.data["attempt"] == 1
    assert retry.data["retry_in"] >= 1000


async def test_retried_job_succeeds_on_later_attempt(
    manager: QueueManager, store: JobStorePort, client: FakeDispatchClient
):
    client.submit_error = DispatchError("cold start")
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()

    client.submit_error = None
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.IN_QUEUE
    assert job.attempts == 2
    assert job.remote_job_id == "r2"
    assert await store.get_dead_letter_jobs() == []


# ---------------------------------------------------------------------------
# Limits and ordering
# ---------------------------------------------------------------------------


async def test_concurrency_cap(
    manager: QueueManager, store: JobStorePort, client: FakeDispatchClient
):
    for n in range(7):
        await manager.submit_job("ep1", {"n": n})

    await manager.tick()
    assert len(client.submitted) == 5
    assert len(manager.active_jobs) == 5

    await manager.tick()
    assert len(client.submitted) == 5

    client.complete("r1", {"ok": True})
    await manager.tick()
    assert len(manager.active_jobs) == 4

    await manager.tick()
    assert len(client.submitted) == 6
    assert (await store.get_job_stats()).pending == 1


async def test_dispatch_is_oldest_first(store: JobStorePort, client: FakeDispatchClient):
    settings = Settings(max_concurrent_jobs=1, rate_limit_per_second=100, tick_interval=0.01)
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)
    for n in range(3):
        await manager.submit_job("ep1", {"n": n})

    for n in range(3):
        await manager.tick()
        client.complete(f"r{n + 1}", {"ok": True})
        await manager.tick()

    assert [payload["n"] for _, payload in client.submitted] == [0, 1, 2]


async def test_rate_limit_holds_back_extra_dispatch(
    store: JobStorePort, client: FakeDispatchClient
):
    settings = Settings(max_concurrent_jobs=5, rate_limit_per_second=2, tick_interval=0.01)
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)
    for n in range(3):
        await manager.submit_job("ep1", {"n": n})

    tick = asyncio.create_task(manager.tick())
    await _until(lambda: len(client.submitted) == 2)
    await asyncio.sleep(0.05)
    assert len(client.submitted) == 2
    assert not tick.done()

    await manager.rate_limiter.refill()
    await asyncio.wait_for(tick, timeout=1)
    assert len(client.submitted) == 3


async def test_overlapping_tick_is_skipped(store: JobStorePort, settings: Settings):
    client = GatedDispatchClient()
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)
    await manager.submit_job("ep1", {"prompt": "cat"})

    first = asyncio.create_task(manager.tick())
    await asyncio.wait_for(client.entered.wait(), timeout=1)

    assert await manager.tick() is False

    client.gate.set()
    assert await asyncio.wait_for(first, timeout=1) is True
    assert len(client.submitted) == 1


async def test_cancel_during_dispatch_cancels_remote_handle(
    store: JobStorePort, settings: Settings
):
    client = GatedDispatchClient()
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)
    result = await manager.submit_job("ep1", {"prompt": "cat"})

    tick = asyncio.create_task(manager.tick())
    await asyncio.wait_for(client.entered.wait(), timeout=1)
    assert (await _job(store, result.id)).status == JobStatus.RUNNING

    await manager.cancel_job(result.id)
    client.gate.set()
    await asyncio.wait_for(tick, timeout=1)

    job = await _job(store, result.id)
    assert job.status == JobStatus.CANCELLED
    assert job.remote_job_id == "r1"
    assert client.cancelled == [("ep1", "r1")]
    assert manager.active_jobs == {}

    client.complete("r1", {"url": "x.png"})
    await manager.tick()
    assert (await _job(store, result.id)).status == JobStatus.CANCELLED
    assert client.cancelled == [("ep1", "r1")]


async def test_cancelled_job_is_not_dispatched(
    manager: QueueManager, client: FakeDispatchClient
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.cancel_job(result.id)
    await manager.tick()
    assert client.submitted == []


async def test_failed_submit_after_cancel_stays_cancelled(
    store: JobStorePort, settings: Settings
):
    client = GatedDispatchClient()
    client.submit_error = DispatchError("endpoint down")
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)
    seen: list[QueueEvent] = []
    manager.notifier.add_listener(seen.append)
    result = await manager.submit_job("ep1", {"prompt": "cat"})

    tick = asyncio.create_task(manager.tick())
    await asyncio.wait_for(client.entered.wait(), timeout=1)
    await manager.cancel_job(result.id)
    client.gate.set()
    await asyncio.wait_for(tick, timeout=1)

    job = await _job(store, result.id)
    assert job.status == JobStatus.CANCELLED
    assert job.error == "endpoint down"
    assert job.not_before is None
    assert [e.event for e in seen] == ["job:created", "job:running", "job:cancelled"]
    assert await store.get_dead_letter_jobs() == []

    await manager.tick()
    assert len(client.submitted) == 1


# ---------------------------------------------------------------------------
# Cancel racing the scheduler
# ---------------------------------------------------------------------------


class SignallingDispatchClient(FakeDispatchClient):
    """Sets `returned` each time submit() hands back a handle."""

    def __init__(self) -> None:
        super().__init__()
        self.returned = asyncio.Event()

    async def submit(self, endpoint_id: str, input: Any) -> str:
        handle = await super().submit(endpoint_id, input)
        self.returned.set()
        return handle


async def test_cancel_after_submit_returns_is_not_overwritten(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    outcomes: list[CancelResult] = []

    async def cancel() -> None:
        outcomes.append(await manager.cancel_job(result.id))

    # cancel lands after submit() returned, before IN_QUEUE is written
    _run_before_update(store, lambda f: f.get("status") == JobStatus.IN_QUEUE, cancel)
    await manager.tick()

    assert [o.status for o in outcomes] == [JobStatus.CANCELLED]
    job = await _job(store, result.id)
    assert job.status == JobStatus.CANCELLED
    assert job.remote_job_id == "r1"
    assert client.cancelled == [("ep1", "r1")]
    assert manager.active_jobs == {}

    client.complete("r1", {"url": "x.png"})
    await manager.tick()
    assert (await _job(store, result.id)).status == JobStatus.CANCELLED
    assert [e.event for e in events] == ["job:created", "job:running", "job:cancelled"]


async def test_cancel_racing_dispatch_always_sticks(store: JobStorePort, settings: Settings):
    client = SignallingDispatchClient()
    manager = QueueManager(store, client, settings=settings, backoff=lambda attempts: 0.0)

    for n in range(10):
        client.returned.clear()
        result = await manager.submit_job("ep1", {"n": n})

        async def cancel() -> CancelResult:
            await client.returned.wait()
            return await manager.cancel_job(result.id)

        _, outcome = await asyncio.gather(manager.tick(), cancel())
        handle = f"r{n + 1}"
        client.complete(handle, {"ok": True})
        await manager.tick()

        assert outcome.status == JobStatus.CANCELLED
        job = await _job(store, result.id)
        assert job.status == JobStatus.CANCELLED
        assert job.output is None
        assert result.id not in manager.active_jobs
        assert client.cancelled[-1] == ("ep1", handle)

    assert len(client.cancelled) == 10


async def test_cancel_before_completion_write_wins(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()
    client.complete("r1", {"url": "x.png"})
    events.clear()

    async def cancel() -> None:
        await manager.cancel_job(result.id)

    # remote reports COMPLETED, then the cancel commits before the poll writes it
    _run_before_update(store, lambda f: f.get("status") == JobStatus.COMPLETED, cancel)
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.CANCELLED
    assert job.output is None
    assert manager.active_jobs == {}
    assert [e.event for e in events] == ["job:cancelled"]


async def test_completion_before_cancel_write_wins(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    events: list[QueueEvent],
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    await manager.tick()
    client.complete("r1", {"url": "x.png"})
    events.clear()

    # cancel_job read IN_QUEUE, then the poll commits COMPLETED first
    _run_before_update(
        store, lambda f: f.get("status") == JobStatus.CANCELLED, manager.poll_active_jobs
    )
    outcome = await manager.cancel_job(result.id)

    assert outcome.status == JobStatus.COMPLETED
    job = await _job(store, result.id)
    assert job.status == JobStatus.COMPLETED
    assert job.output == {"url": "x.png"}
    assert job.completed_at is not None
    assert client.cancelled == []
    assert manager.active_jobs == {}
    assert [e.event for e in events] == ["job:completed"]


async def test_unsaved_remote_handle_is_logged_and_still_polled(
    manager: QueueManager,
    store: JobStorePort,
    client: FakeDispatchClient,
    caplog: pytest.LogCaptureFixture,
):
    result = await manager.submit_job("ep1", {"prompt": "cat"})
    original = store.update_job

    async def update_job(job_id: str, **fields: Any) -> Job:
        if fields.get("status") == JobStatus.IN_QUEUE:
            raise StorageError("update failed", sqlite3.OperationalError("disk I/O error"))
        return await original(job_id, **fields)

    store.update_job = update_job  # type: ignore[method-assign]
    with caplog.at_level(logging.ERROR, logger="gpuqueue.core.manager"):
        await manager.tick()

    (record,) = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert "r1" in record.getMessage()
    assert result.id in record.getMessage()
    assert result.id in manager.active_jobs
    assert (await _job(store, result.id)).status == JobStatus.RUNNING

    store.update_job = original  # type: ignore[method-assign]
    client.complete("r1", {"url": "x.png"})
    await manager.tick()

    job = await _job(store, result.id)
    assert job.status == JobStatus.COMPLETED
    assert job.remote_job_id == "r1"
    assert manager.active_jobs == {}


# ---------------------------------------------------------------------------
# Restart and lifecycle
# ---------------------------------------------------------------------------


async def test_rebuild_restores_accepted_jobs(
    store: JobStorePort, client: FakeDispatchClient, settings: Settings
):
    started = datetime.now(UTC) - timedelta(seconds=2)
    accepted = Job.new("ep1", {"n": 1}).with_fields(
        status=JobStatus.IN_QUEUE, remote_job_id="rp-old", started_at=started, attempts=1
    )
    orphan = Job.new("ep1", {"n": 2}).with_fields(status=JobStatus.RUNNING)
    await store.create_job(accepted)
    await store.create_job(orphan)

    manager = QueueManager(store, client, settings=settings)
    assert await manager.rebuild_active_jobs() == 1
    assert set(manager.active_jobs) == {accepted.id}

    client.complete("rp-old", {"url": "y.png"})
    await manager.tick()

    job = await _job(store, accepted.id)
    assert job.status == JobStatus.COMPLETED
    assert job.duration_ms is not None and job.duration_ms >= 2000


async def test_rebuild_is_idempotent(
    store: JobStorePort, client: FakeDispatchClient, settings: Settings
):
    accepted = Job.new("ep1", {"n": 1}).with_fields(
        status=JobStatus.IN_QUEUE, remote_job_id="rp-old"
    )
    await store.create_job(accepted)
    manager = QueueManager(store, client, settings=settings)
    assert await manager.rebuild_active_jobs() == 1
    assert await manager.rebuild_active_jobs() == 0


async def test_background_loop_processes_jobs(
    manager: QueueManager, client: FakeDispatchClient
):
    client.complete("r1", {"url": "x.png"})

    async with manager:
        async with manager.notifier.subscribe() as sub:
            result = await manager.submit_job("ep1", {"prompt": "cat"})

            async def wait_for_completion() -> QueueEvent:
                async for event in sub:
                    if event.event == "job:completed" and event.data["id"] == result.id:
                        return event
                raise AssertionError("subscription closed early")

            event = await asyncio.wait_for(wait_for_completion(), timeout=2)

    assert event.data["output"] == {"url": "x.png"}


async def test_start_twice_raises(manager: QueueManager):
    await manager.start()
    try:
        with pytest.raises(RuntimeError):
            await manager.start()
    finally:
        await manager.stop()


async def test_stop_without_start_is_harmless(manager: QueueManager):
    await manager.stop()

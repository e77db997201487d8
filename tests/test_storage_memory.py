import asyncio

from gpuqueue.adapters.storage.memory import InMemoryJobStore
from gpuqueue.domain.models import CostEntry, Job, JobStatus


async def test_initial_jobs_are_visible():
    job = Job.new("ep1", {"prompt": "cat"})
    store = InMemoryJobStore(initial_jobs=[job])
    assert await store.get_job(job.id) == job
    assert [j.id for j in await store.get_pending_jobs(10)] == [job.id]


async def test_stores_do_not_share_state():
    a = InMemoryJobStore()
    b = InMemoryJobStore()
    job = Job.new("ep1", {"n": 1})
    await a.create_job(job)
    assert await b.get_job(job.id) is None


async def test_update_returns_new_snapshot():
    store = InMemoryJobStore()
    job = Job.new("ep1", {"n": 1})
    await store.create_job(job)
    updated = await store.update_job(job.id, status=JobStatus.IN_QUEUE, remote_job_id="r1")
    assert job.status == JobStatus.PENDING
    assert updated.status == JobStatus.IN_QUEUE
    assert updated.remote_job_id == "r1"


async def test_concurrent_creates_all_land():
    store = InMemoryJobStore()
    jobs = [Job.new("ep1", {"n": i}) for i in range(50)]
    await asyncio.gather(*(store.create_job(j) for j in jobs))
    stats = await store.get_job_stats()
    assert stats.total == 50
    assert stats.pending == 50


async def test_spend_is_float_when_empty():
    store = InMemoryJobStore()
    assert isinstance(await store.get_today_spend(), float)
    await store.log_cost(CostEntry(resource_id="p1", cost_usd=0.25))
    assert await store.get_today_spend() == 0.25

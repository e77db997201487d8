"""
gpuqueue — job queue for remote GPU endpoints.

Submits AI-generation workloads to serverless GPU endpoints and tracks them
to completion, with:

  - deduplication on a fingerprint of the job input
  - a daily budget gate on admission
  - a concurrency cap and a per-second token bucket on dispatch
  - periodic status polling of accepted jobs
  - retry with exponential back-off, then a dead-letter log
  - live event fan-out to connected observers

Quick start
-----------
    import asyncio
    from gpuqueue import QueueManager, RunPodDispatchClient, Settings, SQLiteJobStore

    async def main():
        settings = Settings.from_env()
        store = SQLiteJobStore(settings.database_path)

        async with RunPodDispatchClient.from_settings(settings) as client:
            async with QueueManager(store, client, settings=settings) as qm:
                async with qm.notifier.subscribe() as events:
                    result = await qm.submit_job("my-endpoint", {"prompt": "cat"})
                    async for event in events:
                        print(event.to_json())
                        if event.data["id"] == result.id and event.event in (
                            "job:completed",
                            "job:failed",
                        ):
                            break

    asyncio.run(main())

Job stores
----------
  - InMemoryJobStore  — for tests and examples
  - SQLiteJobStore    — durable single-machine store

Custom stores implement JobStorePort; custom backends implement
DispatchClientPort (submit / get_status / cancel).

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (Job, DeadLetter, QueueEvent, JobStatus)
  ports/    — Protocol interfaces (JobStorePort, DispatchClientPort)
  core/     — business logic (QueueManager, TokenBucket, Notifier, BudgetGate)
  adapters/ — concrete store and backend implementations
"""
from __future__ import annotations

from gpuqueue.adapters.dispatch.runpod import RunPodDispatchClient
from gpuqueue.adapters.storage.memory import InMemoryJobStore
from gpuqueue.adapters.storage.sqlite import SQLiteJobStore
from gpuqueue.config import Settings
from gpuqueue.core.backoff import backoff_delay
from gpuqueue.core.budget import BudgetGate
from gpuqueue.core.codec import hash_input
from gpuqueue.core.manager import QueueManager
from gpuqueue.core.notifier import Notifier, Subscription
from gpuqueue.core.rate_limit import TokenBucket
from gpuqueue.domain.errors import (
    BudgetExceededError,
    DeadLetterNotFoundError,
    DispatchError,
    GpuQueueError,
    JobNotFoundError,
    NotFoundError,
    PollError,
    StatusConflictError,
    StorageError,
)
from gpuqueue.domain.models import (
    CancelResult,
    CostEntry,
    DeadLetter,
    Job,
    JobStats,
    JobStatus,
    QueueEvent,
    QueueStats,
    RemoteJobState,
    RemoteStatus,
    SubmitResult,
)
from gpuqueue.ports.dispatch import DispatchClientPort
from gpuqueue.ports.storage import JobStorePort

__all__ = [
    # Domain models
    "Job",
    "JobStatus",
    "DeadLetter",
    "CostEntry",
    "RemoteJobState",
    "RemoteStatus",
    "SubmitResult",
    "CancelResult",
    "JobStats",
    "QueueStats",
    "QueueEvent",
    # Errors
    "GpuQueueError",
    "BudgetExceededError",
    "NotFoundError",
    "JobNotFoundError",
    "DeadLetterNotFoundError",
    "DispatchError",
    "PollError",
    "StorageError",
    "StatusConflictError",
    # Ports (for typing custom adapters)
    "JobStorePort",
    "DispatchClientPort",
    # Core
    "QueueManager",
    "BudgetGate",
    "Notifier",
    "Subscription",
    "TokenBucket",
    "Settings",
    "backoff_delay",
    "hash_input",
    # Built-in adapters
    "InMemoryJobStore",
    "SQLiteJobStore",
    "RunPodDispatchClient",
]

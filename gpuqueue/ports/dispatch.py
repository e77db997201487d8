"""
DispatchClientPort — the remote execution backend as seen by the queue.

Every call is real network I/O: seconds to tens of seconds, and any of them
may fail or time out.

submit(endpoint_id, input)
  - returns the backend's job handle (remote_job_id)
  - raises DispatchError on rejection or timeout

get_status(endpoint_id, remote_job_id)
  - returns a RemoteStatus
  - raises PollError when the query itself fails

cancel(endpoint_id, remote_job_id)
  - best effort; raises DispatchError, which callers may ignore
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from gpuqueue.domain.models import RemoteStatus


@runtime_checkable
class DispatchClientPort(Protocol):
    async def submit(self, endpoint_id: str, input: Any) -> str: ...

    async def get_status(self, endpoint_id: str, remote_job_id: str) -> RemoteStatus: ...

    async def cancel(self, endpoint_id: str, remote_job_id: str) -> None: ...

"""
RunPodDispatchClient — RunPod serverless REST API over httpx.

Routes (relative to base_url, default https://api.runpod.ai/v2)
-------------------------------------------------------------
  POST {endpoint}/run               body {"input": ...}  → {"id", "status"}
  GET  {endpoint}/status/{job_id}                        → {"status", "output"?, "error"?}
  POST {endpoint}/cancel/{job_id}
  GET  {endpoint}/health
  POST {endpoint}/purge-queue

Every request carries `Authorization: Bearer <api_key>`.

Error mapping
-------------
Transport failures (connect errors, timeouts) and non-2xx responses raise
DispatchError, except on the status route, which raises PollError. The
message is the response body's "error" field when there is one, otherwise
"Request failed with status <code>".

The client owns an httpx.AsyncClient unless one is passed in; use it as an
async context manager (or call aclose()) to release connections.
"""
from __future__ import annotations

import dataclasses
import logging
from types import TracebackType
from typing import Any

import httpx

from gpuqueue.config import Settings
from gpuqueue.domain.errors import DispatchError, PollError
from gpuqueue.domain.models import RemoteStatus

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.runpod.ai/v2"


@dataclasses.dataclass
class RunPodDispatchClient:
    """
    Parameters
    ----------
    api_key  : RunPod API key
    base_url : REST base URL
    timeout  : per-request timeout in seconds
    client   : optional pre-built httpx.AsyncClient (tests, custom transports);
               the one in use is always `http`
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    client: dataclasses.InitVar[httpx.AsyncClient | None] = None

    http: httpx.AsyncClient = dataclasses.field(init=False, repr=False)
    _owns_client: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self, client: httpx.AsyncClient | None) -> None:
        self.base_url = self.base_url.rstrip("/")
        if client is None:
            client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        self.http = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RunPodDispatchClient":
        return cls(
            api_key=settings.runpod_api_key,
            base_url=settings.runpod_rest_url,
            timeout=settings.request_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def __aenter__(self) -> RunPodDispatchClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ #
    # DispatchClientPort                                                   #
    # ------------------------------------------------------------------ #

    async def submit(self, endpoint_id: str, input: Any) -> str:
        data = await self._request("POST", f"{endpoint_id}/run", json={"input": input})
        remote_job_id = data.get("id")
        if not remote_job_id:
            raise DispatchError(f"RunPod accepted job without an id: {data!r}")
        return str(remote_job_id)

    async def get_status(self, endpoint_id: str, remote_job_id: str) -> RemoteStatus:
        try:
            data = await self._request("GET", f"{endpoint_id}/status/{remote_job_id}")
        except DispatchError as exc:
            raise PollError(str(exc)) from exc
        try:
            return RemoteStatus.model_validate(
                {
                    "status": data.get("status"),
                    "output": data.get("output"),
                    "error": _error_text(data.get("error")),
                }
            )
        except ValueError as exc:
            raise PollError(f"Unexpected status payload: {data!r}") from exc

    async def cancel(self, endpoint_id: str, remote_job_id: str) -> None:
        await self._request("POST", f"{endpoint_id}/cancel/{remote_job_id}")

    # ------------------------------------------------------------------ #
    # Endpoint helpers                                                     #
    # ------------------------------------------------------------------ #

    async def health(self, endpoint_id: str) -> dict[str, Any]:
        return await self._request("GET", f"{endpoint_id}/health")

    async def purge_queue(self, endpoint_id: str) -> dict[str, Any]:
        return await self._request("POST", f"{endpoint_id}/purge-queue")

    # ------------------------------------------------------------------ #
    # Transport                                                            #
    # ------------------------------------------------------------------ #

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        try:
            response = await self.http.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise DispatchError(f"RunPod {method} {path} timed out", exc) from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"RunPod {method} {path} failed", exc) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"result": data}

        if response.is_error:
            message = _error_text(data.get("error")) or (
                f"Request failed with status {response.status_code}"
            )
            logger.debug("RunPod %s %s → %s: %s", method, path, response.status_code, message)
            raise DispatchError(message)
        return data


def _error_text(error: Any) -> str | None:
    if error is None or error == "":
        return None
    return error if isinstance(error, str) else str(error)

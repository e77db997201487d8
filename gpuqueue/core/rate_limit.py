"""
TokenBucket — process-wide dispatch rate limiter.

Refill policy
-------------
Every `interval` the bucket is reset to full capacity. There is no gradual
leak: up to `capacity` acquisitions can happen back to back at the start of
each window, after which callers wait for the next reset. In effect this is a
fixed-window limiter.

Waiting
-------
acquire() suspends on an asyncio.Condition that the refill task notifies,
so blocked dispatches cost nothing while they wait and are cancelled cleanly
when the owning task is cancelled.

Usage
-----
    async with TokenBucket(capacity=2) as bucket:
        await bucket.acquire()
        await client.submit(...)
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import timedelta
from types import TracebackType

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TokenBucket:
    """
    Parameters
    ----------
    capacity : tokens available per window (rate per second by default)
    interval : window length (default 1 second)
    """

    capacity: int
    interval: timedelta = timedelta(seconds=1)

    _tokens: int = dataclasses.field(init=False, repr=False)
    _cond: asyncio.Condition = dataclasses.field(
        default_factory=asyncio.Condition, init=False, repr=False
    )
    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {self.capacity}")
        self._tokens = self.capacity

    @property
    def tokens(self) -> int:
        """Tokens left in the current window."""
        return self._tokens

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the background refill task."""
        if self._task is not None:
            raise RuntimeError("TokenBucket is already running")
        self._task = asyncio.create_task(self._refill_loop(), name="gpuqueue-refill")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aenter__(self) -> TokenBucket:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ------------------------------------------------------------------ #
    # Tokens                                                               #
    # ------------------------------------------------------------------ #

    async def acquire(self) -> None:
        """Take one token, waiting for the next refill if the bucket is empty."""
        async with self._cond:
            if self._tokens < 1:
                logger.debug("Rate limit reached, waiting for refill")
            await self._cond.wait_for(lambda: self._tokens >= 1)
            self._tokens -= 1

    async def refill(self) -> None:
        """Reset to full capacity and wake every waiter."""
        async with self._cond:
            self._tokens = self.capacity
            self._cond.notify_all()

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            await self.refill()

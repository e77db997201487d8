"""
Notifier — fan-out of queue events to live observers.

Delivery is best-effort and at-most-once: nothing is persisted or replayed,
a subscriber only sees events published while it is subscribed, and a
subscriber whose buffer is full misses events until it catches up. The job
store, not this feed, is the source of truth.

Two kinds of observers are supported:

  Subscription — async iterator with its own bounded buffer
      async with notifier.subscribe() as events:
          async for event in events:
              await websocket.send(event.to_json())

  Listener — synchronous callable invoked inline on publish
      notifier.add_listener(lambda event: print(event.event))
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Callable
from types import TracebackType
from typing import Any

from gpuqueue.domain.models import QueueEvent

logger = logging.getLogger(__name__)

Listener = Callable[[QueueEvent], None]


@dataclasses.dataclass
class Subscription:
    """One live observer. Iterate to receive events; close() to detach."""

    notifier: "Notifier"
    maxsize: int = 256

    _queue: asyncio.Queue[QueueEvent] = dataclasses.field(init=False, repr=False)
    _closed: bool = dataclasses.field(default=False, init=False, repr=False)
    dropped: int = dataclasses.field(default=0, init=False)

    def __post_init__(self) -> None:
        self._queue = asyncio.Queue(maxsize=self.maxsize)

    def offer(self, event: QueueEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1

    async def get(self) -> QueueEvent:
        return await self._queue.get()

    def get_nowait(self) -> QueueEvent:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.notifier._unsubscribe(self)

    async def __aiter__(self) -> AsyncIterator[QueueEvent]:
        while not self._closed:
            yield await self._queue.get()

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


@dataclasses.dataclass
class Notifier:
    """Publish/subscribe hub for QueueEvents."""

    buffer_size: int = 256

    _subscriptions: list[Subscription] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _listeners: list[Listener] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )

    @property
    def connected_clients(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def subscribe(self) -> Subscription:
        sub = Subscription(notifier=self, maxsize=self.buffer_size)
        self._subscriptions.append(sub)
        return sub

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: str, **data: Any) -> QueueEvent:
        """Build a QueueEvent and deliver it to every current observer."""
        message = QueueEvent(event=event, data=data)
        for sub in list(self._subscriptions):
            sub.offer(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Listener failed on %s; detaching it", event)
                self.remove_listener(listener)
        return message

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

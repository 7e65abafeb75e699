"""Per-run fan-out of worker events to live SSE subscribers.

Each subscriber owns an ``asyncio.Queue``. ``publish`` appends to a bounded
replay buffer and pushes into every queue without awaiting, so replay plus
registration in ``subscribe`` is a single step on the event loop and can
never interleave with a publish. ``None`` in a queue is the end-of-stream
sentinel.
"""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class Subscription:
    """Async iterator over one subscriber's channel."""

    def __init__(self, broadcaster: "EventBroadcaster", queue: "asyncio.Queue[Optional[Event]]") -> None:
        self._broadcaster = broadcaster
        self._queue = queue
        self._finished = False
        self._closed = False
        # Set when the stream ended while the queue had no room for the sentinel.
        self._ended = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, or ``None`` once the stream has ended.

        Raises ``asyncio.TimeoutError`` if nothing arrives within ``timeout``.
        """
        if self._finished:
            return None
        if self._ended and self._queue.empty():
            self._finished = True
            self.close()
            return None
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is None:
            self._finished = True
            self.close()
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._broadcaster._detach(self)

    def _abandon(self) -> None:
        # Drop whatever is pending and end the stream for this subscriber only.
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)


class EventBroadcaster:
    def __init__(self, buffer_size: int = 10000, queue_size: int = 0) -> None:
        self._buffer: Deque[Event] = deque(maxlen=max(1, int(buffer_size)))
        self._queue_size = max(0, int(queue_size))
        self._subscribers: List[Subscription] = []
        self._closed = False
        self._published = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published_count(self) -> int:
        return self._published

    def publish(self, event: Event) -> bool:
        if self._closed:
            return False
        self._buffer.append(event)
        self._published += 1
        for sub in list(self._subscribers):
            self._deliver(sub, event)
        return True

    def complete(self) -> None:
        if self._closed:
            return
        self._closed = True
        subscribers = list(self._subscribers)
        self._subscribers.clear()
        for sub in subscribers:
            try:
                sub._queue.put_nowait(None)
            except asyncio.QueueFull:
                # Full queues keep their events; the end is seen once drained.
                sub._ended = True

    def subscribe(self, *, replay: bool) -> Subscription:
        backlog = list(self._buffer) if replay else []
        maxsize = 0
        if self._queue_size:
            # The whole replay, then the live allowance plus one.
            maxsize = self._queue_size + len(backlog) + 1
        queue: "asyncio.Queue[Optional[Event]]" = asyncio.Queue(maxsize=maxsize)
        sub = Subscription(self, queue)
        for event in backlog:
            queue.put_nowait(event)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(sub)
        return sub

    def _deliver(self, sub: Subscription, event: Event) -> None:
        try:
            sub._queue.put_nowait(event)
        except Exception as exc:
            logger.warning(
                "[stream] dropping subscriber after delivery failure: %s",
                exc.__class__.__name__,
            )
            self._detach(sub)
            sub._closed = True
            sub._abandon()

    def _detach(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass

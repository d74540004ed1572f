"""Fan-out of orchestrator events to any number of live subscribers.

Every subscriber sees every event; filtering by orchestration id is the
subscriber's job. Each subscriber has a bounded queue and publishing
never waits: a subscriber whose queue is full is dropped.
"""

from __future__ import annotations

import asyncio
import logging

from remote_orchestrator.types import OrchestratorEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000

_CLOSED = object()


class Subscription:
    """One subscriber's view of the channel, consumed with ``async for``."""

    def __init__(self, channel: BroadcastChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: OrchestratorEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        """Stop receiving; pending events are still delivered."""
        if self._closed:
            return
        self._closed = True
        self._channel.unsubscribe(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass  # reader is not waiting; it stops once the queue drains

    def get_nowait(self) -> OrchestratorEvent | None:
        """Return the next queued event, or None if none is queued."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item  # type: ignore[return-value]

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> OrchestratorEvent:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class BroadcastChannel:
    """Publish/subscribe primitive with drop-on-slow-consumer semantics."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self._queue_size)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, event: OrchestratorEvent) -> None:
        """Deliver an event to every subscriber without blocking."""
        dead: list[Subscription] = []
        for subscription in list(self._subscribers):
            if not subscription._offer(event):
                dead.append(subscription)
        for subscription in dead:
            logger.warning("Dropping slow broadcast subscriber")
            subscription.dropped = True
            subscription.close()

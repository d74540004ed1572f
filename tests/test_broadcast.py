"""Tests for the broadcast channel."""

import asyncio

from remote_orchestrator.broadcast import BroadcastChannel
from remote_orchestrator.types import OrchestrationStatus, OrchestratorEvent


def _event(i: int = 0) -> OrchestratorEvent:
    return OrchestratorEvent.error(f"o{i}", f"event {i}")


async def test_every_subscriber_receives_every_event():
    channel = BroadcastChannel()
    a = channel.subscribe()
    b = channel.subscribe()
    channel.publish(_event(1))
    channel.publish(_event(2))
    assert a.get_nowait() == _event(1)
    assert a.get_nowait() == _event(2)
    assert b.get_nowait() == _event(1)
    assert b.get_nowait() == _event(2)
    assert a.get_nowait() is None


async def test_publish_without_subscribers_is_noop():
    BroadcastChannel().publish(_event())


async def test_slow_subscriber_is_dropped_without_blocking():
    channel = BroadcastChannel(queue_size=2)
    slow = channel.subscribe()
    fast = channel.subscribe()

    for i in range(3):
        channel.publish(_event(i))
        fast.get_nowait()

    assert slow.dropped
    assert slow.closed
    assert not fast.dropped
    assert channel.subscriber_count == 1

    # The dropped subscriber still drains what it had queued, then stops
    received = [event async for event in slow]
    assert received == [_event(0), _event(1)]


async def test_async_iteration_stops_on_close():
    channel = BroadcastChannel()
    subscription = channel.subscribe()

    async def consume():
        return [event async for event in subscription]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    channel.publish(_event(1))
    await asyncio.sleep(0)
    subscription.close()
    assert await asyncio.wait_for(consumer, 1) == [_event(1)]
    assert channel.subscriber_count == 0


async def test_close_is_idempotent_and_stops_delivery():
    channel = BroadcastChannel()
    subscription = channel.subscribe()
    subscription.close()
    subscription.close()
    channel.publish(_event())
    assert subscription.get_nowait() is None


async def test_unsubscribe_during_publish_iteration():
    channel = BroadcastChannel(queue_size=1)
    subs = [channel.subscribe() for _ in range(3)]
    channel.publish(_event(1))
    channel.publish(OrchestratorEvent.status_change("o1", OrchestrationStatus.COMPLETED))
    assert all(s.dropped for s in subs)
    assert channel.subscriber_count == 0

import asyncio

import pytest

from webchat.broadcaster import EventBroadcaster


async def _drain(sub):
    return [e["n"] async for e in sub]


def test_replay_delivers_history_before_live_events():
    async def scenario():
        b = EventBroadcaster(buffer_size=10)
        for i in range(3):
            b.publish({"n": i})
        sub = b.subscribe(replay=True)
        b.publish({"n": 3})
        b.complete()
        return await _drain(sub)

    assert asyncio.run(scenario()) == [0, 1, 2, 3]


def test_no_replay_subscriber_only_sees_later_events():
    async def scenario():
        b = EventBroadcaster()
        b.publish({"n": 0})
        b.publish({"n": 1})
        sub = b.subscribe(replay=False)
        b.publish({"n": 2})
        b.complete()
        return await _drain(sub)

    assert asyncio.run(scenario()) == [2]


def test_subscribe_after_completion_replays_then_ends():
    async def scenario():
        b = EventBroadcaster()
        b.publish({"n": 0})
        b.publish({"n": 1})
        b.complete()
        late = b.subscribe(replay=True)
        late_no_replay = b.subscribe(replay=False)
        return await _drain(late), await _drain(late_no_replay), b.subscriber_count

    replayed, empty, count = asyncio.run(scenario())
    assert replayed == [0, 1]
    assert empty == []
    assert count == 0


def test_publish_after_complete_is_ignored():
    async def scenario():
        b = EventBroadcaster()
        sub = b.subscribe(replay=False)
        b.publish({"n": 0})
        b.complete()
        accepted = b.publish({"n": 1})
        b.complete()
        return accepted, await _drain(sub)

    accepted, events = asyncio.run(scenario())
    assert accepted is False
    assert events == [0]


def test_closing_one_subscriber_leaves_others_untouched():
    async def scenario():
        b = EventBroadcaster()
        first = b.subscribe(replay=False)
        second = b.subscribe(replay=False)
        b.publish({"n": 0})
        first.close()
        b.publish({"n": 1})
        b.complete()
        first.close()
        return await _drain(second), b.subscriber_count, first.closed

    events, count, closed = asyncio.run(scenario())
    assert events == [0, 1]
    assert count == 0
    assert closed is True


def test_buffer_keeps_only_most_recent_events():
    async def scenario():
        b = EventBroadcaster(buffer_size=3)
        for i in range(6):
            b.publish({"n": i})
        b.complete()
        return await _drain(b.subscribe(replay=True)), b.published_count

    events, published = asyncio.run(scenario())
    assert events == [3, 4, 5]
    assert published == 6


def test_overflowing_subscriber_is_dropped_in_isolation():
    async def scenario():
        b = EventBroadcaster(queue_size=2)
        slow = b.subscribe(replay=False)
        fast = b.subscribe(replay=False)
        received = []
        for i in range(3):
            b.publish({"n": i})
            received.append((await fast.get())["n"])
        b.publish({"n": 3})
        b.complete()
        received.extend(await _drain(fast))
        return received, await _drain(slow)

    fast_events, slow_events = asyncio.run(scenario())
    assert fast_events == [0, 1, 2, 3]
    assert slow_events == []


def test_get_times_out_when_idle():
    async def scenario():
        b = EventBroadcaster()
        sub = b.subscribe(replay=False)
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)
        b.complete()
        first = await sub.get(timeout=0.01)
        again = await sub.get(timeout=0.01)
        return first, again

    assert asyncio.run(scenario()) == (None, None)


def test_bounded_subscriber_at_its_limit_keeps_the_tail_on_completion():
    async def scenario():
        b = EventBroadcaster(queue_size=2)
        sub = b.subscribe(replay=False)
        for i in range(3):
            b.publish({"n": i})
        b.complete()
        return await _drain(sub), sub.closed

    events, closed = asyncio.run(scenario())
    assert events == [0, 1, 2]
    assert closed is True


def test_bounded_replay_subscriber_ends_after_backlog():
    async def scenario():
        b = EventBroadcaster(queue_size=1)
        for i in range(4):
            b.publish({"n": i})
        sub = b.subscribe(replay=True)
        b.publish({"n": 4})
        b.publish({"n": 5})
        b.complete()
        return await _drain(sub)

    assert asyncio.run(scenario()) == [0, 1, 2, 3, 4, 5]

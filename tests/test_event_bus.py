from __future__ import annotations

import asyncio
import json

import pytest

from lingualearn.api.events import sse_lines
from lingualearn.core.event_bus import EventBus


@pytest.mark.asyncio
async def test_history_is_bounded_and_filterable():
    bus = EventBus(history_size=3)
    for i in range(4):
        await bus.publish("quiz_answer_submitted" if i % 2 else "quiz_session_started", "quiz_sessions", {"n": i})

    assert [e["data"]["n"] for e in bus.history()] == [1, 2, 3]
    assert [e["data"]["n"] for e in bus.history("quiz_answer_submitted")] == [1, 3]


@pytest.mark.asyncio
async def test_subscribe_replays_recent_events_then_receives_new_ones():
    bus = EventBus()
    for i in range(3):
        await bus.publish("quiz_session_started", "quiz_sessions", {"n": i})

    queue = await bus.subscribe(replay_last=2)
    await bus.publish("quiz_session_completed", "quiz_sessions", {"n": 3})

    received = [queue.get_nowait()["data"]["n"] for _ in range(queue.qsize())]
    assert received == [1, 2, 3]

    await bus.unsubscribe(queue)
    await bus.publish("quiz_session_completed", "quiz_sessions", {"n": 4})
    assert queue.empty()
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_slow_subscriber_drops_events_without_blocking_publishers():
    bus = EventBus(subscriber_queue_size=2)
    slow = await bus.subscribe(replay_last=0)
    for i in range(5):
        await asyncio.wait_for(bus.publish("quiz_answer_submitted", "quiz_sessions", {"n": i}), timeout=1)

    assert slow.qsize() == 2
    assert bus.dropped == 3
    assert len(bus.history()) == 5


@pytest.mark.asyncio
async def test_sse_lines_frame_events_and_release_the_subscription():
    bus = EventBus()
    queue = await bus.subscribe(replay_last=0)
    stream = sse_lines(bus, queue, event_type="quiz_session_completed")

    await bus.publish("quiz_answer_submitted", "quiz_sessions", {"session_id": "s1"})
    await bus.publish("quiz_session_completed", "quiz_sessions", {"session_id": "s1", "score": 2})

    frame = await asyncio.wait_for(stream.__anext__(), timeout=1)
    header, data, *_ = frame.split("\n")
    assert header == "event: quiz_session_completed"
    assert json.loads(data.removeprefix("data: "))["data"] == {"session_id": "s1", "score": 2}
    assert frame.endswith("\n\n")

    await stream.aclose()
    assert bus.subscriber_count == 0

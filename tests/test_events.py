import asyncio

import pytest

from conclave.audit import MemoryAuditSink
from conclave.events import Event, EventBus, EventType
from conclave.store import STREAM_START, MemoryStore


async def _take(stream, n: int) -> list[Event]:
    got = []
    async for event in stream:
        got.append(event)
        if len(got) == n:
            break
    return got


@pytest.mark.asyncio
async def test_replay_returns_events_in_publish_order(events: EventBus) -> None:
    ids = [
        await events.publish("s1", "build", EventType.CUSTOM, {"n": i}, agent_id="w1")
        for i in range(5)
    ]

    replayed = await events.replay("s1", "build")
    assert [e.id for e in replayed] == ids
    assert [e.payload["n"] for e in replayed] == list(range(5))
    assert all(e.agent_id == "w1" and e.session_id == "s1" for e in replayed)

    tail = await events.replay("s1", "build", after=replayed[1].cursor, limit=2)
    assert [e.payload["n"] for e in tail] == [2, 3]
    assert await events.replay("s1", "other") == []
    assert await events.replay("s2", "build") == []


@pytest.mark.asyncio
async def test_subscriber_resumes_after_last_ack(events: EventBus) -> None:
    for i in range(4):
        await events.publish("s1", "t", payload={"n": i})

    first = events.subscribe("s1", "t", consumer="c1")
    seen = await _take(first, 2)
    await first.aclose()
    await events.ack("s1", "t", "c1", seen[0].cursor)

    # Acked only the first, so the second is delivered again.
    second = events.subscribe("s1", "t", consumer="c1")
    again = await _take(second, 3)
    await second.aclose()
    assert [e.payload["n"] for e in again] == [1, 2, 3]
    assert again[0].id == seen[1].id

    # Other consumers start from the beginning.
    other = events.subscribe("s1", "t", consumer="c2")
    assert (await _take(other, 1))[0].payload["n"] == 0
    await other.aclose()


@pytest.mark.asyncio
async def test_ack_never_moves_backwards(events: EventBus) -> None:
    await events.publish("s1", "t")
    await events.publish("s1", "t")
    first, second = await events.replay("s1", "t")

    assert await events.acked_cursor("s1", "t", "c1") == STREAM_START
    assert await events.ack("s1", "t", "c1", second.cursor) == second.cursor
    assert await events.ack("s1", "t", "c1", first.cursor) == second.cursor
    assert await events.acked_cursor("s1", "t", "c1") == second.cursor


@pytest.mark.asyncio
async def test_live_events_reach_waiting_subscriber(events: EventBus) -> None:
    stream = events.subscribe("s1", "alerts")
    waiter = asyncio.create_task(_take(stream, 1))
    await asyncio.sleep(0.03)
    await events.publish("s1", "alerts", EventType.FINDING_POSTED, {"msg": "disk"})

    [event] = await asyncio.wait_for(waiter, timeout=2)
    assert event.type == EventType.FINDING_POSTED
    assert event.payload == {"msg": "disk"}
    await stream.aclose()


@pytest.mark.asyncio
async def test_subscribe_can_be_cancelled(events: EventBus) -> None:
    async def consume() -> None:
        async for _ in events.subscribe("s1", "quiet"):
            pass

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    consumer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await consumer


@pytest.mark.asyncio
async def test_publish_is_audited_when_configured(events: EventBus, sink: MemoryAuditSink, store: MemoryStore) -> None:
    event_id = await events.publish("s1", "t", agent_id="w1")
    entry = sink.entries[-1]
    assert entry.action.name == "events.publish"
    assert entry.detail["event_id"] == event_id
    assert entry.resources == ("topic:s1/t",)

    quiet = EventBus(store)
    await quiet.publish("s1", "t")
    assert len(sink.entries) == 1
    assert len(await quiet.replay("s1", "t")) == 2


def test_unknown_event_types_degrade_to_custom() -> None:
    raw = (
        '{"id": "e1", "topic": "t", "session_id": "s1", "type": "something.new",'
        ' "payload": {}, "timestamp": "2026-01-01T00:00:00+00:00"}'
    )
    event = Event.from_entry("5-0", {"event": raw})
    assert event.type == EventType.CUSTOM
    assert event.cursor == "5-0"


@pytest.mark.asyncio
async def test_cursor_calls_and_subscriptions_are_audited(events: EventBus, sink: MemoryAuditSink) -> None:
    await events.publish("s1", "t", agent_id="w1")
    [event] = await events.replay("s1", "t", agent_id="w2")
    await events.ack("s1", "t", "w2", event.cursor)
    assert await events.acked_cursor("s1", "t", "w2") == event.cursor

    stream = events.subscribe("s1", "t", consumer="w3")
    await _take(stream, 1)
    await stream.aclose()

    assert [(e.action.name, e.agent_id) for e in sink.entries] == [
        ("events.publish", "w1"),
        ("events.replay", "w2"),
        ("events.ack", "w2"),
        ("events.acked_cursor", "w2"),
        ("events.subscribe", "w3"),
        ("events.unsubscribe", "w3"),
    ]
    assert sink.entries[-1].detail == {"cursor": event.cursor, "delivered": 1}
    assert all(e.resources == ("topic:s1/t",) for e in sink.entries)

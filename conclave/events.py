"""
Durable per-session event topics.

Each topic is an append-only stream in the backing store, so it outlives any
single subscriber. Delivery is at-least-once and ordered within a topic:
consumers acknowledge cursors and resume after the last one they acked, which
means an event seen but not acked before a disconnect is delivered again.
Events carry a stable ``id`` for de-duplication.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .audit import AuditLogger, AuditScope, ToolAction
from .config import settings
from .store import STREAM_START, Store, parse_entry_id

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    FINDING_POSTED = "finding.posted"

    TASK_CREATED = "task.created"
    TASK_CLAIMED = "task.claimed"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    LOCK_ACQUIRED = "lock.acquired"
    LOCK_RELEASED = "lock.released"

    PROPOSAL_OPENED = "proposal.opened"
    VOTE_CAST = "vote.cast"
    PROPOSAL_DECIDED = "proposal.decided"
    PROPOSAL_EXPIRED = "proposal.expired"

    SESSION_JOINED = "session.joined"
    SESSION_LEFT = "session.left"

    CUSTOM = "custom"


@dataclass
class Event:
    """One message on a topic."""

    topic: str
    session_id: str
    type: EventType = EventType.CUSTOM
    agent_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    cursor: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "session_id": self.session_id,
            "type": self.type.value,
            "agent_id": self.agent_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_entry(cls, entry_id: str, fields: dict[str, str]) -> Event:
        data = json.loads(fields["event"])
        try:
            event_type = EventType(data["type"])
        except ValueError:
            event_type = EventType.CUSTOM
        return cls(
            id=data["id"],
            topic=data["topic"],
            session_id=data["session_id"],
            type=event_type,
            agent_id=data.get("agent_id"),
            payload=data.get("payload") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
            cursor=entry_id,
        )


class EventBus:
    """Publish, subscribe, acknowledge and replay session topics."""

    def __init__(
        self,
        store: Store,
        audit: AuditLogger | None = None,
        *,
        block_ms: int | None = None,
        page_size: int | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._block_ms = block_ms if block_ms is not None else settings.event_block_ms
        self._page_size = page_size if page_size is not None else settings.event_page_size

    @staticmethod
    def _stream(session_id: str, topic: str) -> str:
        return f"events:{session_id}:{topic}"

    @staticmethod
    def _cursor_key(session_id: str, topic: str, consumer: str) -> str:
        return f"cursor:{session_id}:{topic}:{consumer}"

    def _track(
        self,
        name: str,
        arguments: dict[str, Any],
        *,
        agent_id: str | None,
        session_id: str,
        topic: str,
    ) -> AbstractAsyncContextManager[AuditScope]:
        if self._audit is None:
            return nullcontext(AuditScope())
        return self._audit.track(
            ToolAction(name, arguments),
            agent_id=agent_id or "conclave",
            session_id=session_id,
            resources=[f"topic:{session_id}/{topic}"],
        )

    async def publish(
        self,
        session_id: str,
        topic: str,
        event_type: EventType = EventType.CUSTOM,
        payload: dict[str, Any] | None = None,
        *,
        agent_id: str | None = None,
    ) -> str:
        """Append an event to ``topic`` and return its event id."""
        event = Event(
            topic=topic,
            session_id=session_id,
            type=event_type,
            agent_id=agent_id,
            payload=dict(payload or {}),
        )
        fields = {"event": json.dumps(event.to_dict())}
        async with self._track(
            "events.publish",
            {"topic": topic, "type": event_type.value},
            agent_id=agent_id,
            session_id=session_id,
            topic=topic,
        ) as scope:
            event.cursor = await self._store.append(self._stream(session_id, topic), fields)
            scope.note(event_id=event.id, cursor=event.cursor)
        logger.debug("Published %s on %s/%s at %s", event_type.value, session_id, topic, event.cursor)
        return event.id

    async def _stored_cursor(self, session_id: str, topic: str, consumer: str) -> str:
        current = await self._store.get(self._cursor_key(session_id, topic, consumer))
        return current.value if current is not None else STREAM_START

    async def acked_cursor(self, session_id: str, topic: str, consumer: str) -> str:
        async with self._track(
            "events.acked_cursor", {}, agent_id=consumer, session_id=session_id, topic=topic
        ) as scope:
            cursor = await self._stored_cursor(session_id, topic, consumer)
            scope.note(cursor=cursor)
            return cursor

    async def ack(self, session_id: str, topic: str, consumer: str, cursor: str) -> str:
        """Record that ``consumer`` processed everything up to ``cursor``.

        Never moves a consumer backwards; returns the cursor now stored.
        """
        key = self._cursor_key(session_id, topic, consumer)
        async with self._track(
            "events.ack", {"cursor": cursor}, agent_id=consumer, session_id=session_id, topic=topic
        ) as scope:
            while True:
                current = await self._store.get(key)
                if current is not None and parse_entry_id(current.value) >= parse_entry_id(cursor):
                    scope.note(stored=current.value)
                    return current.value
                written = await self._store.compare_and_set(
                    key, cursor, current.version if current is not None else 0
                )
                if written is not None:
                    scope.note(stored=cursor)
                    return cursor

    async def replay(
        self,
        session_id: str,
        topic: str,
        after: str = STREAM_START,
        *,
        limit: int | None = None,
        agent_id: str | None = None,
    ) -> list[Event]:
        """Everything currently stored on ``topic`` after ``after``."""
        stream = self._stream(session_id, topic)
        async with self._track(
            "events.replay",
            {"after": after, "limit": limit},
            agent_id=agent_id,
            session_id=session_id,
            topic=topic,
        ) as scope:
            events: list[Event] = []
            cursor = after
            while limit is None or len(events) < limit:
                entries = await self._store.read(stream, after=cursor, count=self._page_size)
                if not entries:
                    break
                for entry_id, fields in entries:
                    events.append(Event.from_entry(entry_id, fields))
                    cursor = entry_id
            if limit is not None:
                events = events[:limit]
            scope.note(returned=len(events))
            return events

    async def subscribe(
        self,
        session_id: str,
        topic: str,
        from_cursor: str | None = None,
        *,
        consumer: str | None = None,
    ) -> AsyncIterator[Event]:
        """Yield events on ``topic`` as they arrive, forever.

        Starts after ``from_cursor``; if omitted, after ``consumer``'s last
        acknowledged cursor (or the beginning of the topic). Cancel the
        consuming task or close the generator to detach. Attaching and
        detaching are each audited.
        """
        async with self._track(
            "events.subscribe",
            {"from_cursor": from_cursor},
            agent_id=consumer,
            session_id=session_id,
            topic=topic,
        ) as scope:
            if from_cursor is None:
                from_cursor = (
                    await self._stored_cursor(session_id, topic, consumer)
                    if consumer is not None
                    else STREAM_START
                )
            scope.note(cursor=from_cursor)

        stream = self._stream(session_id, topic)
        cursor = from_cursor
        delivered = 0
        try:
            while True:
                entries = await self._store.read(
                    stream, after=cursor, count=self._page_size, block_ms=self._block_ms
                )
                for entry_id, fields in entries:
                    cursor = entry_id
                    delivered += 1
                    yield Event.from_entry(entry_id, fields)
        finally:
            async with self._track(
                "events.unsubscribe",
                {},
                agent_id=consumer,
                session_id=session_id,
                topic=topic,
            ) as scope:
                scope.note(cursor=cursor, delivered=delivered)

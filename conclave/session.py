"""
Session coordinator: the single entry point workers use.

``Coordinator.join`` returns a ``SessionHandle`` whose methods forward to the
blackboard, lock manager, task queue, event bus and consensus engine with the
session and agent ids already filled in, so every downstream audit entry is
attributable.
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from .audit import AuditLogger, AuditSink, OutcomeStatus, ToolAction
from .blackboard import Blackboard, Finding, FindingCategory, FindingFilter, VersionConflict
from .config import settings
from .consensus import ConsensusEngine, Decision, QuorumKind, QuorumRule, VoteChoice
from .errors import (
    LockNotAcquired,
    NotHolder,
    ProposalClosed,
    SessionNotActive,
    UnknownProposal,
    UnknownTask,
)
from .events import Event, EventBus, EventType
from .locks import LockManager, LockResult
from .messages import Message, MessageKind
from .redaction import Redactor
from .store import STREAM_START, Store
from .tasks import ClaimState, Task, TaskFilter, TaskQueue, TaskStatus

logger = logging.getLogger(__name__)

SESSION_TOPIC = "session"

# Errors a dispatched message reports back instead of raising. Store and audit
# failures are not in this list: they must reach the caller.
_REPORTED_ERRORS = (
    LockNotAcquired,
    NotHolder,
    ProposalClosed,
    SessionNotActive,
    UnknownProposal,
    UnknownTask,
    KeyError,
    TypeError,
    ValueError,
)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class Session:
    initiator: str
    context: dict[str, Any] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE
    participants: list[str] = field(default_factory=list)
    created_at: float = 0.0
    ended_at: float | None = None
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "initiator": self.initiator,
                "context": self.context,
                "status": self.status.value,
                "participants": self.participants,
                "created_at": self.created_at,
                "ended_at": self.ended_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Session:
        data = json.loads(raw)
        return cls(
            id=data["id"],
            initiator=data["initiator"],
            context=data.get("context") or {},
            status=SessionStatus(data["status"]),
            participants=list(data.get("participants") or ()),
            created_at=float(data.get("created_at", 0.0)),
            ended_at=data.get("ended_at"),
        )


class Coordinator:
    """Owns the platform components and hands out session handles."""

    def __init__(
        self,
        store: Store,
        audit: AuditLogger,
        *,
        session_ttl: float | None = None,
        lock_ttl: float | None = None,
        claim_ttl: float | None = None,
        retry_budget: int | None = None,
        proposal_deadline: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.audit = audit
        self.session_ttl = session_ttl if session_ttl is not None else settings.session_ttl
        self._clock = clock
        self.blackboard = Blackboard(store, audit)
        self.locks = LockManager(store, audit, default_ttl=lock_ttl, clock=clock)
        self.tasks = TaskQueue(
            store, self.locks, audit, claim_ttl=claim_ttl, retry_budget=retry_budget, clock=clock
        )
        self.events = EventBus(store, audit)
        self.consensus = ConsensusEngine(
            store, self.events, audit, default_deadline=proposal_deadline, clock=clock
        )

    @classmethod
    def from_settings(cls) -> Coordinator:
        """Coordinator on the configured store and the SQL audit sink."""
        from .db import SqlAuditSink
        from .store import MemoryStore, RedisStore

        store: Store
        if settings.store_backend == "memory":
            store = MemoryStore()
        else:
            from .redis_client import get_redis_client

            store = RedisStore(get_redis_client())
        return cls(store, AuditLogger(SqlAuditSink(), redactor=Redactor()))

    @classmethod
    def in_memory(cls, sink: AuditSink | None = None, **kwargs: Any) -> Coordinator:
        from .audit import MemoryAuditSink
        from .store import MemoryStore

        clock = kwargs.get("clock", time.time)
        audit = AuditLogger(sink or MemoryAuditSink(), clock=clock)
        return cls(MemoryStore(clock=clock), audit, **kwargs)

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    async def get_session(self, session_id: str) -> Session | None:
        current = await self.store.get(self._key(session_id))
        return Session.from_json(current.value) if current is not None else None

    async def _update(
        self, session_id: str, mutate: Callable[[Session], bool]
    ) -> Session | None:
        key = self._key(session_id)
        while True:
            current = await self.store.get(key)
            if current is None:
                return None
            session = Session.from_json(current.value)
            if not mutate(session):
                return session
            if await self.store.compare_and_set(key, session.to_json(), current.version) is not None:
                return session

    async def join(
        self,
        agent_id: str,
        session_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> SessionHandle:
        """Join ``session_id``, or start a new session when it is ``None``."""
        async with self.audit.track(
            ToolAction("session.join", {"new": session_id is None}),
            agent_id=agent_id,
            session_id=session_id,
        ) as scope:
            now = self._clock()
            if session_id is None:
                clean_context, _ = self.audit.redactor.redact(dict(context or {}))
                session = Session(
                    initiator=agent_id,
                    context=clean_context,
                    participants=[agent_id],
                    created_at=now,
                )
                await self.store.compare_and_set(self._key(session.id), session.to_json(), 0)
                scope.session_id = session.id
                logger.info("Session %s started by %s", session.id, agent_id)
            else:

                def enter(s: Session) -> bool:
                    if s.status != SessionStatus.ACTIVE:
                        return False
                    if now >= s.created_at + self.session_ttl:
                        s.status = SessionStatus.ABORTED
                        s.ended_at = now
                        return True
                    if agent_id in s.participants:
                        return False
                    s.participants.append(agent_id)
                    return True

                joined = await self._update(session_id, enter)
                if joined is None:
                    raise SessionNotActive(f"Session {session_id} does not exist")
                if joined.status != SessionStatus.ACTIVE:
                    scope.set_outcome(OutcomeStatus.DENIED, status=joined.status.value)
                    raise SessionNotActive(f"Session {session_id} is {joined.status.value}")
                session = joined

            scope.resources.append(f"session:{session.id}")
            await self.events.publish(
                session.id, SESSION_TOPIC, EventType.SESSION_JOINED, {"agent_id": agent_id}, agent_id=agent_id
            )
            return SessionHandle(self, session.id, agent_id)

    async def leave(
        self, handle: SessionHandle, outcome: SessionStatus = SessionStatus.COMPLETED
    ) -> Session:
        """End the session as ``completed`` or ``aborted`` and record a participation summary."""
        if outcome == SessionStatus.ACTIVE:
            raise ValueError("leave outcome must be completed or aborted")
        async with self.audit.track(
            ToolAction("session.leave", {"outcome": outcome.value}),
            agent_id=handle.agent_id,
            session_id=handle.session_id,
            resources=[f"session:{handle.session_id}"],
            detail={"participation": dict(handle.stats)},
        ) as scope:
            now = self._clock()

            def end(s: Session) -> bool:
                if s.status != SessionStatus.ACTIVE:
                    return False
                s.status = outcome
                s.ended_at = now
                return True

            session = await self._update(handle.session_id, end)
            if session is None:
                raise SessionNotActive(f"Session {handle.session_id} does not exist")
            scope.note(status=session.status.value)
            handle.closed = True
            await self.events.publish(
                handle.session_id,
                SESSION_TOPIC,
                EventType.SESSION_LEFT,
                {"agent_id": handle.agent_id, "outcome": session.status.value},
                agent_id=handle.agent_id,
            )
            logger.info("Session %s %s by %s", handle.session_id, session.status.value, handle.agent_id)
            return session

    async def close(self) -> None:
        await self.store.close()


class SessionHandle:
    """One agent's view of one session."""

    def __init__(self, coordinator: Coordinator, session_id: str, agent_id: str) -> None:
        self.coordinator = coordinator
        self.session_id = session_id
        self.agent_id = agent_id
        self.stats: Counter[str] = Counter()
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise SessionNotActive(f"{self.agent_id} already left session {self.session_id}")

    # -- blackboard --------------------------------------------------------

    async def put(self, key: str, value: Any, expected_version: int | None) -> int | VersionConflict:
        self._check_open()
        result = await self.coordinator.blackboard.put(
            self.session_id, key, value, expected_version, agent_id=self.agent_id
        )
        self.stats["writes" if isinstance(result, int) else "conflicts"] += 1
        return result

    async def get(self, key: str) -> tuple[Any, int] | None:
        return await self.coordinator.blackboard.get(self.session_id, key, agent_id=self.agent_id)

    async def snapshot(self, keys: Sequence[str]) -> dict[str, tuple[Any, int]]:
        return await self.coordinator.blackboard.snapshot(
            self.session_id, keys, agent_id=self.agent_id
        )

    async def post_finding(
        self,
        category: FindingCategory,
        content: str,
        confidence: float,
        evidence: Sequence[str] = (),
        *,
        supersedes: str | None = None,
    ) -> str:
        self._check_open()
        finding_id = await self.coordinator.blackboard.append_finding(
            Finding(
                session_id=self.session_id,
                worker_id=self.agent_id,
                category=FindingCategory(category),
                content=content,
                confidence=confidence,
                evidence=tuple(evidence),
                supersedes=supersedes,
            )
        )
        self.stats["findings"] += 1
        await self.coordinator.events.publish(
            self.session_id,
            "findings",
            EventType.FINDING_POSTED,
            {"finding_id": finding_id, "category": FindingCategory(category).value},
            agent_id=self.agent_id,
        )
        return finding_id

    async def findings(
        self,
        filter: FindingFilter | None = None,
        *,
        after: str = STREAM_START,
        limit: int | None = None,
    ) -> list[Finding]:
        return await self.coordinator.blackboard.list_findings(
            self.session_id, filter, after=after, limit=limit, agent_id=self.agent_id
        )

    # -- locks -------------------------------------------------------------

    async def acquire(
        self, resource_id: str, ttl: float | None = None, *, timeout: float | None = None
    ) -> LockResult:
        self._check_open()
        result = await self.coordinator.locks.acquire(
            resource_id, self.agent_id, ttl, timeout=timeout, session_id=self.session_id
        )
        if result.granted:
            self.stats["locks"] += 1
        return result

    async def renew(self, resource_id: str, ttl: float | None = None) -> LockResult:
        return await self.coordinator.locks.renew(
            resource_id, self.agent_id, ttl, session_id=self.session_id
        )

    async def release(self, resource_id: str) -> None:
        await self.coordinator.locks.release(resource_id, self.agent_id, session_id=self.session_id)

    def locked(
        self, resource_id: str, ttl: float | None = None, *, timeout: float | None = None
    ) -> AbstractAsyncContextManager[LockResult]:
        self._check_open()
        return self.coordinator.locks.locked(
            resource_id, self.agent_id, ttl, timeout=timeout, session_id=self.session_id
        )

    # -- tasks -------------------------------------------------------------

    async def create_task(
        self,
        type: str,
        params: dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_retries: int | None = None,
    ) -> str:
        self._check_open()
        task_id = await self.coordinator.tasks.create(
            self.session_id,
            type,
            params,
            priority=priority,
            max_retries=max_retries,
            created_by=self.agent_id,
        )
        self.stats["tasks_created"] += 1
        return task_id

    async def claim(self, types: Sequence[str] | None = None) -> Task | None:
        self._check_open()
        task = await self.coordinator.tasks.claim(
            self.agent_id,
            TaskFilter(self.session_id, frozenset(types) if types is not None else None),
        )
        if task is not None:
            self.stats["tasks_claimed"] += 1
        return task

    async def start(self, task_id: str) -> ClaimState:
        return await self.coordinator.tasks.start(task_id, self.agent_id)

    async def heartbeat(self, task_id: str) -> ClaimState:
        return await self.coordinator.tasks.heartbeat(task_id, self.agent_id)

    async def complete(self, task_id: str, result: Any = None) -> ClaimState:
        state = await self.coordinator.tasks.complete(task_id, self.agent_id, result)
        if state == ClaimState.OK:
            self.stats["tasks_completed"] += 1
        return state

    async def fail(self, task_id: str, reason: str) -> TaskStatus:
        status = await self.coordinator.tasks.fail(task_id, self.agent_id, reason)
        self.stats["tasks_failed"] += 1
        return status

    async def tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return await self.coordinator.tasks.list(self.session_id, status)

    # -- events ------------------------------------------------------------

    async def publish(
        self,
        topic: str,
        event_type: EventType = EventType.CUSTOM,
        payload: dict[str, Any] | None = None,
    ) -> str:
        self._check_open()
        return await self.coordinator.events.publish(
            self.session_id, topic, event_type, payload, agent_id=self.agent_id
        )

    def subscribe(self, topic: str, from_cursor: str | None = None) -> AsyncIterator[Event]:
        """Follow ``topic``, resuming after this agent's last acknowledged cursor."""
        return self.coordinator.events.subscribe(
            self.session_id, topic, from_cursor, consumer=self.agent_id
        )

    async def ack(self, topic: str, cursor: str) -> str:
        return await self.coordinator.events.ack(self.session_id, topic, self.agent_id, cursor)

    async def replay(self, topic: str, after: str = STREAM_START) -> list[Event]:
        return await self.coordinator.events.replay(
            self.session_id, topic, after, agent_id=self.agent_id
        )

    # -- consensus ---------------------------------------------------------

    async def open_proposal(
        self,
        description: str,
        rule: QuorumRule,
        *,
        roster: Sequence[str] | None = None,
        deadline: float | None = None,
        expertise: Mapping[str, float] | None = None,
    ) -> str:
        """Open a proposal; the roster defaults to the session's current participants."""
        self._check_open()
        if roster is None:
            session = await self.coordinator.get_session(self.session_id)
            roster = session.participants if session is not None else [self.agent_id]
        return await self.coordinator.consensus.open_proposal(
            self.session_id,
            description,
            rule,
            roster=roster,
            created_by=self.agent_id,
            deadline=deadline,
            expertise=expertise,
        )

    async def vote(
        self,
        proposal_id: str,
        choice: VoteChoice,
        confidence: float,
        reason: str = "",
        *,
        evidence_count: int = 0,
    ) -> None:
        self._check_open()
        await self.coordinator.consensus.cast_vote(
            proposal_id, self.agent_id, choice, confidence, reason, evidence_count=evidence_count
        )
        self.stats["votes"] += 1

    async def resolve(self, proposal_id: str) -> Decision:
        return await self.coordinator.consensus.resolve(proposal_id, agent_id=self.agent_id)

    # -- lifecycle ---------------------------------------------------------

    async def leave(self, outcome: SessionStatus = SessionStatus.COMPLETED) -> Session:
        return await self.coordinator.leave(self, outcome)

    # -- message dispatch --------------------------------------------------

    def _operations(self) -> dict[str, Callable[..., Awaitable[Any]]]:
        async def put(key: str, value: Any, expected_version: int | None = None) -> Any:
            result = await self.put(key, value, expected_version)
            if isinstance(result, VersionConflict):
                return {"conflict": True, "current_version": result.current_version}
            return {"version": result}

        async def get(key: str) -> Any:
            found = await self.get(key)
            return None if found is None else {"value": found[0], "version": found[1]}

        async def snapshot(keys: list[str]) -> Any:
            rows = await self.snapshot(keys)
            return {k: {"value": v, "version": ver} for k, (v, ver) in rows.items()}

        async def findings(
            category: str | None = None, after: str = STREAM_START, limit: int | None = None
        ) -> Any:
            filter = FindingFilter(category=FindingCategory(category) if category else None)
            return [f.to_dict() | {"cursor": f.cursor} for f in await self.findings(filter, after=after, limit=limit)]

        async def acquire(resource_id: str, ttl: float | None = None, timeout: float | None = None) -> Any:
            result = await self.acquire(resource_id, ttl, timeout=timeout)
            return {
                "granted": result.granted,
                "expires_at": result.expires_at.isoformat() if result.expires_at else None,
            }

        async def renew(resource_id: str, ttl: float | None = None) -> Any:
            await self.renew(resource_id, ttl)
            return {"renewed": True}

        async def release(resource_id: str) -> Any:
            await self.release(resource_id)
            return {"released": True}

        async def create_task(
            type: str, params: dict[str, Any] | None = None, priority: int = 0, max_retries: int | None = None
        ) -> Any:
            return {"task_id": await self.create_task(type, params, priority=priority, max_retries=max_retries)}

        async def claim(types: list[str] | None = None) -> Any:
            task = await self.claim(types)
            return None if task is None else json.loads(task.to_json())

        async def start(task_id: str) -> Any:
            return {"state": (await self.start(task_id)).value}

        async def heartbeat(task_id: str) -> Any:
            return {"state": (await self.heartbeat(task_id)).value}

        async def complete(task_id: str, result: Any = None) -> Any:
            return {"state": (await self.complete(task_id, result)).value}

        async def fail(task_id: str, reason: str) -> Any:
            return {"status": (await self.fail(task_id, reason)).value}

        async def get_task(task_id: str) -> Any:
            task = await self.coordinator.tasks.get(task_id)
            return None if task is None else json.loads(task.to_json())

        async def list_tasks(status: str | None = None) -> Any:
            tasks = await self.tasks(TaskStatus(status) if status else None)
            return [json.loads(t.to_json()) for t in tasks]

        async def publish(topic: str, type: str = EventType.CUSTOM.value, payload: dict[str, Any] | None = None) -> Any:
            return {"event_id": await self.publish(topic, EventType(type), payload)}

        async def replay(topic: str, after: str = STREAM_START) -> Any:
            return [e.to_dict() | {"cursor": e.cursor} for e in await self.replay(topic, after)]

        async def ack(topic: str, cursor: str) -> Any:
            return {"cursor": await self.ack(topic, cursor)}

        async def open_proposal(
            description: str,
            rule: str = QuorumKind.MAJORITY.value,
            threshold: float | None = None,
            roster: list[str] | None = None,
            deadline: float | None = None,
            expertise: dict[str, float] | None = None,
        ) -> Any:
            proposal_id = await self.open_proposal(
                description,
                QuorumRule(QuorumKind(rule), threshold),
                roster=roster,
                deadline=deadline,
                expertise=expertise,
            )
            return {"proposal_id": proposal_id}

        async def resolve(proposal_id: str) -> Any:
            return (await self.resolve(proposal_id)).to_dict()

        return {
            "blackboard.put": put,
            "blackboard.get": get,
            "blackboard.snapshot": snapshot,
            "blackboard.findings": findings,
            "locks.acquire": acquire,
            "locks.renew": renew,
            "locks.release": release,
            "tasks.create": create_task,
            "tasks.claim": claim,
            "tasks.start": start,
            "tasks.heartbeat": heartbeat,
            "tasks.complete": complete,
            "tasks.fail": fail,
            "tasks.get": get_task,
            "tasks.list": list_tasks,
            "events.publish": publish,
            "events.replay": replay,
            "events.ack": ack,
            "consensus.open_proposal": open_proposal,
            "consensus.resolve": resolve,
        }

    async def dispatch(self, message: Message) -> Message:
        """Route a worker message and answer with a ``response`` message."""
        if message.session_id != self.session_id or message.agent_id != self.agent_id:
            return message.error(ValueError("message is addressed to a different session or agent"))
        payload = message.payload
        try:
            if message.kind == MessageKind.FINDING:
                finding_id = await self.post_finding(
                    FindingCategory(payload["category"]),
                    payload["content"],
                    float(payload["confidence"]),
                    payload.get("evidence") or (),
                    supersedes=payload.get("supersedes"),
                )
                return message.reply({"finding_id": finding_id})
            if message.kind == MessageKind.VOTE:
                await self.vote(
                    payload["proposal_id"],
                    VoteChoice(payload["choice"]),
                    float(payload["confidence"]),
                    payload.get("reason", ""),
                    evidence_count=int(payload.get("evidence_count", 0)),
                )
                return message.reply({"recorded": True})
            if message.kind in (MessageKind.ACTION, MessageKind.REQUEST):
                operation = self._operations().get(payload.get("operation", ""))
                if operation is None:
                    raise ValueError(f"unknown operation {payload.get('operation')!r}")
                return message.reply(await operation(**(payload.get("args") or {})))
            raise ValueError(f"cannot dispatch a {message.kind.value} message")
        except _REPORTED_ERRORS as exc:
            logger.debug("Message %s from %s rejected: %s", message.id, self.agent_id, exc)
            return message.error(exc)

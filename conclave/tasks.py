"""
Task queue with lease-protected claims.

State machine::

    pending -> assigned -> running -> completed
                  \\          \\
                   +----------+--> failed -> pending   (while retries remain)
                                          -> failed    (terminal)

A claim is a lease on ``task:<id>`` taken through the lock manager, so at most
one worker holds a task at a time. A crashed worker is only noticed when its
lease runs out; the next ``claim`` sweep puts such tasks back to ``pending``.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

from .audit import AuditLogger, OutcomeStatus, ToolAction
from .config import settings
from .errors import NotHolder, UnknownTask
from .locks import LockManager
from .retry import BackoffPolicy, with_retries
from .store import Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING_INDEX = "tasks:pending"
ACTIVE_INDEX = "tasks:active"
SEQ_KEY = "tasks:seq"
PLATFORM_AGENT = "conclave"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.RUNNING})


class ClaimState(str, Enum):
    OK = "ok"
    LOST = "lost"


@dataclass
class Task:
    """A unit of distributable work."""

    session_id: str
    type: str
    params: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_retries: int = 2
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: str | None = None
    result: Any = None
    failures: int = 0
    last_error: str | None = None
    expired_claims: list[str] = field(default_factory=list)
    lease_expiry: datetime | None = None
    created_at: float = 0.0
    seq: int = 0
    id: str = field(default_factory=lambda: str(uuid4()))

    @property
    def sort_key(self) -> tuple[int, float, int]:
        """Higher priority first, then FIFO by creation."""
        return (-self.priority, self.created_at, self.seq)

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "session_id": self.session_id,
                "type": self.type,
                "params": self.params,
                "priority": self.priority,
                "max_retries": self.max_retries,
                "status": self.status.value,
                "assigned_to": self.assigned_to,
                "result": self.result,
                "failures": self.failures,
                "last_error": self.last_error,
                "expired_claims": self.expired_claims,
                "lease_expiry": self.lease_expiry.isoformat() if self.lease_expiry else None,
                "created_at": self.created_at,
                "seq": self.seq,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Task:
        data = json.loads(raw)
        lease_expiry = data.get("lease_expiry")
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            type=data["type"],
            params=data.get("params") or {},
            priority=int(data.get("priority", 0)),
            max_retries=int(data.get("max_retries", 0)),
            status=TaskStatus(data["status"]),
            assigned_to=data.get("assigned_to"),
            result=data.get("result"),
            failures=int(data.get("failures", 0)),
            last_error=data.get("last_error"),
            expired_claims=list(data.get("expired_claims") or ()),
            lease_expiry=datetime.fromisoformat(lease_expiry) if lease_expiry else None,
            created_at=float(data.get("created_at", 0.0)),
            seq=int(data.get("seq", 0)),
        )


@dataclass(frozen=True)
class TaskFilter:
    session_id: str | None = None
    types: frozenset[str] | None = None

    def matches(self, task: Task) -> bool:
        if self.session_id is not None and task.session_id != self.session_id:
            return False
        if self.types is not None and task.type not in self.types:
            return False
        return True


class TaskQueue:
    """Create, claim and settle tasks."""

    def __init__(
        self,
        store: Store,
        locks: LockManager,
        audit: AuditLogger,
        *,
        claim_ttl: float | None = None,
        retry_budget: int | None = None,
        retry_policy: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._locks = locks
        self._audit = audit
        self.claim_ttl = claim_ttl if claim_ttl is not None else settings.claim_ttl
        self.retry_budget = retry_budget if retry_budget is not None else settings.task_retry_budget
        self._retry = retry_policy or BackoffPolicy(
            attempts=settings.store_retry_attempts,
            base=settings.store_backoff_base,
            cap=settings.store_backoff_max,
        )
        self._clock = clock

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _key(task_id: str) -> str:
        return f"task:{task_id}"

    @staticmethod
    def _lease(task_id: str) -> str:
        return f"task:{task_id}"

    @staticmethod
    def _session_index(session_id: str) -> str:
        return f"tasks:session:{session_id}"

    async def _io(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await with_retries(fn, self._retry, label=label)

    async def _load(self, task_id: str) -> Task:
        current = await self._io("load task", lambda: self._store.get(self._key(task_id)))
        if current is None:
            raise UnknownTask(task_id)
        return Task.from_json(current.value)

    async def _load_many(self, task_ids: Iterable[str]) -> list[Task]:
        ids = list(task_ids)
        rows = await self._io("load tasks", lambda: self._store.get_many([self._key(i) for i in ids]))
        return [Task.from_json(row.value) for row in rows if row is not None]

    async def _transition(self, task_id: str, mutate: Callable[[Task], bool]) -> Task | None:
        """Apply ``mutate`` by compare-and-set; ``None`` if it declined to apply."""
        key = self._key(task_id)
        while True:
            current = await self._io("load task", lambda: self._store.get(key))
            if current is None:
                raise UnknownTask(task_id)
            task = Task.from_json(current.value)
            if not mutate(task):
                return None
            written = await self._io(
                "update task",
                lambda: self._store.compare_and_set(key, task.to_json(), current.version),
            )
            if written is not None:
                return task

    async def _move(self, task: Task, *, to_pending: bool) -> None:
        if to_pending:
            await self._io("index", lambda: self._store.index_add(PENDING_INDEX, task.id, task.seq))
            await self._io("index", lambda: self._store.index_remove(ACTIVE_INDEX, task.id))
        else:
            await self._io("index", lambda: self._store.index_remove(ACTIVE_INDEX, task.id))

    async def _release_quietly(self, task: Task, worker_id: str) -> None:
        try:
            await self._locks.release(self._lease(task.id), worker_id, session_id=task.session_id)
        except NotHolder:
            logger.debug("Claim lease on %s already gone", task.id)

    def _check_holder(self, task: Task, worker_id: str) -> bool:
        """True if ``worker_id`` holds ``task``; False if its claim already expired."""
        if task.assigned_to == worker_id and task.status in ACTIVE_STATUSES:
            return True
        if worker_id in task.expired_claims:
            return False
        raise NotHolder(self._lease(task.id), worker_id)

    async def _unlist(self, task: Task) -> None:
        """Hide a task whose creation could not be audited so nobody claims it."""
        await self._store.index_remove(PENDING_INDEX, task.id)
        await self._store.index_remove(self._session_index(task.session_id), task.id)
        logger.warning("Task %s withdrawn: creation was not audited", task.id)

    async def _unclaim(self, task: Task, worker_id: str) -> None:
        """Put back a claim that could not be audited, as if it never happened."""

        def unassign(t: Task) -> bool:
            if t.status != TaskStatus.ASSIGNED or t.assigned_to != worker_id:
                return False
            t.status = TaskStatus.PENDING
            t.assigned_to = None
            t.lease_expiry = None
            return True

        if await self._transition(task.id, unassign) is not None:
            await self._move(task, to_pending=True)
        await self._locks.revoke(self._lease(task.id), worker_id)
        logger.warning("Claim on task %s by %s withdrawn: it was not audited", task.id, worker_id)

    async def _requeue_lost(self, task_id: str, worker_id: str) -> Task | None:
        def requeue(t: Task) -> bool:
            if t.status not in ACTIVE_STATUSES or t.assigned_to != worker_id:
                return False
            t.status = TaskStatus.PENDING
            t.assigned_to = None
            t.lease_expiry = None
            if worker_id:
                t.expired_claims.append(worker_id)
            return True

        task = await self._transition(task_id, requeue)
        if task is not None:
            await self._move(task, to_pending=True)
            logger.info("Claim on task %s by %s expired; back to pending", task_id, worker_id)
        return task

    # -- operations --------------------------------------------------------

    async def create(
        self,
        session_id: str,
        type: str,
        params: dict[str, Any] | None = None,
        *,
        priority: int = 0,
        max_retries: int | None = None,
        created_by: str = PLATFORM_AGENT,
    ) -> str:
        """Queue a new pending task and return its id."""
        clean_params, redacted = self._audit.redactor.redact(dict(params or {}))
        async with self._audit.track(
            ToolAction("tasks.create", {"type": type, "priority": priority}),
            agent_id=created_by,
            session_id=session_id,
            sensitive=redacted,
        ) as scope:
            seq = await self._io("task seq", lambda: self._store.incr(SEQ_KEY))
            task = Task(
                session_id=session_id,
                type=type,
                params=clean_params,
                priority=priority,
                max_retries=self.retry_budget if max_retries is None else max_retries,
                created_at=self._clock(),
                seq=seq,
            )
            scope.resources.append(f"task:{task.id}")
            await self._io(
                "create task",
                lambda: self._store.compare_and_set(self._key(task.id), task.to_json(), 0),
            )
            await self._io(
                "index", lambda: self._store.index_add(self._session_index(session_id), task.id, seq)
            )
            await self._io("index", lambda: self._store.index_add(PENDING_INDEX, task.id, seq))
            scope.on_unaudited(lambda: self._unlist(task))
            return task.id

    async def reap_expired(self) -> list[str]:
        """Return tasks whose claim lease ran out to ``pending``."""
        requeued: list[str] = []
        # A claim interrupted between its write and its index moves leaves the
        # task listed as pending; track it as active so its lease is checked.
        pending_ids = await self._io("index", lambda: self._store.index_members(PENDING_INDEX))
        for task in await self._load_many(pending_ids):
            if task.status in ACTIVE_STATUSES:
                await self._io("index", lambda: self._store.index_add(ACTIVE_INDEX, task.id, task.seq))
                await self._io("index", lambda: self._store.index_remove(PENDING_INDEX, task.id))
            elif task.status != TaskStatus.PENDING:
                await self._io("index", lambda: self._store.index_remove(PENDING_INDEX, task.id))

        active_ids = await self._io("index", lambda: self._store.index_members(ACTIVE_INDEX))
        for task in await self._load_many(active_ids):
            if task.status not in ACTIVE_STATUSES:
                await self._move(task, to_pending=task.status == TaskStatus.PENDING)
                continue
            lease = await self._locks.holder(self._lease(task.id))
            if lease is not None and lease.holder_id == task.assigned_to:
                continue
            async with self._audit.track(
                ToolAction("tasks.requeue_expired", {"previous_holder": task.assigned_to}),
                agent_id=PLATFORM_AGENT,
                session_id=task.session_id,
                resources=[f"task:{task.id}"],
            ) as scope:
                if await self._requeue_lost(task.id, task.assigned_to or "") is None:
                    scope.note(skipped=True)
                else:
                    scope.set_outcome(OutcomeStatus.EXPIRED)
                    requeued.append(task.id)
        return requeued

    async def claim(self, worker_id: str, filter: TaskFilter | None = None) -> Task | None:
        """Claim the best pending task matching ``filter``; ``None`` if none is free."""
        filter = filter or TaskFilter()
        async with self._audit.track(
            ToolAction(
                "tasks.claim",
                {"types": sorted(filter.types) if filter.types is not None else None},
            ),
            agent_id=worker_id,
            session_id=filter.session_id,
        ) as scope:
            await self.reap_expired()
            pending_ids = await self._io("index", lambda: self._store.index_members(PENDING_INDEX))
            candidates = sorted(
                (
                    t
                    for t in await self._load_many(pending_ids)
                    if t.status == TaskStatus.PENDING and filter.matches(t)
                ),
                key=lambda t: t.sort_key,
            )
            for candidate in candidates:
                lease = await self._locks.acquire(
                    self._lease(candidate.id),
                    worker_id,
                    self.claim_ttl,
                    session_id=candidate.session_id,
                )
                if not lease.granted:
                    continue

                def assign(t: Task) -> bool:
                    if t.status != TaskStatus.PENDING:
                        return False
                    t.status = TaskStatus.ASSIGNED
                    t.assigned_to = worker_id
                    t.lease_expiry = lease.expires_at
                    return True

                claimed = await self._transition(candidate.id, assign)
                if claimed is None:
                    await self._release_quietly(candidate, worker_id)
                    continue
                await self._io(
                    "index", lambda: self._store.index_add(ACTIVE_INDEX, candidate.id, candidate.seq)
                )
                await self._io("index", lambda: self._store.index_remove(PENDING_INDEX, candidate.id))
                scope.session_id = claimed.session_id
                scope.resources.append(f"task:{claimed.id}")
                scope.note(task_id=claimed.id)
                scope.on_unaudited(lambda: self._unclaim(claimed, worker_id))
                logger.info("Task %s claimed by %s", claimed.id, worker_id)
                return claimed

            scope.note(task_id=None)
            return None

    async def _renew_or_requeue(self, task: Task, worker_id: str) -> bool:
        try:
            await self._locks.renew(
                self._lease(task.id), worker_id, self.claim_ttl, session_id=task.session_id
            )
        except NotHolder:
            await self._requeue_lost(task.id, worker_id)
            return False
        return True

    async def start(self, task_id: str, worker_id: str) -> ClaimState:
        """Mark an assigned task ``running``."""
        async with self._audit.track(
            ToolAction("tasks.start"), agent_id=worker_id, resources=[f"task:{task_id}"]
        ) as scope:
            task = await self._load(task_id)
            scope.session_id = task.session_id
            held = self._check_holder(task, worker_id)
            if not held or not await self._renew_or_requeue(task, worker_id):
                scope.set_outcome(OutcomeStatus.EXPIRED)
                return ClaimState.LOST

            def run(t: Task) -> bool:
                if t.status not in ACTIVE_STATUSES or t.assigned_to != worker_id:
                    return False
                t.status = TaskStatus.RUNNING
                return True

            if await self._transition(task_id, run) is None:
                scope.set_outcome(OutcomeStatus.EXPIRED)
                return ClaimState.LOST
            return ClaimState.OK

    async def heartbeat(self, task_id: str, worker_id: str) -> ClaimState:
        """Renew the claim lease; ``LOST`` (and requeued) if it already ran out."""
        async with self._audit.track(
            ToolAction("tasks.heartbeat"), agent_id=worker_id, resources=[f"task:{task_id}"]
        ) as scope:
            task = await self._load(task_id)
            scope.session_id = task.session_id
            held = self._check_holder(task, worker_id)
            if not held or not await self._renew_or_requeue(task, worker_id):
                scope.set_outcome(OutcomeStatus.EXPIRED)
                return ClaimState.LOST
            return ClaimState.OK

    async def complete(self, task_id: str, worker_id: str, result: Any = None) -> ClaimState:
        """Record the result and finish the task."""
        clean_result, redacted = self._audit.redactor.redact(result)
        async with self._audit.track(
            ToolAction("tasks.complete"),
            agent_id=worker_id,
            resources=[f"task:{task_id}"],
            sensitive=redacted,
        ) as scope:
            task = await self._load(task_id)
            scope.session_id = task.session_id
            held = self._check_holder(task, worker_id)
            if not held or not await self._renew_or_requeue(task, worker_id):
                scope.set_outcome(OutcomeStatus.EXPIRED)
                return ClaimState.LOST

            def finish(t: Task) -> bool:
                if t.status not in ACTIVE_STATUSES or t.assigned_to != worker_id:
                    return False
                t.status = TaskStatus.COMPLETED
                t.result = clean_result
                t.lease_expiry = None
                return True

            done = await self._transition(task_id, finish)
            if done is None:
                scope.set_outcome(OutcomeStatus.EXPIRED)
                return ClaimState.LOST
            await self._move(done, to_pending=False)
            await self._release_quietly(done, worker_id)
            logger.info("Task %s completed by %s", task_id, worker_id)
            return ClaimState.OK

    async def fail(self, task_id: str, worker_id: str, reason: str) -> TaskStatus:
        """Record a failure; the task goes back to ``pending`` until its retries run out."""
        clean_reason, redacted = self._audit.redactor.redact_text(reason)
        async with self._audit.track(
            ToolAction("tasks.fail", {"reason": clean_reason}),
            agent_id=worker_id,
            resources=[f"task:{task_id}"],
            sensitive=redacted,
        ) as scope:
            task = await self._load(task_id)
            scope.session_id = task.session_id
            held = self._check_holder(task, worker_id)
            if not held or not await self._renew_or_requeue(task, worker_id):
                # The claim ran out; the failure does not count against the task.
                current = await self._load(task_id)
                scope.set_outcome(OutcomeStatus.EXPIRED, status=current.status.value)
                return current.status

            def settle(t: Task) -> bool:
                if t.status not in ACTIVE_STATUSES or t.assigned_to != worker_id:
                    return False
                t.failures += 1
                t.last_error = clean_reason
                t.assigned_to = None
                t.lease_expiry = None
                t.status = TaskStatus.FAILED if t.failures > t.max_retries else TaskStatus.PENDING
                return True

            settled = await self._transition(task_id, settle)
            if settled is None:
                # The claim ran out first and the sweep already requeued it.
                current = await self._load(task_id)
                scope.set_outcome(OutcomeStatus.EXPIRED, status=current.status.value)
                return current.status
            await self._move(settled, to_pending=settled.status == TaskStatus.PENDING)
            await self._release_quietly(settled, worker_id)
            scope.note(status=settled.status.value, failures=settled.failures)
            logger.info(
                "Task %s failed (%d/%d): %s",
                task_id,
                settled.failures,
                settled.max_retries + 1,
                settled.status.value,
            )
            return settled.status

    async def get(self, task_id: str) -> Task | None:
        try:
            return await self._load(task_id)
        except UnknownTask:
            return None

    async def list(self, session_id: str, status: TaskStatus | None = None) -> list[Task]:
        ids = await self._io("index", lambda: self._store.index_members(self._session_index(session_id)))
        tasks = await self._load_many(ids)
        return [t for t in tasks if status is None or t.status == status]

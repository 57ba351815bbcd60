"""
Append-only audit trail for every coordination action.

Entries are redacted before they reach any sink, written with bounded
retries, and never dropped: if the sink stays unreachable the caller gets
``AuditWriteFailed`` instead of an un-audited success, and whatever the
operation registered with ``AuditScope.on_unaudited`` is undone.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import uuid4

from .config import settings
from .errors import AuditWriteFailed, StoreUnavailable
from .redaction import Redactor
from .retry import BackoffPolicy, with_retries

logger = logging.getLogger(__name__)


# =============================================================================
# ACTIONS
# =============================================================================


class ActionKind(str, Enum):
    TOOL = "tool"
    SKILL = "skill"
    EXTERNAL = "external"
    DECISION = "decision"
    ERROR = "error"


@dataclass(frozen=True)
class ToolAction:
    """A platform or worker tool call (lock acquire, task claim, ...)."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[ActionKind] = ActionKind.TOOL


@dataclass(frozen=True)
class SkillAction:
    """A higher-level worker capability invocation."""

    name: str
    inputs: dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[ActionKind] = ActionKind.SKILL


@dataclass(frozen=True)
class ExternalAction:
    """A call out to a third-party system."""

    name: str
    service: str
    target: str | None = None
    kind: ClassVar[ActionKind] = ActionKind.EXTERNAL


@dataclass(frozen=True)
class DecisionAction:
    """A group decision reached (or expired) on a proposal."""

    name: str
    proposal_id: str
    outcome: str
    confidence: float | None = None
    kind: ClassVar[ActionKind] = ActionKind.DECISION


@dataclass(frozen=True)
class ErrorAction:
    """An error reported by a worker."""

    name: str
    error_type: str
    message: str = ""
    kind: ClassVar[ActionKind] = ActionKind.ERROR


Action = ToolAction | SkillAction | ExternalAction | DecisionAction | ErrorAction

_ACTION_TYPES: dict[ActionKind, type[Any]] = {
    cls.kind: cls for cls in (ToolAction, SkillAction, ExternalAction, DecisionAction, ErrorAction)
}


def action_to_dict(action: Action) -> dict[str, Any]:
    return {"kind": action.kind.value, **asdict(action)}


def action_from_dict(data: dict[str, Any]) -> Action:
    """Rebuild an action; unknown kinds raise ``ValueError``."""
    payload = dict(data)
    kind = ActionKind(payload.pop("kind"))
    return _ACTION_TYPES[kind](**payload)


# =============================================================================
# ENTRIES
# =============================================================================


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"
    CONFLICT = "conflict"
    EXPIRED = "expired"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one action."""

    action: Action
    agent_id: str
    session_id: str | None = None
    outcome: OutcomeStatus = OutcomeStatus.SUCCESS
    resources: tuple[str, ...] = ()
    detail: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None
    sensitive_data_accessed: bool = False
    redaction_applied: bool = False
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_export(self) -> dict[str, Any]:
        """Flat record consumed by external reporting and alerting."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "agent_id": self.agent_id,
            "session_id": self.session_id,
            "action_type": self.action.kind.value,
            "action_name": self.action.name,
            "outcome_status": self.outcome.value,
            "resources_accessed": list(self.resources),
            "sensitive_data_accessed": self.sensitive_data_accessed,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class AuditQuery:
    """Filters for hot-tier queries. ``None`` fields match everything."""

    session_id: str | None = None
    agent_id: str | None = None
    action_type: ActionKind | None = None
    action_name: str | None = None
    outcome: OutcomeStatus | None = None
    resource: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = None

    def matches(self, entry: AuditEntry) -> bool:
        if self.session_id is not None and entry.session_id != self.session_id:
            return False
        if self.agent_id is not None and entry.agent_id != self.agent_id:
            return False
        if self.action_type is not None and entry.action.kind != self.action_type:
            return False
        if self.action_name is not None and entry.action.name != self.action_name:
            return False
        if self.outcome is not None and entry.outcome != self.outcome:
            return False
        if self.resource is not None and self.resource not in entry.resources:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp >= self.until:
            return False
        return True


# Descending page position: (timestamp, insertion sequence) of the last row seen.
PageCursor = tuple[datetime, int]


# =============================================================================
# RETENTION TIERS
# =============================================================================


@dataclass
class AuditRollup:
    """Warm-tier aggregate of hot entries sharing an hour and an action."""

    bucket_start: datetime
    session_id: str | None
    agent_id: str
    action_type: str
    action_name: str
    outcome_status: str
    count: int = 0
    failure_count: int = 0
    total_duration_ms: int = 0
    redacted_count: int = 0

    def key(self) -> tuple[Any, ...]:
        return (
            self.bucket_start,
            self.session_id,
            self.agent_id,
            self.action_type,
            self.action_name,
            self.outcome_status,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["bucket_start"] = self.bucket_start.isoformat()
        return data


@dataclass(frozen=True)
class AuditArchive:
    """Cold-tier bundle of one day's rollups."""

    day: date
    rollups: list[dict[str, Any]]
    archived_at: datetime


def hour_bucket(ts: datetime) -> datetime:
    return ts.replace(minute=0, second=0, microsecond=0)


def aggregate_entries(
    entries: Iterable[AuditEntry],
    into: dict[tuple[Any, ...], AuditRollup] | None = None,
) -> dict[tuple[Any, ...], AuditRollup]:
    """Fold entries into hourly rollups, merging with any existing ones."""
    rollups = into if into is not None else {}
    for entry in entries:
        probe = AuditRollup(
            bucket_start=hour_bucket(entry.timestamp),
            session_id=entry.session_id,
            agent_id=entry.agent_id,
            action_type=entry.action.kind.value,
            action_name=entry.action.name,
            outcome_status=entry.outcome.value,
        )
        rollup = rollups.setdefault(probe.key(), probe)
        rollup.count += 1
        if entry.outcome == OutcomeStatus.FAILURE:
            rollup.failure_count += 1
        rollup.total_duration_ms += entry.duration_ms or 0
        if entry.redaction_applied:
            rollup.redacted_count += 1
    return rollups


def bundle_by_day(rollups: Iterable[AuditRollup]) -> dict[date, list[AuditRollup]]:
    bundles: dict[date, list[AuditRollup]] = defaultdict(list)
    for rollup in rollups:
        bundles[rollup.bucket_start.date()].append(rollup)
    return dict(bundles)


# =============================================================================
# SINKS
# =============================================================================


class AuditSink(ABC):
    """Durable destination for audit entries and their aged tiers."""

    @abstractmethod
    async def write(self, entry: AuditEntry) -> None:
        """Persist one hot entry. Connectivity problems raise ``StoreUnavailable``."""

    @abstractmethod
    async def fetch_page(
        self, query: AuditQuery, before: PageCursor | None, limit: int
    ) -> list[tuple[AuditEntry, PageCursor]]:
        """Hot entries matching ``query``, newest first, strictly older than ``before``."""

    @abstractmethod
    async def roll_up(self, cutoff: datetime) -> int:
        """Move hot entries older than ``cutoff`` into warm rollups."""

    @abstractmethod
    async def archive(self, cutoff: datetime) -> int:
        """Move warm rollups older than ``cutoff`` into cold daily bundles."""

    @abstractmethod
    async def rollups(self, session_id: str | None = None) -> list[AuditRollup]: ...

    @abstractmethod
    async def archives(self) -> list[AuditArchive]: ...


class MemoryAuditSink(AuditSink):
    """In-process sink, mainly for tests."""

    def __init__(self) -> None:
        self._hot: list[tuple[AuditEntry, int]] = []
        self._warm: dict[tuple[Any, ...], AuditRollup] = {}
        self._cold: list[AuditArchive] = []
        self._seq = 0

    @property
    def entries(self) -> list[AuditEntry]:
        return [entry for entry, _ in self._hot]

    async def write(self, entry: AuditEntry) -> None:
        self._seq += 1
        self._hot.append((entry, self._seq))

    async def fetch_page(
        self, query: AuditQuery, before: PageCursor | None, limit: int
    ) -> list[tuple[AuditEntry, PageCursor]]:
        rows = sorted(self._hot, key=lambda row: (row[0].timestamp, row[1]), reverse=True)
        page: list[tuple[AuditEntry, PageCursor]] = []
        for entry, seq in rows:
            cursor = (entry.timestamp, seq)
            if before is not None and cursor >= before:
                continue
            if query.matches(entry):
                page.append((entry, cursor))
                if len(page) >= limit:
                    break
        return page

    async def roll_up(self, cutoff: datetime) -> int:
        aged = [entry for entry, _ in self._hot if entry.timestamp < cutoff]
        aggregate_entries(aged, into=self._warm)
        self._hot = [row for row in self._hot if row[0].timestamp >= cutoff]
        return len(aged)

    async def archive(self, cutoff: datetime) -> int:
        aged = [r for r in self._warm.values() if r.bucket_start < cutoff]
        archived_at = datetime.now(UTC)
        for day, rollups in sorted(bundle_by_day(aged).items()):
            self._cold.append(
                AuditArchive(day=day, rollups=[r.to_dict() for r in rollups], archived_at=archived_at)
            )
        for rollup in aged:
            del self._warm[rollup.key()]
        return len(aged)

    async def rollups(self, session_id: str | None = None) -> list[AuditRollup]:
        return [
            r
            for r in sorted(self._warm.values(), key=lambda r: r.bucket_start)
            if session_id is None or r.session_id == session_id
        ]

    async def archives(self) -> list[AuditArchive]:
        return list(self._cold)


# =============================================================================
# LOGGER
# =============================================================================


@dataclass
class AuditScope:
    """Mutable view of the entry a ``track`` block will record."""

    outcome: OutcomeStatus = OutcomeStatus.SUCCESS
    detail: dict[str, Any] = field(default_factory=dict)
    resources: list[str] = field(default_factory=list)
    session_id: str | None = None
    rollbacks: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    def set_outcome(self, outcome: OutcomeStatus, **detail: Any) -> None:
        self.outcome = outcome
        self.detail.update(detail)

    def note(self, **detail: Any) -> None:
        self.detail.update(detail)

    def on_unaudited(self, undo: Callable[[], Awaitable[Any]]) -> None:
        """Register ``undo`` to reverse the block's effect if its entry cannot be written."""
        self.rollbacks.append(undo)


class AuditLogger:
    """Records and queries audit entries."""

    def __init__(
        self,
        sink: AuditSink,
        *,
        redactor: Redactor | None = None,
        policy: BackoffPolicy | None = None,
        clock: Any = time.time,
        page_size: int = 200,
    ) -> None:
        self.sink = sink
        self.redactor = redactor or Redactor()
        self.policy = policy or BackoffPolicy(
            attempts=settings.audit_write_attempts,
            base=settings.audit_backoff_base,
            cap=settings.audit_backoff_max,
        )
        self._clock = clock
        self._page_size = page_size

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), UTC)

    def redact(self, entry: AuditEntry) -> AuditEntry:
        detail, detail_hit = self.redactor.redact(entry.detail)
        action_data, action_hit = self.redactor.redact(action_to_dict(entry.action))
        resources, resource_hit = self.redactor.redact(list(entry.resources))
        hit = detail_hit or action_hit or resource_hit
        if not hit:
            return entry
        return replace(
            entry,
            detail=detail,
            action=action_from_dict(action_data),
            resources=tuple(resources),
            redaction_applied=True,
            sensitive_data_accessed=True,
        )

    async def record(self, entry: AuditEntry) -> AuditEntry:
        """Persist ``entry`` (redacted). Returns what was actually written."""
        clean = self.redact(entry)
        try:
            await with_retries(
                lambda: self.sink.write(clean),
                self.policy,
                retry_on=(StoreUnavailable, OSError),
                label="audit write",
            )
        except (StoreUnavailable, OSError) as exc:
            raise AuditWriteFailed(f"Audit entry {clean.id} could not be written: {exc}") from exc
        return clean

    async def query(self, query: AuditQuery | None = None) -> AsyncIterator[AuditEntry]:
        """Lazily yield matching hot-tier entries, newest first."""
        query = query or AuditQuery()
        remaining = query.limit
        before: PageCursor | None = None
        while remaining is None or remaining > 0:
            size = self._page_size if remaining is None else min(self._page_size, remaining)
            page = await self.sink.fetch_page(query, before, size)
            for entry, cursor in page:
                yield entry
                before = cursor
            if remaining is not None:
                remaining -= len(page)
            if len(page) < size:
                return

    @asynccontextmanager
    async def track(
        self,
        action: Action,
        *,
        agent_id: str,
        session_id: str | None = None,
        resources: Sequence[str] = (),
        detail: dict[str, Any] | None = None,
        sensitive: bool = False,
    ) -> AsyncIterator[AuditScope]:
        """Record exactly one entry for the wrapped call, whatever its outcome."""
        scope = AuditScope(
            detail=dict(detail or {}), resources=list(resources), session_id=session_id
        )
        started = self.now()
        t0 = time.perf_counter()

        def build() -> AuditEntry:
            return AuditEntry(
                action=action,
                agent_id=agent_id,
                session_id=scope.session_id,
                outcome=scope.outcome,
                resources=tuple(scope.resources),
                detail=scope.detail,
                duration_ms=int((time.perf_counter() - t0) * 1000),
                sensitive_data_accessed=sensitive,
                timestamp=started,
            )

        try:
            yield scope
        except BaseException as exc:
            # An outcome the block already chose (denied, expired...) is kept.
            if scope.outcome == OutcomeStatus.SUCCESS:
                scope.outcome = OutcomeStatus.FAILURE
            scope.note(error_type=type(exc).__name__, error=str(exc) or repr(exc))
            await self._record_or_roll_back(build(), scope)
            raise
        await self._record_or_roll_back(build(), scope)

    async def _record_or_roll_back(self, entry: AuditEntry, scope: AuditScope) -> None:
        try:
            await self.record(entry)
        except AuditWriteFailed:
            for undo in reversed(scope.rollbacks):
                try:
                    await undo()
                except Exception:
                    logger.exception(
                        "Could not undo un-audited %s by %s", entry.action.name, entry.agent_id
                    )
            raise

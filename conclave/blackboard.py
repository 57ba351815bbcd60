"""
Shared, versioned knowledge store for a coordination session.

Keyed values use optimistic concurrency: writers pass the version they read
and get a ``VersionConflict`` back if someone else wrote first. Findings are
an append-only log and never conflict.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .audit import AuditLogger, OutcomeStatus, ToolAction
from .redaction import Redactor
from .store import STREAM_START, Store, parse_entry_id

logger = logging.getLogger(__name__)


class FindingCategory(str, Enum):
    OBSERVATION = "observation"
    HYPOTHESIS = "hypothesis"
    CONCLUSION = "conclusion"


@dataclass(frozen=True)
class Finding:
    """A fact or hypothesis posted by one worker. Never mutated once stored."""

    session_id: str
    worker_id: str
    category: FindingCategory
    content: str
    confidence: float
    evidence: tuple[str, ...] = ()
    supersedes: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime | None = None
    cursor: str | None = None

    def validate(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        FindingCategory(self.category)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "worker_id": self.worker_id,
            "category": FindingCategory(self.category).value,
            "content": self.content,
            "confidence": self.confidence,
            "evidence": list(self.evidence),
            "supersedes": self.supersedes,
        }

    @classmethod
    def from_entry(cls, entry_id: str, fields: dict[str, str]) -> Finding:
        data = json.loads(fields["finding"])
        ms, _ = parse_entry_id(entry_id)
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            worker_id=data["worker_id"],
            category=FindingCategory(data["category"]),
            content=data["content"],
            confidence=float(data["confidence"]),
            evidence=tuple(data.get("evidence") or ()),
            supersedes=data.get("supersedes"),
            # The log id is stamped by the store, so timestamps follow append order.
            timestamp=datetime.fromtimestamp(ms / 1000, UTC),
            cursor=entry_id,
        )


@dataclass(frozen=True)
class FindingFilter:
    category: FindingCategory | None = None
    worker_id: str | None = None
    min_confidence: float | None = None

    def matches(self, finding: Finding) -> bool:
        if self.category is not None and finding.category != self.category:
            return False
        if self.worker_id is not None and finding.worker_id != self.worker_id:
            return False
        if self.min_confidence is not None and finding.confidence < self.min_confidence:
            return False
        return True


@dataclass(frozen=True)
class VersionConflict:
    """Returned by ``put`` when the caller's version is stale."""

    key: str
    expected_version: int | None
    current_version: int


class Blackboard:
    """Versioned key/value state plus the findings log, scoped per session."""

    def __init__(
        self,
        store: Store,
        audit: AuditLogger,
        *,
        redactor: Redactor | None = None,
        page_size: int = 100,
    ) -> None:
        self._store = store
        self._audit = audit
        self._redactor = redactor or audit.redactor
        self._page_size = page_size

    @staticmethod
    def _key(session_id: str, key: str) -> str:
        return f"bb:{session_id}:{key}"

    @staticmethod
    def _findings_stream(session_id: str) -> str:
        return f"findings:{session_id}"

    async def put(
        self,
        session_id: str,
        key: str,
        value: Any,
        expected_version: int | None,
        *,
        agent_id: str,
    ) -> int | VersionConflict:
        """Write ``value`` if ``expected_version`` is current (``0`` = must not exist)."""
        clean, redacted = self._redactor.redact(value)
        payload = json.dumps(clean)
        async with self._audit.track(
            ToolAction("blackboard.put", {"key": key, "expected_version": expected_version}),
            agent_id=agent_id,
            session_id=session_id,
            resources=[f"blackboard:{session_id}/{key}"],
            sensitive=redacted,
        ) as scope:
            new_version = await self._store.compare_and_set(
                self._key(session_id, key), payload, expected_version
            )
            if new_version is None:
                current = await self._store.get(self._key(session_id, key))
                conflict = VersionConflict(
                    key=key,
                    expected_version=expected_version,
                    current_version=current.version if current else 0,
                )
                scope.set_outcome(OutcomeStatus.CONFLICT, current_version=conflict.current_version)
                logger.debug("Version conflict on %s/%s", session_id, key)
                return conflict
            scope.note(version=new_version)
            return new_version

    async def get(
        self, session_id: str, key: str, *, agent_id: str = "conclave"
    ) -> tuple[Any, int] | None:
        """Return ``(value, version)`` or ``None`` if the key was never written."""
        async with self._audit.track(
            ToolAction("blackboard.get", {"key": key}),
            agent_id=agent_id,
            session_id=session_id,
            resources=[f"blackboard:{session_id}/{key}"],
        ) as scope:
            current = await self._store.get(self._key(session_id, key))
            if current is None:
                scope.note(found=False)
                return None
            scope.note(version=current.version)
            return json.loads(current.value), current.version

    async def snapshot(
        self, session_id: str, keys: Sequence[str], *, agent_id: str = "conclave"
    ) -> dict[str, tuple[Any, int]]:
        """Read several keys as of one instant. Missing keys are omitted."""
        async with self._audit.track(
            ToolAction("blackboard.snapshot", {"keys": list(keys)}),
            agent_id=agent_id,
            session_id=session_id,
            resources=[f"blackboard:{session_id}/{k}" for k in keys],
        ) as scope:
            rows = await self._store.get_many([self._key(session_id, k) for k in keys])
            found = {
                key: (json.loads(row.value), row.version)
                for key, row in zip(keys, rows, strict=True)
                if row is not None
            }
            scope.note(found=len(found))
            return found

    async def append_finding(self, finding: Finding) -> str:
        """Append ``finding`` to its session's log and return its id."""
        finding.validate()
        content, content_hit = self._redactor.redact(finding.content)
        evidence, evidence_hit = self._redactor.redact(list(finding.evidence))
        clean = replace(finding, content=content, evidence=tuple(evidence))
        async with self._audit.track(
            ToolAction(
                "blackboard.append_finding",
                {"category": FindingCategory(clean.category).value, "confidence": clean.confidence},
            ),
            agent_id=clean.worker_id,
            session_id=clean.session_id,
            resources=[f"finding:{clean.id}"],
            sensitive=content_hit or evidence_hit,
        ) as scope:
            entry_id = await self._store.append(
                self._findings_stream(clean.session_id), {"finding": json.dumps(clean.to_dict())}
            )
            scope.note(cursor=entry_id)
        return clean.id

    async def list_findings(
        self,
        session_id: str,
        filter: FindingFilter | None = None,
        *,
        after: str = STREAM_START,
        limit: int | None = None,
        agent_id: str = "conclave",
    ) -> list[Finding]:
        """Findings in (timestamp, insertion) order, starting after cursor ``after``."""
        filter = filter or FindingFilter()
        async with self._audit.track(
            ToolAction("blackboard.list_findings", {"after": after, "limit": limit}),
            agent_id=agent_id,
            session_id=session_id,
            resources=[self._findings_stream(session_id)],
        ) as scope:
            stream = self._findings_stream(session_id)
            found: list[Finding] = []
            cursor = after
            while limit is None or len(found) < limit:
                entries = await self._store.read(stream, after=cursor, count=self._page_size)
                if not entries:
                    break
                for entry_id, fields in entries:
                    finding = Finding.from_entry(entry_id, fields)
                    if filter.matches(finding):
                        found.append(finding)
                    cursor = entry_id
            found.sort(key=lambda f: (f.timestamp, parse_entry_id(f.cursor or STREAM_START)))
            if limit is not None:
                found = found[:limit]
            scope.note(returned=len(found))
            return found

"""Transport-independent message envelope exchanged between workers and the platform."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class MessageKind(str, Enum):
    FINDING = "finding"
    ACTION = "action"
    REQUEST = "request"
    RESPONSE = "response"
    VOTE = "vote"


@dataclass(frozen=True)
class Message:
    """One worker message.

    ``payload`` depends on ``kind``:

    - ``finding``: ``category``, ``content``, ``confidence``, ``evidence``, ``supersedes``
    - ``vote``: ``proposal_id``, ``choice``, ``confidence``, ``reason``, ``evidence_count``
    - ``action`` / ``request``: ``operation`` plus ``args`` for that operation
    - ``response``: ``ok``, then ``result`` or ``error`` / ``error_type``
    """

    kind: MessageKind
    session_id: str
    agent_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    reply_to: str | None = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "reply_to": self.reply_to,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            session_id=data["session_id"],
            agent_id=data["agent_id"],
            kind=MessageKind(data["kind"]),
            payload=dict(data.get("payload") or {}),
            reply_to=data.get("reply_to"),
        )

    def reply(self, result: Any = None) -> Message:
        return Message(
            kind=MessageKind.RESPONSE,
            session_id=self.session_id,
            agent_id=self.agent_id,
            payload={"ok": True, "result": result},
            reply_to=self.id,
        )

    def error(self, exc: BaseException) -> Message:
        return Message(
            kind=MessageKind.RESPONSE,
            session_id=self.session_id,
            agent_id=self.agent_id,
            payload={"ok": False, "error_type": type(exc).__name__, "error": str(exc)},
            reply_to=self.id,
        )

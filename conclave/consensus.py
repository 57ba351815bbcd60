"""
Quorum voting over proposals.

A proposal, its roster and every vote live in one versioned record, so a vote
and a decision can never interleave: both are compare-and-set writes on the
same key. ``resolve`` evaluates the quorum rule over the whole current vote
set, which makes the outcome independent of the order votes arrived in.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from .audit import AuditEntry, AuditLogger, DecisionAction, OutcomeStatus, ToolAction
from .config import settings
from .errors import ProposalClosed, UnknownProposal
from .events import EventBus, EventType
from .store import Store

logger = logging.getLogger(__name__)

PROPOSALS_TOPIC = "proposals"


class QuorumKind(str, Enum):
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    THRESHOLD = "threshold"


@dataclass(frozen=True)
class QuorumRule:
    kind: QuorumKind = QuorumKind.MAJORITY
    threshold: float | None = None

    def __post_init__(self) -> None:
        if self.kind == QuorumKind.THRESHOLD:
            if self.threshold is None or not 0.0 < self.threshold <= 1.0:
                raise ValueError(f"threshold rule needs p in (0, 1], got {self.threshold}")

    @classmethod
    def majority(cls) -> QuorumRule:
        return cls(QuorumKind.MAJORITY)

    @classmethod
    def unanimous(cls) -> QuorumRule:
        return cls(QuorumKind.UNANIMOUS)

    @classmethod
    def at_least(cls, p: float) -> QuorumRule:
        return cls(QuorumKind.THRESHOLD, p)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "threshold": self.threshold}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QuorumRule:
        return cls(QuorumKind(data["kind"]), data.get("threshold"))


class VoteChoice(str, Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


class ProposalStatus(str, Enum):
    OPEN = "open"
    DECIDED = "decided"
    EXPIRED = "expired"


class Outcome(str, Enum):
    PENDING = "pending"
    YES = "yes"
    NO = "no"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Vote:
    worker_id: str
    choice: VoteChoice
    confidence: float
    reason: str = ""
    evidence_count: int = 0
    cast_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "choice": self.choice.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "evidence_count": self.evidence_count,
            "cast_at": self.cast_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Vote:
        return cls(
            worker_id=data["worker_id"],
            choice=VoteChoice(data["choice"]),
            confidence=float(data["confidence"]),
            reason=data.get("reason", ""),
            evidence_count=int(data.get("evidence_count", 0)),
            cast_at=float(data.get("cast_at", 0.0)),
        )


@dataclass(frozen=True)
class Decision:
    """Result of ``resolve``. ``outcome`` is ``pending`` until quorum or deadline."""

    proposal_id: str
    outcome: Outcome
    yes: int = 0
    no: int = 0
    abstain: int = 0
    aggregate_confidence: float = 0.0
    decided_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return self.outcome != Outcome.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "outcome": self.outcome.value,
            "yes": self.yes,
            "no": self.no,
            "abstain": self.abstain,
            "aggregate_confidence": self.aggregate_confidence,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Decision:
        decided_at = data.get("decided_at")
        return cls(
            proposal_id=data["proposal_id"],
            outcome=Outcome(data["outcome"]),
            yes=int(data.get("yes", 0)),
            no=int(data.get("no", 0)),
            abstain=int(data.get("abstain", 0)),
            aggregate_confidence=float(data.get("aggregate_confidence", 0.0)),
            decided_at=datetime.fromisoformat(decided_at) if decided_at else None,
        )


@dataclass
class Proposal:
    session_id: str
    description: str
    rule: QuorumRule
    roster: list[str]
    deadline: float
    created_by: str
    expertise: dict[str, float] = field(default_factory=dict)
    status: ProposalStatus = ProposalStatus.OPEN
    votes: dict[str, Vote] = field(default_factory=dict)
    decision: Decision | None = None
    created_at: float = 0.0
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "session_id": self.session_id,
                "description": self.description,
                "rule": self.rule.to_dict(),
                "roster": self.roster,
                "deadline": self.deadline,
                "created_by": self.created_by,
                "expertise": self.expertise,
                "status": self.status.value,
                "votes": [v.to_dict() for v in self.votes.values()],
                "decision": self.decision.to_dict() if self.decision else None,
                "created_at": self.created_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Proposal:
        data = json.loads(raw)
        votes = [Vote.from_dict(v) for v in data.get("votes") or ()]
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            description=data["description"],
            rule=QuorumRule.from_dict(data["rule"]),
            roster=list(data["roster"]),
            deadline=float(data["deadline"]),
            created_by=data["created_by"],
            expertise={k: float(v) for k, v in (data.get("expertise") or {}).items()},
            status=ProposalStatus(data["status"]),
            votes={v.worker_id: v for v in votes},
            decision=Decision.from_dict(data["decision"]) if data.get("decision") else None,
            created_at=float(data.get("created_at", 0.0)),
        )


# =============================================================================
# PURE EVALUATION
# =============================================================================


def vote_weight(vote: Vote, expertise: Mapping[str, float] | None = None) -> float:
    """Expertise factor times an evidence factor that grows with evidence count."""
    factor = (expertise or {}).get(vote.worker_id, 1.0)
    return factor * (1.0 + math.log1p(max(vote.evidence_count, 0)))


def aggregate_confidence(
    votes: Iterable[Vote], expertise: Mapping[str, float] | None = None
) -> float:
    """Weighted mean confidence of the non-abstaining votes, in [0, 1]."""
    total = 0.0
    weights = 0.0
    # Summed in a fixed order so the float result does not depend on arrival order.
    for vote in sorted(votes, key=lambda v: v.worker_id):
        if vote.choice == VoteChoice.ABSTAIN:
            continue
        weight = vote_weight(vote, expertise)
        total += weight * vote.confidence
        weights += weight
    if weights <= 0:
        return 0.0
    return min(max(total / weights, 0.0), 1.0)


def evaluate(rule: QuorumRule, votes: Iterable[Vote], roster: Sequence[str]) -> Outcome:
    """Apply ``rule`` to a vote set. Never returns ``EXPIRED``; deadlines are the caller's."""
    members = set(roster)
    cast = sorted((v for v in votes if v.worker_id in members), key=lambda v: v.worker_id)
    yes = sum(1 for v in cast if v.choice == VoteChoice.YES)
    no = sum(1 for v in cast if v.choice == VoteChoice.NO)
    missing = len(members) - len(cast)

    kind = rule.kind
    if kind == QuorumKind.MAJORITY and len(members) == 1:
        kind = QuorumKind.UNANIMOUS

    if kind == QuorumKind.UNANIMOUS:
        if no:
            return Outcome.NO
        if yes == len(members):
            return Outcome.YES
        if missing == 0:
            # Everyone voted but someone abstained.
            return Outcome.NO
        return Outcome.PENDING

    if kind == QuorumKind.MAJORITY:
        if yes > no and 2 * len(cast) >= len(members):
            return Outcome.YES
        if yes + missing <= no:
            return Outcome.NO
        return Outcome.PENDING

    if rule.threshold is None:
        raise ValueError("threshold rule has no threshold")
    yes_mass = sum(v.confidence for v in cast if v.choice == VoteChoice.YES)
    if yes_mass / len(members) >= rule.threshold:
        return Outcome.YES
    if (yes_mass + missing) / len(members) < rule.threshold:
        return Outcome.NO
    return Outcome.PENDING


def tally(votes: Iterable[Vote]) -> dict[VoteChoice, int]:
    counts = {choice: 0 for choice in VoteChoice}
    for vote in votes:
        counts[vote.choice] += 1
    return counts


# =============================================================================
# ENGINE
# =============================================================================


class ConsensusEngine:
    """Opens proposals, collects votes and resolves them exactly once."""

    def __init__(
        self,
        store: Store,
        events: EventBus,
        audit: AuditLogger,
        *,
        default_deadline: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._events = events
        self._audit = audit
        self.default_deadline = (
            default_deadline if default_deadline is not None else settings.proposal_deadline
        )
        self._clock = clock

    @staticmethod
    def _key(proposal_id: str) -> str:
        return f"proposal:{proposal_id}"

    @staticmethod
    def topic(proposal_id: str) -> str:
        return f"proposal:{proposal_id}"

    async def get(self, proposal_id: str) -> Proposal:
        current = await self._store.get(self._key(proposal_id))
        if current is None:
            raise UnknownProposal(proposal_id)
        return Proposal.from_json(current.value)

    async def open_proposal(
        self,
        session_id: str,
        description: str,
        rule: QuorumRule,
        *,
        roster: Sequence[str],
        created_by: str,
        deadline: float | None = None,
        expertise: Mapping[str, float] | None = None,
    ) -> str:
        """Open a proposal. ``deadline`` is seconds from now; the roster is fixed here."""
        if not roster:
            raise ValueError("roster must name at least one voter")
        now = self._clock()
        proposal = Proposal(
            session_id=session_id,
            description=description,
            rule=rule,
            roster=list(dict.fromkeys(roster)),
            deadline=now + (self.default_deadline if deadline is None else deadline),
            created_by=created_by,
            expertise=dict(expertise or {}),
            created_at=now,
        )
        async with self._audit.track(
            ToolAction("consensus.open_proposal", {"rule": rule.to_dict(), "roster": proposal.roster}),
            agent_id=created_by,
            session_id=session_id,
            resources=[f"proposal:{proposal.id}"],
        ):
            await self._store.compare_and_set(self._key(proposal.id), proposal.to_json(), 0)
            await self._events.publish(
                session_id,
                PROPOSALS_TOPIC,
                EventType.PROPOSAL_OPENED,
                {
                    "proposal_id": proposal.id,
                    "description": description,
                    "rule": rule.to_dict(),
                    "roster": proposal.roster,
                    "deadline": proposal.deadline,
                },
                agent_id=created_by,
            )
        logger.info("Proposal %s opened in %s (%s)", proposal.id, session_id, rule.kind.value)
        return proposal.id

    async def cast_vote(
        self,
        proposal_id: str,
        worker_id: str,
        choice: VoteChoice,
        confidence: float,
        reason: str = "",
        *,
        evidence_count: int = 0,
    ) -> None:
        """Record (or replace) ``worker_id``'s vote. Raises ``ProposalClosed`` once closed."""
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {confidence}")
        clean_reason, redacted = self._audit.redactor.redact_text(reason)
        async with self._audit.track(
            ToolAction("consensus.cast_vote", {"choice": VoteChoice(choice).value, "confidence": confidence}),
            agent_id=worker_id,
            resources=[f"proposal:{proposal_id}"],
            sensitive=redacted,
        ) as scope:
            key = self._key(proposal_id)
            while True:
                current = await self._store.get(key)
                if current is None:
                    raise UnknownProposal(proposal_id)
                proposal = Proposal.from_json(current.value)
                scope.session_id = proposal.session_id
                if proposal.status != ProposalStatus.OPEN or self._clock() >= proposal.deadline:
                    status = (
                        proposal.status.value
                        if proposal.status != ProposalStatus.OPEN
                        else ProposalStatus.EXPIRED.value
                    )
                    scope.set_outcome(OutcomeStatus.DENIED, status=status)
                    raise ProposalClosed(proposal_id, status)
                if worker_id not in proposal.roster:
                    raise ValueError(f"{worker_id!r} is not on the roster of proposal {proposal_id}")
                proposal.votes[worker_id] = Vote(
                    worker_id=worker_id,
                    choice=VoteChoice(choice),
                    confidence=confidence,
                    reason=clean_reason,
                    evidence_count=evidence_count,
                    cast_at=self._clock(),
                )
                if await self._store.compare_and_set(key, proposal.to_json(), current.version) is not None:
                    break

            await self._events.publish(
                proposal.session_id,
                self.topic(proposal_id),
                EventType.VOTE_CAST,
                {"proposal_id": proposal_id, "choice": VoteChoice(choice).value, "confidence": confidence},
                agent_id=worker_id,
            )

    async def resolve(self, proposal_id: str, *, agent_id: str = "conclave") -> Decision:
        """Decide the proposal if its rule is satisfied (or its deadline passed)."""
        key = self._key(proposal_id)
        async with self._audit.track(
            ToolAction("consensus.resolve"),
            agent_id=agent_id,
            resources=[f"proposal:{proposal_id}"],
        ) as scope:
            while True:
                current = await self._store.get(key)
                if current is None:
                    raise UnknownProposal(proposal_id)
                proposal = Proposal.from_json(current.value)
                scope.session_id = proposal.session_id
                if proposal.decision is not None:
                    scope.note(outcome=proposal.decision.outcome.value, already_decided=True)
                    return proposal.decision

                votes = list(proposal.votes.values())
                outcome = evaluate(proposal.rule, votes, proposal.roster)
                if outcome == Outcome.PENDING and self._clock() >= proposal.deadline:
                    outcome = Outcome.EXPIRED
                counts = tally(votes)
                decision = Decision(
                    proposal_id=proposal_id,
                    outcome=outcome,
                    yes=counts[VoteChoice.YES],
                    no=counts[VoteChoice.NO],
                    abstain=counts[VoteChoice.ABSTAIN],
                    aggregate_confidence=aggregate_confidence(votes, proposal.expertise),
                    decided_at=(
                        datetime.fromtimestamp(self._clock(), UTC)
                        if outcome != Outcome.PENDING
                        else None
                    ),
                )
                scope.note(
                    outcome=outcome.value,
                    aggregate_confidence=decision.aggregate_confidence,
                    yes=decision.yes,
                    no=decision.no,
                    abstain=decision.abstain,
                )
                if outcome == Outcome.PENDING:
                    return decision

                proposal.decision = decision
                proposal.status = (
                    ProposalStatus.EXPIRED if outcome == Outcome.EXPIRED else ProposalStatus.DECIDED
                )
                if await self._store.compare_and_set(key, proposal.to_json(), current.version) is not None:
                    break

            if outcome == Outcome.EXPIRED:
                scope.set_outcome(OutcomeStatus.EXPIRED)
            await self._audit.record(
                AuditEntry(
                    action=DecisionAction(
                        "consensus.decision",
                        proposal_id,
                        outcome.value,
                        decision.aggregate_confidence,
                    ),
                    agent_id=agent_id,
                    session_id=proposal.session_id,
                    outcome=(
                        OutcomeStatus.EXPIRED if outcome == Outcome.EXPIRED else OutcomeStatus.SUCCESS
                    ),
                    resources=(f"proposal:{proposal_id}",),
                    detail=decision.to_dict(),
                    timestamp=self._audit.now(),
                )
            )
            await self._events.publish(
                proposal.session_id,
                self.topic(proposal_id),
                EventType.PROPOSAL_EXPIRED if outcome == Outcome.EXPIRED else EventType.PROPOSAL_DECIDED,
                decision.to_dict(),
                agent_id=agent_id,
            )
            logger.info(
                "Proposal %s resolved %s (confidence %.3f)",
                proposal_id,
                outcome.value,
                decision.aggregate_confidence,
            )
            return decision

"""
Conclave: multi-agent coordination and audit platform

Shared state, leased locks, a task queue, durable event topics and quorum
voting for independent workers, with every action recorded in an audit trail
backed by Redis and PostgreSQL.
"""

__version__ = "0.1.0"

# Audit
from conclave.audit import (
    ActionKind,
    AuditEntry,
    AuditLogger,
    AuditQuery,
    DecisionAction,
    ErrorAction,
    ExternalAction,
    MemoryAuditSink,
    OutcomeStatus,
    SkillAction,
    ToolAction,
)

# Components
from conclave.blackboard import Blackboard, Finding, FindingCategory, FindingFilter, VersionConflict

# Configuration
from conclave.config import Settings
from conclave.consensus import (
    ConsensusEngine,
    Decision,
    Outcome,
    QuorumKind,
    QuorumRule,
    VoteChoice,
)

# Errors
from conclave.errors import (
    AuditWriteFailed,
    ConclaveError,
    LockNotAcquired,
    NotHolder,
    ProposalClosed,
    SessionNotActive,
    StoreUnavailable,
)
from conclave.events import Event, EventBus, EventType
from conclave.locks import LockManager, LockResult
from conclave.messages import Message, MessageKind
from conclave.redaction import Redactor

# Sessions
from conclave.session import Coordinator, Session, SessionHandle, SessionStatus

# Stores
from conclave.store import MemoryStore, RedisStore, Store
from conclave.tasks import ClaimState, Task, TaskFilter, TaskQueue, TaskStatus

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Audit
    "ActionKind",
    "AuditEntry",
    "AuditLogger",
    "AuditQuery",
    "DecisionAction",
    "ErrorAction",
    "ExternalAction",
    "MemoryAuditSink",
    "OutcomeStatus",
    "Redactor",
    "SkillAction",
    "ToolAction",
    # Blackboard
    "Blackboard",
    "Finding",
    "FindingCategory",
    "FindingFilter",
    "VersionConflict",
    # Locks
    "LockManager",
    "LockResult",
    # Tasks
    "ClaimState",
    "Task",
    "TaskFilter",
    "TaskQueue",
    "TaskStatus",
    # Events
    "Event",
    "EventBus",
    "EventType",
    # Consensus
    "ConsensusEngine",
    "Decision",
    "Outcome",
    "QuorumKind",
    "QuorumRule",
    "VoteChoice",
    # Sessions
    "Coordinator",
    "Message",
    "MessageKind",
    "Session",
    "SessionHandle",
    "SessionStatus",
    # Stores
    "MemoryStore",
    "RedisStore",
    "Store",
    # Errors
    "AuditWriteFailed",
    "ConclaveError",
    "LockNotAcquired",
    "NotHolder",
    "ProposalClosed",
    "SessionNotActive",
    "StoreUnavailable",
]

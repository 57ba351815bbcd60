"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from conclave.audit import AuditEntry, AuditLogger, MemoryAuditSink
from conclave.consensus import ConsensusEngine
from conclave.errors import StoreUnavailable
from conclave.events import EventBus
from conclave.locks import LockManager
from conclave.redaction import Redactor
from conclave.retry import BackoffPolicy
from conclave.session import Coordinator
from conclave.store import MemoryStore
from conclave.tasks import TaskQueue

NO_WAIT = BackoffPolicy(attempts=3, base=0.0, cap=0.0)

TEST_PATTERNS = [
    r"(?i)(password|secret|token|api[_-]?key)\s*[=:]\s*\S+",
    r"AKIA[0-9A-Z]{16}",
    r"sk-[A-Za-z0-9]{20,}",
]


class FakeClock:
    """Manually advanced wall clock, in epoch seconds."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class OutageSink(MemoryAuditSink):
    """Memory sink that can be taken offline, entirely or for some actions."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False
        self.failing_actions: set[str] = set()

    async def write(self, entry: AuditEntry) -> None:
        if self.down or entry.action.name in self.failing_actions:
            raise StoreUnavailable("audit database unreachable")
        await super().write(entry)


@pytest.fixture
def no_wait() -> BackoffPolicy:
    return NO_WAIT


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock, poll_interval=0.005)


@pytest.fixture
def sink() -> OutageSink:
    return OutageSink()


@pytest.fixture
def redactor() -> Redactor:
    return Redactor(TEST_PATTERNS, "[REDACTED]")


@pytest.fixture
def audit(sink: MemoryAuditSink, redactor: Redactor, clock: FakeClock) -> AuditLogger:
    return AuditLogger(sink, redactor=redactor, policy=NO_WAIT, clock=clock, page_size=3)


@pytest.fixture
def locks(store: MemoryStore, audit: AuditLogger, clock: FakeClock) -> LockManager:
    return LockManager(
        store, audit, default_ttl=30.0, poll_interval=0.005, retry_policy=NO_WAIT, clock=clock
    )


@pytest.fixture
def tasks(
    store: MemoryStore, locks: LockManager, audit: AuditLogger, clock: FakeClock
) -> TaskQueue:
    return TaskQueue(
        store, locks, audit, claim_ttl=60.0, retry_budget=2, retry_policy=NO_WAIT, clock=clock
    )


@pytest.fixture
def events(store: MemoryStore, audit: AuditLogger) -> EventBus:
    return EventBus(store, audit, block_ms=20, page_size=2)


@pytest.fixture
def consensus(
    store: MemoryStore, events: EventBus, audit: AuditLogger, clock: FakeClock
) -> ConsensusEngine:
    return ConsensusEngine(store, events, audit, default_deadline=300.0, clock=clock)


@pytest_asyncio.fixture
async def coordinator(
    store: MemoryStore, audit: AuditLogger, clock: FakeClock
) -> AsyncGenerator[Coordinator]:
    coordinator = Coordinator(
        store,
        audit,
        session_ttl=3600.0,
        lock_ttl=30.0,
        claim_ttl=60.0,
        retry_budget=2,
        proposal_deadline=300.0,
        clock=clock,
    )
    yield coordinator
    await coordinator.close()


@pytest.fixture
def mock_database_url() -> str:
    """In-memory sqlite URL for the SQL audit sink tests."""
    return "sqlite+aiosqlite:///:memory:"

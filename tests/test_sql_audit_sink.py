from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from conclave.audit import AuditEntry, AuditLogger, AuditQuery, DecisionAction, OutcomeStatus, ToolAction
from conclave.db import SqlAuditSink, init_db
from conclave.retention import RetentionPolicy, run_retention

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def sql_sink(tmp_path) -> AsyncGenerator[SqlAuditSink]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    await init_db(engine)
    yield SqlAuditSink(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.mark.asyncio
async def test_entries_round_trip_through_the_database(sql_sink: SqlAuditSink, redactor) -> None:
    logger = AuditLogger(sql_sink, redactor=redactor)
    await logger.record(
        AuditEntry(
            action=DecisionAction("consensus.decision", proposal_id="p1", outcome="yes", confidence=0.77),
            agent_id="w1",
            session_id="s1",
            resources=("proposal:p1",),
            detail={"note": "secret=swordfish"},
            timestamp=NOW,
        )
    )

    [entry] = [e async for e in logger.query()]
    assert isinstance(entry.action, DecisionAction)
    assert entry.action.confidence == 0.77
    assert entry.timestamp == NOW
    assert entry.resources == ("proposal:p1",)
    assert entry.redaction_applied
    assert "swordfish" not in entry.detail["note"]


@pytest.mark.asyncio
async def test_keyset_paging_is_newest_first(sql_sink: SqlAuditSink) -> None:
    for i in range(5):
        await sql_sink.write(
            AuditEntry(
                action=ToolAction("tasks.claim"),
                agent_id="w1" if i % 2 else "w2",
                session_id="s1",
                resources=(f"task:{i}",),
                timestamp=NOW + timedelta(seconds=i // 2),
            )
        )

    logger = AuditLogger(sql_sink, page_size=2)
    entries = [e async for e in logger.query(AuditQuery(session_id="s1"))]
    assert [e.resources[0] for e in entries] == ["task:4", "task:3", "task:2", "task:1", "task:0"]

    w1 = [e async for e in logger.query(AuditQuery(agent_id="w1"))]
    assert [e.resources[0] for e in w1] == ["task:3", "task:1"]

    by_resource = [e async for e in logger.query(AuditQuery(resource="task:2"))]
    assert len(by_resource) == 1


@pytest.mark.asyncio
async def test_retention_moves_rows_between_tiers(sql_sink: SqlAuditSink) -> None:
    policy = RetentionPolicy(hot=timedelta(days=7), warm=timedelta(days=30))
    for days_ago, outcome in ((10, OutcomeStatus.SUCCESS), (10, OutcomeStatus.SUCCESS), (45, OutcomeStatus.FAILURE)):
        await sql_sink.write(
            AuditEntry(
                action=ToolAction("locks.acquire"),
                agent_id="w1",
                session_id="s1",
                outcome=outcome,
                duration_ms=5,
                timestamp=(NOW - timedelta(days=days_ago)).replace(minute=0),
            )
        )
    await sql_sink.write(AuditEntry(action=ToolAction("locks.acquire"), agent_id="w1", timestamp=NOW))

    report = await run_retention(sql_sink, policy, now=NOW)
    assert report.rolled_up == 3
    assert report.archived == 1

    [rollup] = await sql_sink.rollups("s1")
    assert rollup.count == 2
    assert rollup.total_duration_ms == 10
    [archive] = await sql_sink.archives()
    assert archive.day == (NOW - timedelta(days=45)).date()
    assert archive.rollups[0]["failure_count"] == 1

    # A second pass over new aged entries merges into the existing rollup.
    await sql_sink.write(
        AuditEntry(
            action=ToolAction("locks.acquire"),
            agent_id="w1",
            session_id="s1",
            duration_ms=5,
            timestamp=(NOW - timedelta(days=10)).replace(minute=30),
        )
    )
    await run_retention(sql_sink, policy, now=NOW)
    [rollup] = await sql_sink.rollups("s1")
    assert rollup.count == 3

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest
from click.testing import CliRunner

from conclave import __version__
from conclave.audit import AuditEntry, MemoryAuditSink, OutcomeStatus, ToolAction
from conclave.cli import main

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def filled_sink(monkeypatch) -> MemoryAuditSink:
    sink = MemoryAuditSink()

    async def fill() -> None:
        for i, outcome in enumerate((OutcomeStatus.SUCCESS, OutcomeStatus.DENIED, OutcomeStatus.SUCCESS)):
            await sink.write(
                AuditEntry(
                    action=ToolAction("locks.acquire"),
                    agent_id=f"w{i}",
                    session_id="s1",
                    outcome=outcome,
                    resources=("lock:db",),
                    duration_ms=3,
                    timestamp=NOW + timedelta(seconds=i),
                )
            )

    asyncio.run(fill())
    monkeypatch.setattr("conclave.db.SqlAuditSink", lambda: sink)
    return sink


def test_version() -> None:
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_audit_export_writes_json_lines(filled_sink: MemoryAuditSink) -> None:
    result = CliRunner().invoke(main, ["audit", "export", "--outcome", "success"])

    assert result.exit_code == 0, result.output
    rows = [json.loads(line) for line in result.output.splitlines()]
    assert [r["agent_id"] for r in rows] == ["w2", "w0"]
    assert set(rows[0]) == {
        "id",
        "timestamp",
        "agent_id",
        "session_id",
        "action_type",
        "action_name",
        "outcome_status",
        "resources_accessed",
        "sensitive_data_accessed",
        "duration_ms",
    }
    assert rows[0]["resources_accessed"] == ["lock:db"]


def test_audit_export_to_file(filled_sink: MemoryAuditSink, tmp_path) -> None:
    target = tmp_path / "audit.jsonl"
    result = CliRunner().invoke(main, ["audit", "export", "--agent", "w1", "-o", str(target)])

    assert result.exit_code == 0, result.output
    assert "Exported 1 entries" in result.output
    [row] = [json.loads(line) for line in target.read_text().splitlines()]
    assert row["outcome_status"] == "denied"


def test_audit_query_renders_a_table(filled_sink: MemoryAuditSink) -> None:
    result = CliRunner().invoke(main, ["audit", "query", "--session", "s1", "--limit", "2"])

    assert result.exit_code == 0, result.output
    assert "Audit Log" in result.output
    assert "w2" in result.output
    assert "w0" not in result.output


def test_retention_run_reports_counts(filled_sink: MemoryAuditSink) -> None:
    result = CliRunner().invoke(main, ["retention", "run", "--hot-hours", "1"])

    assert result.exit_code == 0, result.output
    assert "Rolled up: 3" in result.output
    assert filled_sink.entries == []

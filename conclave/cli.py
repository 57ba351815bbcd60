"""Operator CLI for the coordination platform."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .audit import ActionKind, AuditLogger, AuditQuery, OutcomeStatus
from .config import settings
from .retention import RetentionPolicy, run_retention
from .tasks import TaskStatus

console = Console()

AUDIT_TABLES = {"audit_log", "audit_rollup", "audit_archive"}


def _parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _audit_query(
    session_id: str | None,
    agent_id: str | None,
    action_type: str | None,
    outcome: str | None,
    resource: str | None,
    since: str | None,
    until: str | None,
    limit: int | None,
) -> AuditQuery:
    return AuditQuery(
        session_id=session_id,
        agent_id=agent_id,
        action_type=ActionKind(action_type) if action_type else None,
        outcome=OutcomeStatus(outcome) if outcome else None,
        resource=resource,
        since=_parse_time(since),
        until=_parse_time(until),
        limit=limit,
    )


def audit_filters(fn):
    """Shared filter options for the audit commands."""
    options = [
        click.option("--session", "session_id", default=None, help="Session id"),
        click.option("--agent", "agent_id", default=None, help="Agent id"),
        click.option(
            "--action-type",
            type=click.Choice([k.value for k in ActionKind]),
            default=None,
            help="Action type",
        ),
        click.option(
            "--outcome",
            type=click.Choice([o.value for o in OutcomeStatus]),
            default=None,
            help="Outcome status",
        ),
        click.option("--resource", default=None, help="Resource reference, e.g. lock:repo/main"),
        click.option("--since", default=None, help="ISO timestamp (inclusive)"),
        click.option("--until", default=None, help="ISO timestamp (exclusive)"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Multi-agent coordination and audit platform.

    Operator commands for the audit trail, retention tiers, locks and tasks.
    """
    pass


@main.command(name="init-db")
def init_db() -> None:
    """Create the audit tables (development; use alembic in production)."""
    asyncio.run(db.init_db())
    console.print("[green]Audit tables created[/green]")


@main.command(name="schema-check", help="Check audit schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        async with db.get_engine().connect() as conn:
            tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        missing = AUDIT_TABLES - tables
        if missing:
            console.print(f"[red]Missing audit tables: {sorted(missing)}[/red]")
            console.print("Run: `alembic upgrade head`")
            raise SystemExit(1)
        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def db_info() -> None:
    """Show database and store connection info."""
    console.print(
        Panel(
            f"Host: {settings.db_host}\n"
            f"Port: {settings.db_port}\n"
            f"Database: {settings.db_name}\n"
            f"User: {settings.db_user}\n"
            f"Redis: {settings.redis_url}",
            title="Conclave Configuration",
        )
    )


@main.group()
def audit() -> None:
    """Query and export the audit trail."""
    pass


@audit.command(name="query")
@audit_filters
@click.option("--limit", default=50, help="Number of entries to show")
def audit_query(
    session_id: str | None,
    agent_id: str | None,
    action_type: str | None,
    outcome: str | None,
    resource: str | None,
    since: str | None,
    until: str | None,
    limit: int,
) -> None:
    """Show recent audit entries, newest first."""

    async def show() -> None:
        logger = AuditLogger(db.SqlAuditSink())
        query = _audit_query(session_id, agent_id, action_type, outcome, resource, since, until, limit)

        table = Table(title="Audit Log")
        table.add_column("Timestamp", style="cyan")
        table.add_column("Agent")
        table.add_column("Session")
        table.add_column("Action")
        table.add_column("Outcome")
        table.add_column("Resources")
        table.add_column("ms", justify="right")

        count = 0
        async for entry in logger.query(query):
            color = "green" if entry.outcome == OutcomeStatus.SUCCESS else "yellow"
            table.add_row(
                entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                entry.agent_id,
                (entry.session_id or "-")[:8],
                f"{entry.action.kind.value}:{entry.action.name}",
                f"[{color}]{entry.outcome.value}[/{color}]",
                ", ".join(entry.resources) or "-",
                str(entry.duration_ms) if entry.duration_ms is not None else "-",
            )
            count += 1

        if not count:
            console.print("[yellow]No audit entries found[/yellow]")
            return
        console.print(table)

    asyncio.run(show())


@audit.command(name="export")
@audit_filters
@click.option("--limit", default=None, type=int, help="Maximum number of entries")
@click.option("--output", "-o", default="-", help="Output file (default: stdout)")
def audit_export(
    session_id: str | None,
    agent_id: str | None,
    action_type: str | None,
    outcome: str | None,
    resource: str | None,
    since: str | None,
    until: str | None,
    limit: int | None,
    output: str,
) -> None:
    """Export audit entries as JSON lines in the flat export format."""

    async def export() -> int:
        logger = AuditLogger(db.SqlAuditSink())
        query = _audit_query(session_id, agent_id, action_type, outcome, resource, since, until, limit)
        count = 0
        with click.open_file(output, "w") as fh:
            async for entry in logger.query(query):
                fh.write(json.dumps(entry.to_export()) + "\n")
                count += 1
        return count

    count = asyncio.run(export())
    if output != "-":
        console.print(f"[green]Exported {count} entries to {output}[/green]")


@main.group()
def retention() -> None:
    """Audit retention tiers."""
    pass


@retention.command(name="run")
@click.option("--hot-hours", default=settings.audit_hot_retention_hours, help="Hot tier window")
@click.option("--warm-hours", default=settings.audit_warm_retention_hours, help="Warm tier window")
def retention_run(hot_hours: int, warm_hours: int) -> None:
    """Roll aged hot entries up to the warm tier and archive aged warm rollups."""
    policy = RetentionPolicy(hot=timedelta(hours=hot_hours), warm=timedelta(hours=warm_hours))
    report = asyncio.run(run_retention(db.SqlAuditSink(), policy))
    console.print(
        Panel(
            f"Rolled up: {report.rolled_up} hot entries (before {report.hot_cutoff:%Y-%m-%d %H:%M})\n"
            f"Archived: {report.archived} warm rollups (before {report.warm_cutoff:%Y-%m-%d %H:%M})",
            title="Retention",
        )
    )


@main.group()
def locks() -> None:
    """Inspect leases."""
    pass


@locks.command(name="show")
@click.argument("resource_ids", nargs=-1, required=True)
def locks_show(resource_ids: tuple[str, ...]) -> None:
    """Show the current holder of each RESOURCE_ID."""

    async def show() -> None:
        from .session import Coordinator

        coordinator = Coordinator.from_settings()
        try:
            table = Table(title="Locks")
            table.add_column("Resource", style="cyan")
            table.add_column("Holder")
            table.add_column("Expires in", justify="right")
            for resource_id in resource_ids:
                info = await coordinator.locks.holder(resource_id)
                if info is None:
                    table.add_row(resource_id, "[dim]free[/dim]", "-")
                else:
                    table.add_row(resource_id, info.holder_id, f"{info.ttl_ms / 1000:.1f}s")
            console.print(table)
        finally:
            await coordinator.close()

    asyncio.run(show())


@main.group()
def tasks() -> None:
    """Inspect the task queue."""
    pass


@tasks.command(name="list")
@click.argument("session_id")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in TaskStatus]),
    default=None,
    help="Filter by status",
)
def tasks_list(session_id: str, status_filter: str | None) -> None:
    """List the tasks of SESSION_ID."""

    async def show() -> None:
        from .session import Coordinator

        coordinator = Coordinator.from_settings()
        try:
            found = await coordinator.tasks.list(
                session_id, TaskStatus(status_filter) if status_filter else None
            )
        finally:
            await coordinator.close()

        if not found:
            console.print("[yellow]No tasks found[/yellow]")
            return

        table = Table(title=f"Tasks in {session_id}")
        table.add_column("Id", style="cyan")
        table.add_column("Type")
        table.add_column("Priority", justify="right")
        table.add_column("Status")
        table.add_column("Assigned to")
        table.add_column("Failures", justify="right")
        for t in sorted(found, key=lambda t: t.sort_key):
            table.add_row(
                t.id[:8],
                t.type,
                str(t.priority),
                t.status.value,
                t.assigned_to or "-",
                f"{t.failures}/{t.max_retries + 1}",
            )
        console.print(table)

    asyncio.run(show())


if __name__ == "__main__":
    main()

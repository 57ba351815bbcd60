"""Async database connection and the SQL-backed audit sink."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .audit import (
    AuditArchive,
    AuditEntry,
    AuditQuery,
    AuditRollup,
    AuditSink,
    OutcomeStatus,
    PageCursor,
    action_from_dict,
    action_to_dict,
    aggregate_entries,
    bundle_by_day,
)
from .config import settings
from .errors import (
    SchemaNotInitializedError,
    StoreUnavailable,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import AuditArchiveRecord, AuditLogRecord, AuditRollupRecord, Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Lazily create the shared async engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (for development/testing)."""
    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession]:
    """Async context manager for database sessions."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                raise SchemaNotInitializedError(schema_not_initialized_message(exc)) from exc
            if isinstance(exc, OperationalError) or (
                isinstance(exc, DBAPIError) and exc.connection_invalidated
            ):
                raise StoreUnavailable(f"Audit database unavailable: {exc}") from exc
            raise


def _utc(ts: datetime) -> datetime:
    # sqlite hands back naive datetimes; everything is stored as UTC.
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def _to_entry(row: AuditLogRecord) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        timestamp=_utc(row.timestamp),
        agent_id=row.agent_id,
        session_id=row.session_id,
        action=action_from_dict(row.action_payload),
        outcome=OutcomeStatus(row.outcome_status),
        resources=tuple(row.resources_accessed or ()),
        detail=row.detail or {},
        duration_ms=row.duration_ms,
        sensitive_data_accessed=row.sensitive_data_accessed,
        redaction_applied=row.redaction_applied,
    )


def _to_rollup(row: AuditRollupRecord) -> AuditRollup:
    return AuditRollup(
        bucket_start=_utc(row.bucket_start),
        session_id=row.session_id,
        agent_id=row.agent_id,
        action_type=row.action_type,
        action_name=row.action_name,
        outcome_status=row.outcome_status,
        count=row.count,
        failure_count=row.failure_count,
        total_duration_ms=row.total_duration_ms,
        redacted_count=row.redacted_count,
    )


class SqlAuditSink(AuditSink):
    """Audit sink on Postgres (or any SQLAlchemy async backend)."""

    def __init__(self, factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = factory

    async def write(self, entry: AuditEntry) -> None:
        async with get_session(self._factory) as session:
            session.add(
                AuditLogRecord(
                    id=entry.id,
                    timestamp=entry.timestamp,
                    agent_id=entry.agent_id,
                    session_id=entry.session_id,
                    action_type=entry.action.kind.value,
                    action_name=entry.action.name,
                    action_payload=action_to_dict(entry.action),
                    outcome_status=entry.outcome.value,
                    resources_accessed=list(entry.resources),
                    sensitive_data_accessed=entry.sensitive_data_accessed,
                    redaction_applied=entry.redaction_applied,
                    duration_ms=entry.duration_ms,
                    detail=entry.detail,
                )
            )

    async def fetch_page(
        self, query: AuditQuery, before: PageCursor | None, limit: int
    ) -> list[tuple[AuditEntry, PageCursor]]:
        stmt = select(AuditLogRecord)
        filters: list[Any] = []
        if query.session_id is not None:
            filters.append(AuditLogRecord.session_id == query.session_id)
        if query.agent_id is not None:
            filters.append(AuditLogRecord.agent_id == query.agent_id)
        if query.action_type is not None:
            filters.append(AuditLogRecord.action_type == query.action_type.value)
        if query.action_name is not None:
            filters.append(AuditLogRecord.action_name == query.action_name)
        if query.outcome is not None:
            filters.append(AuditLogRecord.outcome_status == query.outcome.value)
        if query.since is not None:
            filters.append(AuditLogRecord.timestamp >= query.since)
        if query.until is not None:
            filters.append(AuditLogRecord.timestamp < query.until)
        if before is not None:
            ts, seq = before
            filters.append(
                or_(
                    AuditLogRecord.timestamp < ts,
                    and_(AuditLogRecord.timestamp == ts, AuditLogRecord.seq < seq),
                )
            )
        if filters:
            stmt = stmt.where(*filters)
        stmt = stmt.order_by(AuditLogRecord.timestamp.desc(), AuditLogRecord.seq.desc())

        page: list[tuple[AuditEntry, PageCursor]] = []
        if query.resource is None:
            stmt = stmt.limit(limit)
        async with get_session(self._factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
        for row in rows:
            entry = _to_entry(row)
            # Resource membership lives in a JSON list, so it is checked here.
            if query.resource is not None and query.resource not in entry.resources:
                continue
            page.append((entry, (row.timestamp, row.seq)))
            if len(page) >= limit:
                break
        return page

    async def roll_up(self, cutoff: datetime) -> int:
        async with get_session(self._factory) as session:
            rows = (
                await session.execute(select(AuditLogRecord).where(AuditLogRecord.timestamp < cutoff))
            ).scalars().all()
            if not rows:
                return 0
            for rollup in aggregate_entries(_to_entry(row) for row in rows).values():
                existing = (
                    await session.execute(
                        select(AuditRollupRecord).where(
                            AuditRollupRecord.bucket_start == rollup.bucket_start,
                            AuditRollupRecord.session_id == rollup.session_id,
                            AuditRollupRecord.agent_id == rollup.agent_id,
                            AuditRollupRecord.action_type == rollup.action_type,
                            AuditRollupRecord.action_name == rollup.action_name,
                            AuditRollupRecord.outcome_status == rollup.outcome_status,
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    session.add(
                        AuditRollupRecord(
                            bucket_start=rollup.bucket_start,
                            session_id=rollup.session_id,
                            agent_id=rollup.agent_id,
                            action_type=rollup.action_type,
                            action_name=rollup.action_name,
                            outcome_status=rollup.outcome_status,
                            count=rollup.count,
                            failure_count=rollup.failure_count,
                            total_duration_ms=rollup.total_duration_ms,
                            redacted_count=rollup.redacted_count,
                        )
                    )
                else:
                    existing.count += rollup.count
                    existing.failure_count += rollup.failure_count
                    existing.total_duration_ms += rollup.total_duration_ms
                    existing.redacted_count += rollup.redacted_count
            await session.execute(delete(AuditLogRecord).where(AuditLogRecord.timestamp < cutoff))
            return len(rows)

    async def archive(self, cutoff: datetime) -> int:
        async with get_session(self._factory) as session:
            rows = (
                await session.execute(
                    select(AuditRollupRecord).where(AuditRollupRecord.bucket_start < cutoff)
                )
            ).scalars().all()
            if not rows:
                return 0
            archived_at = datetime.now(UTC)
            for day, rollups in sorted(bundle_by_day(_to_rollup(row) for row in rows).items()):
                session.add(
                    AuditArchiveRecord(
                        day=day,
                        rollups=[r.to_dict() for r in rollups],
                        archived_at=archived_at,
                    )
                )
            await session.execute(
                delete(AuditRollupRecord).where(AuditRollupRecord.bucket_start < cutoff)
            )
            return len(rows)

    async def rollups(self, session_id: str | None = None) -> list[AuditRollup]:
        stmt = select(AuditRollupRecord).order_by(AuditRollupRecord.bucket_start)
        if session_id is not None:
            stmt = stmt.where(AuditRollupRecord.session_id == session_id)
        async with get_session(self._factory) as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_rollup(row) for row in rows]

    async def archives(self) -> list[AuditArchive]:
        async with get_session(self._factory) as session:
            rows = (
                await session.execute(select(AuditArchiveRecord).order_by(AuditArchiveRecord.day))
            ).scalars().all()
        return [
            AuditArchive(day=row.day, rollups=list(row.rollups), archived_at=_utc(row.archived_at))
            for row in rows
        ]

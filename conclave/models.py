"""SQLAlchemy models for the audit tiers."""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Postgres in production, sqlite for local tests.
PortableJSON = JSON().with_variant(JSONB(), "postgresql")
PortableBigInt = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: PortableJSON,
        list[str]: PortableJSON,
    }


# =============================================================================
# HOT TIER
# =============================================================================


class AuditLogRecord(Base):
    """Full-detail audit entries. Append-only."""

    __tablename__ = "audit_log"

    seq: Mapped[int] = mapped_column(PortableBigInt, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    agent_id: Mapped[str] = mapped_column(String, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action_type: Mapped[str] = mapped_column(String, nullable=False)  # ActionKind value
    action_name: Mapped[str] = mapped_column(String, nullable=False)
    action_payload: Mapped[dict[str, Any]] = mapped_column(PortableJSON, default=dict)
    outcome_status: Mapped[str] = mapped_column(String, nullable=False)
    resources_accessed: Mapped[list[str]] = mapped_column(PortableJSON, default=list)
    sensitive_data_accessed: Mapped[bool] = mapped_column(Boolean, default=False)
    redaction_applied: Mapped[bool] = mapped_column(Boolean, default=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detail: Mapped[dict[str, Any]] = mapped_column(PortableJSON, default=dict)

    __table_args__ = (
        Index("ix_audit_log_timestamp_seq", "timestamp", "seq"),
        Index("ix_audit_log_session", "session_id"),
        Index("ix_audit_log_agent", "agent_id"),
    )


# =============================================================================
# WARM TIER
# =============================================================================


class AuditRollupRecord(Base):
    """Hourly aggregates of aged-out hot entries."""

    __tablename__ = "audit_rollup"

    id: Mapped[int] = mapped_column(PortableBigInt, primary_key=True, autoincrement=True)
    bucket_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_id: Mapped[str] = mapped_column(String, nullable=False)
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    action_name: Mapped[str] = mapped_column(String, nullable=False)
    outcome_status: Mapped[str] = mapped_column(String, nullable=False)
    count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    total_duration_ms: Mapped[int] = mapped_column(PortableBigInt, default=0)
    redacted_count: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        UniqueConstraint(
            "bucket_start",
            "session_id",
            "agent_id",
            "action_type",
            "action_name",
            "outcome_status",
            name="uq_audit_rollup_bucket",
        ),
    )


# =============================================================================
# COLD TIER
# =============================================================================


class AuditArchiveRecord(Base):
    """Daily bundles of aged-out rollups."""

    __tablename__ = "audit_archive"

    id: Mapped[int] = mapped_column(PortableBigInt, primary_key=True, autoincrement=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    rollups: Mapped[list[dict[str, Any]]] = mapped_column(PortableJSON, default=list)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

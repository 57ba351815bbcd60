"""Moves audit data between the hot, warm and cold tiers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from .audit import AuditSink
from .config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """How long entries stay in each tier before moving down."""

    hot: timedelta = timedelta(hours=settings.audit_hot_retention_hours)
    warm: timedelta = timedelta(hours=settings.audit_warm_retention_hours)


@dataclass(frozen=True)
class RetentionReport:
    rolled_up: int
    archived: int
    hot_cutoff: datetime
    warm_cutoff: datetime


async def run_retention(
    sink: AuditSink,
    policy: RetentionPolicy | None = None,
    *,
    now: datetime | None = None,
) -> RetentionReport:
    """Run one pass: hot -> warm rollups, then warm -> cold archive."""
    policy = policy or RetentionPolicy()
    now = now or datetime.now(UTC)
    hot_cutoff = now - policy.hot
    warm_cutoff = now - policy.warm

    rolled_up = await sink.roll_up(hot_cutoff)
    archived = await sink.archive(warm_cutoff)
    logger.info(
        "Retention pass: %d hot entries rolled up, %d warm rollups archived", rolled_up, archived
    )
    return RetentionReport(
        rolled_up=rolled_up, archived=archived, hot_cutoff=hot_cutoff, warm_cutoff=warm_cutoff
    )


async def run_retention_forever(
    sink: AuditSink,
    policy: RetentionPolicy | None = None,
    *,
    interval_seconds: float = 3600.0,
) -> None:
    """Run retention passes on a fixed schedule until cancelled."""
    while True:
        await run_retention(sink, policy)
        await asyncio.sleep(interval_seconds)


def main() -> None:
    """Run the retention schedule against the SQL audit sink."""
    from .db import SqlAuditSink

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run_retention_forever(SqlAuditSink()))


if __name__ == "__main__":
    main()

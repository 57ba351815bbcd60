"""
Leased mutual exclusion over named resources.

A lock is a lease: it expires on its own unless the holder renews it, so a
crashed holder blocks a resource for at most one TTL. Acquire, renew and
release are each one atomic store primitive; release and renew are
conditional on the holder id so a slow former holder can never drop a lock
someone else has since acquired.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from .audit import AuditLogger, OutcomeStatus, ToolAction
from .config import settings
from .errors import LockNotAcquired, NotHolder, StoreUnavailable
from .retry import BackoffPolicy, with_retries
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockResult:
    """Outcome of an acquire or renew."""

    resource_id: str
    holder_id: str
    granted: bool
    expires_at: datetime | None = None

    def __bool__(self) -> bool:
        return self.granted


@dataclass(frozen=True)
class LockInfo:
    resource_id: str
    holder_id: str
    ttl_ms: int


class LockManager:
    """Acquire, renew and release leases on resource ids."""

    def __init__(
        self,
        store: Store,
        audit: AuditLogger,
        *,
        default_ttl: float | None = None,
        poll_interval: float | None = None,
        retry_policy: BackoffPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._audit = audit
        self.default_ttl = default_ttl if default_ttl is not None else settings.lock_ttl
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.lock_poll_interval
        )
        self._retry = retry_policy or BackoffPolicy(
            attempts=settings.store_retry_attempts,
            base=settings.store_backoff_base,
            cap=settings.store_backoff_max,
        )
        self._clock = clock

    @staticmethod
    def _key(resource_id: str) -> str:
        return f"lock:{resource_id}"

    def _ttl_ms(self, ttl: float | None) -> int:
        seconds = self.default_ttl if ttl is None else ttl
        if seconds <= 0:
            raise ValueError(f"ttl must be positive, got {seconds}")
        return max(int(seconds * 1000), 1)

    def _expires_at(self, ttl_ms: int) -> datetime:
        return datetime.fromtimestamp(self._clock() + ttl_ms / 1000, UTC)

    async def _holds(self, resource_id: str, holder_id: str) -> bool:
        current = await self._store.lease(self._key(resource_id))
        return current is not None and current.holder == holder_id

    async def _try_acquire(
        self, resource_id: str, holder_id: str, ttl_ms: int, *, refresh: bool
    ) -> bool:
        key = self._key(resource_id)
        try:
            return await with_retries(
                lambda: self._store.acquire_lease(key, holder_id, ttl_ms),
                self._retry,
                label=f"acquire {resource_id}",
            )
        except asyncio.CancelledError:
            # The request may have landed before the cancellation did. A lease
            # held before this call is left alone.
            if refresh:
                raise
            try:
                await asyncio.shield(self._store.release_lease(key, holder_id))
            except StoreUnavailable:
                logger.warning(
                    "Could not roll back cancelled acquire of %s; lease expires in %dms",
                    resource_id,
                    ttl_ms,
                )
            raise

    async def acquire(
        self,
        resource_id: str,
        holder_id: str,
        ttl: float | None = None,
        *,
        timeout: float | None = None,
        session_id: str | None = None,
    ) -> LockResult:
        """Take the lease on ``resource_id``.

        With ``timeout=None`` a held lock is denied immediately; otherwise the
        call polls until granted or ``timeout`` seconds pass. The current
        holder re-acquiring refreshes its lease.
        """
        ttl_ms = self._ttl_ms(ttl)
        async with self._audit.track(
            ToolAction("locks.acquire", {"ttl_ms": ttl_ms, "timeout": timeout}),
            agent_id=holder_id,
            session_id=session_id,
            resources=[f"lock:{resource_id}"],
        ) as scope:
            loop = asyncio.get_running_loop()
            deadline = None if timeout is None else loop.time() + timeout
            refresh = await self._holds(resource_id, holder_id)
            while not await self._try_acquire(resource_id, holder_id, ttl_ms, refresh=refresh):
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is None or remaining <= 0:
                    current = await self._store.lease(self._key(resource_id))
                    scope.set_outcome(
                        OutcomeStatus.DENIED, held_by=current.holder if current else None
                    )
                    return LockResult(resource_id, holder_id, granted=False)
                await asyncio.sleep(min(self._poll_interval, remaining))

            if refresh:
                scope.note(refreshed=True)
            else:
                scope.on_unaudited(lambda: self.revoke(resource_id, holder_id))
            logger.info("Lock %s granted to %s for %dms", resource_id, holder_id, ttl_ms)
            return LockResult(resource_id, holder_id, granted=True, expires_at=self._expires_at(ttl_ms))

    async def renew(
        self,
        resource_id: str,
        holder_id: str,
        ttl: float | None = None,
        *,
        session_id: str | None = None,
    ) -> LockResult:
        """Extend the lease. Raises ``NotHolder`` if ``holder_id`` lost it."""
        ttl_ms = self._ttl_ms(ttl)
        async with self._audit.track(
            ToolAction("locks.renew", {"ttl_ms": ttl_ms}),
            agent_id=holder_id,
            session_id=session_id,
            resources=[f"lock:{resource_id}"],
        ):
            renewed = await with_retries(
                lambda: self._store.renew_lease(self._key(resource_id), holder_id, ttl_ms),
                self._retry,
                label=f"renew {resource_id}",
            )
            if not renewed:
                raise NotHolder(resource_id, holder_id)
            return LockResult(resource_id, holder_id, granted=True, expires_at=self._expires_at(ttl_ms))

    async def release(
        self,
        resource_id: str,
        holder_id: str,
        *,
        session_id: str | None = None,
    ) -> None:
        """Drop the lease. Raises ``NotHolder`` if ``holder_id`` does not hold it."""
        async with self._audit.track(
            ToolAction("locks.release"),
            agent_id=holder_id,
            session_id=session_id,
            resources=[f"lock:{resource_id}"],
        ):
            released = await with_retries(
                lambda: self._store.release_lease(self._key(resource_id), holder_id),
                self._retry,
                label=f"release {resource_id}",
            )
            if not released:
                raise NotHolder(resource_id, holder_id)
            logger.info("Lock %s released by %s", resource_id, holder_id)

    async def revoke(self, resource_id: str, holder_id: str) -> bool:
        """Drop ``holder_id``'s lease without an audit entry.

        Only for undoing a grant whose own audit entry could not be written.
        """
        released = await self._store.release_lease(self._key(resource_id), holder_id)
        if released:
            logger.warning("Lease on %s revoked from %s", resource_id, holder_id)
        return released

    async def holder(self, resource_id: str) -> LockInfo | None:
        current = await self._store.lease(self._key(resource_id))
        if current is None:
            return None
        return LockInfo(resource_id=resource_id, holder_id=current.holder, ttl_ms=current.ttl_ms)

    @asynccontextmanager
    async def locked(
        self,
        resource_id: str,
        holder_id: str,
        ttl: float | None = None,
        *,
        timeout: float | None = None,
        session_id: str | None = None,
    ) -> AsyncIterator[LockResult]:
        """Hold ``resource_id`` for the body of the ``async with`` block."""
        result = await self.acquire(
            resource_id, holder_id, ttl, timeout=timeout, session_id=session_id
        )
        if not result.granted:
            raise LockNotAcquired(f"{resource_id} is held by another worker")
        try:
            yield result
        finally:
            try:
                await self.release(resource_id, holder_id, session_id=session_id)
            except NotHolder:
                logger.warning("Lease on %s expired before %s released it", resource_id, holder_id)

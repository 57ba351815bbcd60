"""Backing store contract.

Every coordination component is written against this interface. A concrete
store must make each conditional primitive a single atomic operation; a store
that can only read-then-write cannot back the lock manager safely.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class Versioned:
    """A stored value and its version token."""

    value: str
    version: int


@dataclass(frozen=True)
class Lease:
    """Current holder of a leased key."""

    holder: str
    ttl_ms: int


StreamEntry = tuple[str, dict[str, str]]

STREAM_START = "0-0"


def parse_entry_id(entry_id: str) -> tuple[int, int]:
    """Split a ``"<ms>-<seq>"`` stream id into a sortable tuple."""
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


class Store(ABC):
    """Atomic primitives the platform needs from its backing store."""

    # Versioned values -----------------------------------------------------

    @abstractmethod
    async def get(self, key: str) -> Versioned | None:
        """Return the value and version stored at ``key``."""

    @abstractmethod
    async def get_many(self, keys: Sequence[str]) -> list[Versioned | None]:
        """Read several keys as one consistent snapshot."""

    @abstractmethod
    async def compare_and_set(
        self, key: str, value: str, expected_version: int | None
    ) -> int | None:
        """Write ``value`` if the version matches.

        ``expected_version`` of ``None`` writes unconditionally, ``0`` only
        creates. Returns the new version, or ``None`` on a version mismatch.
        """

    # Leases ---------------------------------------------------------------

    @abstractmethod
    async def acquire_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        """Take the lease if free (or refresh it if ``holder`` owns it)."""

    @abstractmethod
    async def renew_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        """Extend the lease only if ``holder`` owns it."""

    @abstractmethod
    async def release_lease(self, key: str, holder: str) -> bool:
        """Delete the lease only if ``holder`` owns it."""

    @abstractmethod
    async def lease(self, key: str) -> Lease | None:
        """Return the live lease on ``key``, if any."""

    # Append-only streams --------------------------------------------------

    @abstractmethod
    async def append(self, stream: str, fields: dict[str, str]) -> str:
        """Durably append an entry and return its monotonic id."""

    @abstractmethod
    async def read(
        self,
        stream: str,
        after: str = STREAM_START,
        count: int = 100,
        block_ms: int | None = None,
    ) -> list[StreamEntry]:
        """Entries strictly after ``after`` in append order.

        With ``block_ms`` the call waits up to that long for new entries.
        """

    # Ordered indexes ------------------------------------------------------

    @abstractmethod
    async def index_add(self, index: str, member: str, score: float) -> None: ...

    @abstractmethod
    async def index_remove(self, index: str, member: str) -> bool: ...

    @abstractmethod
    async def index_members(self, index: str) -> list[str]:
        """Members ordered by ascending score."""

    # Misc -----------------------------------------------------------------

    @abstractmethod
    async def incr(self, key: str) -> int: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        """Release any connections held by the store."""

"""
In-process implementation of the backing store.

Useful for testing and single-process deployments. Each primitive runs under
one lock with no I/O inside it, which gives the same atomicity the Redis
scripts provide.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Sequence

from .base import STREAM_START, Lease, Store, StreamEntry, Versioned, parse_entry_id


class MemoryStore(Store):
    """Dictionary-backed store with clock-driven lease expiry."""

    def __init__(self, clock: Callable[[], float] = time.time, poll_interval: float = 0.01) -> None:
        self._clock = clock
        self._poll_interval = poll_interval
        self._mutex = threading.Lock()
        self._values: dict[str, Versioned] = {}
        self._leases: dict[str, tuple[str, float]] = {}
        self._streams: dict[str, list[StreamEntry]] = {}
        self._last_id: dict[str, tuple[int, int]] = {}
        self._indexes: dict[str, dict[str, float]] = {}
        self._counters: dict[str, int] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _live_lease(self, key: str) -> tuple[str, float] | None:
        current = self._leases.get(key)
        if current is None:
            return None
        if current[1] <= self._clock():
            del self._leases[key]
            return None
        return current

    async def get(self, key: str) -> Versioned | None:
        with self._mutex:
            return self._values.get(key)

    async def get_many(self, keys: Sequence[str]) -> list[Versioned | None]:
        with self._mutex:
            return [self._values.get(key) for key in keys]

    async def compare_and_set(
        self, key: str, value: str, expected_version: int | None
    ) -> int | None:
        with self._mutex:
            current = self._values.get(key)
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                return None
            new_version = current_version + 1
            self._values[key] = Versioned(value=value, version=new_version)
            return new_version

    async def acquire_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        with self._mutex:
            current = self._live_lease(key)
            if current is not None and current[0] != holder:
                return False
            self._leases[key] = (holder, self._clock() + ttl_ms / 1000)
            return True

    async def renew_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        with self._mutex:
            current = self._live_lease(key)
            if current is None or current[0] != holder:
                return False
            self._leases[key] = (holder, self._clock() + ttl_ms / 1000)
            return True

    async def release_lease(self, key: str, holder: str) -> bool:
        with self._mutex:
            current = self._live_lease(key)
            if current is None or current[0] != holder:
                return False
            del self._leases[key]
            return True

    async def lease(self, key: str) -> Lease | None:
        with self._mutex:
            current = self._live_lease(key)
            if current is None:
                return None
            return Lease(holder=current[0], ttl_ms=max(int((current[1] - self._clock()) * 1000), 0))

    async def append(self, stream: str, fields: dict[str, str]) -> str:
        with self._mutex:
            ms = self._now_ms()
            last_ms, last_seq = self._last_id.get(stream, (0, 0))
            entry = (ms, 0) if ms > last_ms else (last_ms, last_seq + 1)
            self._last_id[stream] = entry
            entry_id = f"{entry[0]}-{entry[1]}"
            self._streams.setdefault(stream, []).append((entry_id, dict(fields)))
            return entry_id

    def _entries_after(self, stream: str, after: str, count: int) -> list[StreamEntry]:
        with self._mutex:
            start = parse_entry_id(after)
            entries = self._streams.get(stream, [])
            return [(eid, dict(f)) for eid, f in entries if parse_entry_id(eid) > start][:count]

    async def read(
        self,
        stream: str,
        after: str = STREAM_START,
        count: int = 100,
        block_ms: int | None = None,
    ) -> list[StreamEntry]:
        entries = self._entries_after(stream, after, count)
        if entries or not block_ms:
            return entries

        loop = asyncio.get_running_loop()
        deadline = loop.time() + block_ms / 1000
        while loop.time() < deadline:
            await asyncio.sleep(self._poll_interval)
            entries = self._entries_after(stream, after, count)
            if entries:
                return entries
        return []

    async def index_add(self, index: str, member: str, score: float) -> None:
        with self._mutex:
            self._indexes.setdefault(index, {})[member] = score

    async def index_remove(self, index: str, member: str) -> bool:
        with self._mutex:
            return self._indexes.get(index, {}).pop(member, None) is not None

    async def index_members(self, index: str) -> list[str]:
        with self._mutex:
            members = self._indexes.get(index, {})
            return [m for m, _ in sorted(members.items(), key=lambda item: (item[1], item[0]))]

    async def incr(self, key: str) -> int:
        with self._mutex:
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    async def ping(self) -> bool:
        return True

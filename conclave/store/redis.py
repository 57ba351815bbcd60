"""Redis implementation of the backing store.

Conditional writes run as Lua scripts so the check and the write are one
atomic step on the server. Lease expiry is Redis's own ``PX`` TTL.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Final

from redis import exceptions as redis_errors
from redis.asyncio import Redis

from ..errors import StoreUnavailable
from .base import STREAM_START, Lease, Store, StreamEntry, Versioned

_LUA_DIR: Final[Path] = Path(__file__).resolve().parent.parent / "lua"
_SCRIPTS: dict[str, str] = {}


def _load_lua(name: str) -> str:
    if name not in _SCRIPTS:
        _SCRIPTS[name] = (_LUA_DIR / f"{name}.lua").read_text()
    return _SCRIPTS[name]


class RedisStore(Store):
    """Store backed by a Redis server (hashes, strings, streams, sorted sets)."""

    def __init__(self, redis: Redis, *, prefix: str = "conclave:") -> None:
        self._redis = redis
        self._prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        try:
            yield
        except (redis_errors.ConnectionError, redis_errors.TimeoutError) as exc:
            raise StoreUnavailable(f"Redis unavailable: {exc}") from exc

    async def _eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> int:
        result = await self._redis.eval(_load_lua(script), len(keys), *keys, *args)
        return int(result)

    @staticmethod
    def _versioned(raw: Sequence[str | None]) -> Versioned | None:
        value, version = raw
        if value is None or version is None:
            return None
        return Versioned(value=value, version=int(version))

    async def get(self, key: str) -> Versioned | None:
        async with self._guard():
            raw = await self._redis.hmget(self._k(key), ["value", "version"])
        return self._versioned(raw)

    async def get_many(self, keys: Sequence[str]) -> list[Versioned | None]:
        if not keys:
            return []
        async with self._guard():
            async with self._redis.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.hmget(self._k(key), ["value", "version"])
                rows = await pipe.execute()
        return [self._versioned(raw) for raw in rows]

    async def compare_and_set(
        self, key: str, value: str, expected_version: int | None
    ) -> int | None:
        expected = "" if expected_version is None else str(expected_version)
        async with self._guard():
            result = await self._eval("compare_and_set", [self._k(key)], [value, expected])
        return None if result < 0 else result

    async def acquire_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        async with self._guard():
            return await self._eval("lease_acquire", [self._k(key)], [holder, ttl_ms]) == 1

    async def renew_lease(self, key: str, holder: str, ttl_ms: int) -> bool:
        async with self._guard():
            return await self._eval("lease_renew", [self._k(key)], [holder, ttl_ms]) == 1

    async def release_lease(self, key: str, holder: str) -> bool:
        async with self._guard():
            return await self._eval("lease_release", [self._k(key)], [holder]) == 1

    async def lease(self, key: str) -> Lease | None:
        async with self._guard():
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(self._k(key))
                pipe.pttl(self._k(key))
                holder, ttl = await pipe.execute()
        if holder is None or ttl is None or int(ttl) < 0:
            return None
        return Lease(holder=holder, ttl_ms=int(ttl))

    async def append(self, stream: str, fields: dict[str, str]) -> str:
        async with self._guard():
            return await self._redis.xadd(self._k(stream), fields)  # type: ignore[arg-type]

    async def read(
        self,
        stream: str,
        after: str = STREAM_START,
        count: int = 100,
        block_ms: int | None = None,
    ) -> list[StreamEntry]:
        async with self._guard():
            result = await self._redis.xread(
                {self._k(stream): after}, count=count, block=block_ms or None
            )
        if not result:
            return []
        _, messages = result[0]
        return [(entry_id, dict(fields)) for entry_id, fields in messages]

    async def index_add(self, index: str, member: str, score: float) -> None:
        async with self._guard():
            await self._redis.zadd(self._k(index), {member: score})

    async def index_remove(self, index: str, member: str) -> bool:
        async with self._guard():
            return await self._redis.zrem(self._k(index), member) > 0

    async def index_members(self, index: str) -> list[str]:
        async with self._guard():
            return list(await self._redis.zrange(self._k(index), 0, -1))

    async def incr(self, key: str) -> int:
        async with self._guard():
            return int(await self._redis.incr(self._k(key)))

    async def ping(self) -> bool:
        async with self._guard():
            return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()

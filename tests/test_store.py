import asyncio

import fakeredis
import pytest
from redis import exceptions as redis_errors

from conclave.errors import StoreUnavailable
from conclave.store import STREAM_START, MemoryStore, RedisStore, parse_entry_id


@pytest.fixture
def redis_store() -> RedisStore:
    return RedisStore(fakeredis.FakeAsyncRedis(decode_responses=True), prefix="test:")


# -- memory store ------------------------------------------------------------


@pytest.mark.asyncio
async def test_compare_and_set_versions(store: MemoryStore) -> None:
    assert await store.compare_and_set("k", "a", 0) == 1
    assert await store.compare_and_set("k", "b", 0) is None
    assert await store.compare_and_set("k", "b", 1) == 2
    assert await store.compare_and_set("k", "c", 1) is None
    assert await store.compare_and_set("k", "c", None) == 3

    current = await store.get("k")
    assert current is not None
    assert (current.value, current.version) == ("c", 3)


@pytest.mark.asyncio
async def test_lease_expires_with_clock(store: MemoryStore, clock) -> None:
    assert await store.acquire_lease("l", "w1", 1000)
    assert not await store.acquire_lease("l", "w2", 1000)

    clock.advance(1.5)
    assert await store.lease("l") is None
    assert await store.acquire_lease("l", "w2", 1000)
    assert not await store.renew_lease("l", "w1", 1000)
    assert not await store.release_lease("l", "w1")
    assert await store.release_lease("l", "w2")


@pytest.mark.asyncio
async def test_stream_ids_are_monotonic_under_a_frozen_clock(store: MemoryStore) -> None:
    ids = [await store.append("s", {"n": str(i)}) for i in range(5)]
    assert [parse_entry_id(i) for i in ids] == sorted(parse_entry_id(i) for i in ids)
    assert len(set(ids)) == 5

    entries = await store.read("s", after=ids[1], count=2)
    assert [fields["n"] for _, fields in entries] == ["2", "3"]


@pytest.mark.asyncio
async def test_blocking_read_wakes_on_append(store: MemoryStore) -> None:
    async def append_later() -> None:
        await asyncio.sleep(0.02)
        await store.append("s", {"n": "1"})

    writer = asyncio.create_task(append_later())
    entries = await store.read("s", STREAM_START, block_ms=1000)
    await writer
    assert [fields["n"] for _, fields in entries] == ["1"]
    assert await store.read("s", entries[-1][0], block_ms=10) == []


@pytest.mark.asyncio
async def test_index_members_ordered_by_score(store: MemoryStore) -> None:
    await store.index_add("i", "c", 3)
    await store.index_add("i", "a", 1)
    await store.index_add("i", "b", 2)
    assert await store.index_members("i") == ["a", "b", "c"]
    assert await store.index_remove("i", "b")
    assert not await store.index_remove("i", "b")
    assert await store.index_members("i") == ["a", "c"]


# -- redis store -------------------------------------------------------------


@pytest.mark.asyncio
async def test_redis_compare_and_set(redis_store: RedisStore) -> None:
    assert await redis_store.compare_and_set("k", "a", 0) == 1
    assert await redis_store.compare_and_set("k", "x", 0) is None
    assert await redis_store.compare_and_set("k", "b", 1) == 2

    rows = await redis_store.get_many(["k", "missing"])
    assert rows[0] is not None and rows[0].value == "b" and rows[0].version == 2
    assert rows[1] is None


@pytest.mark.asyncio
async def test_redis_leases_are_holder_conditional(redis_store: RedisStore) -> None:
    assert await redis_store.acquire_lease("l", "w1", 5000)
    assert not await redis_store.acquire_lease("l", "w2", 5000)
    # Re-acquire by the holder refreshes instead of failing.
    assert await redis_store.acquire_lease("l", "w1", 5000)

    lease = await redis_store.lease("l")
    assert lease is not None and lease.holder == "w1" and 0 < lease.ttl_ms <= 5000

    assert not await redis_store.release_lease("l", "w2")
    assert not await redis_store.renew_lease("l", "w2", 5000)
    assert await redis_store.renew_lease("l", "w1", 5000)
    assert await redis_store.release_lease("l", "w1")
    assert await redis_store.lease("l") is None


@pytest.mark.asyncio
async def test_redis_streams_and_indexes(redis_store: RedisStore) -> None:
    first = await redis_store.append("s", {"n": "1"})
    await redis_store.append("s", {"n": "2"})

    entries = await redis_store.read("s", after=first)
    assert [fields["n"] for _, fields in entries] == ["2"]

    await redis_store.index_add("i", "b", 2)
    await redis_store.index_add("i", "a", 1)
    assert await redis_store.index_members("i") == ["a", "b"]
    assert await redis_store.incr("seq") == 1
    assert await redis_store.incr("seq") == 2
    assert await redis_store.ping()


class _BrokenRedis:
    async def hmget(self, *args, **kwargs):
        raise redis_errors.ConnectionError("connection refused")


@pytest.mark.asyncio
async def test_redis_connection_errors_surface_as_store_unavailable() -> None:
    store = RedisStore(_BrokenRedis())  # type: ignore[arg-type]
    with pytest.raises(StoreUnavailable):
        await store.get("k")

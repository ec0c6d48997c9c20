import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from billing.core.idempotency import DuplicateKeyError, IdempotencyCache
from billing.core.idempotency_store import SqlAlchemyIdempotencyStore
from billing.models.base import utcnow
from billing.models.idempotency_record import IdempotencyRecord


async def _count(session_factory, key: str) -> int:
    async with session_factory() as session:
        return await session.scalar(
            select(func.count())
            .select_from(IdempotencyRecord)
            .where(IdempotencyRecord.idempotency_key == key)
        )


@pytest.mark.anyio
async def test_insert_then_find(session_factory):
    store = SqlAlchemyIdempotencyStore(session_factory)
    expires_at = (utcnow() + timedelta(hours=1)).replace(microsecond=0)

    await store.insert_if_absent("k1", {"id": "p1", "items": [1, 2]}, expires_at)
    entry = await store.find_by_key("k1")

    assert entry is not None
    assert entry.cached_response == {"id": "p1", "items": [1, 2]}
    assert entry.expires_at == expires_at
    assert await store.find_by_key("missing") is None


@pytest.mark.anyio
async def test_duplicate_insert_raises_duplicate_key(session_factory):
    store = SqlAlchemyIdempotencyStore(session_factory)
    expires_at = utcnow() + timedelta(hours=1)
    await store.insert_if_absent("k1", {"id": "p1"}, expires_at)

    with pytest.raises(DuplicateKeyError):
        await store.insert_if_absent("k1", {"id": "p2"}, expires_at)

    assert (await store.find_by_key("k1")).cached_response == {"id": "p1"}
    assert await _count(session_factory, "k1") == 1


@pytest.mark.anyio
async def test_expired_row_is_replaced(session_factory):
    store = SqlAlchemyIdempotencyStore(session_factory)
    await store.insert_if_absent("k1", {"id": "old"}, utcnow() - timedelta(minutes=1))

    await store.insert_if_absent("k1", {"id": "new"}, utcnow() + timedelta(hours=1))

    assert (await store.find_by_key("k1")).cached_response == {"id": "new"}
    assert await _count(session_factory, "k1") == 1


@pytest.mark.anyio
async def test_purge_expired(session_factory):
    store = SqlAlchemyIdempotencyStore(session_factory)
    now = utcnow()
    await store.insert_if_absent("old", {"a": 1}, now - timedelta(seconds=5))
    await store.insert_if_absent("new", {"a": 2}, now + timedelta(hours=1))

    assert await store.purge_expired(now) == 1
    assert await store.find_by_key("old") is None
    assert await store.find_by_key("new") is not None


@pytest.mark.anyio
async def test_cache_over_sql_store_keeps_one_record(session_factory):
    cache = IdempotencyCache(SqlAlchemyIdempotencyStore(session_factory))
    calls = {"count": 0}

    async def create():
        calls["count"] += 1
        return {"id": f"p{calls['count']}"}

    first = await cache.guard("POST", "k1", create)
    second = await cache.guard("POST", "k1", create)

    assert first == second == {"id": "p1"}
    assert calls["count"] == 1
    assert await _count(session_factory, "k1") == 1


@pytest.mark.anyio
async def test_concurrent_first_requests_keep_one_row(session_factory):
    cache = IdempotencyCache(SqlAlchemyIdempotencyStore(session_factory))
    calls = {"count": 0}

    async def create():
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return {"id": "p1"}

    results = await asyncio.gather(*(cache.guard("POST", "k-race", create) for _ in range(5)))

    assert all(result == {"id": "p1"} for result in results)
    assert 1 <= calls["count"] <= 5
    assert await _count(session_factory, "k-race") == 1

    async def other():
        return {"id": "other"}

    assert await cache.guard("POST", "k-race", other) == {"id": "p1"}


@pytest.mark.anyio
async def test_expired_row_replaced_using_injected_clock(session_factory):
    # ahead of the wall clock, so only the injected clock can see the row expire
    now = {"value": utcnow() + timedelta(days=30)}

    def clock():
        return now["value"]

    store = SqlAlchemyIdempotencyStore(session_factory, clock=clock)
    cache = IdempotencyCache(store, clock=clock)

    async def first():
        return {"id": "p1"}

    async def second():
        return {"id": "p2"}

    await cache.guard("POST", "k1", first)
    now["value"] += timedelta(hours=24, seconds=1)

    assert await cache.guard("POST", "k1", second) == {"id": "p2"}
    assert (await store.find_by_key("k1")).cached_response == {"id": "p2"}
    assert await _count(session_factory, "k1") == 1

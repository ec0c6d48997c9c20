import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from billing.core.idempotency import (
    DuplicateKeyError,
    IdempotencyCache,
    IdempotencyEntry,
    InMemoryIdempotencyStore,
)


class Clock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now


class Handler:
    """Counts executions and returns a fixed body."""

    def __init__(self, body=None, delay: float = 0.0):
        self.calls = 0
        self.body = body if body is not None else {"id": "p1"}
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.body


class RacingStore(InMemoryIdempotencyStore):
    """Always reports that a concurrent writer got there first."""

    async def insert_if_absent(self, key, value, expires_at):
        raise DuplicateKeyError(key)


class BrokenWriteStore(InMemoryIdempotencyStore):
    async def insert_if_absent(self, key, value, expires_at):
        raise RuntimeError("disk full")


class BrokenReadStore(InMemoryIdempotencyStore):
    def __init__(self):
        super().__init__()
        self.inserts = 0

    async def find_by_key(self, key):
        raise ConnectionError("store unavailable")

    async def insert_if_absent(self, key, value, expires_at):
        self.inserts += 1
        await super().insert_if_absent(key, value, expires_at)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return InMemoryIdempotencyStore(clock=clock)


@pytest.fixture
def cache(store, clock):
    return IdempotencyCache(store, clock=clock)


@pytest.mark.anyio
async def test_second_post_with_same_key_replays_first_response(cache, store):
    first = await cache.guard("POST", "k1", Handler({"id": "p1"}))
    second_handler = Handler({"id": "p2"})
    second = await cache.guard("POST", "k1", second_handler)

    assert first == {"id": "p1"}
    assert second == {"id": "p1"}
    assert second_handler.calls == 0
    assert len(store) == 1
    assert (await store.find_by_key("k1")).cached_response == {"id": "p1"}


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
async def test_non_mutating_methods_bypass_cache(cache, store, method):
    handler = Handler()
    for _ in range(3):
        await cache.guard(method, "k1", handler)

    assert handler.calls == 3
    assert len(store) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("key", [None, ""])
async def test_missing_key_bypasses_cache(cache, store, key):
    handler = Handler()
    await cache.guard("POST", key, handler)
    await cache.guard("POST", key, handler)

    assert handler.calls == 2
    assert len(store) == 0


@pytest.mark.anyio
@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "post"])
async def test_all_mutating_methods_are_guarded(cache, method):
    handler = Handler()
    await cache.guard(method, "k-method", handler)
    await cache.guard(method, "k-method", handler)

    assert handler.calls == 1


@pytest.mark.anyio
async def test_keys_match_exactly(cache):
    handler = Handler()
    await cache.guard("POST", "Key-1", handler)
    await cache.guard("POST", "key-1", handler)

    assert handler.calls == 2


@pytest.mark.anyio
async def test_concurrent_first_requests_store_one_response(cache, store):
    handler = Handler({"id": "p1"}, delay=0.01)

    results = await asyncio.gather(*(cache.guard("POST", "k1", handler) for _ in range(5)))

    assert all(result == {"id": "p1"} for result in results)
    assert len(store) == 1
    # lookup and insert are not atomic, so executions may exceed one
    assert 1 <= handler.calls <= 5

    replay_handler = Handler({"id": "other"})
    assert await cache.guard("POST", "k1", replay_handler) == {"id": "p1"}
    assert replay_handler.calls == 0


@pytest.mark.anyio
async def test_uniqueness_violation_on_insert_is_swallowed(clock):
    cache = IdempotencyCache(RacingStore(clock=clock), clock=clock)

    result = await cache.guard("POST", "k1", Handler({"id": "p1"}))

    assert result == {"id": "p1"}


@pytest.mark.anyio
async def test_other_insert_failure_is_swallowed(clock):
    cache = IdempotencyCache(BrokenWriteStore(clock=clock), clock=clock)

    result = await cache.guard("POST", "k1", Handler({"id": "p1"}))

    assert result == {"id": "p1"}


@pytest.mark.anyio
async def test_lookup_failure_fails_open(clock):
    store = BrokenReadStore()
    cache = IdempotencyCache(store, clock=clock)
    handler = Handler()

    assert await cache.guard("POST", "k1", handler) == {"id": "p1"}
    assert await cache.guard("POST", "k1", handler) == {"id": "p1"}
    assert handler.calls == 2
    assert store.inserts == 0


@pytest.mark.anyio
async def test_handler_errors_propagate_and_are_not_cached(cache, store):
    async def failing():
        raise HTTPException(status_code=404, detail="missing")

    with pytest.raises(HTTPException) as excinfo:
        await cache.guard("POST", "k1", failing)

    assert excinfo.value.status_code == 404
    assert len(store) == 0

    handler = Handler()
    assert await cache.guard("POST", "k1", handler) == {"id": "p1"}
    assert handler.calls == 1


@pytest.mark.anyio
async def test_record_expires_after_ttl(cache, store, clock):
    await cache.guard("POST", "k1", Handler({"id": "p1"}))
    entry = await store.find_by_key("k1")
    assert entry.expires_at == clock.now + timedelta(hours=24)

    clock.now += timedelta(hours=24, seconds=1)
    fresh = Handler({"id": "p2"})

    assert await cache.guard("POST", "k1", fresh) == {"id": "p2"}
    assert fresh.calls == 1
    assert (await store.find_by_key("k1")).cached_response == {"id": "p2"}


@pytest.mark.anyio
async def test_responses_are_json_encoded_before_caching(cache):
    async def handler():
        return {"when": datetime(2024, 1, 2, 3, 4, 5)}

    first = await cache.guard("POST", "k-enc", handler)
    second = await cache.guard("POST", "k-enc", handler)

    assert first == second == {"when": "2024-01-02T03:04:05"}


@pytest.mark.anyio
async def test_purge_expired(store, clock):
    await store.insert_if_absent("old", {"a": 1}, clock.now - timedelta(seconds=1))
    await store.insert_if_absent("new", {"a": 2}, clock.now + timedelta(hours=1))

    assert await store.purge_expired(clock.now) == 1
    assert await store.find_by_key("old") is None
    assert await store.find_by_key("new") == IdempotencyEntry(
        "new", {"a": 2}, clock.now + timedelta(hours=1)
    )


@pytest.mark.anyio
async def test_unencodable_response_is_returned_uncached(cache, store):
    body = {"blob": b"\xff\xfe"}
    handler = Handler(body)

    assert await cache.guard("POST", "k-raw", handler) == body
    assert await cache.guard("POST", "k-raw", handler) == body
    assert handler.calls == 2
    assert len(store) == 0

"""Response caching for mutating requests that carry an Idempotency-Key.

The first request for a key runs the handler and stores its response; any
later request with the same key gets the stored response back without the
handler running. Lookup and insert are separate round-trips, so two
concurrent first requests may both execute; the store's uniqueness
constraint guarantees only one response is ever kept.

Cache failures never fail the wrapped request (fail-open).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, TypeVar

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from loguru import logger

from billing.core.config import settings
from billing.models.base import utcnow

if TYPE_CHECKING:
    from loguru import Logger

T = TypeVar("T")

IDEMPOTENCY_HEADER = "Idempotency-Key"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
IDEMPOTENCY_TTL = timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)


class DuplicateKeyError(Exception):
    """Raised by a store when another writer already inserted the key."""

    def __init__(self, key: str):
        super().__init__(f"Idempotency key already stored: {key}")
        self.key = key


@dataclass(slots=True, frozen=True)
class IdempotencyEntry:
    key: str
    cached_response: Any
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class IdempotencyStore(Protocol):
    """Durable key-value store backing the cache."""

    async def find_by_key(self, key: str) -> IdempotencyEntry | None: ...

    async def insert_if_absent(self, key: str, value: Any, expires_at: datetime) -> None:
        """Store ``value`` for ``key``; raise ``DuplicateKeyError`` if it exists."""
        ...

    async def purge_expired(self, now: datetime) -> int: ...


class InMemoryIdempotencyStore:
    """Process-local store with the same uniqueness semantics as the table."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: dict[str, IdempotencyEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def find_by_key(self, key: str) -> IdempotencyEntry | None:
        return self._entries.get(key)

    async def insert_if_absent(self, key: str, value: Any, expires_at: datetime) -> None:
        async with self._lock:
            existing = self._entries.get(key)
            if existing is not None and not existing.is_expired(self._clock()):
                raise DuplicateKeyError(key)
            self._entries[key] = IdempotencyEntry(key, value, expires_at)

    async def purge_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)


class IdempotencyCache:
    """Deduplicates mutating operations by idempotency key."""

    def __init__(
        self,
        store: IdempotencyStore,
        *,
        ttl: timedelta = IDEMPOTENCY_TTL,
        log: Logger = logger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl = ttl
        self._log = log
        self._clock = clock

    async def guard(
        self,
        method: str,
        idempotency_key: str | None,
        proceed: Callable[[], Awaitable[T]],
    ) -> T | Any:
        """Run ``proceed`` at most once per key and replay its response after."""

        if method.upper() not in MUTATING_METHODS or not idempotency_key:
            return await proceed()

        log = self._log.bind(idempotency_key=idempotency_key, method=method.upper())
        try:
            entry = await self.store.find_by_key(idempotency_key)
        except Exception as exc:
            log.bind(error=str(exc)).warning("idempotency_lookup_failed")
            return await proceed()

        if entry is not None:
            if not entry.is_expired(self._clock()):
                log.info("idempotency_replay")
                return entry.cached_response
            log.bind(expires_at=entry.expires_at.isoformat()).info("idempotency_entry_expired")

        return await self._store_response(idempotency_key, await proceed(), log)

    async def _store_response(self, key: str, response: Any, log: Logger) -> Any:
        """Cache ``response`` and return what the caller should send back.

        A response that cannot be encoded or stored is returned as the handler
        produced it, uncached.
        """

        result = response
        expires_at = self._clock() + self.ttl
        try:
            result = jsonable_encoder(response)
            await self.store.insert_if_absent(key, result, expires_at)
        except DuplicateKeyError:
            log.info("idempotency_store_race_lost")
        except Exception as exc:
            log.bind(error=str(exc)).error("idempotency_store_failed")
        else:
            log.info("idempotency_stored")
        return result


async def idempotent(
    request: Request,
    cache: IdempotencyCache,
    proceed: Callable[[], Awaitable[T]],
) -> T | Any:
    """Route helper: guard ``proceed`` using the request's method and key header."""

    return await cache.guard(request.method, request.headers.get(IDEMPOTENCY_HEADER), proceed)

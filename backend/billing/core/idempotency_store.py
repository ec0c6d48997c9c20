"""SQLAlchemy-backed idempotency store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.core.idempotency import DuplicateKeyError, IdempotencyEntry
from billing.models.base import utcnow
from billing.models.idempotency_record import IdempotencyRecord


class SqlAlchemyIdempotencyStore:
    """Stores cached responses in ``idempotency_record``.

    Each call uses its own session so cache writes never share a transaction
    with the business logic they wrap. The unique constraint on the key is
    what rejects the second of two concurrent inserts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def find_by_key(self, key: str) -> IdempotencyEntry | None:
        async with self._session_factory() as session:
            record = await session.scalar(
                select(IdempotencyRecord).where(IdempotencyRecord.idempotency_key == key)
            )
        if record is None:
            return None
        return IdempotencyEntry(
            key=record.idempotency_key,
            cached_response=record.cached_response,
            expires_at=record.expires_at,
        )

    async def insert_if_absent(self, key: str, value: Any, expires_at: datetime) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # an expired row would otherwise block the key forever
                    await session.execute(
                        delete(IdempotencyRecord).where(
                            IdempotencyRecord.idempotency_key == key,
                            IdempotencyRecord.expires_at <= self._clock(),
                        )
                    )
                    session.add(
                        IdempotencyRecord(
                            idempotency_key=key,
                            cached_response=value,
                            expires_at=expires_at,
                        )
                    )
        except IntegrityError as exc:
            raise DuplicateKeyError(key) from exc

    async def purge_expired(self, now: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
                )
        return result.rowcount or 0

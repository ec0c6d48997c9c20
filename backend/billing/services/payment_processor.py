"""Simulated payment processing for the payment service.

A payment is stored as PENDING, then processed in the background: a random
delay, PROCESSING, a second delay, and finally SUCCESS or FAILED decided by
the configured success rate. The outcome is pushed to the subscription
service through the webhook client without blocking anything.
"""

from __future__ import annotations

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.core.config import Settings
from billing.models.base import utcnow
from billing.models.payment_transaction import PaymentTransaction
from billing.schemas.payment import InitiatePaymentIn, PaymentOut, PaymentStatus
from billing.schemas.webhook import WebhookEventType
from billing.services.webhook_client import WebhookClient

if TYPE_CHECKING:
    from loguru import Logger

SIMULATED_FAILURE_REASON = "Simulated payment failure"


def serialise_payment(payment: PaymentTransaction) -> PaymentOut:
    return PaymentOut(
        id=payment.id,
        external_reference=payment.external_reference,
        amount=float(payment.amount),
        currency=payment.currency,
        status=PaymentStatus(payment.status),
        failure_reason=payment.failure_reason,
        metadata=payment.metadata_,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
        processed_at=payment.processed_at,
    )


def build_webhook_payload(payment: PaymentTransaction) -> dict[str, Any]:
    """Event body announcing the final state of ``payment``."""

    succeeded = payment.status == PaymentStatus.SUCCESS.value
    payload: dict[str, Any] = {
        "eventType": (
            WebhookEventType.PAYMENT_COMPLETED.value
            if succeeded
            else WebhookEventType.PAYMENT_FAILED.value
        ),
        "paymentId": payment.id,
        "externalReference": payment.external_reference,
        "status": "success" if succeeded else "failed",
        "amount": float(payment.amount),
        "currency": payment.currency,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
            "+00:00", "Z"
        ),
        "metadata": payment.metadata_ or None,
    }
    if not succeeded and payment.failure_reason:
        payload["failureReason"] = payment.failure_reason
    return payload


def webhook_idempotency_key(payment_id: str) -> str:
    return f"webhook_{payment_id}_{int(time.time() * 1000)}"


class PaymentProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_client: WebhookClient,
        *,
        success_rate: int = 80,
        processing_delay_ms: int = 2000,
        min_delay_ms: int = 1000,
        max_delay_ms: int = 5000,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: Logger = logger,
    ):
        self._session_factory = session_factory
        self.webhook_client = webhook_client
        self.success_rate = success_rate
        self.processing_delay_ms = processing_delay_ms
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max(max_delay_ms, min_delay_ms)
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._log = log
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        webhook_client: WebhookClient,
        **kwargs: Any,
    ) -> "PaymentProcessor":
        return cls(
            session_factory,
            webhook_client,
            success_rate=settings.PAYMENT_SUCCESS_RATE,
            processing_delay_ms=settings.PAYMENT_PROCESSING_DELAY_MS,
            min_delay_ms=settings.PAYMENT_MIN_DELAY_MS,
            max_delay_ms=settings.PAYMENT_MAX_DELAY_MS,
            **kwargs,
        )

    async def initiate(self, session: AsyncSession, data: InitiatePaymentIn) -> PaymentOut:
        """Persist a PENDING payment and start processing it in the background."""

        async with session.begin():
            payment = PaymentTransaction(
                external_reference=data.external_reference,
                amount=data.amount,
                currency=data.currency,
                status=PaymentStatus.PENDING.value,
                metadata_=data.metadata or {},
            )
            session.add(payment)
        self._log.bind(payment_id=payment.id, external_reference=payment.external_reference).info(
            "payment_initiated"
        )
        self.schedule(payment.id)
        return serialise_payment(payment)

    def schedule(self, payment_id: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._process_safely(payment_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process_safely(self, payment_id: str) -> None:
        try:
            await self.process(payment_id)
        except Exception as exc:
            self._log.opt(exception=exc).bind(payment_id=payment_id).error(
                "payment_processing_failed"
            )

    async def process(self, payment_id: str) -> PaymentTransaction:
        """Run the simulation for one payment and dispatch its webhook."""

        log = self._log.bind(payment_id=payment_id)
        await self._sleep(self._rng.uniform(self.min_delay_ms, self.max_delay_ms) / 1000.0)

        async with self._session_factory() as session:
            async with session.begin():
                payment = await session.get(PaymentTransaction, payment_id)
                if payment is None:
                    raise LookupError(f"Payment not found: {payment_id}")
                payment.status = PaymentStatus.PROCESSING.value
        log.info("payment_processing")

        await self._sleep(self.processing_delay_ms / 1000.0)
        succeeded = self._rng.random() * 100 < self.success_rate

        async with self._session_factory() as session:
            async with session.begin():
                payment = await session.get(PaymentTransaction, payment_id)
                if payment is None:
                    raise LookupError(f"Payment not found: {payment_id}")
                payment.status = (
                    PaymentStatus.SUCCESS.value if succeeded else PaymentStatus.FAILED.value
                )
                payment.failure_reason = None if succeeded else SIMULATED_FAILURE_REASON
                payment.processed_at = utcnow()
        log.bind(status=payment.status).info("payment_processed")

        self.webhook_client.dispatch(
            build_webhook_payload(payment), webhook_idempotency_key(payment.id)
        )
        return payment

    async def drain(self) -> None:
        """Wait for in-flight processing and webhook deliveries."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.webhook_client.drain()

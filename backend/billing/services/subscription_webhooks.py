"""Applies payment webhooks to subscriptions."""

from __future__ import annotations

from decimal import Decimal

from fastapi import status
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.errors import api_error
from billing.models.base import utcnow
from billing.models.subscription import PaymentRecord, Subscription
from billing.schemas.webhook import PaymentWebhookIn, WebhookAck

DEFAULT_FAILURE_REASON = "Payment processing failed"


async def process_payment_webhook(session: AsyncSession, event: PaymentWebhookIn) -> WebhookAck:
    """Activate or cancel the referenced subscription and record the payment.

    Raises a 404 ``SUBSCRIPTION_NOT_FOUND`` error when ``externalReference``
    does not name a subscription.
    """

    log = logger.bind(payment_id=event.payment_id, subscription_id=event.external_reference)
    log.info("payment_webhook_processing")
    succeeded = event.status == "success"
    new_status = "ACTIVE" if succeeded else "CANCELLED"
    failure_reason = None if succeeded else event.failure_reason or DEFAULT_FAILURE_REASON

    async with session.begin():
        subscription = await session.get(Subscription, event.external_reference)
        if subscription is None:
            log.error("payment_webhook_subscription_missing")
            raise api_error(
                status.HTTP_404_NOT_FOUND,
                "Subscription not found for payment reference",
                "SUBSCRIPTION_NOT_FOUND",
                {"externalReference": event.external_reference},
            )

        subscription.status = new_status
        subscription.payment_gateway_id = event.payment_id

        record = await session.scalar(
            select(PaymentRecord)
            .where(
                PaymentRecord.subscription_id == subscription.id,
                PaymentRecord.status == "PENDING",
            )
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        if record is None:
            record = PaymentRecord(
                subscription_id=subscription.id,
                amount=Decimal(str(event.amount)),
                currency=event.currency,
            )
            session.add(record)
        record.status = "SUCCESS" if succeeded else "FAILED"
        record.payment_gateway_id = event.payment_id
        record.failure_reason = failure_reason

    log.bind(new_status=new_status).info("payment_webhook_applied")
    return WebhookAck(
        received=True,
        processed_at=utcnow(),
        subscription_id=subscription.id,
        new_status=new_status,
    )

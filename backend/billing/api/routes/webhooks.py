"""Subscription service webhook receiver."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.db import get_session
from billing.core.deps import get_idempotency_cache, verify_webhook_signature
from billing.core.idempotency import IdempotencyCache, idempotent
from billing.schemas.webhook import PaymentWebhookIn, WebhookAck
from billing.services.subscription_webhooks import process_payment_webhook

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])


@router.post(
    "/payment",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(verify_webhook_signature)],
)
async def receive_payment_webhook(
    event: PaymentWebhookIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
):
    """Apply a signed payment event; redeliveries replay the first answer."""

    return await idempotent(request, cache, lambda: process_payment_webhook(session, event))

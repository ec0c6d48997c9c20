"""Payment service endpoints."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.core.db import get_session
from billing.core.deps import get_idempotency_cache, get_payment_processor, require_api_key
from billing.core.errors import api_error
from billing.core.idempotency import IdempotencyCache, idempotent
from billing.models.payment_transaction import PaymentTransaction
from billing.schemas.payment import InitiatePaymentIn, PaymentOut
from billing.services.payment_processor import PaymentProcessor, serialise_payment

router = APIRouter(
    prefix="/v1/payments",
    tags=["payments"],
    dependencies=[Depends(require_api_key)],
)


def _not_found(message: str):
    return api_error(status.HTTP_404_NOT_FOUND, message, "PAYMENT_NOT_FOUND")


@router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    payload: InitiatePaymentIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
    cache: IdempotencyCache = Depends(get_idempotency_cache),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    """Create a payment; processing and the webhook happen asynchronously."""

    return await idempotent(request, cache, lambda: processor.initiate(session, payload))


@router.get("/reference/{reference}", response_model=PaymentOut)
async def get_payment_by_reference(
    reference: str,
    session: AsyncSession = Depends(get_session),
) -> PaymentOut:
    payment = await session.scalar(
        select(PaymentTransaction)
        .where(PaymentTransaction.external_reference == reference)
        .order_by(PaymentTransaction.created_at.desc())
        .limit(1)
    )
    if payment is None:
        raise _not_found("Payment not found for reference")
    return serialise_payment(payment)


@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(
    payment_id: str,
    session: AsyncSession = Depends(get_session),
) -> PaymentOut:
    payment = await session.get(PaymentTransaction, payment_id)
    if payment is None:
        raise _not_found("Payment not found")
    return serialise_payment(payment)

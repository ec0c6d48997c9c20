"""FastAPI dependencies wiring stores, clients and guards into routes."""

from functools import lru_cache

from fastapi import Request, status
from loguru import logger

from billing.core.config import settings
from billing.core.db import get_sessionmaker
from billing.core.errors import api_error
from billing.core.idempotency import IdempotencyCache
from billing.core.idempotency_store import SqlAlchemyIdempotencyStore
from billing.core.signing import SIGNATURE_HEADER, verify_signature
from billing.services.payment_processor import PaymentProcessor
from billing.services.webhook_client import WebhookClient

API_KEY_HEADER = "X-API-Key"


@lru_cache(maxsize=1)
def get_idempotency_cache() -> IdempotencyCache:
    return IdempotencyCache(SqlAlchemyIdempotencyStore(get_sessionmaker()))


@lru_cache(maxsize=1)
def get_webhook_client() -> WebhookClient:
    return WebhookClient.from_settings(settings)


async def require_api_key(request: Request) -> None:
    """Reject payment-service calls without the shared API key."""

    api_key = request.headers.get(API_KEY_HEADER)
    if not api_key:
        logger.warning("api_key_missing")
        raise api_error(status.HTTP_401_UNAUTHORIZED, "API key is required", "API_KEY_REQUIRED")
    if api_key != settings.API_KEY:
        logger.warning("api_key_invalid")
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Invalid API key", "INVALID_API_KEY")


async def verify_webhook_signature(request: Request) -> None:
    """Check X-Webhook-Signature against the raw request body."""

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("webhook_signature_missing")
        raise api_error(
            status.HTTP_401_UNAUTHORIZED, "Webhook signature missing", "MISSING_SIGNATURE"
        )
    body = await request.body()
    if not verify_signature(settings.WEBHOOK_SECRET, body, signature):
        logger.warning("webhook_signature_invalid")
        raise api_error(
            status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature", "INVALID_SIGNATURE"
        )


@lru_cache(maxsize=1)
def get_payment_processor() -> PaymentProcessor:
    return PaymentProcessor.from_settings(settings, get_sessionmaker(), get_webhook_client())

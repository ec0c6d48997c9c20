"""ORM model exports for convenient imports elsewhere in the app."""

from billing.models.base import Base
from billing.models.idempotency_record import IdempotencyRecord
from billing.models.payment_transaction import PaymentTransaction
from billing.models.subscription import PaymentRecord, Subscription

__all__ = [
    "Base",
    "IdempotencyRecord",
    "PaymentRecord",
    "PaymentTransaction",
    "Subscription",
]

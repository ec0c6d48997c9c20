"""Webhook event schemas shared by sender and receiver."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import Field

from billing.schemas.payment import CamelModel


class WebhookEventType(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"


class PaymentWebhookIn(CamelModel):
    """Body of the ``payment.*`` webhook sent to the subscription service."""

    event_type: WebhookEventType
    payment_id: str = Field(..., min_length=1)
    external_reference: str = Field(..., min_length=1)
    status: Literal["success", "failed"]
    amount: float
    currency: str = Field(..., min_length=1)
    timestamp: str
    failure_reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class WebhookAck(CamelModel):
    received: bool
    processed_at: datetime
    subscription_id: str
    new_status: str

"""Pydantic schemas for payment operations."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class InitiatePaymentIn(CamelModel):
    external_reference: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., ge=Decimal("0.01"), max_digits=10, decimal_places=2)
    currency: str = Field(..., min_length=3, max_length=3)
    metadata: Optional[dict[str, Any]] = None

    @field_validator("external_reference", mode="before")
    @classmethod
    def _strip_reference(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("currency", mode="before")
    @classmethod
    def _normalise_currency(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


class PaymentOut(CamelModel):
    id: str
    external_reference: str
    amount: float
    currency: str
    status: PaymentStatus
    failure_reason: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    processed_at: Optional[datetime] = None

"""rxflow — Refund schemas."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class RefundCreate(BaseModel):
    amount: Decimal
    reason: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=100)


class RefundResponse(BaseModel):
    id: UUID
    order_id: UUID
    refund_amount: Decimal
    refund_reason: str
    refund_type: str
    refund_status: str
    refunded_by: UUID | None
    original_transaction_id: str | None
    refund_transaction_id: str | None
    idempotency_key: str | None
    created_at: datetime

    class Config:
        from_attributes = True

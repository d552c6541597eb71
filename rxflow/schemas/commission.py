"""rxflow — Subscription payment and commission schemas."""
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class CommissionResponse(BaseModel):
    id: UUID
    rep_id: UUID
    practice_id: UUID
    subscription_id: UUID
    payment_id: UUID
    payment_amount: Decimal
    commission_percentage: Decimal
    commission_amount: Decimal
    payment_status: str
    payment_method: str | None
    payment_notes: str | None
    paid_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class CommissionOutcomeResponse(BaseModel):
    status: str
    reason: str
    commission: CommissionResponse | None = None


class CalculateCommissionRequest(BaseModel):
    subscription_id: UUID
    practice_id: UUID


class CompletePaymentRequest(BaseModel):
    transaction_id: str | None = Field(default=None, max_length=100)


class SubscriptionPaymentResponse(BaseModel):
    id: UUID
    subscription_id: UUID
    amount: Decimal
    status: str
    transaction_id: str | None
    paid_at: datetime | None

    class Config:
        from_attributes = True


class CompletePaymentResponse(BaseModel):
    payment: SubscriptionPaymentResponse
    commission: CommissionOutcomeResponse | None = None


class MarkPaidRequest(BaseModel):
    payment_method: str = Field(..., min_length=1, max_length=50)
    notes: str | None = None

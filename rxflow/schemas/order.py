"""rxflow — Order, line and status schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

# --- Lines ---

class OrderLineCreate(BaseModel):
    product_id: UUID
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(..., ge=0)
    patient_id: UUID | None = None
    provider_id: UUID | None = None
    shipping_speed: Literal["ground", "2day", "overnight"] = "ground"
    prescription_url: str | None = None
    prescription_metadata: dict | None = None
    order_notes: str | None = None


class OrderLineResponse(BaseModel):
    id: UUID
    order_id: UUID
    product_id: UUID
    quantity: int
    unit_price: Decimal
    patient_id: UUID | None
    provider_id: UUID | None
    assigned_pharmacy_id: UUID | None
    shipping_speed: str
    shipping_carrier: str | None
    tracking_number: str | None
    status: str
    prescription_url: str | None
    order_notes: str | None

    class Config:
        from_attributes = True


class OrderLineStatusUpdate(BaseModel):
    status: Literal["pending", "filled", "shipped", "delivered", "denied", "change_requested", "on_hold"]
    shipping_carrier: str | None = Field(default=None, max_length=50)
    tracking_number: str | None = Field(default=None, max_length=100)
    note: str | None = None


# --- Orders ---

class OrderCreate(BaseModel):
    doctor_id: UUID
    destination_state: str = Field(..., min_length=1, max_length=10)
    ship_to: Literal["practice", "patient"] = "practice"
    discount_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    shipping_total: Decimal = Field(default=Decimal("0"), ge=0)
    merchant_fee_percentage: Decimal = Field(default=Decimal("0"), ge=0)
    authorization_transaction_id: str | None = Field(default=None, max_length=100)
    lines: list[OrderLineCreate] = Field(..., min_length=1)


class OrderResponse(BaseModel):
    id: UUID
    doctor_id: UUID
    created_by: UUID | None
    status: str
    status_manual_override: bool
    status_override_reason: str | None
    payment_status: str
    subtotal_before_discount: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    shipping_total: Decimal
    merchant_fee_percentage: Decimal
    merchant_fee_amount: Decimal
    total_amount: Decimal
    total_refunded_amount: Decimal
    ship_to: str
    destination_state: str | None
    cancelled_at: datetime | None
    cancelled_by: UUID | None
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime

    lines: list[OrderLineResponse] = []

    class Config:
        from_attributes = True


class StatusChangeRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=50)
    reason: str | None = None


class StatusHistoryResponse(BaseModel):
    id: UUID
    order_id: UUID
    old_status: str | None
    new_status: str
    changed_by: UUID | None
    changed_by_role: str
    impersonated_by: UUID | None
    is_manual_override: bool
    change_reason: str | None
    created_at: datetime

    class Config:
        from_attributes = True


class CancelRequest(BaseModel):
    reason: str | None = None


class CancellableResponse(BaseModel):
    order_id: UUID
    cancellable: bool


class CancelResponse(BaseModel):
    order: OrderResponse
    refund_id: UUID | None = None
    refund_error: str | None = None


class PharmacyActionRequest(BaseModel):
    action: Literal["hold", "decline"]
    reason: str = Field(..., min_length=1)

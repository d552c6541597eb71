"""rxflow — Order, OrderLine and OrderStatusHistory models."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rxflow.db.base import Base, JSONType, UUIDType, utcnow


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    PAYMENT_FAILED = "payment_failed"


class ShipTo(str, Enum):
    PRACTICE = "practice"
    PATIENT = "patient"


class ShippingSpeed(str, Enum):
    GROUND = "ground"
    TWO_DAY = "2day"
    OVERNIGHT = "overnight"


class LineStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    DENIED = "denied"
    CHANGE_REQUESTED = "change_requested"
    ON_HOLD = "on_hold"


class Order(Base):
    """Order header. Invariant: total_refunded_amount <= total_amount."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    doctor_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    subtotal_before_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    merchant_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    merchant_fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_refunded_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    payment_status: Mapped[str] = mapped_column(String(30), nullable=False, default=PaymentStatus.PENDING.value)
    # External payment-authorization reference used for refunds
    authorization_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    status_manual_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status_override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    ship_to: Mapped[str] = mapped_column(String(20), nullable=False, default=ShipTo.PRACTICE.value)
    destination_state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    report_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())

    lines: Mapped[list["OrderLine"]] = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan")


class OrderLine(Base):
    """One product within an order. ``assigned_pharmacy_id`` is pinned at creation."""

    __tablename__ = "order_lines"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    patient_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("providers.id", ondelete="SET NULL"), nullable=True)
    assigned_pharmacy_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("pharmacies.id", ondelete="SET NULL"), nullable=True)

    shipping_speed: Mapped[str] = mapped_column(String(20), nullable=False, default=ShippingSpeed.GROUND.value)
    shipping_carrier: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default=LineStatus.PENDING.value)
    prescription_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    prescription_metadata: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    order_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    order: Mapped["Order"] = relationship("Order", back_populates="lines")


class OrderStatusHistory(Base):
    """Append-only: one row per accepted status transition. No UPDATE or DELETE."""

    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    changed_by_role: Mapped[str] = mapped_column(String(30), nullable=False)
    impersonated_by: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    is_manual_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

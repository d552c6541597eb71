"""rxflow — Refund ledger model."""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.db.base import Base, JSONType, UUIDType, utcnow


class RefundStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class Refund(Base):
    """Append-only. orders.total_refunded_amount is the running sum of approved rows."""

    __tablename__ = "order_refunds"
    __table_args__ = (UniqueConstraint("order_id", "idempotency_key", name="uq_refund_idempotency"),)

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True)
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    refund_reason: Mapped[str] = mapped_column(Text, nullable=False)
    refund_type: Mapped[str] = mapped_column(String(20), nullable=False)
    refund_status: Mapped[str] = mapped_column(String(20), nullable=False, default=RefundStatus.APPROVED.value)
    refunded_by: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    original_transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    refund_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processor_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

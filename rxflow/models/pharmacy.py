"""rxflow — Product, Pharmacy and routing models."""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rxflow.db.base import Base, JSONType, UUIDType, utcnow


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    requires_prescription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Pharmacy(Base):
    """Fulfillment candidate. ``priority_map`` is {state: priority}, lower wins."""

    __tablename__ = "pharmacies"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    states_serviced: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    priority_map: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    rep_assignments: Mapped[list["PharmacyRepAssignment"]] = relationship("PharmacyRepAssignment", back_populates="pharmacy", cascade="all, delete-orphan")


class ProductPharmacy(Base):
    """Which pharmacies may fulfill a product."""

    __tablename__ = "product_pharmacies"
    __table_args__ = (UniqueConstraint("product_id", "pharmacy_id", name="uq_product_pharmacy"),)

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    pharmacy_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("pharmacies.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    pharmacy: Mapped["Pharmacy"] = relationship("Pharmacy")


class PharmacyRepAssignment(Base):
    """Restricts a pharmacy to a topline's hierarchy. Pharmacies without rows are global."""

    __tablename__ = "pharmacy_rep_assignments"
    __table_args__ = (UniqueConstraint("pharmacy_id", "topline_rep_id", name="uq_pharmacy_topline"),)

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pharmacy_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("pharmacies.id", ondelete="CASCADE"), nullable=False)
    topline_rep_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("reps.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    pharmacy: Mapped["Pharmacy"] = relationship("Pharmacy", back_populates="rep_assignments")


class OrderRoutingLog(Base):
    """Append-only record of every routing decision taken while placing an order."""

    __tablename__ = "order_routing_log"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=True)
    product_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)
    destination_state: Mapped[str] = mapped_column(String(10), nullable=False)
    user_topline_rep_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    eligible_pharmacies: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    selected_pharmacy_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), nullable=True)
    selection_reason: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    priority_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

"""rxflow — Sales representative model (topline / downline hierarchy)."""
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from rxflow.db.base import Base, UUIDType


class RepTier(str, Enum):
    TOPLINE = "topline"
    DOWNLINE = "downline"


class Rep(Base):
    __tablename__ = "reps"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=RepTier.DOWNLINE.value)
    # Downlines only: their topline rep
    assigned_topline_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(as_uuid=True), ForeignKey("reps.id", ondelete="SET NULL"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

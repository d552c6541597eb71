"""rxflow — Status registry schemas."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class StatusConfigCreate(BaseModel):
    status_key: str = Field(..., min_length=1, max_length=50)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    color_class: str = Field(..., min_length=1, max_length=100)
    sort_order: int = 0
    is_active: bool = True


class StatusConfigUpdate(BaseModel):
    display_name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    color_class: str | None = Field(default=None, min_length=1, max_length=100)
    sort_order: int | None = None
    is_active: bool | None = None


class StatusConfigResponse(BaseModel):
    id: UUID
    status_key: str
    display_name: str
    description: str | None
    color_class: str
    sort_order: int
    is_active: bool
    is_system_default: bool
    created_at: datetime

    class Config:
        from_attributes = True

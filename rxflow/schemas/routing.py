"""rxflow — Routing request/response."""
from uuid import UUID

from pydantic import BaseModel


class RouteRequest(BaseModel):
    product_id: UUID
    destination_state: str
    practice_id: UUID | None = None


class RouteResponse(BaseModel):
    pharmacy_id: UUID | None
    reason: str
    outcome: str
    priority: int | None = None

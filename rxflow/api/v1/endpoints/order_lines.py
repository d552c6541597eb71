"""rxflow — Order line endpoints (pharmacy fulfillment updates)."""
from typing import Any
from uuid import UUID

from fastapi import APIRouter

from rxflow.api.deps import CurrentActor, DbSession, Sink
from rxflow.core.roles import Role
from rxflow.schemas.common import ApiResponse
from rxflow.schemas.order import OrderLineResponse, OrderLineStatusUpdate
from rxflow.services.order_service import OrderService
from rxflow.services.order_state_machine import OrderStateMachine

router = APIRouter()


@router.patch("/{line_id}/status", response_model=ApiResponse[OrderLineResponse])
async def update_line_status(
    line_id: UUID,
    request: OrderLineStatusUpdate,
    db: DbSession,
    actor: CurrentActor,
    sink: Sink,
) -> Any:
    """Set a line's status and tracking; the order status follows automatically."""
    acting_pharmacy_id = None
    if actor.role_value == Role.PHARMACY.value:
        acting_pharmacy_id = await OrderService.pharmacy_for_user(db, actor.user_id)
    line = await OrderStateMachine.update_line_status(
        db,
        line_id,
        request.status,
        actor,
        acting_pharmacy_id=acting_pharmacy_id,
        shipping_carrier=request.shipping_carrier,
        tracking_number=request.tracking_number,
        note=request.note,
        sink=sink,
    )
    return ApiResponse(data=line)

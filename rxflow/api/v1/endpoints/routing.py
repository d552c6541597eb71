"""rxflow — Routing preview endpoint."""
from typing import Any

from fastapi import APIRouter

from rxflow.api.deps import CurrentActor, DbSession
from rxflow.core.roles import Role
from rxflow.schemas.common import ApiResponse
from rxflow.schemas.routing import RouteRequest, RouteResponse
from rxflow.services.order_service import OrderService
from rxflow.services.routing_service import RoutingService

router = APIRouter()


@router.post("/route", response_model=ApiResponse[RouteResponse])
async def route(request: RouteRequest, db: DbSession, actor: CurrentActor) -> Any:
    """
    Which pharmacy would fulfill this product for this state. Read-only.

    The sales-hierarchy scope comes from the practice, never from the client: admins may
    preview for any practice, everyone else previews as their own practice.
    """
    practice_id = actor.user_id
    if actor.role_value == Role.ADMIN.value and request.practice_id:
        practice_id = request.practice_id
    topline_rep_id = await OrderService.resolve_topline_rep_id(db, practice_id)
    decision = await RoutingService.route(db, request.product_id, request.destination_state, topline_rep_id)
    return ApiResponse(
        data=RouteResponse(
            pharmacy_id=decision.pharmacy_id,
            reason=decision.reason,
            outcome=decision.outcome.value,
            priority=decision.priority,
        )
    )

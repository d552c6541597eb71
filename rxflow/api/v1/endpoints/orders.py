"""rxflow — Orders API endpoints: placement, status, cancellation and refunds."""
from typing import Any
from uuid import UUID

from fastapi import APIRouter

from rxflow.api.deps import CsrfToken, CurrentActor, DbSession, Processor, Registry, Sink, TokenService
from rxflow.core.errors import AuthorizationError, NotFoundError
from rxflow.schemas.common import ApiResponse, Meta
from rxflow.schemas.order import (
    CancellableResponse,
    CancelRequest,
    CancelResponse,
    OrderCreate,
    OrderResponse,
    PharmacyActionRequest,
    StatusChangeRequest,
    StatusHistoryResponse,
)
from rxflow.schemas.refund import RefundCreate, RefundResponse
from rxflow.services.cancellation_policy import CancellationService
from rxflow.services.order_service import OrderService
from rxflow.services.order_state_machine import OrderStateMachine
from rxflow.services.refund_ledger import RefundLedger

router = APIRouter()


async def _load_order(db, order_id: UUID):
    order = await OrderService.get_by_id(db, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


@router.post("", response_model=ApiResponse[OrderResponse])
async def create_order(request: OrderCreate, db: DbSession, actor: CurrentActor) -> Any:
    """Place an order; every line is routed and pinned to a pharmacy."""
    order = await OrderService.create_order(
        db=db,
        actor=actor,
        doctor_id=request.doctor_id,
        lines_data=[line.model_dump() for line in request.lines],
        destination_state=request.destination_state,
        ship_to=request.ship_to,
        discount_percentage=request.discount_percentage,
        shipping_total=request.shipping_total,
        merchant_fee_percentage=request.merchant_fee_percentage,
        authorization_transaction_id=request.authorization_transaction_id,
    )
    return ApiResponse(data=order, meta=Meta(message="Order created"))


@router.get("/{order_id}", response_model=ApiResponse[OrderResponse])
async def get_order(order_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    return ApiResponse(data=await _load_order(db, order_id))


@router.get("/{order_id}/history", response_model=ApiResponse[list[StatusHistoryResponse]])
async def get_order_history(order_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    """Status audit trail, oldest first."""
    await _load_order(db, order_id)
    rows = await OrderStateMachine.history(db, order_id)
    return ApiResponse(data=rows, meta=Meta(total_count=len(rows)))


@router.post("/{order_id}/status", response_model=ApiResponse[OrderResponse])
async def change_order_status(
    order_id: UUID,
    request: StatusChangeRequest,
    db: DbSession,
    actor: CurrentActor,
    registry: Registry,
    sink: Sink,
) -> Any:
    result = await OrderStateMachine.change_status(
        db, order_id, request.status, actor, registry, reason=request.reason, sink=sink,
    )
    return ApiResponse(data=result.order, meta=Meta(message="Status updated", warning=result.warning))


@router.post("/{order_id}/status/reset", response_model=ApiResponse[OrderResponse])
async def reset_order_status(order_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    """Return the order to automatic status computation."""
    order = await OrderStateMachine.reset_to_automatic(db, order_id, actor)
    return ApiResponse(data=order, meta=Meta(message="Order returned to automatic status"))


@router.get("/{order_id}/cancellable", response_model=ApiResponse[CancellableResponse])
async def get_cancellable(order_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    allowed = await CancellationService.is_cancellable(db, order_id, actor)
    return ApiResponse(data=CancellableResponse(order_id=order_id, cancellable=allowed))


@router.post("/{order_id}/cancel", response_model=ApiResponse[CancelResponse])
async def cancel_order(
    order_id: UUID,
    request: CancelRequest,
    db: DbSession,
    actor: CurrentActor,
    tokens: TokenService,
    registry: Registry,
    processor: Processor,
    sink: Sink,
    csrf_token: CsrfToken = None,
) -> Any:
    result = await CancellationService.cancel(
        db, order_id, actor, csrf_token, tokens, registry,
        processor=processor, sink=sink, reason=request.reason,
    )
    data = CancelResponse(
        order=OrderResponse.model_validate(result.order),
        refund_id=result.refund.id if result.refund else None,
        refund_error=result.refund_error,
    )
    return ApiResponse(data=data, meta=Meta(message="Order cancelled"))


@router.post("/{order_id}/refunds", response_model=ApiResponse[RefundResponse])
async def create_refund(
    order_id: UUID,
    request: RefundCreate,
    db: DbSession,
    actor: CurrentActor,
    tokens: TokenService,
    processor: Processor,
    sink: Sink,
    csrf_token: CsrfToken = None,
) -> Any:
    if not await tokens.consume(actor.user_id, csrf_token):
        raise AuthorizationError("Invalid or expired anti-forgery token")
    refund = await RefundLedger.refund(
        db, order_id, request.amount, request.reason, actor, processor, sink,
        idempotency_key=request.idempotency_key,
    )
    return ApiResponse(data=refund, meta=Meta(message="Refund processed"))


@router.get("/{order_id}/refunds", response_model=ApiResponse[list[RefundResponse]])
async def list_refunds(order_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    await _load_order(db, order_id)
    refunds = await RefundLedger.refunds_for(db, order_id)
    return ApiResponse(data=refunds, meta=Meta(total_count=len(refunds)))


@router.post("/{order_id}/pharmacy-action", response_model=ApiResponse[OrderResponse])
async def pharmacy_action(
    order_id: UUID,
    request: PharmacyActionRequest,
    db: DbSession,
    actor: CurrentActor,
    sink: Sink,
) -> Any:
    """Hold or decline the acting pharmacy's lines."""
    await OrderService.pharmacy_action(db, order_id, request.action, request.reason, actor, sink=sink)
    return ApiResponse(data=await _load_order(db, order_id))

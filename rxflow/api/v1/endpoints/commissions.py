"""rxflow — Subscription payments and rep commissions."""
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from rxflow.api.deps import CurrentActor, DbSession, Sink
from rxflow.core.errors import AuthorizationError
from rxflow.core.roles import Capability
from rxflow.schemas.commission import (
    CalculateCommissionRequest,
    CommissionOutcomeResponse,
    CommissionResponse,
    CompletePaymentRequest,
    CompletePaymentResponse,
    MarkPaidRequest,
    SubscriptionPaymentResponse,
)
from rxflow.schemas.common import ApiResponse, Meta
from rxflow.services.commission_service import CommissionOutcome, CommissionService, SubscriptionService

router = APIRouter()
payments_router = APIRouter()


def _outcome(outcome: CommissionOutcome | None) -> CommissionOutcomeResponse | None:
    if outcome is None:
        return None
    return CommissionOutcomeResponse(
        status=outcome.status.value,
        reason=outcome.reason,
        commission=CommissionResponse.model_validate(outcome.commission) if outcome.commission else None,
    )


@payments_router.post("/{payment_id}/complete", response_model=ApiResponse[CompletePaymentResponse])
async def complete_payment(
    payment_id: UUID,
    request: CompletePaymentRequest,
    db: DbSession,
    actor: CurrentActor,
    sink: Sink,
) -> Any:
    """Mark a subscription payment completed; the commission follows as its own step."""
    payment, outcome = await SubscriptionService.complete_payment(
        db, payment_id, actor, transaction_id=request.transaction_id, sink=sink,
    )
    data = CompletePaymentResponse(
        payment=SubscriptionPaymentResponse.model_validate(payment),
        commission=_outcome(outcome),
    )
    return ApiResponse(data=data)


@router.post("/calculate", response_model=ApiResponse[CommissionOutcomeResponse])
async def calculate_commission(
    request: CalculateCommissionRequest,
    db: DbSession,
    actor: CurrentActor,
    sink: Sink,
) -> Any:
    if not actor.can(Capability.MANAGE_COMMISSIONS):
        raise AuthorizationError("Only admins can calculate commissions")
    outcome = await CommissionService.calculate_commission(db, request.subscription_id, request.practice_id, sink)
    return ApiResponse(data=_outcome(outcome))


@router.get("", response_model=ApiResponse[list[CommissionResponse]])
async def list_commissions(
    db: DbSession,
    actor: CurrentActor,
    payment_status: str | None = Query(None),
    rep_id: UUID | None = Query(None),
) -> Any:
    rows = await CommissionService.list_commissions(db, actor, payment_status=payment_status, rep_id=rep_id)
    return ApiResponse(data=rows, meta=Meta(total_count=len(rows)))


@router.post("/{commission_id}/mark-paid", response_model=ApiResponse[CommissionResponse])
async def mark_commission_paid(
    commission_id: UUID,
    request: MarkPaidRequest,
    db: DbSession,
    actor: CurrentActor,
) -> Any:
    commission = await CommissionService.mark_paid(db, commission_id, actor, request.payment_method, request.notes)
    return ApiResponse(data=commission, meta=Meta(message="Commission marked paid"))

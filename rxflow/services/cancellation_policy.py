"""rxflow — Cancellation Policy and the cancel action.

``can_cancel`` is a pure predicate over a snapshot of the order; the UI calls it through
``GET /orders/{id}/cancellable`` and ``CancellationService.cancel`` evaluates it again
right before the write.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxflow.core.errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    FulfillmentError,
    NotFoundError,
)
from rxflow.core.roles import Actor, Capability, Role, has_capability, parse_role
from rxflow.db.base import utcnow
from rxflow.models.order import Order, OrderStatusHistory, PaymentStatus
from rxflow.models.refund import Refund
from rxflow.models.user import Provider
from rxflow.services.csrf_service import CsrfTokenService
from rxflow.services.incident_service import report_incident
from rxflow.services.notification_service import EVENT_ORDER_CANCELLED, NotificationSink, publish_event
from rxflow.services.order_state_machine import OrderStateMachine
from rxflow.services.payment_processor import PaymentProcessor
from rxflow.services.refund_ledger import RefundLedger, remaining_refundable
from rxflow.services.status_registry import StatusRegistry

logger = logging.getLogger(__name__)

CANCELLATION_WINDOW = timedelta(hours=1)
CANCELLED = "cancelled"
REFUNDABLE_PAYMENT_STATUSES = frozenset({PaymentStatus.PAID.value, PaymentStatus.PARTIALLY_REFUNDED.value})


@dataclass(frozen=True)
class CancellationSubject:
    """What the policy needs to know about an order and the acting user."""

    status: str
    created_at: datetime | None
    doctor_id: UUID | None
    line_creator_user_ids: frozenset[UUID] = field(default_factory=frozenset)
    line_creator_practice_ids: frozenset[UUID] = field(default_factory=frozenset)
    actor_practice_id: UUID | None = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def within_window(created_at: datetime | None, now: datetime | None = None) -> bool:
    if created_at is None:
        return False
    now = _as_utc(now or datetime.now(timezone.utc))
    return now - _as_utc(created_at) < CANCELLATION_WINDOW


def can_cancel(
    subject: CancellationSubject,
    actor_role: Role | str | None,
    actor_user_id: UUID | None,
    now: datetime | None = None,
) -> bool:
    if subject.status == CANCELLED:
        return False
    if has_capability(actor_role, Capability.CANCEL_WITHOUT_WINDOW):
        return True
    if not within_window(subject.created_at, now):
        return False
    if actor_user_id is None:
        return False

    # Cancelling is a status change; roles that cannot change status never own an order here
    if not has_capability(actor_role, Capability.CHANGE_STATUS):
        return False
    if subject.doctor_id is not None and actor_user_id == subject.doctor_id:
        return True

    role = parse_role(actor_role)
    if role == Role.DOCTOR:
        return actor_user_id in subject.line_creator_practice_ids
    if role == Role.PROVIDER:
        if actor_user_id in subject.line_creator_user_ids:
            return True
        return subject.actor_practice_id is not None and subject.actor_practice_id == subject.doctor_id
    return False


@dataclass
class CancellationResult:
    order: Order
    history: OrderStatusHistory
    refund: Refund | None = None
    refund_error: str | None = None


class CancellationService:
    @staticmethod
    async def load_subject(db: AsyncSession, order: Order, actor: Actor) -> CancellationSubject:
        provider_ids = {line.provider_id for line in order.lines if line.provider_id}
        creator_user_ids: set[UUID] = set()
        creator_practice_ids: set[UUID] = set()
        if provider_ids:
            rows = await db.execute(
                select(Provider.user_id, Provider.practice_id).where(Provider.id.in_(provider_ids))
            )
            for user_id, practice_id in rows.all():
                creator_user_ids.add(user_id)
                creator_practice_ids.add(practice_id)

        actor_practice_id = None
        if actor.role_value == Role.PROVIDER.value:
            res = await db.execute(select(Provider.practice_id).where(Provider.user_id == actor.user_id))
            actor_practice_id = res.scalar_one_or_none()

        return CancellationSubject(
            status=order.status,
            created_at=order.created_at,
            doctor_id=order.doctor_id,
            line_creator_user_ids=frozenset(creator_user_ids),
            line_creator_practice_ids=frozenset(creator_practice_ids),
            actor_practice_id=actor_practice_id,
        )

    @staticmethod
    async def is_cancellable(db: AsyncSession, order_id: UUID, actor: Actor, now: datetime | None = None) -> bool:
        order = await OrderStateMachine.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")
        subject = await CancellationService.load_subject(db, order, actor)
        return can_cancel(subject, actor.role, actor.user_id, now)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        order_id: UUID,
        actor: Actor,
        csrf_token: str | None,
        token_service: CsrfTokenService,
        registry: StatusRegistry,
        processor: PaymentProcessor | None = None,
        sink: NotificationSink | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancellationResult:
        """
        Cancel an order on behalf of ``actor``.

        The anti-forgery token is consumed before anything else is read. After the status
        write, the automatic refund and the pharmacy notification run as separate steps;
        their failures are reported as incidents and do not undo the cancellation.
        """
        if not await token_service.consume(actor.user_id, csrf_token):
            raise AuthorizationError("Invalid or expired anti-forgery token")

        order = await OrderStateMachine.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")
        if order.status == CANCELLED:
            raise ConflictError("Order is already cancelled")

        subject = await CancellationService.load_subject(db, order, actor)
        if not can_cancel(subject, actor.role, actor.user_id, now):
            if not within_window(subject.created_at, now):
                raise AuthorizationError("Orders can only be cancelled within 1 hour of creation")
            raise AuthorizationError("You are not allowed to cancel this order")

        reason = (reason or "").strip() or None
        transition = await OrderStateMachine.change_status(
            db, order.id, CANCELLED, actor, registry, reason=reason or "Order cancelled", sink=sink,
        )
        order = transition.order
        order.cancelled_at = utcnow()
        order.cancelled_by = actor.user_id
        order.cancellation_reason = reason
        await db.flush()
        logger.info("Order %s cancelled by %s (%s)", order.id, actor.user_id, actor.role_value)

        result = CancellationResult(order=order, history=transition.history)

        if (
            order.payment_status in REFUNDABLE_PAYMENT_STATUSES
            and order.authorization_transaction_id
            and remaining_refundable(order) > 0
        ):
            if processor is None:
                result.refund_error = "No payment processor configured"
                report_incident(sink, "cancellation.refund", ExternalServiceError(result.refund_error), {"order_id": str(order.id)})
            else:
                try:
                    # Savepoint: a failed refund never rolls back the cancellation
                    async with db.begin_nested():
                        result.refund = await RefundLedger.refund(
                            db,
                            order_id,
                            remaining_refundable(order),
                            f"Automatic refund for cancelled order{': ' + reason if reason else ''}",
                            actor,
                            processor,
                            sink,
                            system_initiated=True,
                        )
                except ExternalServiceError as exc:
                    # Already reported by the ledger
                    result.refund_error = exc.message
                    logger.warning("Automatic refund failed for cancelled order %s: %s", order_id, exc)
                except FulfillmentError as exc:
                    result.refund_error = exc.message
                    report_incident(sink, "cancellation.refund", exc, {"order_id": str(order_id)})
                except Exception as exc:
                    result.refund_error = "Automatic refund failed"
                    report_incident(sink, "cancellation.refund", exc, {"order_id": str(order_id)})
                if result.refund is None:
                    order = await OrderStateMachine.get_order(db, order_id)
                    result.order = order

        publish_event(
            sink,
            EVENT_ORDER_CANCELLED,
            {
                "order_id": order.id,
                "cancelled_by": actor.user_id,
                "cancelled_by_role": actor.role_value,
                "cancellation_reason": reason,
                "pharmacy_ids": sorted({str(l.assigned_pharmacy_id) for l in order.lines if l.assigned_pharmacy_id}),
                "refund_id": result.refund.id if result.refund else None,
                "refund_error": result.refund_error,
            },
        )
        return result

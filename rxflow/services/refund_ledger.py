"""rxflow — Refund Ledger.

Invariant: an order's cumulative approved refunds never exceed its total. The balance
check and the write are serialized by reading the order row FOR UPDATE and by a
conditional UPDATE guarded on the previously read cumulative amount, so two concurrent
refunds can never both spend the same remaining balance.
"""
import logging
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rxflow.core.errors import (
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from rxflow.core.roles import Actor, Capability
from rxflow.db.base import utcnow
from rxflow.models.order import Order, PaymentStatus
from rxflow.models.refund import Refund, RefundStatus, RefundType
from rxflow.services.incident_service import report_incident
from rxflow.services.notification_service import EVENT_ORDER_REFUNDED, NotificationSink, publish_event
from rxflow.services.order_state_machine import OrderStateMachine
from rxflow.services.payment_processor import PaymentProcessor

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def remaining_refundable(order: Order) -> Decimal:
    return Decimal(order.total_amount) - Decimal(order.total_refunded_amount or 0)


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, bool):
        raise ValidationError("Refund amount must be a positive number")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Refund amount must be a positive number") from None
    if not value.is_finite() or value <= 0:
        raise ValidationError("Refund amount must be a positive number")
    if value != value.quantize(CENT):
        raise ValidationError("Refund amount cannot have more than two decimal places")
    return value.quantize(CENT)


class RefundLedger:
    """Partial and full refunds against an order's stored payment authorization."""

    @staticmethod
    async def refund(
        db: AsyncSession,
        order_id: UUID,
        amount,
        reason: str | None,
        actor: Actor,
        processor: PaymentProcessor,
        sink: NotificationSink | None = None,
        *,
        idempotency_key: str | None = None,
        system_initiated: bool = False,
    ) -> Refund:
        """
        Refund ``amount`` of the order. Preconditions, in order: order exists, amount is
        positive, amount <= remaining refundable, reason is non-empty, the order has a
        payment authorization. A processor failure writes nothing.
        """
        if not system_initiated and not actor.can(Capability.REFUND):
            raise AuthorizationError(f"Role '{actor.role_value}' may not issue refunds")

        order = await OrderStateMachine.get_order(db, order_id, for_update=True)
        if not order:
            raise NotFoundError("Order not found")

        if idempotency_key:
            existing = await RefundLedger._by_idempotency_key(db, order_id, idempotency_key)
            if existing:
                logger.info("Refund %s replayed for idempotency key %s", existing.id, idempotency_key)
                return existing

        value = _coerce_amount(amount)
        remaining = remaining_refundable(order)
        if value > remaining:
            raise ConflictError(
                f"Can only refund up to ${remaining:.2f}",
                {"remaining_refundable": str(remaining), "requested": str(value)},
            )
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A refund reason is required")
        if not order.authorization_transaction_id:
            raise ValidationError("No payment transaction found for this order")

        context = {"order_id": str(order.id), "amount": str(value)}
        try:
            result = await processor.refund(order.authorization_transaction_id, value, reference=str(order.id))
        except ExternalServiceError as exc:
            report_incident(sink, "refund_ledger.processor", exc, context)
            raise
        except Exception as exc:
            report_incident(sink, "refund_ledger.processor", exc, context)
            raise ExternalServiceError("Payment processor error") from exc

        if not result.success:
            exc = ExternalServiceError(f"Refund declined by processor: {result.message or 'unknown error'}")
            report_incident(sink, "refund_ledger.processor", exc, context)
            raise exc

        prior = Decimal(order.total_refunded_amount or 0)
        new_total = prior + value
        total = Decimal(order.total_amount)
        payment_status = PaymentStatus.REFUNDED.value if new_total == total else PaymentStatus.PARTIALLY_REFUNDED.value

        guarded = await db.execute(
            update(Order)
            .where(Order.id == order.id, Order.total_refunded_amount == prior)
            .values(total_refunded_amount=new_total, payment_status=payment_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if guarded.rowcount != 1:
            # Processor already refunded; the ledger lost the race and must be reconciled
            exc = ConflictError("Order refund balance changed concurrently; refund not recorded")
            report_incident(sink, "refund_ledger.write", exc, {**context, "refund_transaction_id": result.transaction_id})
            raise exc

        refund = Refund(
            order_id=order.id,
            refund_amount=value,
            refund_reason=reason,
            refund_type=RefundType.FULL.value if value == remaining else RefundType.PARTIAL.value,
            refund_status=RefundStatus.APPROVED.value,
            refunded_by=actor.user_id,
            original_transaction_id=order.authorization_transaction_id,
            refund_transaction_id=result.transaction_id,
            processor_response=result.raw,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        db.add(refund)
        await db.flush()
        await db.refresh(order, attribute_names=["total_refunded_amount", "payment_status", "updated_at"])

        logger.info(
            "Refund %s of %s on order %s (%s); refunded total %s of %s",
            refund.id, value, order.id, refund.refund_type, new_total, total,
        )
        publish_event(
            sink,
            EVENT_ORDER_REFUNDED,
            {
                "order_id": order.id,
                "refund_id": refund.id,
                "amount": value,
                "refund_type": refund.refund_type,
                "total_refunded_amount": new_total,
                "payment_status": payment_status,
                "reason": reason,
                "refunded_by": actor.user_id,
            },
        )
        return refund

    @staticmethod
    async def refunds_for(db: AsyncSession, order_id: UUID) -> list[Refund]:
        result = await db.execute(
            select(Refund).where(Refund.order_id == order_id).order_by(Refund.created_at, Refund.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _by_idempotency_key(db: AsyncSession, order_id: UUID, key: str) -> Refund | None:
        result = await db.execute(
            select(Refund).where(Refund.order_id == order_id, Refund.idempotency_key == key)
        )
        return result.scalar_one_or_none()

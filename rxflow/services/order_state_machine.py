"""rxflow — Order State Machine.

There is no fixed transition graph: any actor with CHANGE_STATUS may move an order to
any active registry key. On top of that:

* manual changes that differ from the automatically computed status are flagged as
  overrides and keep their reason;
* automatic recomputation (line updates, shipment sync) leaves overridden orders alone
  until someone resets them to automatic;
* every accepted transition appends exactly one OrderStatusHistory row in the same
  flush as the order update.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rxflow.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from rxflow.core.roles import SYSTEM_ROLE, Actor, Capability, Role
from rxflow.db.base import utcnow
from rxflow.models.order import LineStatus, Order, OrderLine, OrderStatusHistory
from rxflow.services.notification_service import EVENT_ORDER_STATUS_CHANGED, NotificationSink, publish_event
from rxflow.services.status_registry import StatusRegistry, advisory_warning

logger = logging.getLogger(__name__)

LINE_STATUSES = frozenset(s.value for s in LineStatus)

_SHIPPED_OR_LATER = {LineStatus.SHIPPED.value, LineStatus.DELIVERED.value}
_FILLED_OR_LATER = {LineStatus.FILLED.value, LineStatus.SHIPPED.value, LineStatus.DELIVERED.value}


def derive_automatic_status(line_statuses: Iterable[str]) -> str:
    """Order status implied by its lines, as automatic sync would set it."""
    statuses = list(line_statuses)
    if not statuses:
        return "pending"
    if all(s == LineStatus.DENIED.value for s in statuses):
        return "denied"

    live = [s for s in statuses if s != LineStatus.DENIED.value]
    if any(s == LineStatus.ON_HOLD.value for s in live):
        return "on_hold"
    if any(s == LineStatus.CHANGE_REQUESTED.value for s in live):
        return "change_requested"
    if all(s == LineStatus.DELIVERED.value for s in live):
        return "delivered"
    if all(s in _SHIPPED_OR_LATER for s in live):
        return "shipped"
    if all(s in _FILLED_OR_LATER for s in live):
        return "filled"
    if any(s != LineStatus.PENDING.value for s in live):
        return "processing"
    return "pending"


@dataclass
class TransitionResult:
    order: Order
    history: OrderStatusHistory
    warning: str | None = None


class OrderStateMachine:
    """Status transitions, override bookkeeping and the audit trail."""

    @staticmethod
    async def get_order(db: AsyncSession, order_id: UUID, *, for_update: bool = False) -> Order | None:
        stmt = select(Order).where(Order.id == order_id).options(selectinload(Order.lines))
        if for_update:
            # Row lock; reload attributes already in the identity map
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await db.execute(stmt)
        return res.scalar_one_or_none()

    @staticmethod
    async def change_status(
        db: AsyncSession,
        order_id: UUID,
        new_status: str,
        actor: Actor,
        registry: StatusRegistry,
        reason: str | None = None,
        sink: NotificationSink | None = None,
    ) -> TransitionResult:
        """Manual transition by an admin, pharmacy, doctor or provider."""
        if not actor.can(Capability.CHANGE_STATUS):
            raise AuthorizationError(f"Role '{actor.role_value}' may not change order status")

        order = await OrderStateMachine.get_order(db, order_id, for_update=True)
        if not order:
            raise NotFoundError("Order not found")
        if not registry.is_active(new_status):
            raise ConflictError(f"Status '{new_status}' is not an active order status")

        automatic = derive_automatic_status(line.status for line in order.lines)
        is_override = new_status != automatic
        reason = (reason or "").strip() or None

        if is_override:
            order.status_manual_override = True
            order.status_override_reason = reason
        else:
            order.status_manual_override = False
            order.status_override_reason = None

        history = OrderStateMachine._apply(db, order, new_status, actor.user_id, actor.role_value, is_override, reason, actor.impersonator_id)
        await db.flush()

        logger.info(
            "Order %s status %s -> %s by %s (%s)%s",
            order.id, history.old_status, new_status, actor.user_id, actor.role_value,
            " [manual override]" if is_override else "",
        )
        _publish_transition(sink, order, history)
        return TransitionResult(order=order, history=history, warning=advisory_warning(new_status))

    @staticmethod
    async def reset_to_automatic(db: AsyncSession, order_id: UUID, actor: Actor) -> Order:
        """Clear the override flag and reason. The current status is left as it is."""
        if not actor.can(Capability.CHANGE_STATUS):
            raise AuthorizationError(f"Role '{actor.role_value}' may not change order status")
        order = await OrderStateMachine.get_order(db, order_id)
        if not order:
            raise NotFoundError("Order not found")

        order.status_manual_override = False
        order.status_override_reason = None
        await db.flush()
        logger.info("Order %s returned to automatic status by %s", order.id, actor.user_id)
        return order

    @staticmethod
    async def apply_automatic_status(
        db: AsyncSession,
        order_id: UUID,
        reason: str | None = None,
        sink: NotificationSink | None = None,
    ) -> TransitionResult | None:
        """Recompute from lines. No-op under manual override or when nothing changes."""
        order = await OrderStateMachine.get_order(db, order_id, for_update=True)
        if not order:
            raise NotFoundError("Order not found")
        if order.status_manual_override:
            logger.info("Order %s under manual override; automatic status skipped", order.id)
            return None

        automatic = derive_automatic_status(line.status for line in order.lines)
        if automatic == order.status:
            return None

        history = OrderStateMachine._apply(db, order, automatic, None, SYSTEM_ROLE, False, reason)
        await db.flush()
        logger.info("Order %s automatic status %s -> %s", order.id, history.old_status, automatic)
        _publish_transition(sink, order, history)
        return TransitionResult(order=order, history=history, warning=None)

    @staticmethod
    async def update_line_status(
        db: AsyncSession,
        line_id: UUID,
        new_status: str,
        actor: Actor,
        *,
        acting_pharmacy_id: UUID | None = None,
        shipping_carrier: str | None = None,
        tracking_number: str | None = None,
        note: str | None = None,
        sink: NotificationSink | None = None,
    ) -> OrderLine:
        """Pharmacy/admin line update, followed by automatic order status."""
        if not actor.can(Capability.UPDATE_LINES):
            raise AuthorizationError(f"Role '{actor.role_value}' may not update order lines")
        if new_status not in LINE_STATUSES:
            raise ValidationError(f"Invalid line status '{new_status}'")

        line = await db.get(OrderLine, line_id)
        if not line:
            raise NotFoundError("Order line not found")
        if actor.role_value == Role.PHARMACY.value and line.assigned_pharmacy_id != acting_pharmacy_id:
            raise AuthorizationError("Line is not assigned to your pharmacy")

        line.status = new_status
        if shipping_carrier is not None:
            line.shipping_carrier = shipping_carrier
        if tracking_number is not None:
            line.tracking_number = tracking_number
        if note:
            line.order_notes = append_note(line.order_notes, note)
        await db.flush()

        await OrderStateMachine.apply_automatic_status(
            db, line.order_id, reason=f"Line {line.id} set to {new_status}", sink=sink,
        )
        return line

    @staticmethod
    async def history(db: AsyncSession, order_id: UUID) -> list[OrderStatusHistory]:
        result = await db.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def history_count(db: AsyncSession, order_id: UUID) -> int:
        result = await db.execute(
            select(func.count(OrderStatusHistory.id)).where(OrderStatusHistory.order_id == order_id)
        )
        return result.scalar_one()

    @staticmethod
    def _apply(
        db: AsyncSession,
        order: Order,
        new_status: str,
        changed_by: UUID | None,
        role: str,
        is_override: bool,
        reason: str | None,
        impersonated_by: UUID | None = None,
    ) -> OrderStatusHistory:
        history = OrderStatusHistory(
            order_id=order.id,
            old_status=order.status,
            new_status=new_status,
            changed_by=changed_by,
            changed_by_role=role,
            impersonated_by=impersonated_by,
            is_manual_override=is_override,
            change_reason=reason,
            created_at=utcnow(),
        )
        order.status = new_status
        order.updated_at = utcnow()
        db.add(history)
        return history


def append_note(existing: str | None, note: str) -> str:
    stamped = f"[{utcnow().isoformat()}] {note}"
    return f"{existing}\n{stamped}" if existing else stamped


def _publish_transition(sink: NotificationSink | None, order: Order, history: OrderStatusHistory) -> None:
    publish_event(
        sink,
        EVENT_ORDER_STATUS_CHANGED,
        {
            "order_id": order.id,
            "old_status": history.old_status,
            "new_status": history.new_status,
            "changed_by": history.changed_by,
            "changed_by_role": history.changed_by_role,
            "is_manual_override": history.is_manual_override,
            "change_reason": history.change_reason,
        },
    )

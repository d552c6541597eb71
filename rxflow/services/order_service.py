"""rxflow — OrderService: placement, pharmacy actions and the orphan sweep."""
import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rxflow.core.errors import AuthorizationError, ConflictError, NotFoundError, RoutingFailed, ValidationError
from rxflow.core.roles import Actor, Capability, Role
from rxflow.db.base import utcnow
from rxflow.models.order import LineStatus, Order, OrderLine, PaymentStatus, ShippingSpeed, ShipTo
from rxflow.models.pharmacy import OrderRoutingLog, Pharmacy
from rxflow.models.rep import Rep, RepTier
from rxflow.models.user import User
from rxflow.services.notification_service import NotificationSink
from rxflow.services.order_state_machine import OrderStateMachine, TransitionResult, append_note
from rxflow.services.routing_service import RoutingOutcome, RoutingService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
_ORDERING_ROLES = {Role.ADMIN.value, Role.DOCTOR.value, Role.PROVIDER.value, Role.STAFF.value}


class PharmacyAction(str, Enum):
    HOLD = "hold"
    DECLINE = "decline"


_ACTION_LINE_STATUS = {
    PharmacyAction.HOLD: LineStatus.ON_HOLD.value,
    PharmacyAction.DECLINE: LineStatus.DENIED.value,
}


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _non_negative(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value if value is not None else 0))
    except ArithmeticError:
        raise ValidationError(f"{field} must be a number") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def compute_totals(
    lines_data: list[dict],
    discount_percentage=0,
    shipping_total=0,
    merchant_fee_percentage=0,
) -> dict[str, Decimal]:
    """Money fields of an order header, each rounded half-up to cents."""
    discount_pct = _non_negative(discount_percentage, "discount_percentage")
    if discount_pct > 100:
        raise ValidationError("discount_percentage cannot exceed 100")
    fee_pct = _non_negative(merchant_fee_percentage, "merchant_fee_percentage")

    subtotal = _money(sum(
        (_non_negative(l.get("unit_price"), "unit_price") * int(l.get("quantity", 1)) for l in lines_data),
        Decimal("0"),
    ))
    discount = _money(subtotal * discount_pct / 100)
    shipping = _money(_non_negative(shipping_total, "shipping_total"))
    fee = _money((subtotal - discount + shipping) * fee_pct / 100)
    return {
        "subtotal_before_discount": subtotal,
        "discount_percentage": discount_pct,
        "discount_amount": discount,
        "shipping_total": shipping,
        "merchant_fee_percentage": fee_pct,
        "merchant_fee_amount": fee,
        "total_amount": subtotal - discount + shipping + fee,
    }


class OrderService:
    @staticmethod
    async def get_by_id(db: AsyncSession, order_id: uuid.UUID) -> Order | None:
        stmt = select(Order).where(Order.id == order_id).options(selectinload(Order.lines))
        res = await db.execute(stmt)
        return res.scalar_one_or_none()

    @staticmethod
    async def resolve_topline_rep_id(db: AsyncSession, practice_id: uuid.UUID) -> uuid.UUID | None:
        """Topline rep whose hierarchy the practice belongs to, if any."""
        practice = await db.get(User, practice_id)
        if not practice or not practice.linked_rep_user_id:
            return None
        res = await db.execute(select(Rep).where(Rep.user_id == practice.linked_rep_user_id))
        rep = res.scalar_one_or_none()
        if not rep:
            return None
        if rep.role == RepTier.TOPLINE.value:
            return rep.id
        return rep.assigned_topline_id

    @staticmethod
    async def create_order(
        db: AsyncSession,
        actor: Actor,
        doctor_id: uuid.UUID,
        lines_data: list[dict],
        destination_state: str,
        ship_to: str = ShipTo.PRACTICE.value,
        discount_percentage=0,
        shipping_total=0,
        merchant_fee_percentage=0,
        authorization_transaction_id: str | None = None,
    ) -> Order:
        """
        Place an order in ``pending``. Every line is routed here and its pharmacy is
        pinned; one unroutable line rejects the whole order.
        """
        if actor.role_value not in _ORDERING_ROLES:
            raise AuthorizationError(f"Role '{actor.role_value}' may not place orders")
        if not lines_data:
            raise ValidationError("An order needs at least one line")
        if ship_to not in {s.value for s in ShipTo}:
            raise ValidationError(f"Invalid ship_to '{ship_to}'")
        for line in lines_data:
            if int(line.get("quantity", 1)) < 1:
                raise ValidationError("Line quantity must be at least 1")
            speed = line.get("shipping_speed") or ShippingSpeed.GROUND.value
            if speed not in {s.value for s in ShippingSpeed}:
                raise ValidationError(f"Invalid shipping speed '{speed}'")
            if ship_to == ShipTo.PATIENT.value and not line.get("patient_id"):
                raise ValidationError("Patient-shipped lines need a patient")

        if not await db.get(User, doctor_id):
            raise NotFoundError("Practice not found")

        totals = compute_totals(lines_data, discount_percentage, shipping_total, merchant_fee_percentage)
        topline_rep_id = await OrderService.resolve_topline_rep_id(db, doctor_id)

        decisions = []
        for line in lines_data:
            decision = await RoutingService.route(db, line["product_id"], destination_state, topline_rep_id)
            if decision.outcome == RoutingOutcome.FAILED:
                raise RoutingFailed(decision.reason, {"product_id": str(line["product_id"])})
            if not decision.routed:
                raise ConflictError(
                    f"No pharmacy can fulfill product {line['product_id']}: {decision.reason}",
                    {"product_id": str(line["product_id"]), "reason": decision.reason},
                )
            decisions.append(decision)

        order = Order(
            doctor_id=doctor_id,
            created_by=actor.user_id,
            status="pending",
            payment_status=PaymentStatus.PAID.value if authorization_transaction_id else PaymentStatus.PENDING.value,
            authorization_transaction_id=authorization_transaction_id,
            ship_to=ship_to,
            destination_state=destination_state.strip(),
            total_refunded_amount=Decimal("0"),
            created_at=utcnow(),
            **totals,
        )
        db.add(order)
        await db.flush()

        for line, decision in zip(lines_data, decisions):
            db.add(OrderLine(
                order_id=order.id,
                product_id=line["product_id"],
                quantity=int(line.get("quantity", 1)),
                unit_price=_money(line.get("unit_price") or 0),
                patient_id=line.get("patient_id"),
                provider_id=line.get("provider_id"),
                assigned_pharmacy_id=decision.pharmacy_id,
                shipping_speed=line.get("shipping_speed") or ShippingSpeed.GROUND.value,
                prescription_url=line.get("prescription_url"),
                prescription_metadata=line.get("prescription_metadata"),
                order_notes=line.get("order_notes"),
                status=LineStatus.PENDING.value,
            ))
            db.add(OrderRoutingLog(
                order_id=order.id,
                product_id=line["product_id"],
                destination_state=order.destination_state,
                user_topline_rep_id=topline_rep_id,
                eligible_pharmacies=decision.candidates,
                selected_pharmacy_id=decision.pharmacy_id,
                selection_reason=decision.reason,
                outcome=decision.outcome.value,
                priority_used=decision.priority,
            ))

        await db.flush()
        logger.info(
            "Order %s placed by %s: %d line(s), total %s",
            order.id, actor.user_id, len(lines_data), order.total_amount,
        )
        return await OrderService.get_by_id(db, order.id)

    @staticmethod
    async def pharmacy_for_user(db: AsyncSession, user_id: uuid.UUID) -> uuid.UUID | None:
        res = await db.execute(select(Pharmacy.id).where(Pharmacy.user_id == user_id))
        return res.scalars().first()

    @staticmethod
    async def pharmacy_action(
        db: AsyncSession,
        order_id: uuid.UUID,
        action: str,
        reason: str | None,
        actor: Actor,
        sink: NotificationSink | None = None,
    ) -> TransitionResult | None:
        """Put the acting pharmacy's lines on hold or decline them."""
        if not actor.can(Capability.UPDATE_LINES):
            raise AuthorizationError(f"Role '{actor.role_value}' may not act on order lines")
        try:
            kind = PharmacyAction(action)
        except ValueError:
            raise ValidationError(f"Unknown pharmacy action '{action}'") from None
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required")

        order = await OrderService.get_by_id(db, order_id)
        if not order:
            raise NotFoundError("Order not found")

        if actor.role_value == Role.PHARMACY.value:
            pharmacy_id = await OrderService.pharmacy_for_user(db, actor.user_id)
            lines = [l for l in order.lines if pharmacy_id and l.assigned_pharmacy_id == pharmacy_id]
            if not lines:
                raise AuthorizationError("No lines on this order are assigned to your pharmacy")
        else:
            lines = list(order.lines)

        new_status = _ACTION_LINE_STATUS[kind]
        label = "On hold" if kind == PharmacyAction.HOLD else "Declined"
        for line in lines:
            line.status = new_status
            line.order_notes = append_note(line.order_notes, f"{label} by pharmacy: {reason}")
        await db.flush()
        logger.info("Pharmacy action %s on order %s (%d line(s)) by %s", kind.value, order.id, len(lines), actor.user_id)

        return await OrderStateMachine.apply_automatic_status(
            db, order.id, reason=f"Pharmacy {kind.value}: {reason}", sink=sink,
        )

    @staticmethod
    async def delete_orphan_orders(db: AsyncSession) -> int:
        """Hard-delete orders that have no lines. Returns the number removed."""
        orphan_ids = select(Order.id).where(~Order.lines.any())
        ids = list((await db.execute(orphan_ids)).scalars().all())
        if not ids:
            return 0
        await db.execute(delete(Order).where(Order.id.in_(ids)))
        logger.warning("Deleted %d orphan order(s) with no lines: %s", len(ids), [str(i) for i in ids])
        return len(ids)

"""rxflow — Commission Engine.

Commissions are derived from completed subscription payments. Exactly one commission
row exists per payment: the ``payment_id`` column is unique and a repeated calculation
returns the existing row with a ``duplicate`` outcome.
"""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rxflow.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from rxflow.core.roles import Actor, Capability
from rxflow.db.base import utcnow
from rxflow.models.commission import (
    Commission,
    CommissionPaymentStatus,
    Subscription,
    SubscriptionPayment,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from rxflow.models.rep import Rep
from rxflow.models.user import User
from rxflow.services.incident_service import report_incident
from rxflow.services.notification_service import EVENT_COMMISSION_CREATED, NotificationSink, publish_event

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_PERCENTAGE = Decimal("20")
CENT = Decimal("0.01")


class CommissionOutcomeStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"


@dataclass
class CommissionOutcome:
    status: CommissionOutcomeStatus
    reason: str
    commission: Commission | None = None


def compute_commission_amount(payment_amount: Decimal, percentage: Decimal | None) -> tuple[Decimal, Decimal]:
    """Return (percentage used, amount rounded half-up to cents)."""
    pct = DEFAULT_COMMISSION_PERCENTAGE if percentage is None else Decimal(percentage)
    amount = (Decimal(payment_amount) * pct / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return pct, amount


class CommissionService:
    @staticmethod
    async def calculate_commission(
        db: AsyncSession,
        subscription_id: UUID,
        practice_id: UUID,
        sink: NotificationSink | None = None,
    ) -> CommissionOutcome:
        subscription = await db.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")

        if subscription.status == SubscriptionStatus.TRIAL.value:
            logger.info("Subscription %s still in trial; no commission", subscription_id)
            return CommissionOutcome(CommissionOutcomeStatus.SKIPPED, "Subscription is in trial")

        practice = await db.get(User, practice_id)
        if not practice or not practice.linked_rep_user_id:
            logger.info("Practice %s has no linked rep; no commission", practice_id)
            return CommissionOutcome(CommissionOutcomeStatus.SKIPPED, "Practice has no linked sales representative")

        res = await db.execute(select(Rep).where(Rep.user_id == practice.linked_rep_user_id))
        rep = res.scalar_one_or_none()
        if not rep:
            logger.info("No rep record for user %s; no commission", practice.linked_rep_user_id)
            return CommissionOutcome(CommissionOutcomeStatus.SKIPPED, "Linked sales representative has no rep record")

        res = await db.execute(
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.subscription_id == subscription.id,
                SubscriptionPayment.status == SubscriptionPaymentStatus.COMPLETED.value,
            )
            .order_by(SubscriptionPayment.paid_at.desc().nulls_last(), SubscriptionPayment.created_at.desc())
            .limit(1)
        )
        payment = res.scalar_one_or_none()
        if not payment:
            raise NotFoundError("No completed payment found for subscription")

        existing = await CommissionService._by_payment(db, payment.id)
        if existing:
            logger.info("Commission already recorded for payment %s", payment.id)
            return CommissionOutcome(CommissionOutcomeStatus.DUPLICATE, "Commission already recorded for this payment", existing)

        pct, amount = compute_commission_amount(payment.amount, subscription.rep_commission_percentage)
        commission = Commission(
            rep_id=rep.id,
            practice_id=practice.id,
            subscription_id=subscription.id,
            payment_id=payment.id,
            payment_amount=payment.amount,
            commission_percentage=pct,
            commission_amount=amount,
            payment_status=CommissionPaymentStatus.PENDING.value,
            created_at=utcnow(),
        )
        # A concurrent insert for the same payment fails on the unique payment_id
        db.add(commission)
        await db.flush()

        logger.info("Commission %s: %s%% of %s = %s for rep %s", commission.id, pct, payment.amount, amount, rep.id)
        publish_event(
            sink,
            EVENT_COMMISSION_CREATED,
            {
                "commission_id": commission.id,
                "rep_id": rep.id,
                "practice_id": practice.id,
                "subscription_id": subscription.id,
                "payment_id": payment.id,
                "commission_amount": amount,
            },
        )
        return CommissionOutcome(CommissionOutcomeStatus.CREATED, "Commission created", commission)

    @staticmethod
    async def mark_paid(
        db: AsyncSession,
        commission_id: UUID,
        actor: Actor,
        payment_method: str,
        notes: str | None = None,
    ) -> Commission:
        """Payout settlement, recorded by an admin."""
        if not actor.can(Capability.MANAGE_COMMISSIONS):
            raise AuthorizationError("Only admins can settle commissions")
        payment_method = (payment_method or "").strip()
        if not payment_method:
            raise ValidationError("Payment method is required")

        commission = await db.get(Commission, commission_id)
        if not commission:
            raise NotFoundError("Commission not found")
        if commission.payment_status == CommissionPaymentStatus.PAID.value:
            raise ConflictError("Commission is already paid")

        commission.payment_status = CommissionPaymentStatus.PAID.value
        commission.payment_method = payment_method
        commission.payment_notes = notes
        commission.paid_at = utcnow()
        await db.flush()
        logger.info("Commission %s marked paid via %s by %s", commission.id, payment_method, actor.user_id)
        return commission

    @staticmethod
    async def list_commissions(
        db: AsyncSession,
        actor: Actor,
        payment_status: str | None = None,
        rep_id: UUID | None = None,
    ) -> list[Commission]:
        if not actor.can(Capability.MANAGE_COMMISSIONS):
            raise AuthorizationError("Only admins can list commissions")
        q = select(Commission)
        if payment_status:
            q = q.where(Commission.payment_status == payment_status)
        if rep_id:
            q = q.where(Commission.rep_id == rep_id)
        q = q.order_by(Commission.created_at.desc())
        result = await db.execute(q)
        return list(result.scalars().all())

    @staticmethod
    async def _by_payment(db: AsyncSession, payment_id: UUID) -> Commission | None:
        res = await db.execute(select(Commission).where(Commission.payment_id == payment_id))
        return res.scalar_one_or_none()


class SubscriptionService:
    @staticmethod
    async def complete_payment(
        db: AsyncSession,
        payment_id: UUID,
        actor: Actor,
        transaction_id: str | None = None,
        sink: NotificationSink | None = None,
    ) -> tuple[SubscriptionPayment, CommissionOutcome | None]:
        """Mark a payment completed, then run commission calculation as its own step."""
        if not actor.can(Capability.MANAGE_COMMISSIONS):
            raise AuthorizationError("Only admins can complete subscription payments")
        payment = await db.get(SubscriptionPayment, payment_id)
        if not payment:
            raise NotFoundError("Subscription payment not found")
        if payment.status == SubscriptionPaymentStatus.COMPLETED.value:
            raise ConflictError("Payment is already completed")

        payment.status = SubscriptionPaymentStatus.COMPLETED.value
        payment.paid_at = utcnow()
        if transaction_id:
            payment.transaction_id = transaction_id
        subscription = await db.get(Subscription, payment.subscription_id)
        await db.flush()
        logger.info("Subscription payment %s completed", payment.id)

        if not subscription:
            return payment, None
        payment_ref = str(payment.id)
        try:
            # Savepoint: a failed calculation never un-completes the payment
            async with db.begin_nested():
                outcome = await CommissionService.calculate_commission(
                    db, subscription.id, subscription.practice_id, sink,
                )
        except Exception as exc:
            report_incident(sink, "subscription.commission", exc, {"payment_id": payment_ref})
            await db.refresh(payment)
            return payment, None
        return payment, outcome

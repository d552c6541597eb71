"""
Cancellation policy and the cancel action.

Covers:
- can_cancel: terminal state, admin bypass, one-hour window, ownership rules
- CancellationService.cancel: anti-forgery token, status write, cancellation fields
- Automatic refund of paid orders and failure isolation
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FakeProcessor, actor, minutes_ago
from rxflow.core.errors import AuthorizationError, ConflictError, NotFoundError
from rxflow.core.roles import Role
from rxflow.services.cancellation_policy import CancellationService, CancellationSubject, can_cancel, within_window
from rxflow.services.notification_service import EVENT_INCIDENT, EVENT_ORDER_CANCELLED, EVENT_ORDER_REFUNDED
from rxflow.services.order_state_machine import OrderStateMachine
from rxflow.services.refund_ledger import RefundLedger


def subject(minutes_old=10, status="pending", doctor_id=None, **kwargs):
    return CancellationSubject(
        status=status,
        created_at=minutes_ago(minutes_old),
        doctor_id=doctor_id,
        **kwargs,
    )


# ── Pure policy ──────────────────────────────────────────────────────────────


class TestCanCancel:
    def test_own_order_inside_window(self):
        doctor_id = uuid.uuid4()
        assert can_cancel(subject(10, doctor_id=doctor_id), Role.DOCTOR, doctor_id) is True

    def test_own_order_outside_window(self):
        doctor_id = uuid.uuid4()
        assert can_cancel(subject(65, doctor_id=doctor_id), Role.DOCTOR, doctor_id) is False

    def test_admin_ignores_window_and_ownership(self):
        assert can_cancel(subject(65 * 24, doctor_id=uuid.uuid4()), Role.ADMIN, uuid.uuid4()) is True

    @pytest.mark.parametrize("role", list(Role))
    def test_cancelled_order_never_cancellable(self, role):
        doctor_id = uuid.uuid4()
        assert can_cancel(subject(1, status="cancelled", doctor_id=doctor_id), role, doctor_id) is False

    def test_doctor_of_linked_provider(self):
        practice_id = uuid.uuid4()
        s = subject(10, doctor_id=uuid.uuid4(), line_creator_practice_ids=frozenset({practice_id}))
        assert can_cancel(s, Role.DOCTOR, practice_id) is True
        assert can_cancel(s, Role.DOCTOR, uuid.uuid4()) is False

    def test_provider_who_created_a_line(self):
        provider_user = uuid.uuid4()
        s = subject(10, doctor_id=uuid.uuid4(), line_creator_user_ids=frozenset({provider_user}))
        assert can_cancel(s, Role.PROVIDER, provider_user) is True

    def test_provider_in_ordering_practice(self):
        practice_id = uuid.uuid4()
        s = subject(10, doctor_id=practice_id, actor_practice_id=practice_id)
        assert can_cancel(s, Role.PROVIDER, uuid.uuid4()) is True

    def test_unrelated_provider(self):
        s = subject(10, doctor_id=uuid.uuid4(), actor_practice_id=uuid.uuid4())
        assert can_cancel(s, Role.PROVIDER, uuid.uuid4()) is False

    @pytest.mark.parametrize("role", [Role.STAFF, Role.PATIENT, Role.PHARMACY, Role.TOPLINE, "unknown"])
    def test_other_roles_only_as_the_ordering_user(self, role):
        assert can_cancel(subject(10, doctor_id=uuid.uuid4()), role, uuid.uuid4()) is False

    @pytest.mark.parametrize("role", [Role.STAFF, Role.PATIENT, Role.TOPLINE])
    def test_ordering_user_without_status_capability(self, role):
        user_id = uuid.uuid4()
        assert can_cancel(subject(10, doctor_id=user_id), role, user_id) is False

    def test_naive_timestamps_are_utc(self):
        doctor_id = uuid.uuid4()
        naive = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(minutes=5)
        s = CancellationSubject(status="pending", created_at=naive, doctor_id=doctor_id)
        assert can_cancel(s, Role.DOCTOR, doctor_id) is True

    def test_window_boundary(self):
        created = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert within_window(created, created + timedelta(minutes=59, seconds=59)) is True
        assert within_window(created, created + timedelta(hours=1)) is False
        assert within_window(None) is False

    def test_missing_actor_identity(self):
        assert can_cancel(subject(10, doctor_id=uuid.uuid4()), Role.DOCTOR, None) is False


class TestCancellationPermissionProperty:
    """Allowed iff not cancelled and either admin, or inside the window, related to the order and able to change status."""

    @pytest.mark.parametrize("minutes_old", [0, 30, 59, 61, 600])
    @pytest.mark.parametrize("status", ["pending", "shipped", "cancelled"])
    @pytest.mark.parametrize("role", [Role.ADMIN, Role.DOCTOR, Role.PROVIDER, Role.STAFF])
    @pytest.mark.parametrize("related", [True, False])
    def test_rule(self, minutes_old, status, role, related):
        user_id = uuid.uuid4()
        s = subject(
            minutes_old,
            status=status,
            doctor_id=user_id if related else uuid.uuid4(),
        )
        expected = status != "cancelled" and (
            role == Role.ADMIN or (minutes_old < 60 and related and role != Role.STAFF)
        )

        assert can_cancel(s, role, user_id) is expected


# ── Cancel action ────────────────────────────────────────────────────────────


class TestCancel:
    async def test_invalid_token_changes_nothing(self, db, factory, tokens, registry, processor, sink):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor)
        doc = actor(Role.DOCTOR, doctor.id)

        with pytest.raises(AuthorizationError):
            await CancellationService.cancel(db, order.id, doc, "forged", tokens, registry, processor, sink)

        assert order.status == "pending"
        assert await OrderStateMachine.history_count(db, order.id) == 0
        assert processor.calls == []
        assert sink.events == []

    async def test_token_bound_to_issuing_user(self, db, factory, tokens, registry):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor)
        token = await tokens.issue(uuid.uuid4())

        with pytest.raises(AuthorizationError):
            await CancellationService.cancel(db, order.id, actor(Role.DOCTOR, doctor.id), token, tokens, registry)

    async def test_doctor_cancels_recent_unpaid_order(self, db, factory, tokens, registry, processor, sink):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor, paid=False, created_at=minutes_ago(10))
        doc = actor(Role.DOCTOR, doctor.id)
        token = await tokens.issue(doctor.id)

        result = await CancellationService.cancel(
            db, order.id, doc, token, tokens, registry, processor, sink, reason="Patient changed mind",
        )

        assert result.order.status == "cancelled"
        assert result.order.cancelled_by == doctor.id
        assert result.order.cancelled_at is not None
        assert result.order.cancellation_reason == "Patient changed mind"
        assert result.history.new_status == "cancelled"
        assert result.refund is None
        assert processor.calls == []
        assert sink.of_type(EVENT_ORDER_CANCELLED)[0]["order_id"] == str(order.id)

    async def test_token_is_single_use(self, db, factory, tokens, registry):
        doctor = await factory.user(Role.DOCTOR)
        first = await factory.order(doctor, paid=False)
        second = await factory.order(doctor, paid=False)
        doc = actor(Role.DOCTOR, doctor.id)
        token = await tokens.issue(doctor.id)

        await CancellationService.cancel(db, first.id, doc, token, tokens, registry)
        with pytest.raises(AuthorizationError):
            await CancellationService.cancel(db, second.id, doc, token, tokens, registry)

        assert second.status == "pending"

    async def test_outside_window_rejected(self, db, factory, tokens, registry):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor, created_at=minutes_ago(65))
        token = await tokens.issue(doctor.id)

        with pytest.raises(AuthorizationError, match="within 1 hour"):
            await CancellationService.cancel(db, order.id, actor(Role.DOCTOR, doctor.id), token, tokens, registry)

        assert order.status == "pending"

    async def test_already_cancelled(self, db, factory, tokens, registry, admin):
        order = await factory.order(status="cancelled")
        token = await tokens.issue(admin.user_id)

        with pytest.raises(ConflictError):
            await CancellationService.cancel(db, order.id, admin, token, tokens, registry)

    async def test_unknown_order(self, db, tokens, registry, admin):
        token = await tokens.issue(admin.user_id)
        with pytest.raises(NotFoundError):
            await CancellationService.cancel(db, uuid.uuid4(), admin, token, tokens, registry)

    async def test_provider_line_creator_and_linked_doctor(self, db, factory, tokens, registry):
        practice = await factory.user(Role.DOCTOR)
        other_practice = await factory.user(Role.DOCTOR)
        provider = await factory.provider(practice)
        order = await factory.order(other_practice, provider=provider, paid=False)
        provider_actor = actor(Role.PROVIDER, provider.user_id)

        assert await CancellationService.is_cancellable(db, order.id, provider_actor) is True
        assert await CancellationService.is_cancellable(db, order.id, actor(Role.DOCTOR, practice.id)) is True
        assert await CancellationService.is_cancellable(db, order.id, actor(Role.DOCTOR, uuid.uuid4())) is False

    async def test_provider_of_ordering_practice(self, db, factory):
        practice = await factory.user(Role.DOCTOR)
        provider = await factory.provider(practice)
        order = await factory.order(practice)

        assert await CancellationService.is_cancellable(db, order.id, actor(Role.PROVIDER, provider.user_id)) is True


class TestCancelWithRefund:
    async def test_paid_order_is_refunded_in_full(self, db, factory, tokens, registry, processor, sink, admin):
        order = await factory.order(total="100.00", created_at=minutes_ago(600))
        token = await tokens.issue(admin.user_id)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, processor, sink)

        assert result.refund is not None
        assert result.refund.refund_amount == Decimal("100.00")
        assert result.refund.refund_type == "full"
        assert result.order.total_refunded_amount == Decimal("100.00")
        assert result.order.payment_status == "refunded"
        assert processor.calls[0]["authorization_id"] == "auth-123"
        assert len(sink.of_type(EVENT_ORDER_REFUNDED)) == 1
        assert sink.of_type(EVENT_ORDER_CANCELLED)[0]["refund_id"] == str(result.refund.id)

    async def test_refunds_only_remaining_balance(self, db, factory, tokens, registry, processor, admin):
        order = await factory.order(total="100.00")
        await RefundLedger.refund(db, order.id, "30.00", "Partial", admin, processor)
        token = await tokens.issue(admin.user_id)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, processor)

        assert result.refund.refund_amount == Decimal("70.00")
        assert result.order.total_refunded_amount == Decimal("100.00")
        assert result.order.payment_status == "refunded"
        assert sorted(r.refund_amount for r in await RefundLedger.refunds_for(db, order.id)) == [Decimal("30.00"), Decimal("70.00")]

    async def test_doctor_cancel_refunds_without_refund_capability(self, db, factory, tokens, registry, processor):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor)
        token = await tokens.issue(doctor.id)

        result = await CancellationService.cancel(db, order.id, actor(Role.DOCTOR, doctor.id), token, tokens, registry, processor)

        assert result.refund is not None
        assert result.refund.refunded_by == doctor.id

    async def test_processor_failure_keeps_cancellation(self, db, factory, tokens, registry, sink, admin):
        order = await factory.order(total="100.00")
        token = await tokens.issue(admin.user_id)
        processor = FakeProcessor(succeed=False)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, processor, sink)

        assert result.order.status == "cancelled"
        assert result.refund is None
        assert "declined" in result.refund_error
        assert result.order.total_refunded_amount == Decimal("0")
        assert await RefundLedger.refunds_for(db, order.id) == []
        assert len(sink.of_type(EVENT_INCIDENT)) == 1
        assert sink.of_type(EVENT_ORDER_CANCELLED)[0]["refund_error"] == result.refund_error

    async def test_unexpected_refund_error_keeps_cancellation(self, db, factory, tokens, registry, processor, sink, admin, monkeypatch):
        order = await factory.order(total="100.00")
        token = await tokens.issue(admin.user_id)

        async def broken_refund(*args, **kwargs):
            raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

        monkeypatch.setattr(RefundLedger, "refund", broken_refund)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, processor, sink)

        assert result.order.status == "cancelled"
        assert result.order.cancelled_by == admin.user_id
        assert result.refund is None
        assert result.refund_error == "Automatic refund failed"
        incidents = sink.of_type(EVENT_INCIDENT)
        assert [(i["source"], i["error_type"]) for i in incidents] == [("cancellation.refund", "OperationalError")]
        assert await OrderStateMachine.history_count(db, order.id) == 1
        assert sink.of_type(EVENT_ORDER_CANCELLED)[0]["refund_error"] == "Automatic refund failed"

    async def test_missing_processor_reported(self, db, factory, tokens, registry, sink, admin):
        order = await factory.order()
        token = await tokens.issue(admin.user_id)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, None, sink)

        assert result.order.status == "cancelled"
        assert result.refund_error == "No payment processor configured"
        assert sink.of_type(EVENT_INCIDENT)[0]["source"] == "cancellation.refund"

    async def test_order_without_authorization_not_refunded(self, db, factory, tokens, registry, processor, admin):
        order = await factory.order(authorization=None)
        token = await tokens.issue(admin.user_id)

        result = await CancellationService.cancel(db, order.id, admin, token, tokens, registry, processor)

        assert result.refund is None
        assert result.refund_error is None
        assert processor.calls == []

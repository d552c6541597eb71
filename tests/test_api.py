"""
HTTP surface tests: auth, response envelope and the order endpoints end to end.
"""
import uuid
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import FakeProcessor
from rxflow.api.deps import get_processor, get_sink, get_token_service
from rxflow.core.roles import Role
from rxflow.core.security import create_access_token
from rxflow.db.session import get_db
from rxflow.main import app
from rxflow.services.order_service import OrderService


@pytest.fixture
async def client(db, sink, processor, tokens):
    async def override_db():
        yield db

    async def override_tokens():
        return tokens

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_sink] = lambda: sink
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_token_service] = override_tokens
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def auth(user_id, role: Role, **claims) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role.value, claims or None)}"}


async def csrf(client: AsyncClient, headers: dict) -> str:
    resp = await client.get("/api/v1/csrf-token", headers=headers)
    assert resp.status_code == 200
    return resp.json()["data"]["token"]


class TestPublic:
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "service": "rxflow"}

    async def test_missing_token(self, client):
        resp = await client.get(f"/api/v1/orders/{uuid.uuid4()}")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "NOT_AUTHENTICATED"

    async def test_garbage_token(self, client):
        resp = await client.get(f"/api/v1/orders/{uuid.uuid4()}", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401


class TestOrders:
    async def test_create_and_fetch(self, client, factory):
        product = await factory.product()
        pharmacy = await factory.pharmacy("Rx", ["CA"], {"CA": 1})
        await factory.assign(product, pharmacy)
        doctor = await factory.user(Role.DOCTOR)
        headers = auth(doctor.id, Role.DOCTOR)

        resp = await client.post(
            "/api/v1/orders",
            json={
                "doctor_id": str(doctor.id),
                "destination_state": "CA",
                "lines": [{"product_id": str(product.id), "quantity": 1, "unit_price": "120.00"}],
            },
            headers=headers,
        )

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["error"] is None
        order = body["data"]
        assert order["status"] == "pending"
        assert Decimal(order["total_amount"]) == Decimal("120.00")
        assert order["lines"][0]["assigned_pharmacy_id"] == str(pharmacy.id)

        fetched = await client.get(f"/api/v1/orders/{order['id']}", headers=headers)
        assert fetched.json()["data"]["id"] == order["id"]

    async def test_unroutable_is_conflict_envelope(self, client, factory):
        product = await factory.product()
        doctor = await factory.user(Role.DOCTOR)

        resp = await client.post(
            "/api/v1/orders",
            json={
                "doctor_id": str(doctor.id),
                "destination_state": "CA",
                "lines": [{"product_id": str(product.id), "unit_price": "1.00"}],
            },
            headers=auth(doctor.id, Role.DOCTOR),
        )

        assert resp.status_code == 409
        assert resp.json()["data"] is None
        assert resp.json()["error"]["code"] == "CONFLICT"

    async def test_request_validation_envelope(self, client, admin):
        resp = await client.post("/api/v1/orders", json={"lines": []}, headers=auth(admin.user_id, Role.ADMIN))
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"
        assert resp.json()["error"]["field_errors"]

    async def test_unknown_order(self, client, admin):
        resp = await client.get(f"/api/v1/orders/{uuid.uuid4()}", headers=auth(admin.user_id, Role.ADMIN))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


class TestStatusEndpoints:
    async def test_manual_change_with_warning_and_history(self, client, factory, admin, sink):
        order = await factory.order()
        headers = auth(admin.user_id, Role.ADMIN)

        resp = await client.post(
            f"/api/v1/orders/{order.id}/status",
            json={"status": "on_hold", "reason": "Awaiting insurance"},
            headers=headers,
        )

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["data"]["status"] == "on_hold"
        assert body["data"]["status_manual_override"] is True
        assert body["meta"]["warning"]
        history = (await client.get(f"/api/v1/orders/{order.id}/history", headers=headers)).json()
        assert [h["new_status"] for h in history["data"]] == ["on_hold"]

    async def test_inactive_status_conflict(self, client, factory, admin):
        order = await factory.order()
        resp = await client.post(
            f"/api/v1/orders/{order.id}/status",
            json={"status": "teleported"},
            headers=auth(admin.user_id, Role.ADMIN),
        )
        assert resp.status_code == 409

    async def test_staff_forbidden(self, client, factory):
        order = await factory.order()
        resp = await client.post(
            f"/api/v1/orders/{order.id}/status",
            json={"status": "shipped"},
            headers=auth(uuid.uuid4(), Role.STAFF),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "AUTHORIZATION_ERROR"

    async def test_impersonation_is_recorded(self, client, factory, admin):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor)
        headers = auth(
            admin.user_id, Role.ADMIN,
            impersonated_user_id=str(doctor.id), impersonated_role=Role.DOCTOR.value,
        )

        await client.post(f"/api/v1/orders/{order.id}/status", json={"status": "processing"}, headers=headers)
        history = (await client.get(f"/api/v1/orders/{order.id}/history", headers=headers)).json()["data"]

        assert history[0]["changed_by"] == str(doctor.id)
        assert history[0]["changed_by_role"] == "doctor"
        assert history[0]["impersonated_by"] == str(admin.user_id)


class TestCancelEndpoint:
    async def test_cancel_requires_token(self, client, factory):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor)

        resp = await client.post(f"/api/v1/orders/{order.id}/cancel", json={}, headers=auth(doctor.id, Role.DOCTOR))

        assert resp.status_code == 403
        assert order.status == "pending"

    async def test_cancel_with_token_refunds(self, client, factory, processor):
        doctor = await factory.user(Role.DOCTOR)
        order = await factory.order(doctor, total="80.00")
        headers = auth(doctor.id, Role.DOCTOR)

        cancellable = await client.get(f"/api/v1/orders/{order.id}/cancellable", headers=headers)
        assert cancellable.json()["data"]["cancellable"] is True

        token = await csrf(client, headers)
        resp = await client.post(
            f"/api/v1/orders/{order.id}/cancel",
            json={"reason": "Duplicate order"},
            headers={**headers, "X-CSRF-Token": token},
        )

        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["order"]["status"] == "cancelled"
        assert data["order"]["cancellation_reason"] == "Duplicate order"
        assert data["refund_id"] is not None
        assert Decimal(data["order"]["total_refunded_amount"]) == Decimal("80.00")
        assert len(processor.calls) == 1

        replay = await client.post(
            f"/api/v1/orders/{order.id}/cancel", json={}, headers={**headers, "X-CSRF-Token": token},
        )
        assert replay.status_code == 403


class TestRefundEndpoint:
    async def test_refund_flow(self, client, factory, admin):
        order = await factory.order(total="100.00")
        headers = auth(admin.user_id, Role.ADMIN)

        first = await client.post(
            f"/api/v1/orders/{order.id}/refunds",
            json={"amount": "40.00", "reason": "Damaged"},
            headers={**headers, "X-CSRF-Token": await csrf(client, headers)},
        )
        assert first.status_code == 200, first.text
        assert first.json()["data"]["refund_type"] == "partial"

        over = await client.post(
            f"/api/v1/orders/{order.id}/refunds",
            json={"amount": "65.00", "reason": "Too much"},
            headers={**headers, "X-CSRF-Token": await csrf(client, headers)},
        )
        assert over.status_code == 409
        assert over.json()["error"]["message"] == "Can only refund up to $60.00"

        listed = await client.get(f"/api/v1/orders/{order.id}/refunds", headers=headers)
        assert [Decimal(r["refund_amount"]) for r in listed.json()["data"]] == [Decimal("40.00")]

    async def test_refund_without_token(self, client, factory, processor, admin):
        order = await factory.order()
        resp = await client.post(
            f"/api/v1/orders/{order.id}/refunds",
            json={"amount": "10.00", "reason": "x"},
            headers=auth(admin.user_id, Role.ADMIN),
        )
        assert resp.status_code == 403
        assert processor.calls == []

    async def test_declined_refund_is_bad_gateway(self, client, factory, admin):
        app.dependency_overrides[get_processor] = lambda: FakeProcessor(succeed=False)
        order = await factory.order()
        headers = auth(admin.user_id, Role.ADMIN)

        resp = await client.post(
            f"/api/v1/orders/{order.id}/refunds",
            json={"amount": "10.00", "reason": "x"},
            headers={**headers, "X-CSRF-Token": await csrf(client, headers)},
        )

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "EXTERNAL_SERVICE_ERROR"


class TestRoutingEndpoint:
    async def test_route_preview(self, client, factory, admin):
        product = await factory.product()
        a = await factory.pharmacy("Pharmacy A", ["CA"], {"CA": 1})
        b = await factory.pharmacy("Pharmacy B", ["CA", "NY"], {"CA": 2})
        await factory.assign(product, b, a)

        resp = await client.post(
            "/api/v1/routing/route",
            json={"product_id": str(product.id), "destination_state": "CA"},
            headers=auth(admin.user_id, Role.ADMIN),
        )

        data = resp.json()["data"]
        assert data["pharmacy_id"] == str(a.id)
        assert data["outcome"] == "routed"
        assert data["priority"] == 1

    async def test_route_preview_scope_comes_from_practice(self, client, factory, admin):
        product = await factory.product()
        scoped = await factory.pharmacy("Scoped", ["CA"], {"CA": 1})
        global_ = await factory.pharmacy("Global", ["CA"], {"CA": 5})
        await factory.assign(product, scoped, global_)
        topline = await factory.rep("topline")
        downline = await factory.rep("downline", topline=topline)
        await factory.scope(scoped, topline)
        other_topline = await factory.rep("topline")
        in_scope = await factory.user(Role.DOCTOR, linked_rep_user_id=downline.user_id)
        outsider = await factory.user(Role.DOCTOR, linked_rep_user_id=other_topline.user_id)
        body = {"product_id": str(product.id), "destination_state": "CA", "practice_id": str(in_scope.id)}

        as_outsider = await client.post("/api/v1/routing/route", json=body, headers=auth(outsider.id, Role.DOCTOR))
        as_practice = await client.post("/api/v1/routing/route", json=body, headers=auth(in_scope.id, Role.DOCTOR))
        as_admin = await client.post("/api/v1/routing/route", json=body, headers=auth(admin.user_id, Role.ADMIN))

        assert as_outsider.json()["data"]["pharmacy_id"] == str(global_.id)
        assert as_practice.json()["data"]["pharmacy_id"] == str(scoped.id)
        assert as_admin.json()["data"]["pharmacy_id"] == str(scoped.id)


class TestOrderLineEndpoint:
    async def test_pharmacy_ships_its_line(self, client, factory, db):
        pharmacy_user = await factory.user(Role.PHARMACY)
        pharmacy = await factory.pharmacy("Rx", ["CA"], user=pharmacy_user)
        order = await factory.order(pharmacy=pharmacy)
        line = (await OrderService.get_by_id(db, order.id)).lines[0]
        headers = auth(pharmacy_user.id, Role.PHARMACY)

        resp = await client.patch(
            f"/api/v1/order-lines/{line.id}/status",
            json={"status": "shipped", "shipping_carrier": "UPS", "tracking_number": "1Z1"},
            headers=headers,
        )

        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["tracking_number"] == "1Z1"
        fetched = await client.get(f"/api/v1/orders/{order.id}", headers=headers)
        assert fetched.json()["data"]["status"] == "shipped"

    async def test_other_pharmacy_forbidden(self, client, factory, db):
        pharmacy_user = await factory.user(Role.PHARMACY)
        await factory.pharmacy("Mine", ["CA"], user=pharmacy_user)
        theirs = await factory.pharmacy("Theirs", ["CA"])
        order = await factory.order(pharmacy=theirs)
        line = (await OrderService.get_by_id(db, order.id)).lines[0]

        resp = await client.patch(
            f"/api/v1/order-lines/{line.id}/status",
            json={"status": "filled"},
            headers=auth(pharmacy_user.id, Role.PHARMACY),
        )

        assert resp.status_code == 403


class TestStatusConfigEndpoints:
    async def test_admin_creates_and_deactivates(self, client, admin):
        headers = auth(admin.user_id, Role.ADMIN)

        created = await client.post(
            "/api/v1/status-configs",
            json={"status_key": "awaiting_labs", "display_name": "Awaiting Labs", "color_class": "bg-slate-100", "sort_order": 35},
            headers=headers,
        )
        assert created.status_code == 200, created.text
        config_id = created.json()["data"]["id"]

        deleted = await client.delete(f"/api/v1/status-configs/{config_id}", headers=headers)
        assert deleted.json()["data"]["is_active"] is False

        listed = await client.get("/api/v1/status-configs", headers=headers)
        assert "awaiting_labs" not in {c["status_key"] for c in listed.json()["data"]}

    async def test_doctor_forbidden(self, client):
        resp = await client.post(
            "/api/v1/status-configs",
            json={"status_key": "x", "display_name": "X", "color_class": "c"},
            headers=auth(uuid.uuid4(), Role.DOCTOR),
        )
        assert resp.status_code == 403


class TestCommissionEndpoints:
    async def test_complete_payment_then_mark_paid(self, client, factory, admin):
        rep = await factory.rep("downline")
        practice = await factory.user(Role.DOCTOR, linked_rep_user_id=rep.user_id)
        sub = await factory.subscription(practice, percentage="10")
        payment = await factory.payment(sub, "300.00", status="pending")
        headers = auth(admin.user_id, Role.ADMIN)

        completed = await client.post(
            f"/api/v1/subscription-payments/{payment.id}/complete",
            json={"transaction_id": "txn-1"},
            headers=headers,
        )

        assert completed.status_code == 200, completed.text
        data = completed.json()["data"]
        assert data["payment"]["status"] == "completed"
        assert data["commission"]["status"] == "created"
        assert Decimal(data["commission"]["commission"]["commission_amount"]) == Decimal("30.00")

        again = await client.post(
            "/api/v1/commissions/calculate",
            json={"subscription_id": str(sub.id), "practice_id": str(practice.id)},
            headers=headers,
        )
        assert again.json()["data"]["status"] == "duplicate"

        commission_id = data["commission"]["commission"]["id"]
        paid = await client.post(
            f"/api/v1/commissions/{commission_id}/mark-paid",
            json={"payment_method": "ach"},
            headers=headers,
        )
        assert paid.json()["data"]["payment_status"] == "paid"

"""
Shared fixtures for the rxflow test suite.

Every test gets a fresh in-memory SQLite database built from the model metadata,
plus hand-written fakes for the payment processor, the notification sink and the
Redis token store.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rxflow.core.roles import Actor, Role
from rxflow.db.base import Base
from rxflow.models import (
    Order,
    OrderLine,
    Pharmacy,
    PharmacyRepAssignment,
    Product,
    ProductPharmacy,
    Provider,
    Rep,
    Subscription,
    SubscriptionPayment,
    User,
)
from rxflow.services.csrf_service import CsrfTokenService
from rxflow.services.payment_processor import ProcessorResult
from rxflow.services.status_registry import StatusRegistry


# ============================================================================
# Fakes
# ============================================================================


class RecordingSink:
    """Notification sink that keeps everything it is given."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict]:
        return [p for e, p in self.events if e == event_type]


class FailingSink:
    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("sink down")


class FakeProcessor:
    """Payment processor double; ``before_result`` runs inside the call."""

    def __init__(
        self,
        succeed: bool = True,
        error: Exception | None = None,
        before_result: Callable | None = None,
    ):
        self.succeed = succeed
        self.error = error
        self.before_result = before_result
        self.calls: list[dict] = []

    async def refund(self, authorization_id: str, amount: Decimal, *, reference: str) -> ProcessorResult:
        self.calls.append({"authorization_id": authorization_id, "amount": amount, "reference": reference})
        if self.before_result is not None:
            await self.before_result()
        if self.error is not None:
            raise self.error
        if not self.succeed:
            return ProcessorResult(success=False, message="This transaction has been declined.", raw={"resultCode": "Error"})
        tx_id = f"rf-{len(self.calls)}"
        return ProcessorResult(success=True, transaction_id=tx_id, message="ok", raw={"transId": tx_id})


class FakeRedis:
    """The two commands the token service uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def db(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def tokens(fake_redis):
    return CsrfTokenService(fake_redis, ttl_seconds=600)


@pytest.fixture
def registry():
    return StatusRegistry.defaults()


# ============================================================================
# Actors
# ============================================================================


def actor(role: Role, user_id: uuid.UUID | None = None) -> Actor:
    return Actor(user_id=user_id or uuid.uuid4(), role=role)


@pytest.fixture
def admin():
    return actor(Role.ADMIN)


# ============================================================================
# Factories
# ============================================================================


class Factory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def user(self, role: Role = Role.DOCTOR, **kwargs) -> User:
        u = User(email=f"{uuid.uuid4().hex[:10]}@test.local", role=role.value, **kwargs)
        self.db.add(u)
        await self.db.flush()
        return u

    async def provider(self, practice: User, user: User | None = None) -> Provider:
        user = user or await self.user(Role.PROVIDER)
        p = Provider(user_id=user.id, practice_id=practice.id)
        self.db.add(p)
        await self.db.flush()
        return p

    async def product(self, name: str = "Tirzepatide") -> Product:
        p = Product(name=name)
        self.db.add(p)
        await self.db.flush()
        return p

    async def pharmacy(
        self,
        name: str,
        states: list[str],
        priority_map: dict | None = None,
        active: bool = True,
        user: User | None = None,
    ) -> Pharmacy:
        ph = Pharmacy(
            name=name,
            states_serviced=states,
            priority_map=priority_map,
            active=active,
            user_id=user.id if user else None,
        )
        self.db.add(ph)
        await self.db.flush()
        return ph

    async def assign(self, product: Product, *pharmacies: Pharmacy) -> None:
        for ph in pharmacies:
            self.db.add(ProductPharmacy(product_id=product.id, pharmacy_id=ph.id))
            # Distinct created_at values keep fetch order equal to assignment order
            await self.db.flush()

    async def rep(self, tier: str = "topline", user: User | None = None, topline: Rep | None = None) -> Rep:
        user = user or await self.user(Role.TOPLINE if tier == "topline" else Role.DOWNLINE)
        r = Rep(user_id=user.id, role=tier, assigned_topline_id=topline.id if topline else None)
        self.db.add(r)
        await self.db.flush()
        return r

    async def scope(self, pharmacy: Pharmacy, topline: Rep) -> None:
        self.db.add(PharmacyRepAssignment(pharmacy_id=pharmacy.id, topline_rep_id=topline.id))
        await self.db.flush()

    async def order(
        self,
        doctor: User | None = None,
        total: str = "100.00",
        *,
        line_statuses: list[str] | None = None,
        provider: Provider | None = None,
        pharmacy: Pharmacy | None = None,
        authorization: str | None = "auth-123",
        paid: bool = True,
        created_at: datetime | None = None,
        status: str = "pending",
    ) -> Order:
        doctor = doctor or await self.user(Role.DOCTOR)
        product = await self.product()
        o = Order(
            doctor_id=doctor.id,
            created_by=doctor.id,
            subtotal_before_discount=Decimal(total),
            total_amount=Decimal(total),
            total_refunded_amount=Decimal("0"),
            payment_status="paid" if paid else "pending",
            authorization_transaction_id=authorization,
            status=status,
            destination_state="CA",
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.db.add(o)
        await self.db.flush()
        for line_status in (line_statuses if line_statuses is not None else ["pending"]):
            self.db.add(OrderLine(
                order_id=o.id,
                product_id=product.id,
                quantity=1,
                unit_price=Decimal(total),
                provider_id=provider.id if provider else None,
                assigned_pharmacy_id=pharmacy.id if pharmacy else None,
                status=line_status,
            ))
        await self.db.flush()
        return o

    async def subscription(
        self,
        practice: User,
        status: str = "active",
        percentage: str | None = None,
    ) -> Subscription:
        s = Subscription(
            practice_id=practice.id,
            status=status,
            monthly_price=Decimal("299.00"),
            rep_commission_percentage=Decimal(percentage) if percentage is not None else None,
        )
        self.db.add(s)
        await self.db.flush()
        return s

    async def payment(
        self,
        subscription: Subscription,
        amount: str = "299.00",
        status: str = "completed",
        paid_at: datetime | None = None,
    ) -> SubscriptionPayment:
        p = SubscriptionPayment(
            subscription_id=subscription.id,
            amount=Decimal(amount),
            status=status,
            paid_at=paid_at or (datetime.now(timezone.utc) if status == "completed" else None),
        )
        self.db.add(p)
        await self.db.flush()
        return p


@pytest.fixture
def factory(db):
    return Factory(db)


def minutes_ago(minutes: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=minutes)

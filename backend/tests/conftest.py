import os

# App-level singletons read the environment on import
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("ENABLE_RATE_LIMITING", "false")

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from packtrip.core.booking import BookingOrchestrator, BookingRequest
from packtrip.core.errors import GatewayError
from packtrip.core.notifications import NotificationOutbox
from packtrip.core.payments import PaymentGateway, PaymentSession
from packtrip.core.security import Actor, create_access_token
from packtrip.core.settings import Settings
from packtrip.db.models import (
    ActivityPackage,
    PackageType,
    RentalPackage,
    Reward,
    RewardScope,
    TourPackage,
    User,
    UserRole,
)
from packtrip.db.session import DatabaseManager


class FakeGateway(PaymentGateway):
    """Records calls; fails on demand"""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def create_session(self, order_reference, amount, customer, items=None):
        self.calls.append({"order_reference": order_reference, "amount": amount, "items": items})
        if self.fail:
            raise GatewayError("Gateway unavailable", status=503, body="maintenance")
        return PaymentSession(
            session_token=f"tok-{order_reference}",
            redirect_url=f"https://pay.example.test/{order_reference}",
        )


def future(days: int = 10) -> date:
    return date.today() + timedelta(days=days)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        DB_URL=f"sqlite:///{tmp_path / 'packtrip.db'}",
        MIDTRANS_SERVER_KEY="",
        LOG_FILE=None,
        ENABLE_RATE_LIMITING=False,
        JWT_SECRET="test-secret",
    )


@pytest_asyncio.fixture
async def db(settings):
    manager = DatabaseManager(settings)
    await manager.initialize()
    await manager.init_db()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def session(db):
    async with db.get_session() as s:
        yield s


@pytest_asyncio.fixture
async def seed(session):
    customer = User(name="Budi Santoso", email="budi@example.com", phone="+62811111111")
    other = User(name="Sari Dewi", email="sari@example.com")
    admin = User(name="Admin", email="admin@example.com", role=UserRole.ADMIN, fcm_token="fcm-admin")
    owner = User(name="Owner", email="owner@example.com", role=UserRole.OWNER)

    tour = TourPackage(name="Bromo Sunrise", price_per_person=Decimal("1000000"), min_persons=1, duration_days=3)
    closed_tour = TourPackage(name="Ijen Blue Fire", price_per_person=Decimal("750000"), duration_days=2, is_available=False)
    activity = ActivityPackage(name="Rafting", price_per_person=Decimal("250000"), min_persons=2, duration_hours=3)
    rental = RentalPackage(name="Toyota Avanza", brand="Toyota", model="Avanza", price_per_day=Decimal("50000"))

    session.add_all([customer, other, admin, owner, tour, closed_tour, activity, rental])
    await session.flush()

    now = datetime.now(timezone.utc)
    rewards = SimpleNamespace(
        welcome=Reward(user_id=customer.id, amount=Decimal("200000"), description="Welcome"),
        rental_only=Reward(user_id=customer.id, amount=Decimal("20000"), applies_to=RewardScope.RENTAL),
        expired=Reward(user_id=customer.id, amount=Decimal("100000"), expired_at=now - timedelta(days=1)),
        big_spender=Reward(user_id=customer.id, amount=Decimal("300000"), min_transaction=Decimal("5000000")),
        jackpot=Reward(user_id=customer.id, amount=Decimal("600000")),
        others=Reward(user_id=other.id, amount=Decimal("50000")),
    )
    session.add_all(list(vars(rewards).values()))
    await session.commit()

    return SimpleNamespace(
        customer=customer, other=other, admin=admin, owner=owner,
        tour=tour, closed_tour=closed_tour, activity=activity, rental=rental,
        rewards=rewards,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def outbox():
    return NotificationOutbox(maxsize=100)


@pytest.fixture
def orchestrator(session, gateway, outbox, settings):
    return BookingOrchestrator(session, gateway, outbox, settings)


@pytest.fixture
def customer_actor(seed):
    return Actor(user_id=seed.customer.id, role=UserRole.CUSTOMER)


@pytest.fixture
def admin_actor(seed):
    return Actor(user_id=seed.admin.id, role=UserRole.ADMIN)


@pytest.fixture
def tour_request(seed):
    def build(**overrides):
        values = dict(
            package_type=PackageType.TOUR,
            package_id=seed.tour.id,
            quantity=2,
            start_date=future(),
        )
        values.update(overrides)
        return BookingRequest(**values)
    return build


@pytest_asyncio.fixture
async def client(db, settings, gateway, outbox):
    from packtrip.main import app
    from packtrip.core.notifications import get_outbox
    from packtrip.core.payments import get_gateway
    from packtrip.core.settings import get_settings
    from packtrip.db.session import get_session

    async def override_session():
        async with db.get_session() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_outbox] = lambda: outbox
    app.dependency_overrides[get_settings] = lambda: settings

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(settings):
    def build(user, role=UserRole.CUSTOMER):
        token = create_access_token(user.id, role=role, settings=settings)
        return {"Authorization": f"Bearer {token}"}
    return build

import os
import tempfile

_db_dir = tempfile.mkdtemp(prefix="booking-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"

from dataclasses import dataclass, field  # noqa: E402
from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import List, Optional  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from database import async_session, engine, init_db  # noqa: E402
from exceptions import PaymentException  # noqa: E402
from models import Actor, Facility, FacilityStatus, Profile, Role  # noqa: E402
from payments import PaymentHandle, PaymentStatus  # noqa: E402

# A Monday, safely in the future for the API tests that use the real clock
BOOKING_DAY = date(2030, 1, 7)


@pytest_asyncio.fixture
async def session():
    await init_db()
    async with async_session() as s:
        yield s
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


async def make_profile(session, role: Role = Role.USER, name: str = "Player") -> Profile:
    profile = Profile(full_name=name, email=f"{name.lower().replace(' ', '.')}@example.com", role=role)
    session.add(profile)
    await session.commit()
    await session.refresh(profile)
    return profile


async def make_facility(
    session,
    owner: Profile,
    status: FacilityStatus = FacilityStatus.APPROVED,
    price: str = "1000",
    capacity: int = 10,
    operating_hours: Optional[dict] = None,
) -> Facility:
    facility = Facility(
        owner_id=owner.id,
        name="Green Turf Arena",
        address="12 MG Road",
        city="Pune",
        state="Maharashtra",
        pincode="411001",
        sports=["football", "cricket"],
        base_price_per_hour=Decimal(price),
        capacity=capacity,
        status=status,
        operating_hours=operating_hours,
    )
    session.add(facility)
    await session.commit()
    await session.refresh(facility)
    return facility


def actor_for(profile: Profile) -> Actor:
    return Actor(user_id=profile.id, role=profile.role)


@pytest_asyncio.fixture
async def owner(session):
    return await make_profile(session, Role.FACILITY_OWNER, "Facility Owner")


@pytest_asyncio.fixture
async def player(session):
    return await make_profile(session, Role.USER, "Asha Player")


@pytest_asyncio.fixture
async def admin(session):
    return await make_profile(session, Role.ADMIN, "Site Admin")


@pytest_asyncio.fixture
async def facility(session, owner):
    return await make_facility(session, owner)


@dataclass
class FakeGateway:
    """Stands in for Stripe. ``payments`` maps payment id to (status, booking id)."""

    payments: dict = field(default_factory=dict)
    fail: bool = False
    lookups: List[str] = field(default_factory=list)

    def succeed(self, payment_id: str, booking_id) -> None:
        self.payments[payment_id] = ("succeeded", str(booking_id))

    async def create_payment_intent(self, booking, description: str) -> PaymentHandle:
        if self.fail:
            raise PaymentException("Payment provider unreachable")
        payment_id = f"pi_{booking.id.hex[:12]}"
        self.payments[payment_id] = ("requires_payment_method", str(booking.id))
        return PaymentHandle(payment_id=payment_id, client_secret=f"{payment_id}_secret")

    async def retrieve_payment_intent(self, payment_id: str) -> PaymentStatus:
        self.lookups.append(payment_id)
        if self.fail:
            raise PaymentException("Payment provider unreachable")
        status, booking_id = self.payments.get(payment_id, ("unknown", None))
        return PaymentStatus(payment_id=payment_id, status=status, booking_id=booking_id)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def client(session, gateway):
    from main import app, get_advisor, get_gateway
    from pricing_advisor import AIAdvisor

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_advisor] = lambda: AIAdvisor(api_key="")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

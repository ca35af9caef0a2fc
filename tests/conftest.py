"""Shared fixtures: a throwaway SQLite database, users, units and a fake gateway."""

import json
import os
import tempfile
import uuid
from dataclasses import replace
from pathlib import Path

_DB_PATH = Path(tempfile.mkdtemp(prefix="hostelhub-tests-")) / "test.db"
os.environ["DATABASE_URL_OVERRIDE"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["HOLD_TIMERS_ENABLED"] = "false"
os.environ["PAYMENT_GATEWAY"] = "stripe"
os.environ["ENVIRONMENT"] = "development"
os.environ["FEED_BACKEND"] = "memory"
os.environ["DEBUG"] = "false"

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

import hostelhub.models  # noqa: E402,F401
from hostelhub.core.idempotency import processed_events  # noqa: E402
from hostelhub.core.security import create_access_token  # noqa: E402
from hostelhub.database import Base, async_session_maker  # noqa: E402
from hostelhub.gateways.base import (  # noqa: E402
    Checkout,
    CheckoutStatus,
    GatewayType,
    PaymentGateway,
    RefundReceipt,
)
from hostelhub.models.unit import Unit  # noqa: E402
from hostelhub.models.user import User  # noqa: E402
from hostelhub.services.availability_ledger import availability_ledger  # noqa: E402
from hostelhub.services.booking_service import BookingTerms, booking_service  # noqa: E402
from hostelhub.services.gateway_service import gateway_service  # noqa: E402
from hostelhub.services.hold_service import hold_service  # noqa: E402

SYNC_DATABASE_URL = f"sqlite:///{_DB_PATH}"

WEBHOOK_SIGNATURE = "t=1,v1=test-signature"


class FakeGateway(PaymentGateway):
    """In-memory stand-in for the Stripe adapter."""

    def __init__(self):
        self.checkouts: dict[str, Checkout] = {}
        self.refunds: list[dict] = []
        self.refund_keys: list[str | None] = []
        self.on_refund = None
        self.fail_checkout = False

    @property
    def name(self) -> GatewayType:
        return GatewayType.STRIPE

    async def open_checkout(self, amount, currency, booking_id, description):
        if self.fail_checkout:
            return Checkout(error="provider unavailable")

        reference = f"cs_test_{len(self.checkouts) + 1}"
        self.checkouts[reference] = Checkout(
            reference=reference,
            amount=amount,
            booking_id=booking_id,
            url=f"https://checkout.test/{reference}",
            details={"id": reference},
        )
        return replace(self.checkouts[reference])

    def settle(self, reference: str, paid: bool = True, amount: int | None = None) -> None:
        checkout = self.checkouts[reference]
        checkout.status = CheckoutStatus.PAID if paid else CheckoutStatus.FAILED
        if amount is not None:
            checkout.amount = amount

    async def fetch_checkout(self, reference):
        if reference not in self.checkouts:
            return Checkout(reference=reference, error="No such checkout")
        return replace(self.checkouts[reference])

    async def refund(self, reference, amount, reason, idempotency_key=None):
        if self.on_refund is not None:
            await self.on_refund()
        self.refunds.append({"reference": reference, "amount": amount, "reason": reason})
        self.refund_keys.append(idempotency_key)
        return RefundReceipt(accepted=True, refund_id=f"re_{reference}", details={"status": "succeeded"})

    def parse_webhook(self, payload, signature):
        if signature != WEBHOOK_SIGNATURE:
            return None
        return json.loads(payload)


# ==================== DATABASE ====================


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test."""
    engine = create_engine(SYNC_DATABASE_URL)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    engine.dispose()
    yield
    hold_service.disarm_all()


@pytest.fixture
async def session():
    async with async_session_maker() as db:
        yield db


def _persist(*objects):
    engine = create_engine(SYNC_DATABASE_URL)
    with Session(engine, expire_on_commit=False) as db:
        db.add_all(objects)
        db.commit()
    engine.dispose()


@pytest.fixture
def make_user():
    def _make_user(role: str = "student", gender: str | None = "female", is_active: bool = True) -> User:
        user = User(
            id=uuid.uuid4(),
            email=f"{role}-{uuid.uuid4().hex[:8]}@hostelhub.test",
            full_name=f"Test {role.title()}",
            role=role,
            gender=gender,
            is_active=is_active,
        )
        _persist(user)
        return user

    return _make_user


@pytest.fixture
def tenant(make_user) -> User:
    return make_user()


@pytest.fixture
def landlord(make_user) -> User:
    return make_user(role="landlord", gender=None)


@pytest.fixture
def admin(make_user) -> User:
    return make_user(role="admin", gender=None)


@pytest.fixture
def make_unit(landlord):
    def _make_unit(
        capacity: int = 4,
        gender_policy: str = "mixed",
        price_per_bed: int = 150000,
        price_per_academic_year: int | None = None,
    ) -> Unit:
        unit = Unit(
            id=uuid.uuid4(),
            room_id=uuid.uuid4(),
            landlord_id=landlord.id,
            room_number="A12",
            capacity=capacity,
            occupied=0,
            is_available=True,
            gender_policy=gender_policy,
            price_per_bed=price_per_bed,
            price_per_academic_year=price_per_academic_year,
        )
        _persist(unit)
        return unit

    return _make_unit


@pytest.fixture
def unit(make_unit) -> Unit:
    return make_unit()


@pytest.fixture
def terms() -> BookingTerms:
    return BookingTerms(semester="first", academic_year="2026/2027")


# ==================== GATEWAYS & STORES ====================


@pytest.fixture(autouse=True)
def fake_gateway():
    gateway = FakeGateway()
    gateway_service.reset()
    gateway_service.register(gateway)
    processed_events.clear()
    yield gateway
    gateway_service.reset()


@pytest.fixture
def auth_headers():
    def _auth_headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}

    return _auth_headers


# ==================== HELPERS ====================


@pytest.fixture
def reload():
    """Read a row through a short-lived session (never holds the write lock)."""

    async def _reload(model, identifier):
        async with async_session_maker() as db:
            return await db.get(model, identifier)

    return _reload


@pytest.fixture
def occupancy():
    async def _occupancy(unit_id) -> int:
        async with async_session_maker() as db:
            snapshot = await availability_ledger.snapshot(db, unit_id)
            return snapshot.occupied

    return _occupancy


@pytest.fixture
def place_booking(terms):
    """Request a booking in its own session, the way one API call would."""

    async def _place_booking(user: User, unit: Unit, booking_terms: BookingTerms | None = None, checkout: bool = False):
        async with async_session_maker() as db:
            return await booking_service.request_booking(
                db,
                tenant=user,
                unit_id=unit.id,
                terms=booking_terms or terms,
                start_checkout=checkout,
            )

    return _place_booking


@pytest.fixture
def stripe_signature() -> str:
    return WEBHOOK_SIGNATURE

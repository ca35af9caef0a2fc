"""
Tests for the booking orchestrator.

Covers the last-bed race, duplicate submits, eligibility, checkout
failures, cancel/reject and transient store retries.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from hostelhub.core.exceptions import (
    AuthorizationError,
    DuplicateBooking,
    InvalidBookingStatus,
    NotFoundError,
    PolicyViolation,
    RoomUnavailable,
    TransientStoreFailure,
    ValidationError,
)
from hostelhub.database import async_session_maker
from hostelhub.models.admin import AuditLog
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking
from hostelhub.models.unit import Unit
from hostelhub.services.booking_service import BookingService, BookingTerms, booking_service
from hostelhub.services.hold_service import hold_service
from hostelhub.services.payment_reconciler import payment_reconciler


async def _count(model, *conditions) -> int:
    async with async_session_maker() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*conditions))
        return result.scalar()


class TestRequestBooking:
    """Tests for request_booking()."""

    async def test_creates_hold_and_checkout(self, tenant, unit, place_booking, fake_gateway):
        """Should hold a bed, price it and open a checkout."""
        result = await place_booking(tenant, unit, checkout=True)

        assert result.ok
        assert result.created is True
        assert result.booking.booking_number.startswith("HH-")
        assert result.booking.total_amount == 150000
        assert result.booking.amount_due == 150000
        assert result.payment is not None
        assert result.payment.checkout_url.startswith("https://checkout.test/")
        assert result.payment.provider_reference in fake_gateway.checkouts

    async def test_deposit_plan_prices_deposit(self, tenant, unit, place_booking):
        """Should ask for the deposit only on the deposit plan."""
        terms = BookingTerms(semester="first", academic_year="2026/2027", payment_plan="deposit")

        result = await place_booking(tenant, unit, terms)

        assert result.booking.amount_due == 45000
        assert result.booking.payment_plan == "deposit"

    async def test_last_bed_race_has_one_winner(self, make_user, make_unit, place_booking, occupancy):
        """Should give the last bed to exactly one of many simultaneous tenants."""
        unit = make_unit(capacity=1)
        tenants = [make_user() for _ in range(5)]

        results = await asyncio.gather(*[place_booking(t, unit) for t in tenants])

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert all(isinstance(r.error, RoomUnavailable) for r in losers)
        assert await occupancy(unit.id) == 1
        assert await _count(Booking, Booking.unit_id == unit.id) == 1

    async def test_never_overbooks(self, make_user, make_unit, place_booking, occupancy):
        """Should never hold more beds than the unit has."""
        unit = make_unit(capacity=3)

        results = await asyncio.gather(*[place_booking(make_user(), unit) for _ in range(7)])

        assert sum(1 for r in results if r.ok) == 3
        assert await occupancy(unit.id) == 3

    async def test_full_unit_writes_nothing(self, make_user, make_unit, place_booking):
        """Should roll the booking back when no bed is free."""
        unit = make_unit(capacity=1)
        await place_booking(make_user(), unit)

        result = await place_booking(make_user(), unit)

        assert isinstance(result.error, RoomUnavailable)
        assert result.error.status_code == 409
        assert await _count(Booking, Booking.unit_id == unit.id) == 1

    async def test_duplicate_submit_returns_existing(self, tenant, unit, place_booking, occupancy):
        """Should return the same booking for a repeated identical request."""
        first = await place_booking(tenant, unit)

        second = await place_booking(tenant, unit)

        assert second.ok
        assert second.created is False
        assert second.booking.id == first.booking.id
        assert await occupancy(unit.id) == 1

    async def test_concurrent_duplicate_submits(self, tenant, unit, place_booking, occupancy):
        """Should create one booking when the same request races itself."""
        results = await asyncio.gather(*[place_booking(tenant, unit) for _ in range(3)])

        assert all(r.ok for r in results)
        assert sum(1 for r in results if r.created) == 1
        assert len({r.booking.id for r in results}) == 1
        assert await occupancy(unit.id) == 1

    async def test_different_terms_rejected(self, tenant, unit, place_booking):
        """Should refuse a second active booking with other terms."""
        await place_booking(tenant, unit)
        other = BookingTerms(semester="second", academic_year="2026/2027")

        result = await place_booking(tenant, unit, other)

        assert isinstance(result.error, DuplicateBooking)

    async def test_gender_policy_enforced(self, make_user, make_unit, place_booking, occupancy):
        """Should refuse a tenant whose gender does not match the room."""
        unit = make_unit(gender_policy="female")

        result = await place_booking(make_user(gender="male"), unit)

        assert isinstance(result.error, PolicyViolation)
        assert await occupancy(unit.id) == 0

    async def test_only_students_book(self, landlord, unit, place_booking):
        result = await place_booking(landlord, unit)

        assert isinstance(result.error, PolicyViolation)

    async def test_unknown_unit(self, tenant, place_booking):
        """Should raise for a unit that does not exist."""
        ghost = Unit(id=uuid.uuid4())

        with pytest.raises(NotFoundError):
            await place_booking(tenant, ghost)

    async def test_checkout_failure_keeps_hold(self, tenant, unit, place_booking, fake_gateway, reload):
        """Should keep the hold when the provider is down; payment can be retried."""
        fake_gateway.fail_checkout = True

        result = await place_booking(tenant, unit, checkout=True)

        assert result.ok
        assert result.payment is None
        assert (await reload(Booking, result.booking.id)).status == "on_hold"

    async def test_rebook_after_expiry(self, tenant, unit, place_booking):
        """Should allow a fresh booking once the previous one expired."""
        first = await place_booking(tenant, unit)
        await hold_service.expire_hold(first.booking.id, now=utcnow() + timedelta(hours=25))

        second = await place_booking(tenant, unit)

        assert second.created is True
        assert second.booking.id != first.booking.id


class TestCancelBooking:
    """Tests for cancel_booking()."""

    async def test_tenant_cancels_hold(self, tenant, unit, place_booking, occupancy):
        """Should cancel and free the bed."""
        result = await place_booking(tenant, unit)

        async with async_session_maker() as db:
            booking = await booking_service.cancel_booking(db, result.booking.id, tenant, "changed plans")

        assert booking.status == "cancelled"
        assert booking.cancelled_by == "tenant"
        assert booking.flag is None
        assert await occupancy(unit.id) == 0

    async def test_cancel_is_idempotent(self, tenant, unit, place_booking, occupancy):
        """Should return the cancelled booking again without releasing twice."""
        result = await place_booking(tenant, unit)
        async with async_session_maker() as db:
            await booking_service.cancel_booking(db, result.booking.id, tenant)

        async with async_session_maker() as db:
            again = await booking_service.cancel_booking(db, result.booking.id, tenant)

        assert again.status == "cancelled"
        assert await occupancy(unit.id) == 0
        assert await _count(AuditLog, AuditLog.action == "booking_cancelled") == 1

    async def test_cancel_paid_booking_flags_refund(self, tenant, unit, place_booking, occupancy):
        """Should flag refund_required when money was already taken."""
        result = await place_booking(tenant, unit)
        async with async_session_maker() as db:
            await payment_reconciler.on_payment_callback(
                db, result.booking.id, "cs_paid", "success", amount=150000
            )

        async with async_session_maker() as db:
            booking = await booking_service.cancel_booking(db, result.booking.id, tenant)

        assert booking.status == "cancelled"
        assert booking.flag == "refund_required"
        assert booking.refund_reference == "cs_paid"
        assert await occupancy(unit.id) == 0

    async def test_cannot_cancel_expired(self, tenant, unit, place_booking):
        result = await place_booking(tenant, unit)
        await hold_service.expire_hold(result.booking.id, now=utcnow() + timedelta(hours=25))

        async with async_session_maker() as db:
            with pytest.raises(InvalidBookingStatus):
                await booking_service.cancel_booking(db, result.booking.id, tenant)

    async def test_stranger_cannot_cancel(self, tenant, unit, place_booking, make_user):
        result = await place_booking(tenant, unit)

        async with async_session_maker() as db:
            with pytest.raises(AuthorizationError):
                await booking_service.cancel_booking(db, result.booking.id, make_user())


class TestRejectAndExtend:
    """Tests for manager actions."""

    async def test_landlord_rejects_hold(self, tenant, landlord, unit, place_booking, occupancy):
        """Should reject the hold and return the bed."""
        result = await place_booking(tenant, unit)

        async with async_session_maker() as db:
            booking = await booking_service.reject_booking(db, result.booking.id, landlord, "room closed")

        assert booking.status == "rejected"
        assert booking.cancelled_by == "landlord"
        assert await occupancy(unit.id) == 0

    async def test_tenant_cannot_reject(self, tenant, unit, place_booking):
        result = await place_booking(tenant, unit)

        async with async_session_maker() as db:
            with pytest.raises(AuthorizationError):
                await booking_service.reject_booking(db, result.booking.id, tenant)

    async def test_landlord_extends_hold(self, tenant, landlord, unit, place_booking):
        """Should give the tenant more time."""
        result = await place_booking(tenant, unit)
        before = result.booking.hold_seconds_remaining

        async with async_session_maker() as db:
            booking = await booking_service.extend_hold(db, result.booking.id, landlord, hours=6)

        assert booking.hold_seconds_remaining >= before + 6 * 3600 - 5

    async def test_extension_over_limit_rejected(self, tenant, landlord, unit, place_booking):
        result = await place_booking(tenant, unit)

        async with async_session_maker() as db:
            with pytest.raises(ValidationError):
                await booking_service.extend_hold(db, result.booking.id, landlord, hours=72)


class TestTransientRetries:
    """Tests for retrying transient store failures."""

    @staticmethod
    def _locked() -> OperationalError:
        return OperationalError("UPDATE units", {}, Exception("database is locked"))

    async def test_retries_then_succeeds(self, session):
        """Should retry transient failures with backoff."""
        service = BookingService(hold_service, payment_reconciler, retry_attempts=3, retry_backoff=0)
        calls = []

        async def attempt():
            calls.append(1)
            if len(calls) < 3:
                raise self._locked()
            return "done"

        assert await service._with_retry(attempt, session, "test op") == "done"
        assert len(calls) == 3

    async def test_gives_up_after_attempts(self, session):
        """Should surface TransientStoreFailure when retries run out."""
        service = BookingService(hold_service, payment_reconciler, retry_attempts=2, retry_backoff=0)

        async def attempt():
            raise self._locked()

        with pytest.raises(TransientStoreFailure) as exc_info:
            await service._with_retry(attempt, session, "test op")
        assert exc_info.value.status_code == 503

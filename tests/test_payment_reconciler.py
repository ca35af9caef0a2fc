"""
Tests for the payment reconciler.

Covers confirmation, duplicate and failed callbacks, amount mismatches,
payments landing after expiry, and operator flag resolution.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from hostelhub.core.exceptions import (
    AuthorizationError,
    InvalidBookingStatus,
    PaymentMismatch,
    PostExpiryPaymentConflict,
    ValidationError,
)
from hostelhub.database import async_session_maker
from hostelhub.domain.booking_state import TERMINAL_STATUSES
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment
from hostelhub.services.audit_service import audit_service
from hostelhub.services.booking_service import BookingTerms
from hostelhub.services.hold_service import hold_service
from hostelhub.services.notification_service import notification_service
from hostelhub.services.payment_reconciler import (
    ACTION_CONFIRMED,
    ACTION_DISPUTED,
    ACTION_DUPLICATE,
    ACTION_PAYMENT_FAILED,
    ACTION_PENDING,
    ACTION_REFUND_REQUIRED,
    ACTION_UNAPPLIED,
    payment_reconciler,
)


async def _callback(booking_id, reference, outcome="success", amount=None):
    async with async_session_maker() as db:
        return await payment_reconciler.on_payment_callback(
            db, booking_id, reference, outcome, amount=amount
        )


async def _resolve(booking_id, resolution, actor, note=None):
    async with async_session_maker() as db:
        return await payment_reconciler.resolve_flag(db, booking_id, resolution, actor, note)


async def _expire(booking_id):
    return await hold_service.expire_hold(booking_id, now=utcnow() + timedelta(hours=25))


class TestSuccessfulPayment:
    """Tests for successful provider outcomes."""

    async def test_exact_payment_confirms(self, tenant, unit, place_booking, occupancy):
        """Should confirm and keep the held bed as the confirmed occupancy."""
        held = await place_booking(tenant, unit)

        outcome = await _callback(held.booking.id, "cs_1", amount=150000)

        assert outcome.ok
        assert outcome.action == ACTION_CONFIRMED
        assert outcome.booking.status == "confirmed"
        assert outcome.booking.payment_status == "paid"
        assert outcome.booking.amount_paid == 150000
        assert outcome.booking.hold_expires_at is None
        assert await occupancy(unit.id) == 1

    async def test_deposit_confirms_as_partial(self, tenant, unit, place_booking):
        """Should confirm a deposit booking with a partial payment status."""
        terms = BookingTerms(semester="first", academic_year="2026/2027", payment_plan="deposit")
        held = await place_booking(tenant, unit, terms)

        outcome = await _callback(held.booking.id, "cs_1", amount=45000)

        assert outcome.booking.status == "confirmed"
        assert outcome.booking.payment_status == "partial"

    async def test_duplicate_callback_changes_nothing(self, tenant, unit, place_booking, reload):
        """Should treat a redelivered success as a no-op."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=150000)

        again = await _callback(held.booking.id, "cs_1", amount=150000)

        assert again.action == ACTION_DUPLICATE
        booking = await reload(Booking, held.booking.id)
        assert booking.status == "confirmed"
        assert booking.flag is None

    async def test_confirmed_booking_cannot_expire(self, tenant, unit, place_booking, occupancy):
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=150000)

        assert await _expire(held.booking.id) is False
        assert await occupancy(unit.id) == 1

    async def test_second_charge_on_confirmed_booking_flags_refund(self, tenant, unit, place_booking):
        """Should flag a different successful checkout for refund."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=150000)

        outcome = await _callback(held.booking.id, "cs_2", amount=150000)

        assert outcome.action == ACTION_REFUND_REQUIRED
        assert outcome.booking.status == "confirmed"
        assert outcome.booking.payment_status == "paid"
        assert outcome.booking.refund_reference == "cs_2"

    async def test_attempt_recorded(self, tenant, unit, place_booking):
        """Should keep the provider outcome on a payment record."""
        held = await place_booking(tenant, unit)

        await _callback(held.booking.id, "cs_1", amount=150000)

        async with async_session_maker() as db:
            result = await db.execute(select(Payment).where(Payment.provider_reference == "cs_1"))
            payment = result.scalar_one()
        assert payment.status == "succeeded"
        assert payment.amount_received == 150000


class TestMismatchAndFailure:
    """Tests for disputed amounts and failed payments."""

    async def test_wrong_amount_disputed(self, tenant, unit, place_booking, occupancy):
        """Should flag a mismatched amount and keep the hold."""
        held = await place_booking(tenant, unit)

        outcome = await _callback(held.booking.id, "cs_1", amount=100000)

        assert outcome.action == ACTION_DISPUTED
        assert isinstance(outcome.error, PaymentMismatch)
        assert outcome.booking.status == "on_hold"
        assert outcome.booking.flag == "payment_disputed"
        assert outcome.booking.amount_paid == 100000
        assert await occupancy(unit.id) == 1

    async def test_failure_keeps_hold(self, tenant, unit, place_booking):
        """Should record a failed payment while the hold keeps running."""
        held = await place_booking(tenant, unit)

        outcome = await _callback(held.booking.id, "cs_1", outcome="failure")

        assert outcome.action == ACTION_PAYMENT_FAILED
        assert outcome.booking.status == "on_hold"
        assert outcome.booking.payment_status == "failed"

    async def test_retry_after_failure_confirms(self, tenant, unit, place_booking):
        """Should confirm when a later checkout succeeds."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", outcome="failure")

        outcome = await _callback(held.booking.id, "cs_2", amount=150000)

        assert outcome.booking.status == "confirmed"

    async def test_unknown_outcome_rejected(self, tenant, unit, place_booking):
        held = await place_booking(tenant, unit)

        with pytest.raises(ValidationError):
            await _callback(held.booking.id, "cs_1", outcome="maybe")


class TestLatePayment:
    """Tests for payments that land after the hold is gone."""

    async def test_payment_after_expiry_flags_refund(self, tenant, unit, place_booking, occupancy):
        """Should never re-take the bed; the money is flagged for refund."""
        held = await place_booking(tenant, unit)
        assert await _expire(held.booking.id) is True

        outcome = await _callback(held.booking.id, "cs_1", amount=150000)

        assert outcome.action == ACTION_REFUND_REQUIRED
        assert isinstance(outcome.error, PostExpiryPaymentConflict)
        assert outcome.booking.status == "expired"
        assert outcome.booking.flag == "refund_required"
        assert outcome.booking.payment_status == "paid"
        assert await occupancy(unit.id) == 0

    async def test_late_payment_redelivered(self, tenant, unit, place_booking):
        """Should recognise the same late payment on redelivery."""
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)

        again = await _callback(held.booking.id, "cs_1", amount=150000)

        assert again.action == ACTION_DUPLICATE

    async def test_refunded_payment_redelivered(self, tenant, admin, unit, place_booking, fake_gateway, reload):
        """Should leave a refunded late payment refunded when it is delivered again."""
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)
        await _resolve(held.booking.id, "refund", admin)

        again = await _callback(held.booking.id, "cs_1", amount=150000)

        assert again.action == ACTION_DUPLICATE
        booking = await reload(Booking, held.booking.id)
        assert booking.payment_status == "refunded"
        assert booking.flag is None
        assert len(fake_gateway.refunds) == 1

    async def test_dismissed_payment_redelivered(self, tenant, admin, unit, place_booking, reload):
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)
        await _resolve(held.booking.id, "dismiss", admin, note="refunded by bank transfer")

        again = await _callback(held.booking.id, "cs_1", amount=150000)

        assert again.action == ACTION_DUPLICATE
        booking = await reload(Booking, held.booking.id)
        assert booking.flag is None

    async def test_new_late_payment_keeps_refunded_status(self, tenant, admin, unit, place_booking):
        """Should flag a second late payment without undoing the earlier refund."""
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)
        await _resolve(held.booking.id, "refund", admin)

        outcome = await _callback(held.booking.id, "cs_2", amount=150000)

        assert outcome.action == ACTION_REFUND_REQUIRED
        assert outcome.booking.payment_status == "refunded"
        assert outcome.booking.refund_reference == "cs_2"

    async def test_confirm_and_expire_race_has_one_winner(self, tenant, unit, place_booking, reload, occupancy):
        """Should end either confirmed with the bed or expired with a refund flag."""
        held = await place_booking(tenant, unit)

        await asyncio.gather(
            _expire(held.booking.id),
            _callback(held.booking.id, "cs_1", amount=150000),
        )

        booking = await reload(Booking, held.booking.id)
        if booking.status == "confirmed":
            assert booking.flag is None
            assert await occupancy(unit.id) == 1
        else:
            assert booking.status == "expired"
            assert booking.flag == "refund_required"
            assert await occupancy(unit.id) == 0


class TestVerifyPayment:
    """Tests for client-initiated verification."""

    async def test_paid_checkout_confirms(self, tenant, unit, place_booking, fake_gateway):
        held = await place_booking(tenant, unit, checkout=True)
        reference = held.payment.provider_reference
        fake_gateway.settle(reference)

        async with async_session_maker() as db:
            outcome = await payment_reconciler.verify_payment(db, held.booking.id, reference)

        assert outcome.action == ACTION_CONFIRMED

    async def test_open_checkout_is_pending(self, tenant, unit, place_booking):
        held = await place_booking(tenant, unit, checkout=True)

        async with async_session_maker() as db:
            outcome = await payment_reconciler.verify_payment(
                db, held.booking.id, held.payment.provider_reference
            )

        assert outcome.action == ACTION_PENDING
        assert outcome.booking.status == "on_hold"

    async def test_checkout_for_other_booking_rejected(self, make_user, unit, place_booking):
        """Should refuse to apply one booking's checkout to another."""
        mine = await place_booking(make_user(), unit, checkout=True)
        theirs = await place_booking(make_user(), unit, checkout=True)

        async with async_session_maker() as db:
            with pytest.raises(ValidationError):
                await payment_reconciler.verify_payment(
                    db, mine.booking.id, theirs.payment.provider_reference
                )


class TestResolveFlag:
    """Tests for operator flag resolution."""

    async def test_confirm_disputed_payment(self, tenant, admin, unit, place_booking, occupancy):
        """Should accept the received amount and confirm."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)

        booking = await _resolve(held.booking.id, "confirm", admin)

        assert booking.status == "confirmed"
        assert booking.flag is None
        assert booking.payment_status == "partial"
        assert await occupancy(unit.id) == 1

    async def test_refund_disputed_payment(self, tenant, admin, unit, place_booking, fake_gateway, occupancy):
        """Should refund through the gateway, cancel and free the bed."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)

        booking = await _resolve(held.booking.id, "refund", admin, note="amount short")

        assert booking.status == "cancelled"
        assert booking.status in TERMINAL_STATUSES
        assert booking.payment_status == "refunded"
        assert booking.flag is None
        assert fake_gateway.refunds == [{"reference": "cs_1", "amount": 100000, "reason": "amount short"}]
        assert await occupancy(unit.id) == 0

    async def test_refund_late_payment(self, tenant, admin, unit, place_booking, fake_gateway):
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)

        booking = await _resolve(held.booking.id, "refund", admin)

        assert booking.status == "expired"
        assert booking.flag is None
        assert booking.payment_status == "refunded"
        assert len(fake_gateway.refunds) == 1

    async def test_dismiss_requires_note(self, tenant, admin, unit, place_booking):
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)

        with pytest.raises(ValidationError):
            await _resolve(held.booking.id, "dismiss", admin)

    async def test_dismiss_clears_flag(self, tenant, admin, unit, place_booking):
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)

        booking = await _resolve(held.booking.id, "dismiss", admin, note="refunded by bank transfer")

        assert booking.flag is None
        assert booking.status == "expired"

    async def test_only_admins_resolve(self, tenant, landlord, unit, place_booking):
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)

        with pytest.raises(AuthorizationError):
            await _resolve(held.booking.id, "confirm", landlord)

    async def test_unflagged_booking_rejected(self, tenant, admin, unit, place_booking):
        held = await place_booking(tenant, unit)

        with pytest.raises(InvalidBookingStatus):
            await _resolve(held.booking.id, "dismiss", admin, note="nothing to do")


class TestPaymentDuringOpenFlag:
    """Tests for charges that land while a flag is still open."""

    async def test_charge_is_recorded_and_alerted(self, tenant, unit, place_booking, monkeypatch):
        """Should audit the charge and alert operators instead of dropping it."""
        alerts = []

        async def record_alert(alert_type, booking_id, message, data=None):
            alerts.append(alert_type)
            return False

        monkeypatch.setattr(notification_service, "alert_ops", record_alert)
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)

        outcome = await _callback(held.booking.id, "cs_2", amount=150000)

        assert outcome.action == ACTION_UNAPPLIED
        assert outcome.booking.flag == "payment_disputed"
        assert alerts == ["payment_disputed", "refund_required"]
        async with async_session_maker() as db:
            history = await audit_service.booking_history(db, held.booking.id)
        assert "booking_payment_unapplied" in [entry.action for entry in history]

    async def test_refunding_dispute_flags_held_charge(self, tenant, admin, unit, place_booking, fake_gateway):
        """Should flag the held charge once the dispute is refunded, then refund it too."""
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)
        await _callback(held.booking.id, "cs_2", amount=150000)

        first = await _resolve(held.booking.id, "refund", admin, note="amount short")
        second = await _resolve(held.booking.id, "refund", admin, note="duplicate charge")

        assert first.status == "cancelled"
        assert first.payment_status == "refunded"
        assert first.flag == "refund_required"
        assert first.refund_reference == "cs_2"
        assert second.flag is None
        assert second.payment_status == "refunded"
        assert fake_gateway.refunds == [
            {"reference": "cs_1", "amount": 100000, "reason": "amount short"},
            {"reference": "cs_2", "amount": 150000, "reason": "duplicate charge"},
        ]

    async def test_confirming_dispute_flags_held_charge(self, tenant, admin, unit, place_booking):
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)
        await _callback(held.booking.id, "cs_2", amount=150000)

        booking = await _resolve(held.booking.id, "confirm", admin)

        assert booking.status == "confirmed"
        assert booking.provider_reference == "cs_1"
        assert booking.flag == "refund_required"
        assert booking.refund_reference == "cs_2"

    async def test_redelivered_held_charge_is_duplicate(self, tenant, unit, place_booking):
        held = await place_booking(tenant, unit)
        await _callback(held.booking.id, "cs_1", amount=100000)
        await _callback(held.booking.id, "cs_2", amount=150000)

        again = await _callback(held.booking.id, "cs_2", amount=150000)

        assert again.action == ACTION_DUPLICATE


class TestRefundSafety:
    """Tests for the gateway refund call made while resolving a flag."""

    async def test_refund_carries_idempotency_key(self, tenant, admin, unit, place_booking, fake_gateway):
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)

        await _resolve(held.booking.id, "refund", admin)

        async with async_session_maker() as db:
            result = await db.execute(select(Payment).where(Payment.provider_reference == "cs_1"))
            payment = result.scalar_one()
        assert payment.status == "refunded"
        assert fake_gateway.refund_keys == [f"refund-{payment.id}"]

    async def test_gateway_call_leaves_database_free(self, tenant, admin, unit, place_booking, fake_gateway, occupancy):
        """Should hold no transaction open while the gateway refunds."""
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)
        seen = []

        async def read_during_refund():
            seen.append(await occupancy(unit.id))

        fake_gateway.on_refund = read_during_refund

        await _resolve(held.booking.id, "refund", admin)

        assert seen == [0]

    async def test_retry_after_lost_update_does_not_refund_twice(
        self, tenant, admin, unit, place_booking, fake_gateway, monkeypatch
    ):
        """Should keep the refund on record when the booking update loses, and not repeat it."""
        held = await place_booking(tenant, unit)
        await _expire(held.booking.id)
        await _callback(held.booking.id, "cs_1", amount=150000)

        async def lost_update(*args, **kwargs):
            return None

        monkeypatch.setattr(payment_reconciler, "_close_refunded", lost_update)
        with pytest.raises(InvalidBookingStatus):
            await _resolve(held.booking.id, "refund", admin)
        monkeypatch.undo()

        booking = await _resolve(held.booking.id, "refund", admin)

        assert booking.flag is None
        assert booking.payment_status == "refunded"
        assert len(fake_gateway.refunds) == 1

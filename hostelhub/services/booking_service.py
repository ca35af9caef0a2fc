"""Booking orchestrator.

Entry point for booking requests and tenant/manager actions. A request
runs as one transaction: create the booking, place the hold (which takes
the ledger slot), commit. Losing the race for the last bed rolls the
whole transaction back and surfaces RoomUnavailable; a duplicate submit
returns the booking that already exists.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from hostelhub.config import settings
from hostelhub.core.exceptions import (
    AppException,
    AuthorizationError,
    DuplicateBooking,
    ExternalServiceError,
    InvalidBookingStatus,
    NotFoundError,
    PolicyViolation,
    RoomUnavailable,
    TransientStoreFailure,
)
from hostelhub.domain import payment_state
from hostelhub.domain.booking_state import (
    CANCELLABLE_STATUSES,
    CANCELLED,
    FLAG_REFUND_REQUIRED,
    ON_HOLD,
    REJECTED,
    REQUESTED,
    SLOT_HOLDING_STATUSES,
)
from hostelhub.domain.eligibility import check_eligibility
from hostelhub.domain.pricing import BookingDuration, PaymentPlan, quote
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment
from hostelhub.models.unit import Unit
from hostelhub.models.user import User
from hostelhub.services.audit_service import audit_service
from hostelhub.services.booking_store import compare_and_set, load_booking
from hostelhub.services.change_feed import booking_event, queue_feed_event
from hostelhub.services.hold_service import HoldHandle, HoldService, hold_service
from hostelhub.services.notification_service import notification_service
from hostelhub.services.payment_reconciler import PaymentReconciler, payment_reconciler
from hostelhub.utils.booking_number import generate_booking_number

logger = logging.getLogger(__name__)

# Attempts at a cancel/reject compare-and-set before giving up
MAX_TRANSITION_ATTEMPTS = 3


@dataclass(frozen=True)
class BookingTerms:
    """What the tenant asked for."""

    semester: str
    academic_year: str
    duration: BookingDuration = BookingDuration.SEMESTER
    payment_plan: PaymentPlan = PaymentPlan.FULL
    notes: str | None = None

    def matches(self, booking: Booking) -> bool:
        return (
            booking.semester == self.semester
            and booking.academic_year == self.academic_year
            and booking.duration == BookingDuration(self.duration).value
            and booking.payment_plan == PaymentPlan(self.payment_plan).value
        )


@dataclass
class BookingResult:
    """Outcome of a booking request; `error` is set instead of raising."""

    booking: Booking | None = None
    created: bool = False
    hold: HoldHandle | None = None
    payment: Payment | None = None
    error: AppException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class _Applicant:
    id: UUID
    role: str
    gender: str | None


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or exc.connection_invalidated


class BookingService:
    """Coordinates eligibility, pricing, holds and checkout for a booking."""

    def __init__(
        self,
        holds: HoldService,
        reconciler: PaymentReconciler,
        retry_attempts: int | None = None,
        retry_backoff: float | None = None,
    ):
        self.holds = holds
        self.reconciler = reconciler
        self.retry_attempts = retry_attempts or settings.store_retry_attempts
        self.retry_backoff = (
            settings.store_retry_backoff_seconds if retry_backoff is None else retry_backoff
        )

    # ==================== REQUEST ====================

    async def request_booking(
        self,
        db: AsyncSession,
        tenant: User,
        unit_id: UUID,
        terms: BookingTerms,
        start_checkout: bool = True,
    ) -> BookingResult:
        """Place a hold on one bed for the tenant and open a checkout.

        Returns:
            BookingResult with the on-hold booking, or with `error` set to
            RoomUnavailable, PolicyViolation or DuplicateBooking

        Raises:
            NotFoundError: Unit does not exist
            TransientStoreFailure: Store unavailable after retries
        """
        # Plain values: a retry rolls back, which expires ORM attributes
        applicant = _Applicant(id=tenant.id, role=tenant.role, gender=tenant.gender)
        result = await self._with_retry(
            lambda: self._request_once(db, applicant, unit_id, terms),
            db,
            f"booking request for unit {unit_id}",
        )

        if result.ok and result.created:
            notification_service.notify_tenant(
                applicant.id, notification_service.HOLD_PLACED, result.booking.id
            )
            if start_checkout:
                result.payment = await self._open_checkout(db, result.booking)
        return result

    async def _request_once(
        self,
        db: AsyncSession,
        tenant: "_Applicant",
        unit_id: UUID,
        terms: BookingTerms,
    ) -> BookingResult:
        unit = await db.get(Unit, unit_id)
        if unit is None:
            raise NotFoundError("Unit", str(unit_id))

        reason = check_eligibility(tenant.role, tenant.gender, unit.gender_policy)
        if reason:
            return BookingResult(error=PolicyViolation(reason))

        existing = await self._active_booking(db, tenant.id, unit_id)
        if existing is not None:
            return self._resubmission(existing, terms)

        priced = quote(
            unit.price_per_bed,
            unit.price_per_academic_year,
            terms.duration,
            terms.payment_plan,
        )

        try:
            booking = Booking(
                booking_number=await generate_booking_number(db),
                tenant_id=tenant.id,
                unit_id=unit_id,
                semester=terms.semester,
                academic_year=terms.academic_year,
                duration=BookingDuration(terms.duration).value,
                payment_plan=PaymentPlan(terms.payment_plan).value,
                total_amount=priced.total_amount,
                amount_due=priced.amount_due,
                currency=priced.currency,
                status=REQUESTED,
                payment_status=payment_state.PENDING,
                notes=terms.notes,
            )
            db.add(booking)
            await db.flush()

            hold = await self.holds.place_hold(db, booking)
            if isinstance(hold, RoomUnavailable):
                await db.rollback()
                return BookingResult(error=hold)

            await db.commit()
        except IntegrityError:
            # A concurrent submit for the same tenant and unit won
            await db.rollback()
            existing = await self._active_booking(db, tenant.id, unit_id)
            if existing is None:
                raise
            return self._resubmission(existing, terms)

        logger.info(
            f"Booking {booking.booking_number} on hold for unit {unit_id} until {hold.expires_at.isoformat()}"
        )
        return BookingResult(booking=booking, created=True, hold=hold)

    async def _active_booking(self, db: AsyncSession, tenant_id: UUID, unit_id: UUID) -> Booking | None:
        result = await db.execute(
            select(Booking)
            .where(
                Booking.tenant_id == tenant_id,
                Booking.unit_id == unit_id,
                Booking.status.in_(list(SLOT_HOLDING_STATUSES)),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _resubmission(self, existing: Booking, terms: BookingTerms) -> BookingResult:
        if terms.matches(existing):
            logger.info(f"Duplicate submit for booking {existing.booking_number}; returning existing")
            return BookingResult(booking=existing, created=False)
        return BookingResult(
            booking=existing,
            error=DuplicateBooking(
                f"You already have booking {existing.booking_number} for this room with different terms"
            ),
        )

    async def _open_checkout(self, db: AsyncSession, booking: Booking) -> Payment | None:
        try:
            payment = await self.reconciler.initiate_checkout(db, booking)
            await db.commit()
            return payment
        except ExternalServiceError:
            # Nothing was written; the hold stands and the tenant can retry payment
            return None

    async def _with_retry(self, attempt_fn, db: AsyncSession, name: str):
        """Run `attempt_fn`, retrying transient store failures with exponential backoff."""
        for attempt in range(self.retry_attempts):
            try:
                return await attempt_fn()
            except DBAPIError as e:
                await db.rollback()
                if not _is_transient(e):
                    raise
                if attempt == self.retry_attempts - 1:
                    logger.error(f"{name} failed after {self.retry_attempts} attempts: {e}")
                    raise TransientStoreFailure() from e
                wait_time = self.retry_backoff * (2**attempt)
                logger.warning(f"{name} hit a transient store error, retrying after {wait_time}s: {e}")
                await asyncio.sleep(wait_time)
        raise TransientStoreFailure()

    # ==================== TENANT / MANAGER ACTIONS ====================

    async def cancel_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        actor: User,
        reason: str | None = None,
    ) -> Booking:
        """Cancel an on-hold or confirmed booking and free its bed.

        Cancelling an already-cancelled booking returns it unchanged. A
        booking with money received is flagged refund_required.
        """
        booking = await load_booking(db, booking_id)
        cancelled_by = await self._actor_role(db, booking, actor)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            old_status = booking.status
            if booking.status == CANCELLED:
                return booking
            if booking.status not in CANCELLABLE_STATUSES:
                raise InvalidBookingStatus(f"Cannot cancel a booking that is {booking.status}")

            values = {
                "status": CANCELLED,
                "cancelled_at": utcnow(),
                "cancelled_by": cancelled_by,
                "cancellation_reason": reason,
                "hold_expires_at": None,
            }
            owes_refund = booking.amount_paid > 0 and booking.payment_status != payment_state.REFUNDED
            if owes_refund:
                values.update(
                    flag=FLAG_REFUND_REQUIRED,
                    flag_reason=f"Booking cancelled by {cancelled_by} after payment",
                    refund_reference=booking.refund_reference or booking.provider_reference,
                )

            updated = await compare_and_set(
                db,
                booking.id,
                expected={
                    "status": booking.status,
                    "payment_status": booking.payment_status,
                    "amount_paid": booking.amount_paid,
                },
                values=values,
            )
            if updated is not None:
                break
            booking = await load_booking(db, booking_id)
        else:
            await db.rollback()
            raise InvalidBookingStatus("Booking is changing too quickly to cancel; reload and retry")

        await self.holds.cancel_hold(db, updated, release=True, reason="cancelled")
        await audit_service.booking_transition(
            db,
            updated,
            "booking_cancelled",
            from_status=old_status,
            to_status=CANCELLED,
            actor_id=actor.id,
            cancelled_by=cancelled_by,
            reason=reason,
        )
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        await db.commit()

        logger.info(f"Booking {updated.booking_number} cancelled by {cancelled_by}")
        notification_service.notify_tenant(
            updated.tenant_id, notification_service.BOOKING_CANCELLED, updated.id, detail=reason
        )
        if updated.flag == FLAG_REFUND_REQUIRED:
            await notification_service.alert_ops(
                notification_service.REFUND_REQUIRED,
                updated.id,
                updated.flag_reason or "Refund required",
                data={"amount_paid": updated.amount_paid},
            )
        return updated

    async def reject_booking(
        self,
        db: AsyncSession,
        booking_id: UUID,
        actor: User,
        reason: str | None = None,
    ) -> Booking:
        """Manager declines an unpaid hold; the bed goes back on the market."""
        booking = await load_booking(db, booking_id)
        role = await self._actor_role(db, booking, actor)
        if role == "tenant":
            raise AuthorizationError("Only the room's manager can reject a booking")

        if booking.status != ON_HOLD:
            raise InvalidBookingStatus(f"Cannot reject a booking that is {booking.status}")
        if booking.flag is not None:
            raise InvalidBookingStatus("Resolve the booking's payment flag before rejecting it")

        updated = await compare_and_set(
            db,
            booking.id,
            expected={"status": ON_HOLD, "flag": None},
            values={
                "status": REJECTED,
                "cancelled_at": utcnow(),
                "cancelled_by": role,
                "cancellation_reason": reason,
                "hold_expires_at": None,
            },
        )
        if updated is None:
            await db.rollback()
            raise InvalidBookingStatus("Booking is no longer on hold")

        await self.holds.cancel_hold(db, updated, release=True, reason="rejected")
        await audit_service.booking_transition(
            db,
            updated,
            "booking_rejected",
            from_status=ON_HOLD,
            to_status=REJECTED,
            actor_id=actor.id,
            reason=reason,
        )
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        await db.commit()

        logger.info(f"Booking {updated.booking_number} rejected by {role}")
        notification_service.notify_tenant(
            updated.tenant_id, notification_service.BOOKING_REJECTED, updated.id, detail=reason
        )
        return updated

    async def extend_hold(
        self,
        db: AsyncSession,
        booking_id: UUID,
        actor: User,
        hours: int,
    ) -> Booking:
        """Manager grants the tenant more time to pay."""
        booking = await load_booking(db, booking_id)
        role = await self._actor_role(db, booking, actor)
        if role == "tenant":
            raise AuthorizationError("Only the room's manager can extend a hold")

        updated = await self.holds.extend_hold(db, booking, timedelta(hours=hours), actor_id=actor.id)
        await db.commit()
        return updated

    async def get_booking_for(self, db: AsyncSession, booking_id: UUID, actor: User) -> Booking:
        booking = await load_booking(db, booking_id)
        await self._actor_role(db, booking, actor)
        return booking

    async def _actor_role(self, db: AsyncSession, booking: Booking, actor: User) -> str:
        """Who the actor is relative to the booking: tenant, landlord or admin."""
        if actor.role == "admin":
            return "admin"
        if booking.tenant_id == actor.id:
            return "tenant"
        result = await db.execute(select(Unit.landlord_id).where(Unit.id == booking.unit_id))
        if result.scalar_one_or_none() == actor.id:
            return "landlord"
        raise AuthorizationError("You don't have access to this booking")


booking_service = BookingService(hold_service, payment_reconciler)

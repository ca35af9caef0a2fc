"""Hold manager.

A hold is a booking in `on_hold` that owns one ledger slot until it is
paid, cancelled, rejected or expires. Expiry is driven three ways, all
funnelling into the same guarded `expire_hold`:

- a per-hold timer armed on the event loop,
- a periodic sweep of overdue holds (covers missed timers),
- startup recovery (expire overdue holds, re-arm the rest).

Bookings carrying a flag never expire; an operator resolves them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hostelhub.config import settings
from hostelhub.core.exceptions import InvalidBookingStatus, RoomUnavailable, ValidationError
from hostelhub.database import async_session_maker
from hostelhub.domain.booking_state import EXPIRED, ON_HOLD, assert_booking_transition
from hostelhub.models.base import as_utc, utcnow
from hostelhub.models.booking import Booking
from hostelhub.services.audit_service import audit_service
from hostelhub.services.availability_ledger import (
    AvailabilityLedger,
    Conflict,
    availability_ledger,
)
from hostelhub.services.booking_store import compare_and_set, load_booking
from hostelhub.services.change_feed import booking_event, queue_feed_event
from hostelhub.services.notification_service import notification_service

logger = logging.getLogger(__name__)

# Timers fire slightly late so the guarded UPDATE sees the hold as overdue
TIMER_GRACE_SECONDS = 0.5

SWEEP_BATCH_SIZE = 500


@dataclass(frozen=True)
class HoldHandle:
    booking_id: UUID
    unit_id: UUID
    reservation_id: UUID
    expires_at: datetime


class HoldService:
    """Places, extends, releases and expires holds."""

    def __init__(
        self,
        ledger: AvailabilityLedger,
        session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
        timers_enabled: bool | None = None,
    ):
        self.ledger = ledger
        self.session_factory = session_factory
        self.timers_enabled = settings.hold_timers_enabled if timers_enabled is None else timers_enabled
        self._timers: dict[UUID, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    # ==================== HOLD LIFECYCLE ====================

    async def place_hold(
        self,
        db: AsyncSession,
        booking: Booking,
        ttl: timedelta | None = None,
    ) -> HoldHandle | RoomUnavailable:
        """Reserve a slot for a requested booking and start its countdown.

        Runs inside the caller's transaction; on RoomUnavailable nothing
        has been written and the caller should roll back.
        """
        assert_booking_transition(booking.status, ON_HOLD)

        token = await self.ledger.try_reserve(db, booking.unit_id, booking.id)
        if isinstance(token, Conflict):
            logger.info(f"No free bed in unit {booking.unit_id} for booking {booking.booking_number}")
            return RoomUnavailable(unit_id=booking.unit_id)

        expires_at = utcnow() + (ttl or timedelta(hours=settings.hold_ttl_hours))
        booking.status = ON_HOLD
        booking.hold_expires_at = expires_at
        booking.reservation_id = token.reservation_id
        await db.flush()

        await audit_service.booking_transition(
            db,
            booking,
            "booking_hold_placed",
            from_status=None,
            to_status=ON_HOLD,
            actor_id=booking.tenant_id,
            hold_expires_at=expires_at.isoformat(),
        )
        queue_feed_event(db, booking.unit_id, booking_event(booking))

        # A rolled-back booking leaves a harmless timer: expiry finds no row
        self.arm(booking.id, expires_at)
        return HoldHandle(
            booking_id=booking.id,
            unit_id=booking.unit_id,
            reservation_id=token.reservation_id,
            expires_at=expires_at,
        )

    async def cancel_hold(
        self,
        db: AsyncSession,
        booking: Booking,
        *,
        release: bool,
        reason: str,
    ) -> bool:
        """Stop the countdown; give the slot back unless it was consumed by payment.

        Idempotent: a second call finds no timer and an already-released token.
        """
        self.disarm(booking.id)
        if not release or booking.reservation_id is None:
            return False
        return await self.ledger.release(db, booking.reservation_id, reason)

    async def expire_hold(self, booking_id: UUID, now: datetime | None = None) -> bool:
        """Expire an overdue, unflagged hold and free its slot.

        Returns:
            True if this call expired the booking; False if it was paid,
            cancelled, flagged, extended or already expired meanwhile
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            booking = await compare_and_set(
                db,
                booking_id,
                expected={"status": ON_HOLD, "flag": None},
                values={"status": EXPIRED, "expired_at": now, "hold_expires_at": None},
                extra_conditions=[Booking.hold_expires_at <= now],
            )
            if booking is None:
                await db.rollback()
                return False

            if booking.reservation_id is not None:
                await self.ledger.release(db, booking.reservation_id, "expired")

            await audit_service.booking_transition(
                db,
                booking,
                "booking_hold_expired",
                from_status=ON_HOLD,
                to_status=EXPIRED,
            )
            queue_feed_event(db, booking.unit_id, booking_event(booking))
            await db.commit()

        self.disarm(booking_id)
        logger.info(f"Hold expired for booking {booking.booking_number}")
        notification_service.notify_tenant(
            booking.tenant_id, notification_service.HOLD_EXPIRED, booking.id
        )
        return True

    async def extend_hold(
        self,
        db: AsyncSession,
        booking: Booking,
        extra: timedelta,
        actor_id: UUID | None = None,
    ) -> Booking:
        """Push a hold's deadline out, capped at the configured maximum lifetime."""
        if booking.status != ON_HOLD or booking.hold_expires_at is None:
            raise InvalidBookingStatus("Only bookings on hold can be extended")
        if extra <= timedelta(0):
            raise ValidationError("Extension must be positive")

        current = as_utc(booking.hold_expires_at)
        new_expiry = current + extra
        limit = as_utc(booking.created_at) + timedelta(hours=settings.hold_max_total_hours)
        if new_expiry > limit:
            raise ValidationError(
                f"Holds cannot exceed {settings.hold_max_total_hours} hours in total"
            )

        updated = await compare_and_set(
            db,
            booking.id,
            expected={"status": ON_HOLD},
            values={"hold_expires_at": new_expiry},
            extra_conditions=[Booking.hold_expires_at > utcnow()],
        )
        if updated is None:
            raise InvalidBookingStatus("Hold has already lapsed or changed; it can no longer be extended")

        await audit_service.booking_transition(
            db,
            updated,
            "booking_hold_extended",
            from_status=ON_HOLD,
            to_status=ON_HOLD,
            actor_id=actor_id,
            hold_expires_at=new_expiry.isoformat(),
        )
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        self.arm(updated.id, new_expiry)
        return updated

    # ==================== SWEEP & RECOVERY ====================

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Expire every overdue, unflagged hold. Safe to run concurrently."""
        now = now or utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(Booking.id)
                .where(
                    Booking.status == ON_HOLD,
                    Booking.flag.is_(None),
                    Booking.hold_expires_at <= now,
                )
                .order_by(Booking.hold_expires_at)
                .limit(SWEEP_BATCH_SIZE)
            )
            overdue = list(result.scalars().all())

        expired = 0
        for booking_id in overdue:
            if await self.expire_hold(booking_id, now=now):
                expired += 1

        if expired:
            logger.info(f"Hold sweep expired {expired} booking(s)")
        return expired

    async def recover(self) -> int:
        """Startup recovery: expire overdue holds, then re-arm timers for the rest.

        Returns:
            Number of timers armed
        """
        expired = await self.sweep_expired()

        async with self.session_factory() as db:
            result = await db.execute(
                select(Booking.id, Booking.hold_expires_at).where(
                    Booking.status == ON_HOLD,
                    Booking.flag.is_(None),
                    Booking.hold_expires_at.is_not(None),
                )
            )
            pending = result.all()

        for booking_id, expires_at in pending:
            self.arm(booking_id, expires_at)

        logger.info(f"Hold recovery: expired {expired}, re-armed {len(pending)}")
        return len(pending)

    # ==================== TIMERS ====================

    def arm(self, booking_id: UUID, expires_at: datetime) -> None:
        """(Re)schedule the expiry timer for a hold."""
        if not self.timers_enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (e.g. synchronous tooling); the sweep covers it
            return

        self.disarm(booking_id)
        delay = max(0.0, (as_utc(expires_at) - utcnow()).total_seconds()) + TIMER_GRACE_SECONDS
        self._timers[booking_id] = loop.call_later(delay, self._fire, booking_id)

    def disarm(self, booking_id: UUID) -> None:
        handle = self._timers.pop(booking_id, None)
        if handle is not None:
            handle.cancel()

    def disarm_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    @property
    def armed_count(self) -> int:
        return len(self._timers)

    def _fire(self, booking_id: UUID) -> None:
        self._timers.pop(booking_id, None)
        task = asyncio.get_running_loop().create_task(self._expire_from_timer(booking_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire_from_timer(self, booking_id: UUID) -> None:
        try:
            await self.expire_hold(booking_id)
        except Exception as e:
            # The periodic sweep retries this booking
            logger.error(f"Timer expiry failed for booking {booking_id}: {e}")


hold_service = HoldService(availability_ledger)

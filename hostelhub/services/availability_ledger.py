"""Availability ledger.

The only writer of `units.occupied`. Every reserve/release is a single
conditional UPDATE on the unit row, so the database row lock linearizes
all callers for one unit while different units proceed in parallel.
The caller's transaction also carries the booking write, so a rollback
undoes both together.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hostelhub.core.exceptions import NotFoundError
from hostelhub.models.base import utcnow
from hostelhub.models.unit import Unit, UnitReservation
from hostelhub.services.change_feed import queue_feed_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationToken:
    """Proof that one slot was taken from a unit."""

    reservation_id: UUID
    unit_id: UUID


@dataclass(frozen=True)
class Conflict:
    """No free slot was left when the reservation was attempted."""

    unit_id: UUID


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Derived, non-authoritative view of a unit's counters."""

    unit_id: UUID
    occupied: int
    capacity: int

    @property
    def is_available(self) -> bool:
        return self.occupied < self.capacity

    @property
    def free(self) -> int:
        return max(0, self.capacity - self.occupied)

    def to_event(self) -> dict:
        return {
            "type": "availability",
            "unit_id": str(self.unit_id),
            "occupied": self.occupied,
            "capacity": self.capacity,
            "free": self.free,
            "is_available": self.is_available,
        }


class AvailabilityLedger:
    """Authoritative occupied/capacity counters per unit."""

    async def try_reserve(
        self,
        db: AsyncSession,
        unit_id: UUID,
        booking_id: UUID | None = None,
    ) -> ReservationToken | Conflict:
        """Take one slot if `occupied < capacity`, atomically."""
        result = await db.execute(
            update(Unit)
            .where(Unit.id == unit_id, Unit.occupied < Unit.capacity)
            .values(
                occupied=Unit.occupied + 1,
                is_available=(Unit.occupied + 1) < Unit.capacity,
                updated_at=utcnow(),
            )
            .returning(Unit.occupied, Unit.capacity)
            .execution_options(synchronize_session=False)
        )
        row = result.first()

        if row is None:
            exists = await db.execute(select(Unit.id).where(Unit.id == unit_id))
            if exists.scalar_one_or_none() is None:
                raise NotFoundError("Unit", str(unit_id))
            return Conflict(unit_id=unit_id)

        reservation = UnitReservation(unit_id=unit_id, booking_id=booking_id)
        db.add(reservation)
        await db.flush()

        snapshot = AvailabilitySnapshot(unit_id=unit_id, occupied=row.occupied, capacity=row.capacity)
        queue_feed_event(db, unit_id, snapshot.to_event())
        return ReservationToken(reservation_id=reservation.id, unit_id=unit_id)

    async def release(
        self,
        db: AsyncSession,
        reservation_id: UUID,
        reason: str,
    ) -> bool:
        """Give a reserved slot back. Releasing twice is a logged no-op.

        Returns:
            True if a slot was freed by this call
        """
        claimed = await db.execute(
            update(UnitReservation)
            .where(
                UnitReservation.id == reservation_id,
                UnitReservation.released_at.is_(None),
            )
            .values(released_at=utcnow(), release_reason=reason)
            .returning(UnitReservation.unit_id)
            .execution_options(synchronize_session=False)
        )
        unit_id = claimed.scalar_one_or_none()
        if unit_id is None:
            logger.warning(
                f"Reservation {reservation_id} already released; ignoring release ({reason})"
            )
            return False

        result = await db.execute(
            update(Unit)
            .where(Unit.id == unit_id, Unit.occupied > 0)
            .values(
                occupied=Unit.occupied - 1,
                is_available=True,
                updated_at=utcnow(),
            )
            .returning(Unit.occupied, Unit.capacity)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            # Counter already at zero; never go negative
            logger.warning(
                f"Unit {unit_id} occupancy already zero while releasing reservation {reservation_id}"
            )
            return False

        snapshot = AvailabilitySnapshot(unit_id=unit_id, occupied=row.occupied, capacity=row.capacity)
        queue_feed_event(db, unit_id, snapshot.to_event())
        return True

    async def snapshot(self, db: AsyncSession, unit_id: UUID) -> AvailabilitySnapshot | None:
        """Read-only counters for display and the change feed."""
        result = await db.execute(
            select(Unit.occupied, Unit.capacity).where(Unit.id == unit_id)
        )
        row = result.first()
        if row is None:
            return None
        return AvailabilitySnapshot(unit_id=unit_id, occupied=row.occupied, capacity=row.capacity)


availability_ledger = AvailabilityLedger()

"""Guarded booking row updates.

Every status/flag change is a single UPDATE whose WHERE clause restates
the state the caller observed. When two writers race (hold expiry vs.
payment confirmation, cancel vs. confirm) exactly one UPDATE matches;
the loser gets None and re-reads.
"""

from collections.abc import Iterable
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hostelhub.core.exceptions import NotFoundError
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking


async def load_booking(db: AsyncSession, booking_id: UUID) -> Booking:
    """Fetch the current row, overwriting any stale identity-map copy."""
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFoundError("Booking", str(booking_id))
    return booking


async def compare_and_set(
    db: AsyncSession,
    booking_id: UUID,
    expected: dict[str, Any],
    values: dict[str, Any],
    extra_conditions: list[ColumnElement[bool]] | None = None,
) -> Booking | None:
    """Apply `values` only if the row still matches `expected`.

    Args:
        db: Database session
        booking_id: Booking to update
        expected: Column -> value (None means IS NULL, a collection means IN)
        values: Column -> new value
        extra_conditions: Further WHERE clauses (e.g. deadline comparisons)

    Returns:
        The refreshed booking, or None if another writer got there first
    """
    conditions = [Booking.id == booking_id, *(extra_conditions or [])]
    for column, value in expected.items():
        attr = getattr(Booking, column)
        if value is None:
            conditions.append(attr.is_(None))
        elif isinstance(value, Iterable) and not isinstance(value, str):
            conditions.append(attr.in_(list(value)))
        else:
            conditions.append(attr == value)

    result = await db.execute(
        update(Booking)
        .where(*conditions)
        .values(**{"updated_at": utcnow(), **values})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await load_booking(db, booking_id)

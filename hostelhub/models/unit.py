"""Availability ledger models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from hostelhub.database import Base
from hostelhub.models.base import utcnow


class Unit(Base):
    """Bookable beds in one room.

    Only the availability ledger writes `occupied` and `is_available`.
    """

    __tablename__ = "units"
    __table_args__ = (
        CheckConstraint("capacity > 0", name="unit_capacity_positive"),
        CheckConstraint("occupied >= 0 AND occupied <= capacity", name="unit_occupied_in_range"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    room_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    hostel_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    landlord_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), index=True
    )
    room_number: Mapped[str | None] = mapped_column(String(20))

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    occupied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    gender_policy: Mapped[str] = mapped_column(
        String(10), nullable=False, default="mixed"
    )  # male, female, mixed

    # Pricing (in pesewas)
    price_per_bed: Mapped[int] = mapped_column(Integer, nullable=False)  # per semester
    price_per_academic_year: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class UnitReservation(Base):
    """One occupied slot taken from a unit (the ledger's reservation token)."""

    __tablename__ = "unit_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False, index=True
    )
    booking_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, index=True)
    reserved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    release_reason: Mapped[str | None] = mapped_column(
        String(30)
    )  # expired, cancelled, rejected, refunded

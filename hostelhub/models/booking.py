"""Booking model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from hostelhub.database import Base
from hostelhub.models.base import as_utc, utcnow

_ACTIVE_BOOKING = text("status IN ('on_hold', 'confirmed')")


class Booking(Base):
    """A tenant's claim on one bed. Rows are transitioned, never deleted."""

    __tablename__ = "bookings"
    __table_args__ = (
        # At most one active claim per tenant per unit (double-submit guard)
        Index(
            "uq_bookings_active_tenant_unit",
            "tenant_id",
            "unit_id",
            unique=True,
            postgresql_where=_ACTIVE_BOOKING,
            sqlite_where=_ACTIVE_BOOKING,
        ),
        Index("ix_bookings_status_hold_expires_at", "status", "hold_expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False, index=True
    )  # HH-XXXXXX
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False, index=True
    )
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("unit_reservations.id")
    )

    # Terms
    semester: Mapped[str] = mapped_column(String(20), nullable=False)
    academic_year: Mapped[str] = mapped_column(String(20), nullable=False)
    duration: Mapped[str] = mapped_column(
        String(20), nullable=False, default="semester"
    )  # semester, academic_year
    payment_plan: Mapped[str] = mapped_column(
        String(10), nullable=False, default="full"
    )  # full, deposit

    # Amounts (in pesewas)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_due: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="GHS")

    # Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="requested", index=True
    )  # requested, on_hold, confirmed, expired, cancelled, rejected
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, partial, paid, failed, refunded
    flag: Mapped[str | None] = mapped_column(
        String(30), index=True
    )  # payment_disputed, refund_required
    flag_reason: Mapped[str | None] = mapped_column(Text)

    # Hold
    hold_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Payment correlation
    provider_reference: Mapped[str | None] = mapped_column(String(255), index=True)
    # Provider reference of the charge a refund_required flag points at
    refund_reference: Mapped[str | None] = mapped_column(String(255))

    # Cancellation
    cancelled_by: Mapped[str | None] = mapped_column(String(10))  # tenant, landlord, admin
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    notes: Mapped[str | None] = mapped_column(Text)

    # Timestamps
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def hold_seconds_remaining(self) -> int | None:
        """Seconds left on the hold, for client countdowns."""
        if self.status != "on_hold" or self.hold_expires_at is None:
            return None
        remaining = (as_utc(self.hold_expires_at) - utcnow()).total_seconds()
        return max(0, int(remaining))

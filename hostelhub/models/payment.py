"""Payment attempt model."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from hostelhub.database import Base
from hostelhub.models.base import utcnow


class Payment(Base):
    """One checkout attempt against a booking."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("gateway", "provider_reference", name="uq_payments_gateway_reference"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )

    # Amount
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # expected, in pesewas
    amount_received: Mapped[int | None] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="GHS")

    # Gateway
    gateway: Mapped[str] = mapped_column(String(30), nullable=False)  # stripe, manual
    provider_reference: Mapped[str | None] = mapped_column(String(255))
    checkout_url: Mapped[str | None] = mapped_column(String(2048))
    gateway_response: Mapped[dict | None] = mapped_column(JSON)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending, succeeded, failed, refunded

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

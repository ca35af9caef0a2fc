"""Append-only audit trail of booking and payment transitions.

Entries are added to the caller's session, so they commit or roll back
together with the transition they describe.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hostelhub.models.admin import AuditLog
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment


def _jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


class AuditService:
    """Writes and reads audit entries."""

    async def booking_transition(
        self,
        db: AsyncSession,
        booking: Booking,
        action: str,
        *,
        from_status: str | None,
        to_status: str,
        actor_id: UUID | None = None,
        **details: Any,
    ) -> AuditLog:
        """Record one booking transition; ``actor_id`` is None when the system acted."""
        new_values = {"status": to_status, "unit_id": str(booking.unit_id)}
        new_values.update({k: _jsonable(v) for k, v in details.items() if v is not None})

        entry = AuditLog(
            user_id=actor_id,
            action=action,
            resource_type="booking",
            resource_id=booking.id,
            old_values={"status": from_status} if from_status else None,
            new_values=new_values,
        )
        db.add(entry)
        return entry

    async def payment_transition(
        self,
        db: AsyncSession,
        payment: Payment,
        from_status: str,
        amount: int | None = None,
    ) -> AuditLog:
        new_values: dict[str, Any] = {"status": payment.status, "booking_id": str(payment.booking_id)}
        if amount is not None:
            new_values["amount"] = amount

        entry = AuditLog(
            action=f"payment_{payment.status}",
            resource_type="payment",
            resource_id=payment.id,
            old_values={"status": from_status},
            new_values=new_values,
        )
        db.add(entry)
        return entry

    async def booking_history(self, db: AsyncSession, booking_id: UUID) -> list[AuditLog]:
        """Transitions of one booking, oldest first."""
        result = await db.execute(
            select(AuditLog)
            .where(AuditLog.resource_type == "booking", AuditLog.resource_id == booking_id)
            .order_by(AuditLog.created_at, AuditLog.id)
        )
        return list(result.scalars().all())


audit_service = AuditService()

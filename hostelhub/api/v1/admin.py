"""Admin endpoints for payment flags and hold maintenance."""

from uuid import UUID

from fastapi import APIRouter, Query
from sqlalchemy import func, select

from hostelhub.api.deps import CurrentAdmin, DbSession
from hostelhub.core.exceptions import NotFoundError
from hostelhub.models.admin import AuditLog
from hostelhub.models.booking import Booking
from hostelhub.schemas.admin import AuditEntryResponse, FlagResolveRequest
from hostelhub.schemas.booking import BookingListResponse, BookingResponse
from hostelhub.services.audit_service import audit_service
from hostelhub.services.hold_service import hold_service
from hostelhub.services.payment_reconciler import payment_reconciler

router = APIRouter()


@router.get("/bookings/flagged", response_model=BookingListResponse)
async def list_flagged_bookings(
    current_user: CurrentAdmin,
    db: DbSession,
    flag: str | None = Query(default=None, pattern="^(payment_disputed|refund_required)$"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> BookingListResponse:
    """Bookings waiting for an operator decision."""
    query = select(Booking).where(Booking.flag.is_not(None))
    if flag:
        query = query.where(Booking.flag == flag)

    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0

    offset = (page - 1) * page_size
    result = await db.execute(
        query.order_by(Booking.updated_at.desc()).offset(offset).limit(page_size)
    )

    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/bookings/{booking_id}/resolve-flag", response_model=BookingResponse)
async def resolve_flag(
    booking_id: UUID,
    resolve_data: FlagResolveRequest,
    current_user: CurrentAdmin,
    db: DbSession,
) -> Booking:
    """Confirm, refund or dismiss a flagged booking."""
    return await payment_reconciler.resolve_flag(
        db,
        booking_id,
        resolution=resolve_data.resolution,
        actor=current_user,
        note=resolve_data.note,
    )


@router.get("/bookings/{booking_id}/history", response_model=list[AuditEntryResponse])
async def booking_history(
    booking_id: UUID,
    current_user: CurrentAdmin,
    db: DbSession,
) -> list[AuditLog]:
    if await db.get(Booking, booking_id) is None:
        raise NotFoundError("Booking", str(booking_id))
    return await audit_service.booking_history(db, booking_id)


@router.post("/holds/sweep")
async def sweep_holds(current_user: CurrentAdmin, db: DbSession) -> dict:
    """Expire overdue holds now instead of waiting for the next sweep."""
    # The sweep runs its own transactions; end the one that loaded the admin
    await db.commit()
    expired = await hold_service.sweep_expired()
    return {"expired": expired}

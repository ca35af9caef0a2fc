"""Booking endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import func, select

from hostelhub.api.deps import CurrentUser, DbSession
from hostelhub.core.middleware import booking_limiter
from hostelhub.models.booking import Booking
from hostelhub.models.unit import Unit
from hostelhub.schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingCreateResponse,
    BookingListResponse,
    BookingResponse,
    HoldExtendRequest,
)
from hostelhub.schemas.payment import CheckoutResponse
from hostelhub.services.booking_service import BookingTerms, booking_service

router = APIRouter()


@router.post(
    "/",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_limiter)],
)
async def create_booking(
    booking_data: BookingCreate,
    current_user: CurrentUser,
    db: DbSession,
    response: Response,
) -> BookingCreateResponse:
    """Hold a bed and open checkout.

    Re-submitting the same request returns the existing booking (200).
    """
    result = await booking_service.request_booking(
        db,
        tenant=current_user,
        unit_id=booking_data.unit_id,
        terms=BookingTerms(
            semester=booking_data.semester,
            academic_year=booking_data.academic_year,
            duration=booking_data.duration,
            payment_plan=booking_data.payment_plan,
            notes=booking_data.notes,
        ),
    )
    if not result.ok:
        raise result.error

    if not result.created:
        response.status_code = status.HTTP_200_OK

    return BookingCreateResponse(
        booking=BookingResponse.model_validate(result.booking),
        created=result.created,
        checkout=CheckoutResponse.model_validate(result.payment) if result.payment else None,
    )


@router.get("/", response_model=BookingListResponse)
async def get_my_bookings(
    current_user: CurrentUser,
    db: DbSession,
    role: str = Query(default="tenant", pattern="^(tenant|landlord)$"),
    status_filter: str | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> BookingListResponse:
    """Get bookings for the current user (as tenant, or across the rooms they manage)."""
    if role == "tenant":
        query = select(Booking).where(Booking.tenant_id == current_user.id)
    else:
        query = select(Booking).join(Unit, Unit.id == Booking.unit_id).where(
            Unit.landlord_id == current_user.id
        )

    if status_filter:
        query = query.where(Booking.status == status_filter)

    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0

    # Pagination
    offset = (page - 1) * page_size
    query = query.order_by(Booking.created_at.desc()).offset(offset).limit(page_size)

    result = await db.execute(query)
    bookings = list(result.scalars().all())

    return BookingListResponse(
        bookings=[BookingResponse.model_validate(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
) -> Booking:
    """Get booking details (tenant, room manager or admin)."""
    return await booking_service.get_booking_for(db, booking_id, current_user)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    cancel_data: BookingCancelRequest | None = None,
) -> Booking:
    """Cancel a held or confirmed booking and free the bed."""
    return await booking_service.cancel_booking(
        db,
        booking_id,
        actor=current_user,
        reason=cancel_data.reason if cancel_data else None,
    )


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    current_user: CurrentUser,
    db: DbSession,
    reject_data: BookingCancelRequest | None = None,
) -> Booking:
    """Room manager declines an unpaid hold."""
    return await booking_service.reject_booking(
        db,
        booking_id,
        actor=current_user,
        reason=reject_data.reason if reject_data else None,
    )


@router.post("/{booking_id}/extend-hold", response_model=BookingResponse)
async def extend_hold(
    booking_id: UUID,
    extend_data: HoldExtendRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> Booking:
    """Room manager gives the tenant more time to pay."""
    return await booking_service.extend_hold(
        db,
        booking_id,
        actor=current_user,
        hours=extend_data.hours,
    )

"""Booking-related Pydantic schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hostelhub.domain.pricing import BookingDuration, PaymentPlan
from hostelhub.schemas.payment import CheckoutResponse


class BookingCreate(BaseModel):
    """Schema for requesting a bed."""

    unit_id: UUID
    semester: str = Field(..., min_length=1, max_length=20)
    academic_year: str = Field(..., pattern=r"^\d{4}/\d{4}$")
    duration: BookingDuration = BookingDuration.SEMESTER
    payment_plan: PaymentPlan = PaymentPlan.FULL
    notes: str | None = Field(None, max_length=1000)


class BookingResponse(BaseModel):
    """Schema for booking response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_number: str
    tenant_id: UUID
    unit_id: UUID

    # Terms
    semester: str
    academic_year: str
    duration: str
    payment_plan: str

    # Amounts
    total_amount: int
    amount_due: int
    amount_paid: int
    currency: str

    # Status
    status: str
    payment_status: str
    flag: str | None
    flag_reason: str | None

    # Hold
    hold_expires_at: datetime | None
    hold_seconds_remaining: int | None

    # Cancellation
    cancelled_by: str | None
    cancellation_reason: str | None

    notes: str | None

    # Timestamps
    confirmed_at: datetime | None
    expired_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime


class BookingCreateResponse(BaseModel):
    """Booking request result: the hold plus the checkout to pay it."""

    booking: BookingResponse
    created: bool
    checkout: CheckoutResponse | None = None


class BookingListResponse(BaseModel):
    """Schema for paginated booking list."""

    bookings: list[BookingResponse]
    total: int
    page: int
    page_size: int


class BookingCancelRequest(BaseModel):
    """Schema for canceling or rejecting a booking."""

    reason: str | None = Field(None, max_length=1000)


class HoldExtendRequest(BaseModel):
    """Schema for a manager extending a hold."""

    hours: int = Field(..., ge=1, le=72)

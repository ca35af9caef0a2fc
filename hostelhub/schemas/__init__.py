"""Pydantic schemas for API validation."""

from hostelhub.schemas.admin import AuditEntryResponse, FlagResolveRequest
from hostelhub.schemas.booking import (
    BookingCancelRequest,
    BookingCreate,
    BookingCreateResponse,
    BookingListResponse,
    BookingResponse,
    HoldExtendRequest,
)
from hostelhub.schemas.payment import (
    CheckoutResponse,
    ManualPaymentRequest,
    PaymentInitiateRequest,
    PaymentVerifyRequest,
    ReconciliationResponse,
)
from hostelhub.schemas.unit import AvailabilityResponse

__all__ = [
    # Admin
    "AuditEntryResponse",
    "FlagResolveRequest",
    # Booking
    "BookingCancelRequest",
    "BookingCreate",
    "BookingCreateResponse",
    "BookingListResponse",
    "BookingResponse",
    "HoldExtendRequest",
    # Payment
    "CheckoutResponse",
    "ManualPaymentRequest",
    "PaymentInitiateRequest",
    "PaymentVerifyRequest",
    "ReconciliationResponse",
    # Unit
    "AvailabilityResponse",
]

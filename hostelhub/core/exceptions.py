"""Application exceptions.

Each failure carries its HTTP status so routes can raise them directly and
the global handler renders ``{"detail": ...}``. The booking engine also
returns them as values (``BookingResult.error``) when a conflict is an
expected outcome rather than a fault.
"""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "An unexpected error occurred"
    default_headers: dict[str, str] | None = None

    def __init__(self, detail: str | None = None, headers: dict[str, str] | None = None) -> None:
        super().__init__(
            status_code=self.http_status,
            detail=detail or self.default_detail,
            headers=headers or self.default_headers,
        )


class ValidationError(AppException):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Validation failed"


class NotFoundError(AppException):
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} with ID '{identifier}' not found" if identifier else f"{resource} not found"
        super().__init__(detail)


class AuthenticationError(AppException):
    http_status = status.HTTP_401_UNAUTHORIZED
    default_detail = "Authentication failed"
    default_headers = {"WWW-Authenticate": "Bearer"}


class AuthorizationError(AppException):
    http_status = status.HTTP_403_FORBIDDEN
    default_detail = "You don't have permission to access this resource"


class RateLimitExceeded(AppException):
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Too many requests. Please try again later."


# ==================== BOOKINGS ====================


class InvalidBookingStatus(AppException):
    """The booking is not in a state that allows the operation."""

    http_status = status.HTTP_400_BAD_REQUEST
    default_detail = "This operation is not allowed for the current booking status"


class RoomUnavailable(AppException):
    """No free bed was left in the unit when the hold was attempted."""

    http_status = status.HTTP_409_CONFLICT
    default_detail = "Someone else just booked this room. Please pick another one."

    def __init__(self, detail: str | None = None, unit_id: Any = None) -> None:
        self.unit_id = unit_id
        super().__init__(detail)


class DuplicateBooking(AppException):
    """Tenant already holds this unit under different terms."""

    http_status = status.HTTP_409_CONFLICT
    default_detail = "You already have an active booking for this room"


class PolicyViolation(AppException):
    """Role or gender policy of the unit excludes the tenant."""

    http_status = status.HTTP_403_FORBIDDEN
    default_detail = "You are not eligible to book this room"


class TransientStoreFailure(AppException):
    """Persistence was unavailable after all retries."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Booking store is temporarily unavailable. Please try again."
    default_headers = {"Retry-After": "5"}


# ==================== PAYMENTS ====================


class PaymentMismatch(AppException):
    """Provider reported an amount different from what the booking owes."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, expected: int, received: int | None) -> None:
        self.expected = expected
        self.received = received
        super().__init__(f"Payment amount {received} does not match amount due {expected}; sent for manual review")


class PostExpiryPaymentConflict(AppException):
    """Payment succeeded after the hold was already released."""

    http_status = status.HTTP_409_CONFLICT

    def __init__(self, booking_status: str) -> None:
        self.booking_status = booking_status
        super().__init__(f"Payment received for a {booking_status} booking; a refund has been queued for review")


class PaymentError(AppException):
    http_status = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "Payment processing failed"


class ExternalServiceError(AppException):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, service: str, detail: str | None = None) -> None:
        message = f"External service '{service}' is unavailable"
        super().__init__(f"{message}: {detail}" if detail else message)

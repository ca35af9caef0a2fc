"""Core utilities and security modules."""

from hostelhub.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    DuplicateBooking,
    InvalidBookingStatus,
    NotFoundError,
    PaymentError,
    PaymentMismatch,
    PolicyViolation,
    PostExpiryPaymentConflict,
    RoomUnavailable,
    TransientStoreFailure,
    ValidationError,
)
from hostelhub.core.security import create_access_token, token_subject

__all__ = [
    "AppException",
    "AuthenticationError",
    "AuthorizationError",
    "DuplicateBooking",
    "InvalidBookingStatus",
    "NotFoundError",
    "PaymentError",
    "PaymentMismatch",
    "PolicyViolation",
    "PostExpiryPaymentConflict",
    "RoomUnavailable",
    "TransientStoreFailure",
    "ValidationError",
    "create_access_token",
    "token_subject",
]

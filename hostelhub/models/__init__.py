"""Database models."""

from hostelhub.models.admin import AuditLog
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment
from hostelhub.models.unit import Unit, UnitReservation
from hostelhub.models.user import User

__all__ = [
    # User
    "User",
    # Ledger
    "Unit",
    "UnitReservation",
    # Booking
    "Booking",
    # Payment
    "Payment",
    # Admin
    "AuditLog",
]

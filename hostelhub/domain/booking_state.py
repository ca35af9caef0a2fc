"""Booking state machine.

States: requested → on_hold → confirmed | expired | rejected,
and on_hold/confirmed → cancelled.

Flags (payment_disputed, refund_required) sit beside the status and are
only cleared through an administrative resolution.
"""

from hostelhub.core.exceptions import InvalidBookingStatus

REQUESTED = "requested"
ON_HOLD = "on_hold"
CONFIRMED = "confirmed"
EXPIRED = "expired"
CANCELLED = "cancelled"
REJECTED = "rejected"

BOOKING_TRANSITIONS = {
    REQUESTED: {ON_HOLD, REJECTED},
    ON_HOLD: {CONFIRMED, EXPIRED, CANCELLED, REJECTED},
    CONFIRMED: {CANCELLED},
    EXPIRED: set(),
    CANCELLED: set(),
    REJECTED: set(),
}

# Statuses that own exactly one occupied slot in the ledger
SLOT_HOLDING_STATUSES = frozenset({ON_HOLD, CONFIRMED})
TERMINAL_STATUSES = frozenset({EXPIRED, CANCELLED, REJECTED})
CANCELLABLE_STATUSES = frozenset({ON_HOLD, CONFIRMED})

FLAG_PAYMENT_DISPUTED = "payment_disputed"
FLAG_REFUND_REQUIRED = "refund_required"

RESOLVE_CONFIRM = "confirm"
RESOLVE_REFUND = "refund"
RESOLVE_DISMISS = "dismiss"

FLAG_RESOLUTIONS = {
    FLAG_PAYMENT_DISPUTED: {RESOLVE_CONFIRM, RESOLVE_REFUND, RESOLVE_DISMISS},
    FLAG_REFUND_REQUIRED: {RESOLVE_REFUND, RESOLVE_DISMISS},
}


def can_transition(current: str, target: str) -> bool:
    return target in BOOKING_TRANSITIONS.get(current, set())


def assert_booking_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidBookingStatus(
            f"Invalid booking transition: {current} → {target}"
        )


def assert_flag_resolution(flag: str | None, resolution: str) -> None:
    """Validate an administrative flag resolution."""
    if flag is None:
        raise InvalidBookingStatus("Booking has no flag to resolve")
    allowed = FLAG_RESOLUTIONS.get(flag, set())
    if resolution not in allowed:
        raise InvalidBookingStatus(
            f"Resolution '{resolution}' is not valid for flag '{flag}'"
        )

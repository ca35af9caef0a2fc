"""Payment state machine."""

from hostelhub.core.exceptions import ValidationError

# Booking.payment_status
PENDING = "pending"
PARTIAL = "partial"
PAID = "paid"
FAILED = "failed"
REFUNDED = "refunded"

# A booking that never settled can still have money returned (disputed or late payments)
PAYMENT_TRANSITIONS = {
    PENDING: {PARTIAL, PAID, FAILED, REFUNDED},
    FAILED: {PARTIAL, PAID, FAILED, REFUNDED},
    PARTIAL: {REFUNDED},
    PAID: {REFUNDED},
    REFUNDED: set(),
}

# Payment attempt (payments.status)
ATTEMPT_PENDING = "pending"
ATTEMPT_SUCCEEDED = "succeeded"
ATTEMPT_FAILED = "failed"
ATTEMPT_REFUNDED = "refunded"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


def can_transition(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def assert_payment_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise ValidationError(
            f"Invalid payment transition: {current} → {target}"
        )


def settled_status(amount_due: int, total_amount: int) -> str:
    """Payment status once the amount due has been received."""
    return PAID if amount_due >= total_amount else PARTIAL

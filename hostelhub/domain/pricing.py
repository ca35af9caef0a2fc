"""Booking price calculation.

Durations:
- semester: the unit's per-bed semester price
- academic_year: the unit's academic-year price, or the semester price
  times the configured multiplier when the listing has none

Payment plans:
- full: the whole total is due to confirm the booking
- deposit: a percentage of the total (rounded up) confirms the booking
"""

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from enum import Enum

from hostelhub.config import settings


class BookingDuration(str, Enum):
    """How long the bed is booked for."""

    SEMESTER = "semester"
    ACADEMIC_YEAR = "academic_year"


class PaymentPlan(str, Enum):
    """How much must be paid to confirm."""

    FULL = "full"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class Quote:
    """Computed amounts in pesewas."""

    total_amount: int
    amount_due: int
    currency: str


def calculate_total(
    price_per_bed: int,
    price_per_academic_year: int | None,
    duration: BookingDuration | str,
) -> int:
    duration = BookingDuration(duration)
    if duration == BookingDuration.SEMESTER:
        return price_per_bed
    if price_per_academic_year:
        return price_per_academic_year
    return price_per_bed * settings.academic_year_multiplier


def calculate_amount_due(
    total_amount: int,
    plan: PaymentPlan | str,
    deposit_percent: int | None = None,
) -> int:
    plan = PaymentPlan(plan)
    if plan == PaymentPlan.FULL:
        return total_amount

    pct = Decimal(deposit_percent if deposit_percent is not None else settings.deposit_percent)
    due = (Decimal(total_amount) * pct / Decimal("100")).quantize(Decimal("1"), rounding=ROUND_CEILING)
    return int(due)


def quote(
    price_per_bed: int,
    price_per_academic_year: int | None,
    duration: BookingDuration | str,
    plan: PaymentPlan | str,
) -> Quote:
    """Price a booking for a unit."""
    total = calculate_total(price_per_bed, price_per_academic_year, duration)
    return Quote(
        total_amount=total,
        amount_due=calculate_amount_due(total, plan),
        currency=settings.currency,
    )

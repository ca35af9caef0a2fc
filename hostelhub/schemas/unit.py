"""Unit availability schemas."""

from uuid import UUID

from pydantic import BaseModel


class AvailabilityResponse(BaseModel):
    """Derived availability counters for a unit."""

    unit_id: UUID
    occupied: int
    capacity: int
    free: int
    is_available: bool

"""Tenant eligibility rules for holding a bed."""

from enum import Enum


class GenderPolicy(str, Enum):
    """Who may occupy beds in a room."""

    MALE = "male"
    FEMALE = "female"
    MIXED = "mixed"


BOOKING_ROLES = frozenset({"student"})


def check_eligibility(role: str, tenant_gender: str | None, policy: str) -> str | None:
    """Return a rejection reason, or None when the tenant may book.

    Single-gender rooms require the tenant's profile gender to match;
    tenants without a recorded gender may only book mixed rooms.
    """
    if role not in BOOKING_ROLES:
        return "Only student accounts can book rooms"

    policy = GenderPolicy(policy)
    if policy == GenderPolicy.MIXED:
        return None

    if tenant_gender is None:
        return f"This room is {policy.value}-only; add your gender to your profile to book it"
    if tenant_gender != policy.value:
        return f"This room is reserved for {policy.value} students"
    return None

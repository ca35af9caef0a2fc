"""Payment-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PaymentInitiateRequest(BaseModel):
    """Schema for starting (or restarting) checkout for a held booking."""

    booking_id: UUID


class CheckoutResponse(BaseModel):
    """Hosted checkout the tenant is redirected to."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: UUID
    gateway: str
    provider_reference: str | None
    checkout_url: str | None
    amount: int
    currency: str
    status: str


class PaymentVerifyRequest(BaseModel):
    """Client-side confirmation after returning from checkout."""

    booking_id: UUID
    session_id: str = Field(..., min_length=1, max_length=255)


class ManualPaymentRequest(BaseModel):
    """Admin records an offline (bank/mobile money) payment outcome."""

    booking_id: UUID
    reference: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., ge=0)
    outcome: str = Field(default="success", pattern="^(success|failure)$")


class ReconciliationResponse(BaseModel):
    """What a payment outcome did to the booking."""

    action: str
    booking_id: UUID
    booking_status: str
    payment_status: str
    flag: str | None = None
    message: str | None = None

"""Payment gateway interface.

Adapters only talk to the provider. Whether a checkout confirms, disputes
or flags a booking is decided by the payment reconciler.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment gateways."""

    STRIPE = "stripe"
    MANUAL = "manual"


class CheckoutStatus(str, Enum):
    """Provider-side state of a checkout, normalized across gateways."""

    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class Checkout:
    """A provider checkout as last seen by an adapter.

    ``error`` is set when the provider could not be reached or refused the
    call; the other fields are then unreliable.
    """

    reference: str | None = None
    status: CheckoutStatus = CheckoutStatus.PENDING
    amount: int | None = None
    booking_id: str | None = None
    url: str | None = None
    error: str | None = None
    details: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def paid(self) -> bool:
        return self.ok and self.status == CheckoutStatus.PAID


@dataclass
class RefundReceipt:
    """Provider acknowledgement of a refund request."""

    accepted: bool
    refund_id: str | None = None
    error: str | None = None
    details: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    """A hosted-checkout payment provider."""

    @property
    @abstractmethod
    def name(self) -> GatewayType:
        """Which gateway this adapter speaks to."""

    @abstractmethod
    async def open_checkout(
        self,
        amount: int,
        currency: str,
        booking_id: str,
        description: str,
    ) -> Checkout:
        """Start a hosted checkout for one booking.

        Args:
            amount: Amount in the smallest currency unit (pesewas)
            currency: ISO currency code
            booking_id: Booking the checkout pays for, echoed back on lookups
            description: Line item shown to the payer

        Returns:
            Checkout carrying the provider reference and redirect URL
        """

    @abstractmethod
    async def fetch_checkout(self, reference: str) -> Checkout:
        """Look up the current state of a checkout by its provider reference."""

    @abstractmethod
    async def refund(
        self,
        reference: str,
        amount: int,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        """Return ``amount`` of the money collected by checkout ``reference``.

        Repeating a call with the same ``idempotency_key`` must not move
        money twice.
        """

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> dict | None:
        """Authenticate a webhook body; None when the signature does not match."""

"""Gateway for payments taken outside any provider (bank transfer, mobile money receipt)."""

from hostelhub.gateways.base import (
    Checkout,
    CheckoutStatus,
    GatewayType,
    PaymentGateway,
    RefundReceipt,
)


class ManualGateway(PaymentGateway):
    """Offline payments.

    A manual checkout never settles on its own: an admin records the
    received amount through the manual payment endpoint, which feeds the
    reconciler like any provider callback.
    """

    @property
    def name(self) -> GatewayType:
        return GatewayType.MANUAL

    async def open_checkout(
        self,
        amount: int,
        currency: str,
        booking_id: str,
        description: str,
    ) -> Checkout:
        return Checkout(
            reference=f"manual_{booking_id}",
            amount=amount,
            booking_id=booking_id,
            details={
                "instructions": "Pay to the hostel account and present the receipt to the manager",
                "description": description,
                "currency": currency,
            },
        )

    async def fetch_checkout(self, reference: str) -> Checkout:
        # Only an admin can say a transfer arrived
        return Checkout(reference=reference, status=CheckoutStatus.PENDING)

    async def refund(
        self,
        reference: str,
        amount: int,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        return RefundReceipt(
            accepted=True,
            refund_id=f"refund_{reference}",
            details={"payout": "manual", "amount": amount, "reason": reason},
        )

    def parse_webhook(self, payload: bytes, signature: str) -> dict | None:
        return None

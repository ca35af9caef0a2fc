"""Stripe Checkout gateway."""

import asyncio
import logging

import stripe

from hostelhub.config import settings
from hostelhub.gateways.base import (
    Checkout,
    CheckoutStatus,
    GatewayType,
    PaymentGateway,
    RefundReceipt,
)

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Stripe not configured"


def checkout_from_session(session) -> Checkout:
    """Normalize a Checkout Session, fetched or delivered by webhook."""
    payment_status = session.get("payment_status")
    session_status = session.get("status")
    if payment_status in ("paid", "no_payment_required"):
        status = CheckoutStatus.PAID
    elif session_status == "expired":
        status = CheckoutStatus.FAILED
    else:
        status = CheckoutStatus.PENDING

    metadata = session.get("metadata") or {}
    return Checkout(
        reference=session.get("id"),
        status=status,
        amount=session.get("amount_total"),
        booking_id=metadata.get("booking_id") or session.get("client_reference_id"),
        url=session.get("url"),
        details={
            "status": session_status,
            "payment_status": payment_status,
            "payment_intent": session.get("payment_intent"),
        },
    )


class StripeGateway(PaymentGateway):
    """Stripe hosted Checkout.

    The stripe client is blocking, so every call runs in a worker thread.
    """

    def __init__(self, secret_key: str | None = None, webhook_secret: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    @property
    def name(self) -> GatewayType:
        return GatewayType.STRIPE

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, api_key=self.secret_key, **kwargs)

    async def open_checkout(
        self,
        amount: int,
        currency: str,
        booking_id: str,
        description: str,
    ) -> Checkout:
        if not self.secret_key:
            return Checkout(error=NOT_CONFIGURED)

        try:
            session = await self._call(
                stripe.checkout.Session.create,
                mode="payment",
                client_reference_id=booking_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount,
                            "product_data": {"name": description},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=settings.checkout_success_url.format(booking_id=booking_id),
                cancel_url=settings.checkout_cancel_url.format(booking_id=booking_id),
                metadata={"booking_id": booking_id},
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe checkout creation failed for booking {booking_id}: {e}")
            return Checkout(error=str(e))

        checkout = checkout_from_session(session)
        # A fresh session reports no total until it is paid
        checkout.amount = amount
        return checkout

    async def fetch_checkout(self, reference: str) -> Checkout:
        if not self.secret_key:
            return Checkout(reference=reference, error=NOT_CONFIGURED)

        try:
            session = await self._call(stripe.checkout.Session.retrieve, reference)
        except stripe.StripeError as e:
            return Checkout(reference=reference, error=str(e))
        return checkout_from_session(session)

    async def refund(
        self,
        reference: str,
        amount: int,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        """Refund the PaymentIntent behind a Checkout Session."""
        if not self.secret_key:
            return RefundReceipt(accepted=False, error=NOT_CONFIGURED)

        try:
            session = await self._call(stripe.checkout.Session.retrieve, reference)
            refund = await self._call(
                stripe.Refund.create,
                payment_intent=session.get("payment_intent"),
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund for {reference} failed: {e}")
            return RefundReceipt(accepted=False, error=str(e))

        return RefundReceipt(
            accepted=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            error=None if refund.status in ("succeeded", "pending") else f"refund {refund.status}",
            details={"id": refund.id, "status": refund.status},
        )

    def parse_webhook(self, payload: bytes, signature: str) -> dict | None:
        if not self.webhook_secret:
            logger.warning("Stripe webhook received but no webhook secret is configured")
            return None

        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
            return None

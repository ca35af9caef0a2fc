"""Webhook endpoints for payment gateways."""

import logging
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Request, status

from hostelhub.api.deps import DbSession
from hostelhub.core.exceptions import NotFoundError
from hostelhub.core.idempotency import processed_events
from hostelhub.domain.payment_state import OUTCOME_FAILURE, OUTCOME_SUCCESS
from hostelhub.gateways.base import GatewayType
from hostelhub.gateways.stripe_gateway import checkout_from_session
from hostelhub.services.gateway_service import gateway_service
from hostelhub.services.payment_reconciler import payment_reconciler

logger = logging.getLogger(__name__)

router = APIRouter()

# Checkout Session events and the outcome they report
STRIPE_SESSION_EVENTS = {
    "checkout.session.completed": None,  # decided by the session's payment_status
    "checkout.session.async_payment_succeeded": OUTCOME_SUCCESS,
    "checkout.session.async_payment_failed": OUTCOME_FAILURE,
    "checkout.session.expired": OUTCOME_FAILURE,
}


@router.post("/stripe", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: DbSession,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
) -> dict:
    """Handle Stripe Checkout webhook events.

    Business conflicts (late or mismatched payments) are acknowledged with
    200 so the provider stops retrying; they are flagged for operators.
    """
    payload = await request.body()

    event = gateway_service.get(GatewayType.STRIPE).parse_webhook(payload, stripe_signature or "")
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    event_type = event["type"]
    if event_type not in STRIPE_SESSION_EVENTS:
        return {"received": True, "ignored": True}

    previous = processed_events.seen("stripe", event["id"])
    if previous:
        return {"received": True, "duplicate": True, **previous}

    session = event["data"]["object"]
    checkout = checkout_from_session(session)

    outcome = STRIPE_SESSION_EVENTS[event_type]
    if outcome is None:
        if not checkout.paid:
            # Delayed payment method; the async_payment_* event follows
            return {"received": True, "pending": True}
        outcome = OUTCOME_SUCCESS

    try:
        booking_id = UUID(checkout.booking_id or "")
    except ValueError:
        logger.warning(f"Stripe event {event['id']} has no booking reference; ignoring")
        return {"received": True, "ignored": True}

    try:
        result = await payment_reconciler.on_payment_callback(
            db,
            booking_id=booking_id,
            provider_reference=checkout.reference,
            outcome=outcome,
            amount=checkout.amount if outcome == OUTCOME_SUCCESS else None,
            gateway=GatewayType.STRIPE.value,
            raw={"event_id": event["id"], "type": event_type, **checkout.details},
        )
    except NotFoundError:
        logger.warning(f"Stripe event {event['id']} references unknown booking {booking_id}")
        return {"received": True, "ignored": True}

    summary = {"action": result.action, "booking_status": result.booking.status}
    processed_events.remember("stripe", event["id"], summary)
    return {"received": True, **summary}

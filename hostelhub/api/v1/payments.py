"""Payment endpoints."""

from fastapi import APIRouter, Depends, status
from sqlalchemy import select

from hostelhub.api.deps import CurrentAdmin, CurrentUser, DbSession
from hostelhub.core.exceptions import AuthorizationError
from hostelhub.core.middleware import payment_limiter
from hostelhub.gateways.base import GatewayType
from hostelhub.models.payment import Payment
from hostelhub.schemas.payment import (
    CheckoutResponse,
    ManualPaymentRequest,
    PaymentInitiateRequest,
    PaymentVerifyRequest,
    ReconciliationResponse,
)
from hostelhub.services.booking_service import booking_service
from hostelhub.services.payment_reconciler import ReconciliationOutcome, payment_reconciler

router = APIRouter()


def _to_response(outcome: ReconciliationOutcome) -> ReconciliationResponse:
    return ReconciliationResponse(
        action=outcome.action,
        booking_id=outcome.booking.id,
        booking_status=outcome.booking.status,
        payment_status=outcome.booking.payment_status,
        flag=outcome.booking.flag,
        message=outcome.error.detail if outcome.error else None,
    )


@router.post(
    "/initiate",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(payment_limiter)],
)
async def initiate_payment(
    payment_data: PaymentInitiateRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> Payment:
    """Open a new checkout for the caller's held booking (e.g. after a failed attempt)."""
    booking = await booking_service.get_booking_for(db, payment_data.booking_id, current_user)
    if booking.tenant_id != current_user.id:
        raise AuthorizationError("Only the tenant can pay for this booking")

    payment = await payment_reconciler.initiate_checkout(db, booking)
    await db.commit()
    return payment


@router.post("/verify", response_model=ReconciliationResponse)
async def verify_payment(
    verify_data: PaymentVerifyRequest,
    current_user: CurrentUser,
    db: DbSession,
) -> ReconciliationResponse:
    """Confirm a checkout with the provider after the tenant returns from it."""
    await booking_service.get_booking_for(db, verify_data.booking_id, current_user)

    # Known checkout for this booking; verification never trusts the client alone
    result = await db.execute(
        select(Payment.gateway).where(
            Payment.booking_id == verify_data.booking_id,
            Payment.provider_reference == verify_data.session_id,
        )
    )
    gateway = result.scalar_one_or_none()
    if gateway is None:
        raise AuthorizationError("Unknown checkout for this booking")
    await db.commit()

    outcome = await payment_reconciler.verify_payment(
        db,
        booking_id=verify_data.booking_id,
        provider_reference=verify_data.session_id,
        gateway=gateway,
    )
    return _to_response(outcome)


@router.post("/manual", response_model=ReconciliationResponse)
async def record_manual_payment(
    payment_data: ManualPaymentRequest,
    current_user: CurrentAdmin,
    db: DbSession,
) -> ReconciliationResponse:
    """Admin records an offline payment outcome (bank transfer, mobile money)."""
    outcome = await payment_reconciler.on_payment_callback(
        db,
        booking_id=payment_data.booking_id,
        provider_reference=payment_data.reference,
        outcome=payment_data.outcome,
        amount=payment_data.amount,
        gateway=GatewayType.MANUAL.value,
        raw={"recorded_by": str(current_user.id)},
    )
    return _to_response(outcome)

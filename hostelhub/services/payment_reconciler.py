"""Payment reconciler.

Turns provider outcomes (webhooks, client-initiated verification, the
stale-payment poller) into booking transitions. Provider calls happen
before any booking row is touched; the booking update itself is a
guarded compare-and-set, so a confirmation racing the hold expiry has
exactly one winner:

- confirmation wins: the booking is confirmed and the hold's slot is
  kept as the confirmed occupancy;
- expiry wins: the slot is already released, the late payment is kept
  on record and the booking is flagged refund_required for an operator.
"""

import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hostelhub.config import settings
from hostelhub.core.exceptions import (
    AppException,
    AuthorizationError,
    ExternalServiceError,
    InvalidBookingStatus,
    PaymentError,
    PaymentMismatch,
    PostExpiryPaymentConflict,
    ValidationError,
)
from hostelhub.domain import payment_state
from hostelhub.domain.booking_state import (
    CANCELLED,
    CONFIRMED,
    FLAG_PAYMENT_DISPUTED,
    FLAG_REFUND_REQUIRED,
    ON_HOLD,
    RESOLVE_CONFIRM,
    RESOLVE_DISMISS,
    TERMINAL_STATUSES,
    assert_flag_resolution,
)
from hostelhub.gateways.base import CheckoutStatus
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment
from hostelhub.models.user import User
from hostelhub.services.audit_service import audit_service
from hostelhub.services.booking_store import compare_and_set, load_booking
from hostelhub.services.change_feed import booking_event, queue_feed_event
from hostelhub.services.gateway_service import GatewayService, gateway_service
from hostelhub.services.hold_service import HoldService, hold_service
from hostelhub.services.notification_service import notification_service

logger = logging.getLogger(__name__)

# Attempts at the compare-and-set before giving up on a contended booking
MAX_RECONCILE_ATTEMPTS = 3

# Attempt states whose money has already been accounted for
SETTLED_ATTEMPTS = (payment_state.ATTEMPT_SUCCEEDED, payment_state.ATTEMPT_REFUNDED)

# Outcome actions
ACTION_CONFIRMED = "confirmed"
ACTION_DISPUTED = "disputed"
ACTION_REFUND_REQUIRED = "refund_required"
ACTION_PAYMENT_FAILED = "payment_failed"
ACTION_DUPLICATE = "duplicate"
ACTION_IGNORED = "ignored"
ACTION_PENDING = "pending"
ACTION_UNAPPLIED = "unapplied"


@dataclass
class ReconciliationOutcome:
    """What a provider outcome did to the booking."""

    booking: Booking
    action: str
    error: AppException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PaymentReconciler:
    """Applies payment results to bookings."""

    def __init__(
        self,
        holds: HoldService,
        gateways: GatewayService = gateway_service,
    ):
        self.holds = holds
        self.gateways = gateways

    # ==================== CHECKOUT ====================

    async def initiate_checkout(
        self,
        db: AsyncSession,
        booking: Booking,
        gateway: str | None = None,
    ) -> Payment:
        """Open a provider checkout for the booking's amount due."""
        if booking.status != ON_HOLD or booking.flag is not None:
            raise InvalidBookingStatus("Payment can only be started for a booking on hold")

        gateway = gateway or settings.payment_gateway
        checkout = await self.gateways.get(gateway).open_checkout(
            amount=booking.amount_due,
            currency=booking.currency,
            booking_id=str(booking.id),
            description=f"Hostel booking {booking.booking_number}",
        )
        if not checkout.ok:
            logger.warning(f"Checkout failed for booking {booking.booking_number}: {checkout.error}")
            raise ExternalServiceError(gateway, checkout.error)

        payment = Payment(
            booking_id=booking.id,
            amount=booking.amount_due,
            currency=booking.currency,
            gateway=gateway,
            provider_reference=checkout.reference,
            checkout_url=checkout.url,
            gateway_response=checkout.details,
            status=payment_state.ATTEMPT_PENDING,
        )
        db.add(payment)
        await db.flush()

        logger.info(f"Checkout {checkout.reference} opened for booking {booking.booking_number}")
        return payment

    # ==================== CALLBACKS ====================

    async def on_payment_callback(
        self,
        db: AsyncSession,
        booking_id: UUID,
        provider_reference: str,
        outcome: str,
        amount: int | None = None,
        gateway: str | None = None,
        raw: dict[str, Any] | None = None,
    ) -> ReconciliationOutcome:
        """Apply one provider outcome. Safe to call repeatedly for the same event.

        Args:
            db: Database session (committed by this call)
            booking_id: Booking the checkout belongs to
            provider_reference: Provider's checkout/session reference
            outcome: "success" or "failure"
            amount: Amount the provider reports as received, in pesewas
            gateway: Gateway name
            raw: Provider payload kept on the payment record
        """
        if outcome not in (payment_state.OUTCOME_SUCCESS, payment_state.OUTCOME_FAILURE):
            raise ValidationError(f"Unknown payment outcome '{outcome}'")

        gateway = gateway or settings.payment_gateway
        booking = await load_booking(db, booking_id)
        previous = await self._record_attempt(db, booking, gateway, provider_reference, outcome, amount, raw)
        if outcome == payment_state.OUTCOME_SUCCESS and previous in SETTLED_ATTEMPTS:
            # Already applied, flagged or refunded; a redelivery changes nothing
            await db.commit()
            return ReconciliationOutcome(booking=booking, action=ACTION_DUPLICATE)

        for _ in range(MAX_RECONCILE_ATTEMPTS):
            if outcome == payment_state.OUTCOME_FAILURE:
                result = await self._apply_failure(db, booking, provider_reference)
            else:
                result = await self._apply_success(db, booking, provider_reference, amount)

            if result is not None:
                await db.commit()
                await self._after_commit(result, provider_reference, amount)
                return result

            # Lost the race; re-read and decide again
            booking = await load_booking(db, booking_id)

        await db.rollback()
        raise InvalidBookingStatus("Booking is changing too quickly to reconcile; retry the callback")

    async def verify_payment(
        self,
        db: AsyncSession,
        booking_id: UUID,
        provider_reference: str,
        gateway: str | None = None,
    ) -> ReconciliationOutcome:
        """Ask the provider for a checkout's state, then reconcile it."""
        gateway = gateway or settings.payment_gateway
        checkout = await self.gateways.get(gateway).fetch_checkout(provider_reference)
        if not checkout.ok:
            raise ExternalServiceError(gateway, checkout.error)

        if checkout.booking_id and checkout.booking_id != str(booking_id):
            raise ValidationError("Checkout does not belong to this booking")

        if checkout.status == CheckoutStatus.PENDING:
            booking = await load_booking(db, booking_id)
            return ReconciliationOutcome(booking=booking, action=ACTION_PENDING)

        outcome = (
            payment_state.OUTCOME_SUCCESS
            if checkout.paid
            else payment_state.OUTCOME_FAILURE
        )
        return await self.on_payment_callback(
            db,
            booking_id=booking_id,
            provider_reference=provider_reference,
            outcome=outcome,
            amount=checkout.amount,
            gateway=gateway,
            raw=checkout.details,
        )

    async def _record_attempt(
        self,
        db: AsyncSession,
        booking: Booking,
        gateway: str,
        provider_reference: str,
        outcome: str,
        amount: int | None,
        raw: dict[str, Any] | None,
    ) -> str:
        """Record the outcome on the attempt and return the attempt's earlier status."""
        result = await db.execute(
            select(Payment).where(
                Payment.gateway == gateway,
                Payment.provider_reference == provider_reference,
            )
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            payment = Payment(
                booking_id=booking.id,
                amount=booking.amount_due,
                currency=booking.currency,
                gateway=gateway,
                provider_reference=provider_reference,
                status=payment_state.ATTEMPT_PENDING,
            )
            db.add(payment)

        if payment.status in SETTLED_ATTEMPTS:
            # Terminal on our side; a late failure notice cannot undo a charge
            return payment.status

        old_status = payment.status
        if outcome == payment_state.OUTCOME_SUCCESS:
            payment.status = payment_state.ATTEMPT_SUCCEEDED
            payment.amount_received = amount
            payment.completed_at = utcnow()
        else:
            payment.status = payment_state.ATTEMPT_FAILED
        if raw is not None:
            payment.gateway_response = raw
        await db.flush()

        if old_status != payment.status:
            await audit_service.payment_transition(db, payment, from_status=old_status, amount=amount)
        return old_status

    async def _apply_failure(
        self,
        db: AsyncSession,
        booking: Booking,
        provider_reference: str,
    ) -> ReconciliationOutcome | None:
        if booking.status != ON_HOLD or booking.payment_status not in (
            payment_state.PENDING,
            payment_state.FAILED,
        ):
            return ReconciliationOutcome(booking=booking, action=ACTION_IGNORED)

        # The hold keeps running; the tenant may retry until it expires
        payment_state.assert_payment_transition(booking.payment_status, payment_state.FAILED)
        updated = await compare_and_set(
            db,
            booking.id,
            expected={"status": ON_HOLD, "payment_status": booking.payment_status},
            values={"payment_status": payment_state.FAILED},
        )
        if updated is None:
            return None
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        return ReconciliationOutcome(booking=updated, action=ACTION_PAYMENT_FAILED)

    async def _apply_success(
        self,
        db: AsyncSession,
        booking: Booking,
        provider_reference: str,
        amount: int | None,
    ) -> ReconciliationOutcome | None:
        if booking.status == CONFIRMED:
            return await self._flag_refund(
                db, booking, provider_reference, amount,
                reason="Second successful payment for an already confirmed booking",
            )

        if booking.status in TERMINAL_STATUSES:
            return await self._flag_refund(
                db, booking, provider_reference, amount,
                reason=f"Payment received after booking was {booking.status}",
                error=PostExpiryPaymentConflict(booking.status),
            )

        if booking.status != ON_HOLD:
            logger.warning(f"Payment for booking {booking.id} in unexpected status {booking.status}")
            return ReconciliationOutcome(booking=booking, action=ACTION_IGNORED)

        if booking.flag is not None:
            return await self._hold_unapplied(db, booking, provider_reference, amount)

        if amount is None or amount != booking.amount_due:
            updated = await compare_and_set(
                db,
                booking.id,
                expected={"status": ON_HOLD, "flag": None},
                values={
                    "flag": FLAG_PAYMENT_DISPUTED,
                    "flag_reason": f"Received {amount} against {booking.amount_due} due",
                    "provider_reference": provider_reference,
                    "amount_paid": amount or 0,
                },
            )
            if updated is None:
                return None
            await audit_service.booking_transition(
                db,
                updated,
                "booking_payment_disputed",
                from_status=ON_HOLD,
                to_status=ON_HOLD,
                flag=FLAG_PAYMENT_DISPUTED,
                amount=amount,
            )
            queue_feed_event(db, updated.unit_id, booking_event(updated))
            return ReconciliationOutcome(
                booking=updated,
                action=ACTION_DISPUTED,
                error=PaymentMismatch(expected=booking.amount_due, received=amount),
            )

        now = utcnow()
        settled = payment_state.settled_status(amount, booking.total_amount)
        payment_state.assert_payment_transition(booking.payment_status, settled)
        updated = await compare_and_set(
            db,
            booking.id,
            expected={"status": ON_HOLD, "flag": None},
            values={
                "status": CONFIRMED,
                "payment_status": settled,
                "amount_paid": amount,
                "provider_reference": provider_reference,
                "confirmed_at": now,
                "hold_expires_at": None,
            },
        )
        if updated is None:
            return None

        # The held slot becomes the confirmed occupancy
        await self.holds.cancel_hold(db, updated, release=False, reason="confirmed")
        await audit_service.booking_transition(
            db,
            updated,
            "booking_confirmed",
            from_status=ON_HOLD,
            to_status=CONFIRMED,
            payment_status=updated.payment_status,
            amount=amount,
        )
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        return ReconciliationOutcome(booking=updated, action=ACTION_CONFIRMED)

    async def _flag_refund(
        self,
        db: AsyncSession,
        booking: Booking,
        provider_reference: str,
        amount: int | None,
        reason: str,
        error: AppException | None = None,
    ) -> ReconciliationOutcome | None:
        if booking.flag is not None:
            return await self._hold_unapplied(db, booking, provider_reference, amount, error)

        values: dict[str, Any] = {
            "flag": FLAG_REFUND_REQUIRED,
            "flag_reason": reason,
            "refund_reference": provider_reference,
        }
        # The charge becomes the booking's payment only if it never settled one
        if payment_state.can_transition(booking.payment_status, payment_state.PAID):
            values["payment_status"] = payment_state.PAID
            values["amount_paid"] = amount or 0
            values["provider_reference"] = provider_reference

        updated = await compare_and_set(
            db,
            booking.id,
            expected={"status": booking.status, "flag": None},
            values=values,
        )
        if updated is None:
            return None

        await audit_service.booking_transition(
            db,
            updated,
            "booking_refund_required",
            from_status=booking.status,
            to_status=updated.status,
            flag=FLAG_REFUND_REQUIRED,
            provider_reference=provider_reference,
        )
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        return ReconciliationOutcome(booking=updated, action=ACTION_REFUND_REQUIRED, error=error)

    async def _hold_unapplied(
        self,
        db: AsyncSession,
        booking: Booking,
        provider_reference: str,
        amount: int | None,
        error: AppException | None = None,
    ) -> ReconciliationOutcome:
        """Keep a charge that arrived while another flag is open.

        The booking carries one flag at a time. The attempt stays
        ``succeeded`` and is raised again once the open flag is resolved.
        """
        logger.error(
            f"Payment {provider_reference} on booking {booking.booking_number} "
            f"arrived while flagged {booking.flag}; held for refund"
        )
        await audit_service.booking_transition(
            db,
            booking,
            "booking_payment_unapplied",
            from_status=booking.status,
            to_status=booking.status,
            provider_reference=provider_reference,
            amount=amount,
        )
        return ReconciliationOutcome(booking=booking, action=ACTION_UNAPPLIED, error=error)

    async def _after_commit(
        self,
        outcome: ReconciliationOutcome,
        provider_reference: str,
        amount: int | None,
    ) -> None:
        booking = outcome.booking
        if outcome.action == ACTION_CONFIRMED:
            logger.info(f"Booking {booking.booking_number} confirmed ({booking.payment_status})")
            notification_service.notify_tenant(
                booking.tenant_id, notification_service.BOOKING_CONFIRMED, booking.id
            )
        elif outcome.action == ACTION_PAYMENT_FAILED:
            notification_service.notify_tenant(
                booking.tenant_id, notification_service.PAYMENT_FAILED, booking.id,
                detail="payment failed; retry before the hold expires",
            )
        elif outcome.action == ACTION_REFUND_REQUIRED:
            await notification_service.alert_ops(
                notification_service.REFUND_REQUIRED,
                booking.id,
                booking.flag_reason or "Refund required",
                data={"provider_reference": provider_reference, "amount": amount},
            )
        elif outcome.action == ACTION_UNAPPLIED:
            await notification_service.alert_ops(
                notification_service.REFUND_REQUIRED,
                booking.id,
                f"Payment {provider_reference} arrived while the booking is flagged {booking.flag}",
                data={"provider_reference": provider_reference, "amount": amount},
            )
        elif outcome.action == ACTION_DISPUTED:
            await notification_service.alert_ops(
                notification_service.PAYMENT_DISPUTED,
                booking.id,
                booking.flag_reason or "Payment amount mismatch",
                data={"provider_reference": provider_reference, "amount": amount},
            )

    # ==================== FLAG RESOLUTION ====================

    async def resolve_flag(
        self,
        db: AsyncSession,
        booking_id: UUID,
        resolution: str,
        actor: User,
        note: str | None = None,
    ) -> Booking:
        """Operator resolution of a payment_disputed or refund_required flag.

        - confirm (disputed only): accept the payment and confirm
        - refund: return the money through the gateway; a disputed hold is
          cancelled and its slot released
        - dismiss: clear the flag with no money movement (note required)

        A successful charge that arrived while the flag was open is flagged
        refund_required as soon as this one is resolved.
        """
        if actor.role != "admin":
            raise AuthorizationError("Only admins can resolve payment flags")

        booking = await load_booking(db, booking_id)
        assert_flag_resolution(booking.flag, resolution)
        flag = booking.flag
        old_status = booking.status
        flagged_reference = booking.refund_reference or booking.provider_reference

        if resolution == RESOLVE_DISMISS:
            if not note:
                raise ValidationError("A note is required to dismiss a flag")
            updated = await compare_and_set(
                db,
                booking.id,
                expected={"flag": flag, "status": booking.status},
                values={"flag": None, "flag_reason": None, "refund_reference": None},
            )
        elif resolution == RESOLVE_CONFIRM:
            if booking.status != ON_HOLD:
                raise InvalidBookingStatus("Only a disputed booking on hold can be confirmed")
            settled = payment_state.settled_status(booking.amount_paid, booking.total_amount)
            payment_state.assert_payment_transition(booking.payment_status, settled)
            updated = await compare_and_set(
                db,
                booking.id,
                expected={"flag": flag, "status": ON_HOLD},
                values={
                    "flag": None,
                    "flag_reason": None,
                    "status": CONFIRMED,
                    "payment_status": settled,
                    "confirmed_at": utcnow(),
                    "hold_expires_at": None,
                },
            )
            if updated is not None:
                await self.holds.cancel_hold(db, updated, release=False, reason="confirmed")
        else:
            await self._return_money(db, booking, flagged_reference, note)
            updated = await self._close_refunded(db, booking, flagged_reference, note)

        if updated is None:
            await db.rollback()
            raise InvalidBookingStatus("Booking changed while resolving its flag; reload and retry")

        await audit_service.booking_transition(
            db,
            updated,
            f"booking_flag_{resolution}",
            from_status=old_status,
            to_status=updated.status,
            actor_id=actor.id,
            flag=flag,
            note=note,
        )
        reflagged = await self._flag_unapplied(db, updated, flagged_reference)
        if reflagged is not None:
            updated = reflagged
        queue_feed_event(db, updated.unit_id, booking_event(updated))
        await db.commit()

        logger.info(f"Flag {flag} on booking {updated.booking_number} resolved: {resolution}")
        if reflagged is not None:
            await notification_service.alert_ops(
                notification_service.REFUND_REQUIRED,
                updated.id,
                updated.flag_reason or "Refund required",
                data={"provider_reference": updated.refund_reference},
            )
        return updated

    async def _return_money(
        self,
        db: AsyncSession,
        booking: Booking,
        reference: str | None,
        note: str | None,
    ) -> Payment:
        """Refund one recorded charge through its gateway.

        The open transaction is committed before the gateway call, and the
        refunded attempt is committed on its own once the gateway accepts.
        A retry after a lost booking update finds the attempt refunded and
        does not call the gateway again.
        """
        payment = None
        if reference:
            result = await db.execute(
                select(Payment).where(
                    Payment.booking_id == booking.id,
                    Payment.provider_reference == reference,
                )
            )
            payment = result.scalar_one_or_none()
        if payment is None:
            raise ValidationError("No recorded payment to refund for this booking")
        if payment.status == payment_state.ATTEMPT_REFUNDED:
            return payment

        refund_amount = payment.amount_received or payment.amount
        reason = note or booking.flag_reason or "Booking refund"
        await db.commit()

        receipt = await self.gateways.get(payment.gateway).refund(
            reference,
            amount=refund_amount,
            reason=reason,
            idempotency_key=f"refund-{payment.id}",
        )
        if not receipt.accepted:
            raise PaymentError(f"Refund failed: {receipt.error}")

        old_status = payment.status
        payment.status = payment_state.ATTEMPT_REFUNDED
        payment.gateway_response = {**(payment.gateway_response or {}), "refund": receipt.details}
        await db.flush()
        await audit_service.payment_transition(db, payment, from_status=old_status, amount=refund_amount)
        await db.commit()

        logger.info(f"Refunded {refund_amount} of {reference} for booking {booking.booking_number}")
        return payment

    async def _close_refunded(
        self,
        db: AsyncSession,
        booking: Booking,
        reference: str | None,
        note: str | None,
    ) -> Booking | None:
        values: dict[str, Any] = {"flag": None, "flag_reason": None, "refund_reference": None}
        # payment_status tracks the charge the booking settled with, not extra ones
        if reference == booking.provider_reference and booking.payment_status != payment_state.REFUNDED:
            payment_state.assert_payment_transition(booking.payment_status, payment_state.REFUNDED)
            values["payment_status"] = payment_state.REFUNDED

        if booking.flag == FLAG_PAYMENT_DISPUTED:
            values.update(
                status=CANCELLED,
                cancelled_at=utcnow(),
                cancelled_by="admin",
                cancellation_reason=note or "Disputed payment refunded",
                hold_expires_at=None,
            )
            updated = await compare_and_set(
                db,
                booking.id,
                expected={"flag": FLAG_PAYMENT_DISPUTED, "status": ON_HOLD},
                values=values,
            )
            if updated is not None:
                await self.holds.cancel_hold(db, updated, release=True, reason="refunded")
            return updated

        return await compare_and_set(
            db,
            booking.id,
            expected={"flag": FLAG_REFUND_REQUIRED, "status": booking.status},
            values=values,
        )

    async def _flag_unapplied(
        self,
        db: AsyncSession,
        booking: Booking,
        resolved_reference: str | None,
    ) -> Booking | None:
        """Flag the oldest successful charge the booking never accounted for."""
        accounted = {booking.provider_reference, resolved_reference}
        result = await db.execute(
            select(Payment)
            .where(
                Payment.booking_id == booking.id,
                Payment.status == payment_state.ATTEMPT_SUCCEEDED,
            )
            .order_by(Payment.created_at)
        )
        stray = next(
            (p for p in result.scalars() if p.provider_reference not in accounted),
            None,
        )
        if stray is None:
            return None

        updated = await compare_and_set(
            db,
            booking.id,
            expected={"flag": None, "status": booking.status},
            values={
                "flag": FLAG_REFUND_REQUIRED,
                "flag_reason": f"Payment {stray.provider_reference} was never applied to this booking",
                "refund_reference": stray.provider_reference,
            },
        )
        if updated is None:
            raise InvalidBookingStatus("Booking changed while resolving its flag; reload and retry")

        await audit_service.booking_transition(
            db,
            updated,
            "booking_refund_required",
            from_status=booking.status,
            to_status=updated.status,
            flag=FLAG_REFUND_REQUIRED,
            provider_reference=stray.provider_reference,
        )
        return updated


payment_reconciler = PaymentReconciler(hold_service)

"""Celery background tasks.

Each task runs its coroutine on a fresh event loop with its own engine,
so pooled connections never cross loops.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from celery import shared_task
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hostelhub.config import settings
from hostelhub.core.exceptions import AppException
from hostelhub.domain.booking_state import ON_HOLD
from hostelhub.domain.payment_state import ATTEMPT_PENDING
from hostelhub.models.base import utcnow
from hostelhub.models.booking import Booking
from hostelhub.models.payment import Payment
from hostelhub.services.availability_ledger import availability_ledger
from hostelhub.services.change_feed import RedisFeedBridge, change_feed
from hostelhub.services.hold_service import HoldService
from hostelhub.services.payment_reconciler import ACTION_PENDING, payment_reconciler

logger = logging.getLogger(__name__)

STALE_PAYMENT_BATCH_SIZE = 200


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


@asynccontextmanager
async def task_sessions() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a task-local engine; feed events go out via Redis."""
    engine = create_async_engine(settings.database_url)
    bridge = None
    if settings.feed_backend == "redis":
        bridge = RedisFeedBridge(change_feed)
        change_feed.attach_bridge(bridge)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await change_feed.drain()
        if bridge is not None:
            change_feed.attach_bridge(None)
            await bridge.stop()
        await engine.dispose()


# ==================== HOLD TASKS ====================


@shared_task(bind=True, max_retries=3)
def expire_room_holds(self):
    """Expire overdue holds and release their beds.

    Runs every minute. Safe alongside the API's own timers and sweeps:
    each expiry is a guarded update, so a hold is expired exactly once.
    """
    try:
        expired = run_async(_expire_room_holds())
        return {"status": "success", "expired": expired}
    except Exception as exc:
        self.retry(exc=exc, countdown=30)


async def _expire_room_holds() -> int:
    async with task_sessions() as sessions:
        service = HoldService(availability_ledger, session_factory=sessions, timers_enabled=False)
        return await service.sweep_expired()


# ==================== PAYMENT TASKS ====================


@shared_task(bind=True, max_retries=3)
def verify_stale_payments(self):
    """Ask the provider about checkouts still pending after `stale_payment_minutes`.

    Covers webhooks that were lost or delayed while the hold is still running.
    """
    try:
        summary = run_async(_verify_stale_payments())
        return {"status": "success", **summary}
    except Exception as exc:
        self.retry(exc=exc, countdown=120)


async def _verify_stale_payments() -> dict:
    cutoff = utcnow() - timedelta(minutes=settings.stale_payment_minutes)
    summary = {"checked": 0, "reconciled": 0, "errors": 0}

    async with task_sessions() as sessions:
        async with sessions() as db:
            result = await db.execute(
                select(Payment.booking_id, Payment.provider_reference, Payment.gateway)
                .join(Booking, Booking.id == Payment.booking_id)
                .where(
                    Payment.status == ATTEMPT_PENDING,
                    Payment.provider_reference.is_not(None),
                    Payment.created_at <= cutoff,
                    Booking.status == ON_HOLD,
                    Booking.flag.is_(None),
                )
                .order_by(Payment.created_at)
                .limit(STALE_PAYMENT_BATCH_SIZE)
            )
            stale = result.all()

        for booking_id, reference, gateway in stale:
            summary["checked"] += 1
            async with sessions() as db:
                try:
                    outcome = await payment_reconciler.verify_payment(
                        db, booking_id=booking_id, provider_reference=reference, gateway=gateway
                    )
                except AppException as e:
                    summary["errors"] += 1
                    logger.warning(f"Stale payment check failed for booking {booking_id}: {e.detail}")
                    continue

            if outcome.action != ACTION_PENDING:
                summary["reconciled"] += 1
                logger.info(f"Stale checkout {reference} reconciled: {outcome.action}")

    return summary

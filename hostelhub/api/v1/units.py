"""Unit availability endpoints and the live change feed."""

import asyncio
import contextlib
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from hostelhub.api.deps import DbSession
from hostelhub.core.exceptions import NotFoundError
from hostelhub.schemas.unit import AvailabilityResponse
from hostelhub.services.availability_ledger import availability_ledger
from hostelhub.services.change_feed import Subscription, change_feed

router = APIRouter()

# Application close code for an unknown unit
WS_CLOSE_UNKNOWN_UNIT = 4404


@router.get("/{unit_id}/availability", response_model=AvailabilityResponse)
async def get_availability(unit_id: UUID, db: DbSession) -> AvailabilityResponse:
    """Current occupied/capacity counters for a unit."""
    snapshot = await availability_ledger.snapshot(db, unit_id)
    if snapshot is None:
        raise NotFoundError("Unit", str(unit_id))
    return AvailabilityResponse(
        unit_id=snapshot.unit_id,
        occupied=snapshot.occupied,
        capacity=snapshot.capacity,
        free=snapshot.free,
        is_available=snapshot.is_available,
    )


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        await websocket.send_json(await subscription.get())


async def _stop_sender(sender: asyncio.Task) -> None:
    """Cancel the sender and collect its outcome, including a failed send."""
    sender.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await sender


@router.websocket("/{unit_id}/feed")
async def unit_feed(websocket: WebSocket, unit_id: UUID, db: DbSession) -> None:
    """Push availability and booking status changes for one unit.

    The first message is a snapshot; events follow. Delivery is best
    effort: a client that falls behind loses its oldest events.
    """
    await websocket.accept()

    # Subscribe before reading the snapshot so no change slips between them
    subscription = change_feed.subscribe(unit_id)
    sender: asyncio.Task | None = None
    try:
        snapshot = await availability_ledger.snapshot(db, unit_id)
        await db.commit()
        if snapshot is None:
            await websocket.close(code=WS_CLOSE_UNKNOWN_UNIT)
            return

        await websocket.send_json({**snapshot.to_event(), "type": "snapshot"})
        sender = asyncio.create_task(_pump(websocket, subscription))

        # Client messages are ignored; this only watches for disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if sender is not None:
            await _stop_sender(sender)
        change_feed.unsubscribe(subscription)

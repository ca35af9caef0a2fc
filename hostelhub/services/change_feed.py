"""Change feed: best-effort push of availability and booking events per unit.

Ledger and booking writers queue events on the session; they are
dispatched only after the transaction commits, so subscribers never see
rolled-back state. A slow subscriber loses its oldest events instead of
blocking writers.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import redis.asyncio as redis
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from hostelhub.config import settings

logger = logging.getLogger(__name__)

_PENDING_KEY = "hostelhub.feed.pending"


@dataclass(eq=False)
class Subscription:
    """One subscriber's bounded event queue for a unit."""

    unit_id: UUID
    queue: asyncio.Queue
    dropped: int = 0

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()

    def offer(self, payload: dict[str, Any]) -> None:
        """Enqueue without blocking; drop the oldest event when full."""
        while True:
            try:
                self.queue.put_nowait(payload)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass


@dataclass
class ChangeFeedPublisher:
    """Topic-per-unit fan-out to local subscribers, optionally bridged through Redis."""

    queue_size: int = settings.feed_queue_size
    _subscribers: dict[UUID, set[Subscription]] = field(default_factory=dict)
    _bridge: "RedisFeedBridge | None" = None
    _publish_tasks: set[asyncio.Task] = field(default_factory=set)

    def subscribe(self, unit_id: UUID) -> Subscription:
        subscription = Subscription(unit_id=unit_id, queue=asyncio.Queue(maxsize=self.queue_size))
        self._subscribers.setdefault(unit_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.unit_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.unit_id, None)

    def subscriber_count(self, unit_id: UUID) -> int:
        return len(self._subscribers.get(unit_id, ()))

    def broadcast(self, unit_id: UUID, payload: dict[str, Any]) -> None:
        """Publish an event for a unit. Never raises and never blocks."""
        if self._bridge is not None:
            task = self._bridge.publish(unit_id, payload)
            if task is not None:
                self._publish_tasks.add(task)
                task.add_done_callback(self._publish_tasks.discard)
                return
        self.deliver_local(unit_id, payload)

    def deliver_local(self, unit_id: UUID, payload: dict[str, Any]) -> None:
        for subscription in list(self._subscribers.get(unit_id, ())):
            subscription.offer(payload)

    def attach_bridge(self, bridge: "RedisFeedBridge | None") -> None:
        self._bridge = bridge

    async def drain(self) -> None:
        """Wait for in-flight Redis publishes (used by short-lived workers)."""
        if self._publish_tasks:
            await asyncio.gather(*list(self._publish_tasks), return_exceptions=True)


class RedisFeedBridge:
    """Carries feed events between processes over Redis pub/sub."""

    def __init__(
        self,
        publisher: ChangeFeedPublisher,
        redis_url: str | None = None,
        channel_prefix: str | None = None,
    ):
        self.publisher = publisher
        self.redis_url = redis_url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.feed_channel_prefix
        self._redis: redis.Redis | None = None
        self._listener: asyncio.Task | None = None

    async def get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    def channel(self, unit_id: UUID) -> str:
        return f"{self.channel_prefix}:{unit_id}"

    def publish(self, unit_id: UUID, payload: dict[str, Any]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.create_task(self._publish(unit_id, payload))

    async def _publish(self, unit_id: UUID, payload: dict[str, Any]) -> None:
        try:
            client = await self.get_redis()
            await client.publish(self.channel(unit_id), json.dumps(payload))
        except redis.RedisError as e:
            # Best effort: fall back to this process's subscribers
            logger.warning(f"Feed publish to Redis failed, delivering locally: {e}")
            self.publisher.deliver_local(unit_id, payload)

    async def start(self) -> None:
        """Start relaying Redis messages to local subscribers."""
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen())
            logger.info(f"Change feed bridge listening on {self.channel_prefix}:*")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def _listen(self) -> None:
        while True:
            try:
                client = await self.get_redis()
                async with client.pubsub() as pubsub:
                    await pubsub.psubscribe(f"{self.channel_prefix}:*")
                    async for message in pubsub.listen():
                        if message.get("type") != "pmessage":
                            continue
                        unit_id = UUID(message["channel"].rsplit(":", 1)[-1])
                        self.publisher.deliver_local(unit_id, json.loads(message["data"]))
            except asyncio.CancelledError:
                raise
            except (redis.RedisError, ValueError) as e:
                logger.warning(f"Change feed bridge error, reconnecting: {e}")
                await asyncio.sleep(1)


change_feed = ChangeFeedPublisher()


def queue_feed_event(db: AsyncSession, unit_id: UUID, payload: dict[str, Any]) -> None:
    """Stage an event to be broadcast once the session commits."""
    db.sync_session.info.setdefault(_PENDING_KEY, []).append((unit_id, payload))


def booking_event(booking) -> dict[str, Any]:
    return {
        "type": "booking",
        "unit_id": str(booking.unit_id),
        "booking_id": str(booking.id),
        "status": booking.status,
        "payment_status": booking.payment_status,
        "flag": booking.flag,
    }


@event.listens_for(Session, "after_commit")
def _dispatch_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, None)
    for unit_id, payload in pending or ():
        change_feed.broadcast(unit_id, payload)


@event.listens_for(Session, "after_rollback")
def _discard_pending(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)

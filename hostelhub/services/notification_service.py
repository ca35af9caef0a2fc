"""Notification service for tenant notices and operations alerts.

Tenant-facing delivery (email, SMS) belongs to the messaging service;
this module records the intent in the log. Operations alerts, such as a
refund owed after a late payment, are logged at ERROR and optionally
posted to a webhook.
"""

import logging
from typing import Any
from uuid import UUID

import httpx

from hostelhub.config import settings

logger = logging.getLogger(__name__)


class NotificationService:
    """Service for booking notices and operator alerts."""

    # Notification types
    HOLD_PLACED = "hold_placed"
    HOLD_EXPIRED = "hold_expired"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_REJECTED = "booking_rejected"
    PAYMENT_FAILED = "payment_failed"
    REFUND_REQUIRED = "refund_required"
    PAYMENT_DISPUTED = "payment_disputed"

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = webhook_url if webhook_url is not None else settings.ops_alert_webhook_url
        self._http_client: httpx.AsyncClient | None = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=10.0)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def notify_tenant(
        self,
        tenant_id: UUID,
        notification_type: str,
        booking_id: UUID,
        detail: str | None = None,
    ) -> None:
        logger.info(
            f"Tenant notice {notification_type}: tenant={tenant_id} booking={booking_id}"
            + (f" ({detail})" if detail else "")
        )

    async def alert_ops(
        self,
        alert_type: str,
        booking_id: UUID,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Raise an operator alert.

        Args:
            alert_type: Alert type (e.g., "refund_required")
            booking_id: Booking needing attention
            message: Human-readable summary
            data: Extra context for the operator

        Returns:
            bool: True if the webhook accepted the alert
        """
        logger.error(f"OPS ALERT {alert_type} booking={booking_id}: {message}")

        if not self.webhook_url:
            return False

        try:
            response = await self.http_client.post(
                self.webhook_url,
                json={
                    "type": alert_type,
                    "booking_id": str(booking_id),
                    "message": message,
                    "data": data or {},
                },
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Ops alert webhook failed for booking {booking_id}: {e}")
            return False


notification_service = NotificationService()

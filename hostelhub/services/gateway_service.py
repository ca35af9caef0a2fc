"""Gateway registry.

Resolves a stored gateway name to its adapter. Adapters are built lazily
so an unconfigured provider costs nothing until a booking uses it.
"""

import logging

from hostelhub.gateways.base import GatewayType, PaymentGateway
from hostelhub.gateways.manual import ManualGateway
from hostelhub.gateways.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

ADAPTERS: dict[GatewayType, type[PaymentGateway]] = {
    GatewayType.STRIPE: StripeGateway,
    GatewayType.MANUAL: ManualGateway,
}


class GatewayService:
    """Holds one adapter instance per gateway."""

    def __init__(self):
        self._gateways: dict[GatewayType, PaymentGateway] = {}

    def register(self, gateway: PaymentGateway) -> None:
        """Install an adapter, replacing whatever served its gateway before."""
        self._gateways[gateway.name] = gateway

    def reset(self) -> None:
        self._gateways.clear()

    def get(self, gateway: str | GatewayType) -> PaymentGateway:
        """Adapter for ``gateway``; unknown names fall back to manual handling."""
        try:
            gateway_type = GatewayType(gateway)
        except ValueError:
            logger.warning(f"Unknown payment gateway {gateway!r}; treating as manual")
            gateway_type = GatewayType.MANUAL

        if gateway_type not in self._gateways:
            self._gateways[gateway_type] = ADAPTERS[gateway_type]()
        return self._gateways[gateway_type]


gateway_service = GatewayService()

from .base import PaymentGateway
from .mollie import MollieGateway
from .paypal import PayPalGateway
from .stripe_payments import StripeGateway


class GatewayRegistry:
    """Looks up the adapter for a provider name ("paypal", "stripe", "mollie")."""

    def __init__(self, gateways):
        self._gateways = {gateway.name: gateway for gateway in gateways}

    def get(self, provider: str) -> PaymentGateway:
        try:
            return self._gateways[provider]
        except KeyError:
            raise ValueError(f"Unsupported payment provider: {provider}") from None

    def __contains__(self, provider):
        return provider in self._gateways


def default_registry() -> GatewayRegistry:
    return GatewayRegistry([PayPalGateway(), StripeGateway(), MollieGateway()])

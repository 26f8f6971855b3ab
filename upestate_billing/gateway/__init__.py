from upestate_billing.gateway.base import DisabledGateway, GatewayAdapter
from upestate_billing.gateway.stripe_gateway import StripeGateway


def build_gateway(config) -> GatewayAdapter:
    """Stripe when a secret key is configured, otherwise the disabled stand-in."""
    if config.get("STRIPE_SECRET_KEY"):
        return StripeGateway.from_config(config)
    return DisabledGateway(
        webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
        tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
    )


__all__ = ["GatewayAdapter", "DisabledGateway", "StripeGateway", "build_gateway"]

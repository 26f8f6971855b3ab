import logging
from abc import ABC, abstractmethod
from typing import Optional

import stripe

from upestate_billing.billing.events import ProviderSubscriptionSnapshot
from upestate_billing.errors import GatewayDisabledError

logger = logging.getLogger(__name__)


def verify_stripe_signature(raw_body: bytes, signature_header: Optional[str],
                            secret: Optional[str], tolerance: int = 300) -> bool:
    """Check a Stripe-Signature header against the raw request body."""
    if not secret:
        logger.error("Webhook signature cannot be verified: STRIPE_WEBHOOK_SECRET is not set")
        return False
    if not signature_header:
        return False
    try:
        payload = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("Webhook signature rejected", extra={"reason": str(exc)})
        return False
    return True


class GatewayAdapter(ABC):
    """Everything the engine needs from the payment provider."""

    name = "abstract"

    @abstractmethod
    def create_checkout_session(self, user_id: int, tier: str, billing_cycle: str,
                                customer_id: Optional[str] = None) -> str:
        """Start a hosted checkout and return the redirect URL."""

    @abstractmethod
    def fetch_subscription(self, external_subscription_id: str) -> ProviderSubscriptionSnapshot:
        """Return the provider's current view of one subscription."""

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """Return True when the notification really came from the provider."""


class DisabledGateway(GatewayAdapter):
    """
    Stand-in used when no Stripe secret key is configured.

    Paid tiers are unavailable: checkout and subscription fetches raise
    GatewayDisabledError. Webhooks are still accepted when a signing secret
    is configured, so notifications already in flight are not lost.
    """

    name = "disabled"

    def __init__(self, webhook_secret: Optional[str] = None, tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        logger.warning(
            "STRIPE_SECRET_KEY is not set; billing runs in free-tier-only mode",
            extra={"webhooks_enabled": bool(webhook_secret)},
        )

    def create_checkout_session(self, user_id, tier, billing_cycle, customer_id=None):
        raise GatewayDisabledError()

    def fetch_subscription(self, external_subscription_id):
        raise GatewayDisabledError()

    def verify_signature(self, raw_body, signature_header):
        return verify_stripe_signature(raw_body, signature_header, self.webhook_secret, self.tolerance)

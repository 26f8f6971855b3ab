# stripe_gateway.py
import logging
import time
from contextlib import contextmanager
from typing import Dict, Mapping, Optional

import stripe

from upestate_billing.billing.events import snapshot_from_subscription, stripe_object_to_dict
from upestate_billing.config import PAID_TIERS
from upestate_billing.errors import CheckoutValidationError, GatewayError, ProviderSubscriptionMissing
from upestate_billing.gateway.base import GatewayAdapter, verify_stripe_signature
from upestate_billing.observability.metrics import STRIPE_OPERATION_DURATION
from upestate_billing.observability.sentry import capture_billing_error

logger = logging.getLogger(__name__)


@contextmanager
def stripe_operation(operation_name: str, **context):
    """Log a Stripe call, time it, and translate provider failures into GatewayError."""
    started = time.monotonic()
    try:
        yield
    except stripe.InvalidRequestError as exc:
        _observe(operation_name, started, "error")
        if getattr(exc, "code", None) == "resource_missing":
            raise ProviderSubscriptionMissing(str(exc))
        _report_failure(operation_name, exc, context)
        raise GatewayError(f"Stripe {operation_name} failed: {exc.user_message or exc}")
    except stripe.StripeError as exc:
        _observe(operation_name, started, "error")
        _report_failure(operation_name, exc, context)
        raise GatewayError(f"Stripe {operation_name} failed: {exc.user_message or exc}")
    else:
        duration = _observe(operation_name, started, "success")
        logger.info(
            f"Stripe operation completed: {operation_name}",
            extra={"operation": operation_name, "duration_ms": round(duration * 1000, 1), **context},
        )


def _observe(operation_name: str, started: float, status: str) -> float:
    duration = time.monotonic() - started
    STRIPE_OPERATION_DURATION.labels(operation=operation_name, status=status).observe(duration)
    return duration


def _report_failure(operation_name: str, exc: Exception, context) -> None:
    logger.error(
        f"Stripe operation failed: {operation_name}",
        exc_info=True,
        extra={"operation": operation_name, "stripe_error": str(exc), **context},
    )
    capture_billing_error(exc, stripe_operation=operation_name, **context)


class StripeGateway(GatewayAdapter):
    """GatewayAdapter backed by the stripe library."""

    name = "stripe"

    def __init__(self, api_key: str, webhook_secret: Optional[str], price_ids: Mapping[str, str],
                 success_url: str, cancel_url: str, timeout: int = 10,
                 webhook_tolerance: int = 300, trial_days: int = 0):
        self.webhook_secret = webhook_secret
        self.price_ids = dict(price_ids)
        self.price_tiers: Dict[str, str] = {
            price: key.split(":", 1)[0] for key, price in self.price_ids.items()
        }
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.webhook_tolerance = webhook_tolerance
        self.trial_days = trial_days

        stripe.api_key = api_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

        logger.info(
            "Stripe client initialized",
            extra={
                "api_key_prefix": api_key[:8] + "...",
                "timeout": timeout,
                "prices_configured": len(self.price_ids),
            },
        )

    @classmethod
    def from_config(cls, config: Mapping) -> "StripeGateway":
        return cls(
            api_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            price_ids=config.get("STRIPE_PRICE_IDS") or {},
            success_url=config["CHECKOUT_SUCCESS_URL"],
            cancel_url=config["CHECKOUT_CANCEL_URL"],
            timeout=config.get("STRIPE_TIMEOUT_SECONDS", 10),
            webhook_tolerance=config.get("STRIPE_WEBHOOK_TOLERANCE", 300),
            trial_days=config.get("CHECKOUT_TRIAL_DAYS", 0),
        )

    def price_for(self, tier: str, billing_cycle: str) -> str:
        if tier not in PAID_TIERS:
            raise CheckoutValidationError(f"Tier {tier!r} cannot be purchased")
        price_id = self.price_ids.get(f"{tier}:{billing_cycle}")
        if not price_id:
            raise CheckoutValidationError(f"No price configured for {tier} ({billing_cycle})")
        return price_id

    def create_checkout_session(self, user_id, tier, billing_cycle, customer_id=None):
        price_id = self.price_for(tier, billing_cycle)
        metadata = {"user_id": str(user_id), "tier": tier}

        subscription_data = {"metadata": metadata}
        # Returning customers do not get a second trial.
        if self.trial_days and not customer_id:
            subscription_data["trial_period_days"] = self.trial_days

        session_data = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": str(user_id),
            "metadata": metadata,
            "subscription_data": subscription_data,
        }
        if customer_id:
            session_data["customer"] = customer_id

        with stripe_operation("create_checkout_session", user_id=user_id, tier=tier,
                              billing_cycle=billing_cycle):
            session = stripe.checkout.Session.create(**session_data)
        return session.url

    def fetch_subscription(self, external_subscription_id):
        with stripe_operation("retrieve_subscription", stripe_subscription_id=external_subscription_id):
            subscription = stripe.Subscription.retrieve(external_subscription_id)
        return snapshot_from_subscription(stripe_object_to_dict(subscription), self.price_tiers)

    def verify_signature(self, raw_body, signature_header):
        return verify_stripe_signature(raw_body, signature_header, self.webhook_secret, self.webhook_tolerance)

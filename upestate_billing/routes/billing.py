# upestate_billing/routes/billing.py
import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import get_jwt_identity, jwt_required

from upestate_billing.config import BILLING_CYCLES, PAID_TIERS
from upestate_billing.domain.subscriptions import SubscriptionStatus
from upestate_billing.errors import CheckoutValidationError
from upestate_billing.middleware.capabilities import load_entitlement
from upestate_billing.services import SubscriptionStore, get_gateway

logger = logging.getLogger(__name__)

LIVE_STATUSES = (
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
    SubscriptionStatus.INCOMPLETE.value,
)

billing_bp = Blueprint("billing", __name__, url_prefix="/api/v1/billing")


def _current_user_id() -> int:
    return int(get_jwt_identity())


@billing_bp.route("/checkout", methods=["POST"])
@jwt_required()
def create_checkout():
    """
    Start a Stripe checkout for a paid tier.

    Body: {"tier": "standard|premium|agency", "billing_cycle": "monthly|yearly"}
    """
    data = request.get_json(silent=True) or {}
    tier = (data.get("tier") or "").lower()
    billing_cycle = (data.get("billing_cycle") or "monthly").lower()

    if tier not in PAID_TIERS:
        raise CheckoutValidationError(f"tier must be one of: {', '.join(PAID_TIERS)}")
    if billing_cycle not in BILLING_CYCLES:
        raise CheckoutValidationError(f"billing_cycle must be one of: {', '.join(BILLING_CYCLES)}")

    user_id = _current_user_id()
    subscription = SubscriptionStore.create_for_user(user_id)
    if subscription.status in LIVE_STATUSES:
        raise CheckoutValidationError(
            f"User already has a {subscription.status} {subscription.tier} subscription"
        )

    url = get_gateway().create_checkout_session(
        user_id, tier, billing_cycle, customer_id=subscription.stripe_customer_id
    )
    logger.info(
        "Checkout session created",
        extra={"user_id": user_id, "tier": tier, "billing_cycle": billing_cycle},
    )
    return jsonify({"url": url}), 200


@billing_bp.route("/entitlement", methods=["GET"])
@jwt_required()
def get_entitlement():
    return jsonify(load_entitlement().to_dict()), 200

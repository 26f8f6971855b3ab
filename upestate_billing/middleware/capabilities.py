import logging
from functools import wraps
from typing import Any, Callable

from flask import g, jsonify
from flask_jwt_extended import get_jwt_identity

from upestate_billing.observability.metrics import CAPABILITY_CHECKS_TOTAL
from upestate_billing.services import get_entitlement_service

logger = logging.getLogger(__name__)


def load_entitlement():
    """Resolve the current user's entitlement once per request into flask.g."""
    if "entitlement" not in g:
        user_id = int(get_jwt_identity())
        g.entitlement = get_entitlement_service().for_user(user_id)
        g.capabilities = g.entitlement.capabilities
    return g.entitlement


def capability_required(*capabilities: str) -> Callable:
    """
    Decorator that gates an endpoint on plan capabilities.
    Must be used after @jwt_required so the identity is available.
    """
    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            entitlement = load_entitlement()
            missing = sorted(set(capabilities) - entitlement.capabilities)
            if missing:
                CAPABILITY_CHECKS_TOTAL.labels(tier=entitlement.tier, result="denied").inc()
                logger.info(
                    "Capability check failed",
                    extra={"user_id": entitlement.user_id, "tier": entitlement.tier, "missing": missing},
                )
                return jsonify({
                    "error": "Upgrade required",
                    "message": "Your current plan does not include this feature",
                    "code": "CAPABILITY_REQUIRED",
                    "missing_capabilities": missing,
                    "tier": entitlement.tier,
                    "upgrade_url": "/pricing",
                }), 403
            CAPABILITY_CHECKS_TOTAL.labels(tier=entitlement.tier, result="granted").inc()
            return fn(*args, **kwargs)
        return wrapper
    return decorator

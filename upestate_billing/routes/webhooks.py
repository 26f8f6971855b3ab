# upestate_billing/routes/webhooks.py
import logging

from flask import Blueprint, jsonify, request

from upestate_billing.errors import BillingError, MalformedEventError, WebhookSignatureError
from upestate_billing.services import get_webhook_pipeline

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/v1/webhooks")

SIGNATURE_HEADER = "Stripe-Signature"


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    """
    Receive a Stripe notification.

    2xx tells Stripe to stop delivering (processed, ignored, duplicate,
    or rejected by the state machine); 5xx asks it to redeliver.
    """
    raw_body = request.get_data(cache=False)
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        result = get_webhook_pipeline().ingest(raw_body, signature)
    except (WebhookSignatureError, MalformedEventError):
        raise
    except BillingError as exc:
        # Processing failed after the event was stored; let the provider retry.
        return jsonify({
            "error": exc.code,
            "message": exc.message,
            "path": request.path,
        }), 500

    return jsonify(result.to_dict()), 200

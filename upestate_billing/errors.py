class BillingError(Exception):
    """Base class for billing engine errors rendered as JSON by the error handlers."""

    status_code = 500
    code = "BILLING_ERROR"

    def __init__(self, message=None, *, event_id=None, payload=None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.event_id = event_id
        self.payload = payload


class WebhookSignatureError(BillingError):
    """Webhook signature verification failed"""

    status_code = 401
    code = "INVALID_SIGNATURE"


class MalformedEventError(BillingError):
    """Webhook payload could not be parsed"""

    status_code = 400
    code = "MALFORMED_EVENT"


class InvalidTransition(BillingError):
    """Event does not apply to the current subscription state"""

    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, current_status, event_kind, message=None, **kwargs):
        self.current_status = current_status
        self.event_kind = event_kind
        super().__init__(
            message or f"Cannot apply {event_kind} to subscription in status {current_status}",
            **kwargs,
        )


class SubscriptionNotFound(BillingError):
    """No local subscription matches the provider notification"""

    status_code = 404
    code = "SUBSCRIPTION_NOT_FOUND"


class WriteConflictError(BillingError):
    """Concurrent writes kept winning the conditional update"""

    status_code = 409
    code = "WRITE_CONFLICT"


class GatewayError(BillingError):
    """Payment provider call failed"""

    status_code = 502
    code = "GATEWAY_ERROR"


class GatewayDisabledError(GatewayError):
    """Payment provider is not configured; paid tiers are unavailable"""

    status_code = 503
    code = "GATEWAY_DISABLED"


class CheckoutValidationError(BillingError):
    """Requested tier or billing cycle is not purchasable"""

    status_code = 400
    code = "INVALID_CHECKOUT_REQUEST"


class ProviderSubscriptionMissing(GatewayError):
    """Payment provider has no record of the subscription"""

    status_code = 404
    code = "PROVIDER_SUBSCRIPTION_MISSING"


class EventNotFound(BillingError):
    """No stored webhook event with that id"""

    status_code = 404
    code = "EVENT_NOT_FOUND"


class LockTimeout(BillingError):
    """Timed out waiting for the subscription lock"""

    status_code = 503
    code = "LOCK_TIMEOUT"

from upestate_billing.models.subscription import Subscription
from upestate_billing.models.webhook_event import ProcessingStatus, WebhookEvent

__all__ = ["Subscription", "WebhookEvent", "ProcessingStatus"]

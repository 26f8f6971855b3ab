# services/entitlement_service.py
from datetime import datetime, timedelta
from typing import Optional

from upestate_billing.billing.entitlements import Entitlement, resolve_entitlement
from upestate_billing.billing.state_machine import SubscriptionState
from upestate_billing.services.subscription_store import SubscriptionStore
from upestate_billing.utils.clock import utcnow


class EntitlementService:
    """
    Answers "what may this user do right now". Reads the local store only;
    it never calls the payment provider.
    """

    def __init__(self, grace: timedelta):
        self.grace = grace

    def for_user(self, user_id: int, now: Optional[datetime] = None) -> Entitlement:
        subscription = SubscriptionStore.get_by_user(user_id)
        state = SubscriptionState.from_model(subscription) if subscription is not None else None
        return resolve_entitlement(user_id, state, now or utcnow(), self.grace)

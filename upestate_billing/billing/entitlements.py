from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from upestate_billing.billing.state_machine import SubscriptionState
from upestate_billing.domain.subscriptions import SubscriptionStatus, Tier, get_plan


@dataclass(frozen=True)
class Entitlement:
    user_id: int
    tier: str
    subscribed_tier: str
    status: str
    entitled: bool
    in_grace: bool
    current_period_end: Optional[datetime]
    capabilities: frozenset

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "tier": self.tier,
            "subscribed_tier": self.subscribed_tier,
            "status": self.status,
            "entitled": self.entitled,
            "in_grace": self.in_grace,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "capabilities": sorted(self.capabilities),
        }


def evaluate(state: SubscriptionState, now: datetime, grace: timedelta) -> Tuple[bool, bool]:
    """
    Return (entitled, in_grace) for a subscription state at `now`.

    Paid access survives a failed payment until current_period_end + grace,
    and a pending cancellation until current_period_end.
    """
    if state.tier == Tier.FREE.value:
        return False, False

    end = state.current_period_end
    status = state.status

    if status in (SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value):
        if state.cancel_at_period_end:
            if end is not None and now >= end:
                return False, False
            return True, True
        return True, False

    if status == SubscriptionStatus.CANCELED.value:
        if state.cancel_at_period_end and end is not None and now < end:
            return True, True
        return False, False

    if status == SubscriptionStatus.PAST_DUE.value:
        if end is not None and now < end + grace:
            return True, True
        return False, False

    return False, False


def resolve_entitlement(user_id: int, state: Optional[SubscriptionState],
                        now: datetime, grace: timedelta) -> Entitlement:
    """Effective tier and capabilities for a user; users without a row are free."""
    state = state or SubscriptionState.free()
    entitled, in_grace = evaluate(state, now, grace)
    effective_tier = state.tier if entitled else Tier.FREE.value
    return Entitlement(
        user_id=user_id,
        tier=effective_tier,
        subscribed_tier=state.tier,
        status=state.status,
        entitled=entitled,
        in_grace=in_grace,
        current_period_end=state.current_period_end,
        capabilities=get_plan(effective_tier).capabilities,
    )

"""
Subscription state machine.

This module is the ONLY place where:
- a provider event is judged against the current subscription state
- the next state and its side effects are decided

It is pure: no database, no clock, no provider calls. Callers pass `now`
and persist the returned Transition themselves.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional, Tuple

from upestate_billing.billing.events import BillingEvent, EventKind, ProviderSubscriptionSnapshot
from upestate_billing.domain.subscriptions import SubscriptionStatus, Tier
from upestate_billing.errors import InvalidTransition


@dataclass(frozen=True)
class SubscriptionState:
    tier: str = Tier.FREE.value
    status: str = SubscriptionStatus.INACTIVE.value
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @classmethod
    def free(cls) -> "SubscriptionState":
        return cls()

    @classmethod
    def from_model(cls, subscription) -> "SubscriptionState":
        return cls(
            tier=subscription.tier,
            status=subscription.status,
            stripe_subscription_id=subscription.stripe_subscription_id,
            stripe_customer_id=subscription.stripe_customer_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=bool(subscription.cancel_at_period_end),
        )

    def apply_to(self, subscription) -> None:
        subscription.tier = self.tier
        subscription.status = self.status
        subscription.stripe_subscription_id = self.stripe_subscription_id
        subscription.stripe_customer_id = self.stripe_customer_id
        subscription.current_period_start = self.current_period_start
        subscription.current_period_end = self.current_period_end
        subscription.cancel_at_period_end = self.cancel_at_period_end


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionState
    state: SubscriptionState
    effects: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return self.previous != self.state


_S = SubscriptionStatus

# Status moves a customer.subscription.updated event may make.
_UPDATE_MOVES = {
    _S.TRIALING.value: {_S.TRIALING.value, _S.ACTIVE.value, _S.PAST_DUE.value},
    _S.ACTIVE.value: {_S.ACTIVE.value, _S.PAST_DUE.value},
    _S.PAST_DUE.value: {_S.PAST_DUE.value, _S.ACTIVE.value},
    _S.INCOMPLETE.value: {_S.INCOMPLETE.value, _S.ACTIVE.value, _S.TRIALING.value},
}


def _reject(current: SubscriptionState, event: BillingEvent, reason: str = None):
    raise InvalidTransition(
        current.status,
        event.kind.value,
        f"Cannot apply {event.kind.value} to subscription in status {current.status}"
        + (f": {reason}" if reason else ""),
        event_id=event.external_event_id,
    )


def _check_same_subscription(current: SubscriptionState, event: BillingEvent):
    if current.stripe_subscription_id and event.subscription_ref != current.stripe_subscription_id:
        _reject(current, event, f"event refers to {event.subscription_ref}, "
                                f"local row tracks {current.stripe_subscription_id}")


def _on_created(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    snapshot = event.snapshot

    if current.status not in (_S.INACTIVE.value, _S.CANCELED.value):
        if current.stripe_subscription_id == snapshot.external_subscription_id:
            # Late redelivery; the row already reflects this subscription.
            return Transition(current, current)
        _reject(current, event, "a different subscription is already live")

    if snapshot.status.value not in (_S.TRIALING.value, _S.ACTIVE.value, _S.INCOMPLETE.value):
        _reject(current, event, f"new subscription arrived in status {snapshot.status.value}")

    tier = snapshot.tier or (current.tier if current.tier != Tier.FREE.value else None)
    if tier is None or tier == Tier.FREE.value:
        _reject(current, event, "subscription does not name a paid tier")

    state = SubscriptionState(
        tier=tier,
        status=snapshot.status.value,
        stripe_subscription_id=snapshot.external_subscription_id,
        stripe_customer_id=snapshot.external_customer_id or current.stripe_customer_id,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
    )
    effects = ("set_period_bounds", "set_tier")
    if current.status == _S.CANCELED.value:
        effects += ("resubscribed", "clear_cancellation")
    return Transition(current, state, effects)


def _on_updated(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    snapshot = event.snapshot

    if snapshot.status == _S.CANCELED:
        return _on_deleted(current, event, now)

    if current.status in (_S.INACTIVE.value, _S.CANCELED.value):
        _reject(current, event)
    _check_same_subscription(current, event)

    target_status = snapshot.status.value
    if target_status not in _UPDATE_MOVES.get(current.status, ()):
        _reject(current, event, f"provider reports {target_status}")

    effects = []
    if target_status == _S.PAST_DUE.value:
        # current_period_end stays the paid-through date the grace period counts from.
        period_start, period_end = current.current_period_start, current.current_period_end
        if current.status != _S.PAST_DUE.value:
            effects.append("enter_grace_period")
    else:
        period_start = snapshot.current_period_start or current.current_period_start
        period_end = snapshot.current_period_end or current.current_period_end
        if (period_start, period_end) != (current.current_period_start, current.current_period_end):
            effects.append("refresh_period_bounds")

    if current.status == _S.TRIALING.value and target_status == _S.ACTIVE.value:
        effects.append("confirm_period_bounds")
    if snapshot.cancel_at_period_end and not current.cancel_at_period_end:
        effects.append("set_cancel_at_period_end")
    if current.cancel_at_period_end and not snapshot.cancel_at_period_end:
        effects.append("clear_cancel_at_period_end")

    tier = snapshot.tier or current.tier
    if tier != current.tier:
        effects.append("change_tier")

    state = replace(
        current,
        tier=tier,
        status=target_status,
        stripe_customer_id=snapshot.external_customer_id or current.stripe_customer_id,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=snapshot.cancel_at_period_end,
    )
    return Transition(current, state, tuple(effects))


def _on_deleted(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    if current.status == _S.INACTIVE.value or not current.stripe_subscription_id:
        _reject(current, event, "no live subscription to cancel")
    _check_same_subscription(current, event)

    snapshot = event.snapshot
    if current.status == _S.PAST_DUE.value or snapshot is None or snapshot.current_period_end is None:
        period_end = current.current_period_end
    else:
        period_end = snapshot.current_period_end

    if period_end is None or period_end <= now:
        return Transition(current, SubscriptionState.free(), ("revoke_tier",))

    state = replace(
        current,
        status=_S.CANCELED.value,
        current_period_end=period_end,
        cancel_at_period_end=True,
    )
    return Transition(current, state, ("defer_tier_revocation",))


def _refresh_from_invoice(current: SubscriptionState, event: BillingEvent):
    if event.period_end and (current.current_period_end is None or event.period_end > current.current_period_end):
        return event.period_start or current.current_period_start, event.period_end, True
    return current.current_period_start, current.current_period_end, False


def _on_payment_succeeded(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    _check_same_subscription(current, event)

    if current.status == _S.TRIALING.value:
        # Trial-start invoices are zero-amount; the trial ends via subscription.updated.
        return Transition(current, current)

    if current.status not in (_S.ACTIVE.value, _S.PAST_DUE.value, _S.INCOMPLETE.value):
        _reject(current, event)

    period_start, period_end, refreshed = _refresh_from_invoice(current, event)
    effects = ("refresh_period_end",) if refreshed else ()
    if current.status == _S.PAST_DUE.value:
        effects = ("leave_grace_period",) + effects

    state = replace(
        current,
        status=_S.ACTIVE.value,
        current_period_start=period_start,
        current_period_end=period_end,
    )
    return Transition(current, state, effects)


def _on_payment_failed(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    _check_same_subscription(current, event)

    if current.status in (_S.PAST_DUE.value, _S.INCOMPLETE.value):
        return Transition(current, current)

    if current.status not in (_S.ACTIVE.value, _S.TRIALING.value):
        _reject(current, event)

    return Transition(current, replace(current, status=_S.PAST_DUE.value), ("enter_grace_period",))


_HANDLERS = {
    EventKind.SUBSCRIPTION_CREATED: _on_created,
    EventKind.SUBSCRIPTION_UPDATED: _on_updated,
    EventKind.SUBSCRIPTION_DELETED: _on_deleted,
    EventKind.PAYMENT_SUCCEEDED: _on_payment_succeeded,
    EventKind.PAYMENT_FAILED: _on_payment_failed,
}


def decide(current: SubscriptionState, event: BillingEvent, now: datetime) -> Transition:
    """
    Decide the next state for `current` given a provider event.

    Raises InvalidTransition when the event does not apply; the caller
    leaves the row untouched in that case.
    """
    return _HANDLERS[event.kind](current, event, now)


def expire(state: SubscriptionState, now: datetime, grace: timedelta) -> Tuple[SubscriptionState, Tuple[str, ...]]:
    """Apply time-based expiry: lapsed grace periods and elapsed cancellations."""
    if state.status == _S.PAST_DUE.value:
        if state.current_period_end is None or now >= state.current_period_end + grace:
            return SubscriptionState.free(), ("grace_period_expired",)
    if state.status == _S.CANCELED.value:
        if state.current_period_end is None or now >= state.current_period_end:
            return SubscriptionState.free(), ("cancellation_elapsed",)
    return state, ()


def _paid_through(current: SubscriptionState, snapshot: ProviderSubscriptionSnapshot):
    if current.status == _S.PAST_DUE.value and current.current_period_end:
        return current.current_period_start, current.current_period_end
    # The provider's open period is the unpaid one; it started when coverage ended.
    return current.current_period_start, snapshot.current_period_start or current.current_period_end


def converge(current: SubscriptionState, snapshot: Optional[ProviderSubscriptionSnapshot],
             now: datetime, grace: timedelta) -> Transition:
    """
    Overwrite local state with the provider's authoritative view.

    A None snapshot means the provider no longer knows the subscription.
    """
    if snapshot is None:
        return Transition(current, SubscriptionState.free(), ("provider_subscription_missing",))

    tier = snapshot.tier or current.tier
    if tier == Tier.FREE.value:
        raise InvalidTransition(
            current.status, "reconcile",
            f"Provider subscription {snapshot.external_subscription_id} does not name a paid tier",
        )

    status = snapshot.status.value
    period_start, period_end = snapshot.current_period_start, snapshot.current_period_end
    cancel_at_period_end = snapshot.cancel_at_period_end

    if status == _S.PAST_DUE.value:
        period_start, period_end = _paid_through(current, snapshot)
    elif status == _S.CANCELED.value:
        cancel_at_period_end = True

    target = SubscriptionState(
        tier=tier,
        status=status,
        stripe_subscription_id=snapshot.external_subscription_id,
        stripe_customer_id=snapshot.external_customer_id or current.stripe_customer_id,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
    )
    target, expiry_effects = expire(target, now, grace)
    effects = ("provider_overwrite",) + expiry_effects if target != current else ()
    return Transition(current, target, effects)

from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from upestate_billing.billing.events import BillingEvent, EventKind, ProviderSubscriptionSnapshot
from upestate_billing.billing.state_machine import SubscriptionState, converge, decide, expire
from upestate_billing.domain.subscriptions import SubscriptionStatus
from upestate_billing.errors import InvalidTransition

NOW = datetime(2026, 3, 1, 12, 0, 0)
GRACE = timedelta(days=3)
SUB_ID = "sub_1PqRsT"


def snapshot(status, start=NOW - timedelta(days=1), end=NOW + timedelta(days=29), tier="standard",
             cancel_at_period_end=False, subscription_id=SUB_ID):
    return ProviderSubscriptionSnapshot(
        external_subscription_id=subscription_id,
        external_customer_id="cus_9xY",
        status=SubscriptionStatus(status),
        tier=tier,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=cancel_at_period_end,
        user_id=7,
    )


def subscription_event(kind, snap):
    return BillingEvent(
        kind=kind,
        external_event_id="evt_test",
        provider_type="customer." + kind.value,
        subscription_ref=snap.external_subscription_id,
        customer_ref=snap.external_customer_id,
        user_id=7,
        snapshot=snap,
    )


def invoice_event(kind, start=None, end=None, subscription_id=SUB_ID):
    return BillingEvent(
        kind=kind,
        external_event_id="evt_invoice",
        provider_type="invoice.paid",
        subscription_ref=subscription_id,
        user_id=7,
        period_start=start,
        period_end=end,
    )


def live(status, end=NOW + timedelta(days=20), cancel_at_period_end=False, tier="standard"):
    return SubscriptionState(
        tier=tier,
        status=status,
        stripe_subscription_id=SUB_ID,
        stripe_customer_id="cus_9xY",
        current_period_start=end - timedelta(days=30),
        current_period_end=end,
        cancel_at_period_end=cancel_at_period_end,
    )


def test_created_from_inactive_sets_period_tier_and_ids():
    """A new trialing subscription attaches to a free row"""
    snap = snapshot("trialing", start=NOW, end=NOW + timedelta(days=14))
    transition = decide(SubscriptionState.free(), subscription_event(EventKind.SUBSCRIPTION_CREATED, snap), NOW)

    assert transition.changed
    assert transition.state.status == "trialing"
    assert transition.state.tier == "standard"
    assert transition.state.stripe_subscription_id == SUB_ID
    assert transition.state.current_period_end == NOW + timedelta(days=14)
    assert "set_period_bounds" in transition.effects


def test_created_from_canceled_is_resubscription():
    current = replace(live("canceled"), cancel_at_period_end=True)
    snap = snapshot("active", subscription_id="sub_new", tier="premium")

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_CREATED, snap), NOW)

    assert transition.state.status == "active"
    assert transition.state.tier == "premium"
    assert transition.state.stripe_subscription_id == "sub_new"
    assert transition.state.cancel_at_period_end is False
    assert "resubscribed" in transition.effects


def test_created_redelivered_after_activation_is_noop():
    current = live("active")
    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_CREATED, snapshot("active")), NOW)
    assert not transition.changed


def test_created_while_other_subscription_live_is_rejected():
    snap = snapshot("active", subscription_id="sub_other")
    with pytest.raises(InvalidTransition):
        decide(live("active"), subscription_event(EventKind.SUBSCRIPTION_CREATED, snap), NOW)


def test_created_without_tier_is_rejected():
    snap = snapshot("active", tier=None)
    with pytest.raises(InvalidTransition):
        decide(SubscriptionState.free(), subscription_event(EventKind.SUBSCRIPTION_CREATED, snap), NOW)


def test_trial_converts_to_active_on_update():
    current = live("trialing", end=NOW)
    snap = snapshot("active", start=NOW, end=NOW + timedelta(days=30))

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_UPDATED, snap), NOW)

    assert transition.state.status == "active"
    assert transition.state.current_period_end == NOW + timedelta(days=30)
    assert "confirm_period_bounds" in transition.effects


def test_update_sets_cancel_flag_without_changing_status():
    current = live("active")
    snap = snapshot("active", start=current.current_period_start, end=current.current_period_end,
                    cancel_at_period_end=True)

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_UPDATED, snap), NOW)

    assert transition.state.status == "active"
    assert transition.state.cancel_at_period_end is True
    assert transition.effects == ("set_cancel_at_period_end",)


def test_update_on_inactive_row_is_rejected():
    """An update can't come before its create; reconciliation fixes the gap"""
    with pytest.raises(InvalidTransition):
        decide(SubscriptionState.free(), subscription_event(EventKind.SUBSCRIPTION_UPDATED, snapshot("active")), NOW)


def test_update_to_past_due_keeps_paid_through_date():
    current = live("active", end=NOW - timedelta(hours=1))
    snap = snapshot("past_due", start=NOW - timedelta(hours=1), end=NOW + timedelta(days=30))

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_UPDATED, snap), NOW)

    assert transition.state.status == "past_due"
    assert transition.state.current_period_end == NOW - timedelta(hours=1)


def test_update_with_canceled_status_is_handled_as_delete():
    current = live("active")
    snap = snapshot("canceled", end=current.current_period_end)
    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_UPDATED, snap), NOW)
    assert transition.state.status == "canceled"
    assert transition.state.cancel_at_period_end is True


def test_update_active_back_to_trialing_is_rejected():
    with pytest.raises(InvalidTransition):
        decide(live("active"), subscription_event(EventKind.SUBSCRIPTION_UPDATED, snapshot("trialing")), NOW)


def test_update_for_another_subscription_is_rejected():
    snap = snapshot("active", subscription_id="sub_stale")
    with pytest.raises(InvalidTransition):
        decide(live("active"), subscription_event(EventKind.SUBSCRIPTION_UPDATED, snap), NOW)


def test_payment_failed_moves_active_to_past_due():
    current = live("active")
    transition = decide(current, invoice_event(EventKind.PAYMENT_FAILED), NOW)

    assert transition.state.status == "past_due"
    assert transition.state.current_period_end == current.current_period_end
    assert transition.state.tier == "standard"
    assert transition.effects == ("enter_grace_period",)


def test_payment_failed_while_past_due_is_noop():
    transition = decide(live("past_due"), invoice_event(EventKind.PAYMENT_FAILED), NOW)
    assert not transition.changed


def test_payment_failed_on_canceled_is_rejected():
    with pytest.raises(InvalidTransition):
        decide(live("canceled"), invoice_event(EventKind.PAYMENT_FAILED), NOW)


def test_payment_succeeded_recovers_past_due_and_refreshes_period():
    current = live("past_due", end=NOW - timedelta(days=1))
    event = invoice_event(EventKind.PAYMENT_SUCCEEDED, start=NOW - timedelta(days=1), end=NOW + timedelta(days=29))

    transition = decide(current, event, NOW)

    assert transition.state.status == "active"
    assert transition.state.current_period_end == NOW + timedelta(days=29)
    assert "refresh_period_end" in transition.effects


def test_payment_succeeded_during_trial_does_not_end_trial():
    """Trial-start invoices are zero-amount"""
    current = live("trialing")
    event = invoice_event(EventKind.PAYMENT_SUCCEEDED, start=NOW, end=NOW + timedelta(days=14))
    assert not decide(current, event, NOW).changed


def test_payment_succeeded_with_older_period_keeps_current_end():
    current = live("active", end=NOW + timedelta(days=20))
    event = invoice_event(EventKind.PAYMENT_SUCCEEDED, start=NOW - timedelta(days=40), end=NOW - timedelta(days=10))
    assert not decide(current, event, NOW).changed


def test_delete_with_period_remaining_defers_revocation():
    current = live("active", end=NOW + timedelta(days=10))
    snap = snapshot("canceled", end=NOW + timedelta(days=10))

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_DELETED, snap), NOW)

    assert transition.state.status == "canceled"
    assert transition.state.tier == "standard"
    assert transition.state.cancel_at_period_end is True
    assert transition.effects == ("defer_tier_revocation",)


def test_delete_with_elapsed_period_revokes_immediately():
    current = live("active", end=NOW - timedelta(days=1))
    snap = snapshot("canceled", end=NOW - timedelta(days=1))

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_DELETED, snap), NOW)

    assert transition.state == SubscriptionState.free()
    assert transition.effects == ("revoke_tier",)


def test_delete_from_past_due_uses_paid_through_date():
    current = live("past_due", end=NOW - timedelta(days=2))
    snap = snapshot("canceled", end=NOW + timedelta(days=28))

    transition = decide(current, subscription_event(EventKind.SUBSCRIPTION_DELETED, snap), NOW)

    assert transition.state == SubscriptionState.free()


def test_delete_on_free_row_is_rejected():
    with pytest.raises(InvalidTransition):
        decide(SubscriptionState.free(), subscription_event(EventKind.SUBSCRIPTION_DELETED, snapshot("canceled")), NOW)


def test_invalid_transition_carries_event_id_and_status():
    with pytest.raises(InvalidTransition) as excinfo:
        decide(SubscriptionState.free(), invoice_event(EventKind.PAYMENT_FAILED), NOW)
    assert excinfo.value.event_id == "evt_invoice"
    assert excinfo.value.current_status == "inactive"


def test_expire_past_due_after_grace():
    state = live("past_due", end=NOW - GRACE - timedelta(seconds=1))
    expired, effects = expire(state, NOW, GRACE)
    assert expired == SubscriptionState.free()
    assert effects == ("grace_period_expired",)


def test_expire_leaves_past_due_inside_grace():
    state = live("past_due", end=NOW - timedelta(days=1))
    assert expire(state, NOW, GRACE) == (state, ())


def test_expire_canceled_after_period_end():
    state = replace(live("canceled", end=NOW), cancel_at_period_end=True)
    expired, effects = expire(state, NOW, GRACE)
    assert expired == SubscriptionState.free()
    assert effects == ("cancellation_elapsed",)


def test_converge_overwrites_with_provider_view():
    current = live("active", end=NOW - timedelta(hours=2))
    snap = snapshot("canceled", start=NOW - timedelta(hours=2), end=NOW + timedelta(days=28))

    transition = converge(current, snap, NOW, GRACE)

    assert transition.state.status == "canceled"
    assert transition.state.cancel_at_period_end is True
    assert transition.state.current_period_end == NOW + timedelta(days=28)
    assert transition.effects == ("provider_overwrite",)


def test_converge_is_noop_when_already_in_agreement():
    current = live("active")
    snap = snapshot("active", start=current.current_period_start, end=current.current_period_end)
    transition = converge(current, snap, NOW, GRACE)
    assert not transition.changed
    assert transition.effects == ()


def test_converge_past_due_beyond_grace_downgrades():
    current = live("past_due", end=NOW - timedelta(days=5))
    snap = snapshot("past_due", start=NOW - timedelta(days=5), end=NOW + timedelta(days=25))

    transition = converge(current, snap, NOW, GRACE)

    assert transition.state == SubscriptionState.free()
    assert "grace_period_expired" in transition.effects


def test_converge_missing_provider_subscription_resets_to_free():
    transition = converge(live("active"), None, NOW, GRACE)
    assert transition.state == SubscriptionState.free()


def test_converge_without_any_tier_is_rejected():
    with pytest.raises(InvalidTransition):
        converge(SubscriptionState.free(), snapshot("active", tier=None), NOW, GRACE)

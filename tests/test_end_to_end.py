from datetime import timedelta

import pytest

from fakes import invoice_event, subscription_event
from upestate_billing.models import Subscription
from upestate_billing.services import get_entitlement_service, get_reconciliation_job

pytestmark = [pytest.mark.payment, pytest.mark.slow]


def test_trial_to_grace_to_downgrade(app, client, gateway, auth_headers, send_webhook, user_id, stripe_ids, now):
    """
    Full lifecycle: checkout, 14 day trial, failed renewal payment,
    grace period, then the reconciliation sweep downgrading to free.
    """
    trial_end = now + timedelta(days=14)
    headers = auth_headers(user_id)

    checkout = client.post("/api/v1/billing/checkout", json={"tier": "standard"}, headers=headers)
    assert checkout.status_code == 200

    created = subscription_event(
        "customer.subscription.created", stripe_ids["subscription"], "trialing", user_id=user_id,
        period_start=now, period_end=trial_end, customer_id=stripe_ids["customer"],
    )
    assert send_webhook(created).get_json()["status"] == "processed"

    entitlement = client.get("/api/v1/billing/entitlement", headers=headers).get_json()
    assert entitlement["tier"] == "standard"
    assert entitlement["status"] == "trialing"
    assert entitlement["in_grace"] is False

    failed = invoice_event(
        "invoice.payment_failed", stripe_ids["subscription"], user_id=user_id,
        period_start=trial_end, period_end=trial_end + timedelta(days=30), customer_id=stripe_ids["customer"],
    )
    assert send_webhook(failed).get_json()["status"] == "processed"

    subscription = Subscription.query.filter_by(user_id=user_id).one()
    assert subscription.status == "past_due"
    assert subscription.current_period_end == trial_end

    service = get_entitlement_service()
    in_grace = service.for_user(user_id, now=trial_end + timedelta(days=1))
    assert in_grace.tier == "standard"
    assert in_grace.in_grace is True

    after_grace = trial_end + timedelta(days=3, seconds=1)
    lapsed = service.for_user(user_id, now=after_grace)
    assert lapsed.tier == "free"
    assert lapsed.subscribed_tier == "standard"

    gateway.set_subscription(
        stripe_ids["subscription"], "past_due",
        period_start=trial_end, period_end=trial_end + timedelta(days=30),
        customer_id=stripe_ids["customer"], user_id=user_id,
    )
    report = get_reconciliation_job().run(now=after_grace + timedelta(hours=1))

    assert report.downgraded == 1
    subscription = Subscription.query.filter_by(user_id=user_id).one()
    assert subscription.tier == "free"
    assert subscription.status == "inactive"
    assert subscription.stripe_subscription_id is None
    assert service.for_user(user_id, now=after_grace).capabilities == {
        "search", "favorites", "messaging", "property_tours",
    }


def test_cancel_at_period_end_then_deleted(app, send_webhook, make_subscription, user_id, stripe_ids, now):
    """User cancels mid-period: paid access continues until the period ends"""
    make_subscription(user_id)
    period_end = now + timedelta(days=30)
    send_webhook(subscription_event(
        "customer.subscription.created", stripe_ids["subscription"], "active", user_id=user_id,
        tier="premium", period_start=now, period_end=period_end, customer_id=stripe_ids["customer"],
    ))
    send_webhook(subscription_event(
        "customer.subscription.updated", stripe_ids["subscription"], "active", user_id=user_id,
        tier="premium", period_start=now, period_end=period_end, cancel_at_period_end=True,
        customer_id=stripe_ids["customer"],
    ))
    send_webhook(subscription_event(
        "customer.subscription.deleted", stripe_ids["subscription"], "canceled", user_id=user_id,
        tier="premium", period_start=now, period_end=period_end, cancel_at_period_end=True,
        customer_id=stripe_ids["customer"],
    ))

    subscription = Subscription.query.filter_by(user_id=user_id).one()
    assert subscription.status == "canceled"
    assert subscription.tier == "premium"

    service = get_entitlement_service()
    assert service.for_user(user_id, now=now + timedelta(days=29)).tier == "premium"
    assert service.for_user(user_id, now=period_end).tier == "free"

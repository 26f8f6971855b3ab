from datetime import timedelta
from unittest.mock import ANY, patch

import pytest
import stripe
from flask_jwt_extended import jwt_required
from prometheus_client import REGISTRY

from fakes import subscription_event
from upestate_billing import create_app
from upestate_billing.config import TestingConfig
from upestate_billing.errors import GatewayError
from upestate_billing.gateway.stripe_gateway import stripe_operation
from upestate_billing.middleware import capability_required
from upestate_billing.services import get_reconciliation_job
from upestate_billing.workers.celery_app import AppContextTask, init_celery
from upestate_billing.workers.tasks import reconcile_subscriptions


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _created(stripe_ids, user_id, now):
    return subscription_event(
        "customer.subscription.created", stripe_ids["subscription"], "active", user_id=user_id,
        period_start=now, period_end=now + timedelta(days=30), customer_id=stripe_ids["customer"],
    )


def test_metrics_endpoint_exposes_billing_counters(client, send_webhook, make_subscription,
                                                   stripe_ids, user_id, now):
    make_subscription(user_id)
    send_webhook(_created(stripe_ids, user_id, now))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert b"billing_webhook_events_total" in response.data


def test_webhook_outcomes_are_counted(app, send_webhook, make_subscription, stripe_ids, user_id, now):
    make_subscription(user_id)
    event = _created(stripe_ids, user_id, now)
    labels = {"event_type": "customer.subscription.created"}
    processed_before = _sample("billing_webhook_events_total", outcome="processed", **labels)
    duplicate_before = _sample("billing_webhook_events_total", outcome="duplicate", **labels)

    send_webhook(event)
    send_webhook(event)

    assert _sample("billing_webhook_events_total", outcome="processed", **labels) == processed_before + 1
    assert _sample("billing_webhook_events_total", outcome="duplicate", **labels) == duplicate_before + 1


def test_failed_webhook_is_reported_to_sentry(app, send_webhook, now):
    """No local subscription: the event fails and the error is captured with its event id"""
    event = subscription_event("customer.subscription.created", "sub_nobody", "active", user_id=None,
                               period_start=now, period_end=now + timedelta(days=30))
    failed_before = _sample(
        "billing_webhook_events_total", event_type="customer.subscription.created", outcome="failed"
    )

    with patch("upestate_billing.services.webhook_pipeline.capture_billing_error") as capture:
        response = send_webhook(event)

    assert response.status_code == 500
    capture.assert_called_once_with(
        ANY, event_id=event["id"], event_type="customer.subscription.created",
        error_code="SUBSCRIPTION_NOT_FOUND",
    )
    assert _sample(
        "billing_webhook_events_total", event_type="customer.subscription.created", outcome="failed"
    ) == failed_before + 1


def test_stripe_failure_is_captured_and_timed():
    errors_before = _sample(
        "billing_stripe_operation_duration_seconds_count", operation="retrieve_subscription", status="error"
    )

    with patch("upestate_billing.gateway.stripe_gateway.capture_billing_error") as capture:
        with pytest.raises(GatewayError):
            with stripe_operation("retrieve_subscription", stripe_subscription_id="sub_1"):
                raise stripe.APIConnectionError("connection reset")

    capture.assert_called_once_with(ANY, stripe_operation="retrieve_subscription", stripe_subscription_id="sub_1")
    assert _sample(
        "billing_stripe_operation_duration_seconds_count", operation="retrieve_subscription", status="error"
    ) == errors_before + 1


def test_reconciliation_results_and_errors_are_counted(app, gateway, make_subscription, now):
    make_subscription(
        501, tier="standard", status="active", stripe_subscription_id="sub_down", stripe_customer_id="cus_down",
        current_period_start=now - timedelta(days=31), current_period_end=now - timedelta(days=1),
        updated_at=now - timedelta(days=31),
    )
    gateway.failing.add("sub_down")
    errors_before = _sample("billing_reconciliation_results_total", result="error")

    with patch("upestate_billing.services.reconciliation.capture_billing_error") as capture:
        report = get_reconciliation_job().run(now=now)

    assert report.errors == 1
    assert _sample("billing_reconciliation_results_total", result="error") == errors_before + 1
    capture.assert_called_once_with(
        ANY, job="reconciliation", subscription_id=ANY, stripe_subscription_id="sub_down"
    )


def test_capability_checks_are_counted(app, auth_headers, user_id):
    @jwt_required()
    @capability_required("api_access")
    def export_listings():
        return {"exported": True}

    app.add_url_rule("/api/v1/listings/export", "export_listings", export_listings)
    denied_before = _sample("billing_capability_checks_total", tier="free", result="denied")

    response = app.test_client().get("/api/v1/listings/export", headers=auth_headers(user_id))

    assert response.status_code == 403
    assert _sample("billing_capability_checks_total", tier="free", result="denied") == denied_before + 1


def test_task_executions_are_counted(app, monkeypatch):
    monkeypatch.setattr(AppContextTask, "flask_app", None)
    init_celery(app)
    labels = {"task_name": "billing.reconcile_subscriptions", "status": "success"}
    before = _sample("task_executions_total", **labels)

    reconcile_subscriptions()

    assert _sample("task_executions_total", **labels) == before + 1


def test_sentry_initialised_only_with_dsn(monkeypatch, gateway):
    with patch("sentry_sdk.init") as init:
        create_app("testing", gateway=gateway)
    init.assert_not_called()

    monkeypatch.setattr(TestingConfig, "SENTRY_DSN", "https://public@sentry.example.com/1")
    with patch("sentry_sdk.init") as init:
        create_app("testing", gateway=gateway)

    init.assert_called_once()
    kwargs = init.call_args.kwargs
    assert kwargs["dsn"] == "https://public@sentry.example.com/1"
    assert kwargs["environment"] == "testing"
    assert kwargs["send_default_pii"] is False

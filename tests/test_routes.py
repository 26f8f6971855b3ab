from datetime import timedelta

import pytest
from flask_jwt_extended import jwt_required

from upestate_billing import create_app
from upestate_billing.extensions import db
from upestate_billing.gateway import DisabledGateway
from upestate_billing.middleware import capability_required
from upestate_billing.models import Subscription


@pytest.fixture()
def disabled_app():
    app = create_app("testing", gateway=DisabledGateway(webhook_secret="whsec_test_secret"))
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def gated_client(app):
    """App with one extra endpoint that needs the premium bulk_upload capability"""
    @jwt_required()
    @capability_required("bulk_upload")
    def bulk_upload():
        return {"uploaded": True}

    app.add_url_rule("/api/v1/listings/bulk", "bulk_upload", bulk_upload, methods=["POST"])
    return app.test_client()


def test_checkout_requires_authentication(client):
    response = client.post("/api/v1/billing/checkout", json={"tier": "standard"})
    assert response.status_code == 401


def test_checkout_creates_session_and_subscription_row(app, client, gateway, auth_headers, user_id):
    response = client.post(
        "/api/v1/billing/checkout",
        json={"tier": "premium", "billing_cycle": "yearly"},
        headers=auth_headers(user_id),
    )

    assert response.status_code == 200
    assert response.get_json()["url"].startswith("https://checkout.stripe.test/")
    assert gateway.checkout_calls == [(user_id, "premium", "yearly", None)]

    subscription = Subscription.query.filter_by(user_id=user_id).one()
    assert subscription.tier == "free"
    assert subscription.status == "inactive"


def test_billing_cycle_defaults_to_monthly(client, gateway, auth_headers, user_id):
    client.post("/api/v1/billing/checkout", json={"tier": "standard"}, headers=auth_headers(user_id))
    assert gateway.checkout_calls[0][2] == "monthly"


@pytest.mark.parametrize("body", [
    {"tier": "free"},
    {"tier": "platinum"},
    {"tier": "standard", "billing_cycle": "weekly"},
    {},
])
def test_checkout_rejects_invalid_requests(client, gateway, auth_headers, user_id, body):
    response = client.post("/api/v1/billing/checkout", json=body, headers=auth_headers(user_id))

    assert response.status_code == 400
    assert response.get_json()["error"] == "INVALID_CHECKOUT_REQUEST"
    assert gateway.checkout_calls == []


def test_checkout_rejects_user_with_live_subscription(client, gateway, auth_headers, make_subscription,
                                                      user_id, stripe_ids, now):
    make_subscription(
        user_id, tier="standard", status="past_due",
        stripe_subscription_id=stripe_ids["subscription"], stripe_customer_id=stripe_ids["customer"],
        current_period_start=now - timedelta(days=30), current_period_end=now,
    )

    response = client.post("/api/v1/billing/checkout", json={"tier": "premium"}, headers=auth_headers(user_id))

    assert response.status_code == 400
    assert "past_due" in response.get_json()["message"]
    assert gateway.checkout_calls == []


def test_returning_customer_reuses_stripe_customer(client, gateway, auth_headers, make_subscription,
                                                   user_id, stripe_ids, now):
    make_subscription(
        user_id, tier="standard", status="canceled", cancel_at_period_end=True,
        stripe_subscription_id=stripe_ids["subscription"], stripe_customer_id=stripe_ids["customer"],
        current_period_start=now - timedelta(days=20), current_period_end=now + timedelta(days=10),
    )

    response = client.post("/api/v1/billing/checkout", json={"tier": "agency"}, headers=auth_headers(user_id))

    assert response.status_code == 200
    assert gateway.checkout_calls == [(user_id, "agency", "monthly", stripe_ids["customer"])]


def test_checkout_with_disabled_gateway_answers_503(disabled_app, auth_headers, user_id):
    response = disabled_app.test_client().post(
        "/api/v1/billing/checkout", json={"tier": "standard"}, headers=auth_headers(user_id)
    )

    assert response.status_code == 503
    assert response.get_json()["error"] == "GATEWAY_DISABLED"


def test_entitlement_for_user_without_row_is_free(client, auth_headers, user_id):
    response = client.get("/api/v1/billing/entitlement", headers=auth_headers(user_id))

    assert response.status_code == 200
    data = response.get_json()
    assert data["user_id"] == user_id
    assert data["tier"] == "free"
    assert data["entitled"] is False


def test_past_due_user_keeps_tier_during_grace(client, auth_headers, make_subscription,
                                               user_id, stripe_ids, now):
    make_subscription(
        user_id, tier="premium", status="past_due",
        stripe_subscription_id=stripe_ids["subscription"], stripe_customer_id=stripe_ids["customer"],
        current_period_start=now - timedelta(days=31), current_period_end=now - timedelta(days=1),
    )

    data = client.get("/api/v1/billing/entitlement", headers=auth_headers(user_id)).get_json()

    assert data["tier"] == "premium"
    assert data["in_grace"] is True
    assert "bulk_upload" in data["capabilities"]


def test_free_user_is_told_to_upgrade(gated_client, auth_headers, user_id):
    response = gated_client.post("/api/v1/listings/bulk", headers=auth_headers(user_id))

    assert response.status_code == 403
    data = response.get_json()
    assert data["code"] == "CAPABILITY_REQUIRED"
    assert data["missing_capabilities"] == ["bulk_upload"]
    assert data["tier"] == "free"


def test_premium_user_passes_capability_check(gated_client, auth_headers, make_subscription,
                                              user_id, stripe_ids, now):
    make_subscription(
        user_id, tier="premium", status="active",
        stripe_subscription_id=stripe_ids["subscription"], stripe_customer_id=stripe_ids["customer"],
        current_period_start=now, current_period_end=now + timedelta(days=30),
    )

    response = gated_client.post("/api/v1/listings/bulk", headers=auth_headers(user_id))

    assert response.status_code == 200
    assert response.get_json() == {"uploaded": True}


def test_health_reports_database_and_gateway(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["checks"]["database"] == "ok"
    assert data["gateway"] == "fake"


def test_unknown_route_returns_json_error(client):
    response = client.get("/api/v1/does-not-exist")

    assert response.status_code == 404
    data = response.get_json()
    assert data["error"] == "Not Found"
    assert data["path"] == "/api/v1/does-not-exist"


def test_request_id_is_echoed_or_generated(client):
    echoed = client.get("/health", headers={"X-Request-ID": "req-abc-123"})
    generated = client.get("/health")

    assert echoed.headers["X-Request-ID"] == "req-abc-123"
    assert len(generated.headers["X-Request-ID"]) == 36

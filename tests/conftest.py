import json
from datetime import timedelta

import pytest
from faker import Faker
from flask_jwt_extended import create_access_token

from fakes import FakeGateway, encode
from upestate_billing import create_app
from upestate_billing.extensions import db
from upestate_billing.models import Subscription
from upestate_billing.utils.clock import utcnow

# Initialize Faker for generating test data
fake = Faker()


@pytest.fixture()
def gateway():
    return FakeGateway(webhook_secret="whsec_test_secret")


@pytest.fixture()
def app(gateway):
    """Application on a fresh in-memory database with the fake gateway"""
    app = create_app("testing", gateway=gateway)
    app.config.update(JWT_ACCESS_TOKEN_EXPIRES=timedelta(hours=1))

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def now():
    """Current time truncated to whole seconds, the precision Stripe timestamps carry"""
    return utcnow().replace(microsecond=0)


@pytest.fixture()
def user_id():
    return fake.unique.random_int(min=1, max=10_000_000)


@pytest.fixture()
def stripe_ids():
    """Fresh Stripe-style identifiers for one subscription"""
    return {
        "subscription": f"sub_{fake.unique.bothify('??##??##??##??')}",
        "customer": f"cus_{fake.unique.bothify('??##??##??##')}",
    }


@pytest.fixture()
def auth_headers(app):
    def _headers(user_id):
        token = create_access_token(identity=str(user_id))
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-Request-ID": fake.uuid4(),
        }
    return _headers


@pytest.fixture()
def make_subscription():
    """Insert a subscription row directly, bypassing the state machine"""
    def _make(user_id, **fields):
        subscription = Subscription(user_id=user_id, **fields)
        db.session.add(subscription)
        db.session.commit()
        return subscription
    return _make


@pytest.fixture()
def send_webhook(client, gateway):
    """POST a signed Stripe-shaped event to the webhook endpoint"""
    def _send(event, signature=None):
        body = encode(event) if isinstance(event, dict) else event
        return client.post(
            "/api/v1/webhooks/stripe",
            data=body,
            headers={
                "Stripe-Signature": signature if signature is not None else gateway.sign(body),
                "Content-Type": "application/json",
            },
        )
    return _send


@pytest.fixture()
def pipeline(app):
    from upestate_billing.services import get_webhook_pipeline
    return get_webhook_pipeline()


@pytest.fixture()
def signed(gateway):
    """(raw body, signature) for feeding the pipeline directly"""
    def _signed(event):
        body = json.dumps(event).encode("utf-8")
        return body, gateway.sign(body)
    return _signed

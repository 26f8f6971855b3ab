"""
Service wiring. Each getter builds a service from the current app's config
and its injected billing gateway.
"""

from datetime import timedelta

from flask import current_app

from upestate_billing.services.entitlement_service import EntitlementService
from upestate_billing.services.event_store import EventStore
from upestate_billing.services.reconciliation import ReconciliationJob, ReconciliationReport
from upestate_billing.services.subscription_store import SubscriptionStore
from upestate_billing.services.webhook_pipeline import IngestResult, WebhookPipeline


def get_gateway():
    return current_app.extensions["billing_gateway"]


def _grace():
    return timedelta(days=current_app.config["BILLING_GRACE_PERIOD_DAYS"])


def _store():
    return SubscriptionStore(max_attempts=current_app.config["BILLING_WRITE_MAX_ATTEMPTS"])


def get_webhook_pipeline() -> WebhookPipeline:
    return WebhookPipeline(get_gateway(), current_app.config["STRIPE_PRICE_IDS"], store=_store())


def get_reconciliation_job() -> ReconciliationJob:
    config = current_app.config
    return ReconciliationJob(
        get_gateway(),
        grace=_grace(),
        period_lag=timedelta(minutes=config["RECONCILE_PERIOD_LAG_MINUTES"]),
        batch_size=config["RECONCILE_BATCH_SIZE"],
        store=_store(),
        pending_after=timedelta(minutes=config["RECONCILE_PENDING_AFTER_MINUTES"]),
    )


def get_entitlement_service() -> EntitlementService:
    return EntitlementService(grace=_grace())


__all__ = [
    "EntitlementService",
    "EventStore",
    "IngestResult",
    "ReconciliationJob",
    "ReconciliationReport",
    "SubscriptionStore",
    "WebhookPipeline",
    "get_entitlement_service",
    "get_gateway",
    "get_reconciliation_job",
    "get_webhook_pipeline",
]

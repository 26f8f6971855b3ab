"""
Prometheus metrics for the billing engine.

Counters live on the default registry and are exposed at /metrics.
Label values are drawn from fixed vocabularies (outcomes, tiers, task names)
so cardinality stays bounded.
"""

from flask import Flask, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

WEBHOOK_EVENTS_TOTAL = Counter(
    "billing_webhook_events_total",
    "Webhook notifications by outcome",
    ["event_type", "outcome"],
)

RECONCILIATION_RESULTS_TOTAL = Counter(
    "billing_reconciliation_results_total",
    "Reconciliation results per examined subscription",
    ["result"],
)

CAPABILITY_CHECKS_TOTAL = Counter(
    "billing_capability_checks_total",
    "Capability gate decisions",
    ["tier", "result"],
)

TASK_EXECUTIONS_TOTAL = Counter(
    "task_executions_total",
    "Total background task executions",
    ["task_name", "status"],
)

STRIPE_OPERATION_DURATION = Histogram(
    "billing_stripe_operation_duration_seconds",
    "Stripe API call latency in seconds",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def record_webhook_outcome(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type or "unknown", outcome=outcome).inc()


def record_reconciliation_result(result: str, amount: int = 1) -> None:
    if amount:
        RECONCILIATION_RESULTS_TOTAL.labels(result=result).inc(amount)


def register_metrics(app: Flask) -> None:
    """Expose the default registry for Prometheus scraping."""
    if not app.config.get("METRICS_ENABLED", True):
        return

    @app.route("/metrics")
    def metrics_endpoint() -> Response:
        return Response(
            generate_latest(),
            mimetype=CONTENT_TYPE_LATEST,
            headers={"Cache-Control": "no-cache"},
        )

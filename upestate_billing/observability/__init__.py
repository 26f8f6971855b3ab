from upestate_billing.observability.metrics import register_metrics
from upestate_billing.observability.sentry import capture_billing_error, setup_sentry


def init_observability(app):
    setup_sentry(app)
    register_metrics(app)


__all__ = ["capture_billing_error", "init_observability", "register_metrics", "setup_sentry"]

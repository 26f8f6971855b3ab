import logging

import sentry_sdk
from flask import Flask
from sentry_sdk.integrations.flask import FlaskIntegration

logger = logging.getLogger(__name__)


def setup_sentry(app: Flask) -> None:
    """Initialize Sentry error tracking when SENTRY_DSN is configured."""
    sentry_dsn = app.config.get("SENTRY_DSN")
    if not sentry_dsn:
        return

    try:
        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[FlaskIntegration()],
            traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.1),
            environment=app.config["ENVIRONMENT"],
            release=app.config.get("APP_VERSION", "1.0.0"),
            send_default_pii=False,
        )
        logger.info("Sentry error tracking initialized")
    except Exception:
        logger.exception("Failed to initialize Sentry")


def capture_billing_error(exc: BaseException, **context) -> None:
    """
    Report an exception with billing tags (event id, subscription, operation).
    A no-op until sentry_sdk.init has run.
    """
    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            if value is not None:
                scope.set_tag(key, str(value))
        scope.set_context("billing", {k: v for k, v in context.items() if v is not None})
        sentry_sdk.capture_exception(exc)

"""
Flask application factory for the UpEstate billing service.
Fails fast on configuration errors; a missing Stripe key only degrades the
service to free-tier behaviour.
"""

import logging
import sys
from typing import Optional

from flask import Flask

from upestate_billing.cli import register_commands
from upestate_billing.config import ConfigurationError, get_config
from upestate_billing.error_handlers import register_error_handlers
from upestate_billing.extensions import init_extensions
from upestate_billing.gateway import GatewayAdapter, build_gateway
from upestate_billing.logging_config import setup_logging
from upestate_billing.middleware.request_id import init_request_id_middleware
from upestate_billing.observability import init_observability
from upestate_billing.routes import register_blueprints

logger = logging.getLogger(__name__)


def create_app(config_name: Optional[str] = None, gateway: Optional[GatewayAdapter] = None) -> Flask:
    """
    Build the application.

    Args:
        config_name: development, testing or production (defaults to FLASK_CONFIG)
        gateway: payment provider adapter; built from configuration when omitted
    """
    app = Flask(__name__)

    # ============================================
    # CONFIGURATION (FAIL FAST)
    # ============================================
    try:
        config = get_config(config_name)
        app.config.from_object(config)
    except ConfigurationError as e:
        print(f"CRITICAL: Configuration error: {str(e)}", file=sys.stderr)
        raise

    # ============================================
    # LOGGING
    # ============================================
    init_request_id_middleware(app)
    setup_logging(app)
    logger.info(f"Starting application in {app.config['ENVIRONMENT']} mode")

    # ============================================
    # EXTENSIONS, ERRORS, ROUTES, OBSERVABILITY
    # ============================================
    init_extensions(app)
    register_error_handlers(app)
    register_blueprints(app)
    register_commands(app)
    init_observability(app)

    # ============================================
    # PAYMENT GATEWAY
    # ============================================
    app.extensions["billing_gateway"] = gateway or build_gateway(app.config)
    logger.info(
        "Billing gateway ready",
        extra={"gateway": app.extensions["billing_gateway"].name},
    )

    return app


__all__ = ["create_app"]

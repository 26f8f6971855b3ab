# upestate_billing/error_handlers.py
import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from upestate_billing.errors import BillingError

logger = logging.getLogger(__name__)


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            f"{error.code}: {error.message} - Path: {request.path}",
            extra={"error_code": error.code, "event_id": error.event_id},
        )
        response = jsonify({
            "error": error.code,
            "message": error.message,
            "path": request.path,
            **(error.payload or {}),
        })
        response.status_code = error.status_code
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code >= 500:
            logger.error(f"HTTP {error.code}: {error.description} - Path: {request.path}")
        else:
            logger.warning(f"HTTP {error.code}: {error.description} - Path: {request.path}")
        return jsonify({
            "error": error.name,
            "message": error.description,
            "path": request.path,
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        logger.exception(f"Unhandled error - Path: {request.path}")
        return jsonify({
            "error": "Server error",
            "message": "An internal server error occurred. Please try again later.",
            "path": request.path,
        }), 500

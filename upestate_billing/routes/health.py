import logging

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from upestate_billing.extensions import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
def health():
    checks = {"database": "ok"}
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db.session.rollback()
        checks["database"] = "error"

    gateway = current_app.extensions["billing_gateway"]
    status = "healthy" if checks["database"] == "ok" else "degraded"
    return jsonify({
        "status": status,
        "service": current_app.config.get("APP_NAME"),
        "version": current_app.config.get("APP_VERSION"),
        "gateway": gateway.name,
        "checks": checks,
    }), 200 if status == "healthy" else 503

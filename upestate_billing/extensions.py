"""
Flask extensions initialization module.
"""

import logging

from flask_jwt_extended import JWTManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()

logger = logging.getLogger(__name__)


def init_extensions(app):
    """Initialize all Flask extensions."""
    db.init_app(app)
    logger.info("SQLAlchemy initialized")

    migrate.init_app(app, db)
    logger.info("Flask-Migrate initialized")

    jwt.init_app(app)
    logger.info("JWT Manager initialized")

    return app

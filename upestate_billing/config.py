"""
Configuration management for the billing service.
Values come from the environment; production fails fast on unsafe settings,
but a missing Stripe credential only degrades the service to free tier.
"""

import os
import warnings
from datetime import timedelta
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse


class Environment(str, Enum):
    """Environment types"""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class ConfigurationError(Exception):
    """Raised when configuration validation fails"""
    pass


PAID_TIERS = ("standard", "premium", "agency")
BILLING_CYCLES = ("monthly", "yearly")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_price_ids() -> Dict[str, str]:
    """
    Map "<tier>:<cycle>" to a Stripe price id, read from
    STRIPE_PRICE_<TIER>_<CYCLE> (e.g. STRIPE_PRICE_PREMIUM_YEARLY).
    Unset combinations are simply not purchasable.
    """
    prices = {}
    for tier in PAID_TIERS:
        for cycle in BILLING_CYCLES:
            price_id = os.getenv(f"STRIPE_PRICE_{tier.upper()}_{cycle.upper()}")
            if price_id:
                prices[f"{tier}:{cycle}"] = price_id
    return prices


class BaseConfig:
    """Settings shared by every environment."""

    # ============================================
    # APPLICATION META
    # ============================================
    APP_NAME = os.getenv("APP_NAME", "UpEstate Billing")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    ENVIRONMENT = Environment.DEVELOPMENT.value
    DEBUG = False
    TESTING = False

    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-immediately-in-production")
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(minutes=15)
    JWT_TOKEN_LOCATION = ["headers"]
    JWT_ERROR_MESSAGE_KEY = "error"

    # ============================================
    # DATABASE
    # ============================================
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///upestate_billing.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ============================================
    # LOGGING
    # ============================================
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_REQUESTS = os.getenv("LOG_REQUESTS", "false").lower() == "true"

    # ============================================
    # OBSERVABILITY
    # ============================================
    SENTRY_DSN: Optional[str] = os.getenv("SENTRY_DSN") or None
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))
    METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"

    # ============================================
    # PAYMENT PROVIDER (STRIPE)
    # ============================================
    STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY") or None
    STRIPE_WEBHOOK_SECRET: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET") or None
    STRIPE_TIMEOUT_SECONDS = _env_int("STRIPE_TIMEOUT_SECONDS", 10)
    STRIPE_WEBHOOK_TOLERANCE = _env_int("STRIPE_WEBHOOK_TOLERANCE", 300)
    STRIPE_PRICE_IDS = load_price_ids()
    CHECKOUT_SUCCESS_URL = os.getenv(
        "CHECKOUT_SUCCESS_URL", "http://localhost:5173/subscription?checkout=success"
    )
    CHECKOUT_CANCEL_URL = os.getenv(
        "CHECKOUT_CANCEL_URL", "http://localhost:5173/subscription?checkout=cancel"
    )
    CHECKOUT_TRIAL_DAYS = _env_int("CHECKOUT_TRIAL_DAYS", 14)

    # ============================================
    # SUBSCRIPTION ENGINE
    # ============================================
    BILLING_GRACE_PERIOD_DAYS = _env_int("BILLING_GRACE_PERIOD_DAYS", 3)
    BILLING_WRITE_MAX_ATTEMPTS = _env_int("BILLING_WRITE_MAX_ATTEMPTS", 5)
    SUBSCRIPTION_LOCK_BACKEND = os.getenv("SUBSCRIPTION_LOCK_BACKEND", "local").lower()
    SUBSCRIPTION_LOCK_TIMEOUT = _env_int("SUBSCRIPTION_LOCK_TIMEOUT", 30)

    # ============================================
    # RECONCILIATION
    # ============================================
    RECONCILE_INTERVAL_MINUTES = _env_int("RECONCILE_INTERVAL_MINUTES", 15)
    RECONCILE_PERIOD_LAG_MINUTES = _env_int("RECONCILE_PERIOD_LAG_MINUTES", 60)
    RECONCILE_BATCH_SIZE = _env_int("RECONCILE_BATCH_SIZE", 200)
    RECONCILE_PENDING_AFTER_MINUTES = _env_int("RECONCILE_PENDING_AFTER_MINUTES", 30)

    # ============================================
    # CELERY / REDIS
    # ============================================
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
    CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

    @classmethod
    def validate(cls) -> None:
        if cls.SUBSCRIPTION_LOCK_BACKEND not in ("local", "redis"):
            raise ConfigurationError(
                f"SUBSCRIPTION_LOCK_BACKEND must be 'local' or 'redis', "
                f"got {cls.SUBSCRIPTION_LOCK_BACKEND!r}"
            )
        if cls.BILLING_WRITE_MAX_ATTEMPTS < 1:
            raise ConfigurationError("BILLING_WRITE_MAX_ATTEMPTS must be at least 1")
        if cls.BILLING_GRACE_PERIOD_DAYS < 0:
            raise ConfigurationError("BILLING_GRACE_PERIOD_DAYS cannot be negative")


class DevelopmentConfig(BaseConfig):
    ENVIRONMENT = Environment.DEVELOPMENT.value
    DEBUG = True


class TestingConfig(BaseConfig):
    ENVIRONMENT = Environment.TESTING.value
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URI", "sqlite:///:memory:")
    SECRET_KEY = "test-secret-key"
    JWT_SECRET_KEY = "super-secret-test-key-2024"
    SENTRY_DSN = None
    STRIPE_SECRET_KEY = None
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    STRIPE_PRICE_IDS = {
        "standard:monthly": "price_standard_monthly",
        "standard:yearly": "price_standard_yearly",
        "premium:monthly": "price_premium_monthly",
        "premium:yearly": "price_premium_yearly",
        "agency:monthly": "price_agency_monthly",
        "agency:yearly": "price_agency_yearly",
    }
    SUBSCRIPTION_LOCK_BACKEND = "local"
    BILLING_GRACE_PERIOD_DAYS = 3
    BILLING_WRITE_MAX_ATTEMPTS = 5


class ProductionConfig(BaseConfig):
    ENVIRONMENT = Environment.PRODUCTION.value
    SUBSCRIPTION_LOCK_BACKEND = os.getenv("SUBSCRIPTION_LOCK_BACKEND", "redis").lower()

    @classmethod
    def validate(cls) -> None:
        super().validate()
        if not os.getenv("SECRET_KEY"):
            raise ConfigurationError("SECRET_KEY is required in production")
        uri = os.getenv("DATABASE_URL")
        if not uri:
            raise ConfigurationError("DATABASE_URL is required in production")
        if urlparse(uri).scheme == "sqlite":
            raise ConfigurationError("SQLite is not allowed in production. Use PostgreSQL.")
        if not cls.STRIPE_SECRET_KEY:
            # Degrade instead of failing: the gateway factory logs the warning
            # and the service answers free tier only.
            warnings.warn("STRIPE_SECRET_KEY not set; provider calls are disabled")
        elif cls.STRIPE_SECRET_KEY.startswith("sk_test"):
            raise ConfigurationError("Stripe test key detected in production!")


CONFIG_BY_NAME = {
    Environment.DEVELOPMENT.value: DevelopmentConfig,
    Environment.TESTING.value: TestingConfig,
    Environment.PRODUCTION.value: ProductionConfig,
}


def get_config(config_name: Optional[str] = None):
    """Resolve a config class by name, falling back to FLASK_CONFIG / development."""
    name = (config_name or os.getenv("FLASK_CONFIG", "development")).lower()
    try:
        config = CONFIG_BY_NAME[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown configuration '{name}'. Expected one of: {', '.join(CONFIG_BY_NAME)}"
        )
    config.validate()
    return config

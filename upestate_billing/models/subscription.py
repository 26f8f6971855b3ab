# subscription.py
from sqlalchemy import CheckConstraint, Index

from upestate_billing.domain.subscriptions import SubscriptionStatus, Tier
from upestate_billing.extensions import db
from upestate_billing.utils.clock import utcnow


class Subscription(db.Model):
    """
    One row per user holding the believed entitlement state.

    `version` is the optimistic-concurrency marker: the mapper issues
    UPDATE ... WHERE id = :id AND version = :expected and raises
    StaleDataError when another writer got there first.
    """
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, unique=True, index=True)

    tier = db.Column(db.String(20), nullable=False, default=Tier.FREE.value)
    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.INACTIVE.value, index=True)

    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "tier IN ('free', 'standard', 'premium', 'agency')",
            name="valid_subscription_tier",
        ),
        CheckConstraint(
            "status IN ('inactive', 'trialing', 'active', 'past_due', 'canceled', 'incomplete')",
            name="valid_subscription_status",
        ),
        CheckConstraint(
            "tier != 'free' OR (stripe_subscription_id IS NULL AND stripe_customer_id IS NULL "
            "AND status = 'inactive')",
            name="free_tier_is_detached",
        ),
        Index("idx_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def to_dict(self, include_sensitive=False):
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "tier": self.tier,
            "status": self.status,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_sensitive:
            data.update({
                "stripe_subscription_id": self.stripe_subscription_id,
                "stripe_customer_id": self.stripe_customer_id,
            })
        return data

    def __repr__(self):
        return f"<Subscription user_id={self.user_id} tier={self.tier} status={self.status} v{self.version}>"

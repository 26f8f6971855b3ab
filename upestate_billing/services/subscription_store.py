# services/subscription_store.py
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from upestate_billing.billing.events import BillingEvent
from upestate_billing.billing.state_machine import SubscriptionState, Transition
from upestate_billing.domain.subscriptions import SubscriptionStatus, Tier
from upestate_billing.errors import SubscriptionNotFound, WriteConflictError
from upestate_billing.extensions import db
from upestate_billing.models import Subscription

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Reads and versioned writes of the local subscription record."""

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts

    @staticmethod
    def get_by_user(user_id: int) -> Optional[Subscription]:
        return Subscription.query.filter_by(user_id=user_id).first()

    @staticmethod
    def get_by_external_id(stripe_subscription_id: str) -> Optional[Subscription]:
        return Subscription.query.filter_by(stripe_subscription_id=stripe_subscription_id).first()

    @staticmethod
    def create_for_user(user_id: int) -> Subscription:
        """Create the free/inactive row for a new user; returns the existing row if any."""
        existing = SubscriptionStore.get_by_user(user_id)
        if existing is not None:
            return existing

        subscription = Subscription(
            user_id=user_id,
            tier=Tier.FREE.value,
            status=SubscriptionStatus.INACTIVE.value,
        )
        db.session.add(subscription)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return Subscription.query.filter_by(user_id=user_id).one()

        logger.info("Subscription created", extra={"user_id": user_id, "subscription_id": subscription.id})
        return subscription

    @staticmethod
    def find_for_event(event: BillingEvent) -> Subscription:
        """Resolve the local row an event refers to: external id first, then metadata user id."""
        if event.subscription_ref:
            subscription = SubscriptionStore.get_by_external_id(event.subscription_ref)
            if subscription is not None:
                return subscription

        if event.user_id is not None:
            subscription = SubscriptionStore.get_by_user(event.user_id)
            if subscription is not None:
                return subscription

        raise SubscriptionNotFound(
            f"No subscription for {event.subscription_ref or 'unknown subscription'} "
            f"(user_id={event.user_id})",
            event_id=event.external_event_id,
        )

    def apply(self, subscription_id: int,
              decide_fn: Callable[[SubscriptionState], Transition],
              before_commit: Optional[Callable[[Transition], None]] = None,
              ) -> Tuple[Subscription, Transition]:
        """
        Read the row, decide, write it back conditioned on its version.

        A lost race surfaces as StaleDataError from the versioned UPDATE; the
        row is then re-read and the decision recomputed. Unchanged states are
        not written. `before_commit` runs inside the same transaction.
        """
        for attempt in range(1, self.max_attempts + 1):
            subscription = db.session.get(Subscription, subscription_id, populate_existing=True)
            if subscription is None:
                raise SubscriptionNotFound(f"Subscription {subscription_id} disappeared")

            transition = decide_fn(SubscriptionState.from_model(subscription))
            if transition.changed:
                transition.state.apply_to(subscription)
            if before_commit is not None:
                before_commit(transition)

            try:
                db.session.commit()
            except StaleDataError:
                db.session.rollback()
                logger.warning(
                    "Subscription write lost a race; retrying",
                    extra={"subscription_id": subscription_id, "attempt": attempt},
                )
                continue

            if transition.changed:
                logger.info(
                    "Subscription transition applied",
                    extra={
                        "subscription_id": subscription_id,
                        "user_id": subscription.user_id,
                        "from_status": transition.previous.status,
                        "to_status": transition.state.status,
                        "tier": transition.state.tier,
                        "effects": list(transition.effects),
                        "version": subscription.version,
                    },
                )
            return subscription, transition

        raise WriteConflictError(
            f"Subscription {subscription_id} could not be written after {self.max_attempts} attempts"
        )

    @staticmethod
    def select_for_reconciliation(now: datetime, period_lag: timedelta, grace: timedelta,
                                  limit: int = 200) -> List[Subscription]:
        """
        Rows whose paid period ended without a later update, plus past-due
        rows whose grace window has run out.
        """
        missed_renewal = and_(
            Subscription.tier != Tier.FREE.value,
            Subscription.current_period_end < now - period_lag,
            Subscription.updated_at < Subscription.current_period_end,
        )
        grace_expired = and_(
            Subscription.status == SubscriptionStatus.PAST_DUE.value,
            Subscription.current_period_end <= now - grace,
        )
        return (
            Subscription.query
            .filter(or_(missed_renewal, grace_expired))
            .order_by(Subscription.current_period_end)
            .limit(limit)
            .all()
        )

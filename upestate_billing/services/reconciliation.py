# services/reconciliation.py
"""
Periodic convergence with the payment provider.

Webhooks can be missed or reordered, can fail, or can be left pending by a
worker that died mid-processing. This sweep re-reads the provider's view of
every suspicious subscription and overwrites the local row with it.
Provider calls happen before the subscription lock is taken.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from upestate_billing.billing.events import subscription_ref_from_payload
from upestate_billing.billing.state_machine import Transition, converge, expire
from upestate_billing.domain.subscriptions import Tier
from upestate_billing.errors import BillingError, GatewayDisabledError, ProviderSubscriptionMissing
from upestate_billing.extensions import db
from upestate_billing.models import ProcessingStatus, WebhookEvent
from upestate_billing.observability.metrics import record_reconciliation_result
from upestate_billing.observability.sentry import capture_billing_error
from upestate_billing.services.event_store import EventStore
from upestate_billing.services.subscription_store import SubscriptionStore
from upestate_billing.utils.clock import utcnow
from upestate_billing.utils.locks import subscription_lock

logger = logging.getLogger(__name__)

UNSETTLED_STATUSES = (ProcessingStatus.FAILED.value, ProcessingStatus.PENDING.value)


@dataclass
class ReconciliationReport:
    examined: int = 0
    updated: int = 0
    unchanged: int = 0
    downgraded: int = 0
    errors: int = 0
    events_superseded: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "examined": self.examined,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "downgraded": self.downgraded,
            "errors": self.errors,
            "events_superseded": self.events_superseded,
        }


@dataclass
class _Candidate:
    subscription_id: int
    external_id: Optional[str]
    event_ids: List[int] = field(default_factory=list)


class ReconciliationJob:

    def __init__(self, gateway, grace: timedelta, period_lag: timedelta,
                 batch_size: int = 200, store: SubscriptionStore = None,
                 pending_after: timedelta = timedelta(minutes=30)):
        self.gateway = gateway
        self.grace = grace
        self.period_lag = period_lag
        self.batch_size = batch_size
        self.pending_after = pending_after
        self.store = store or SubscriptionStore()

    def run(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport()
        candidates = self._candidates(now)

        logger.info("Reconciliation started", extra={"candidates": len(candidates)})

        for candidate in candidates.values():
            report.examined += 1
            try:
                self._reconcile_one(candidate, now, report)
            except BillingError as exc:
                self._record_failure(candidate, exc, report)
                logger.error(
                    "Reconciliation failed for subscription; will retry next run",
                    extra={**self._log_extra(candidate), "error_code": exc.code, "reason": exc.message},
                )
            except Exception as exc:
                self._record_failure(candidate, exc, report)
                logger.exception(
                    "Unexpected error reconciling subscription; will retry next run",
                    extra=self._log_extra(candidate),
                )

        record_reconciliation_result("updated", report.updated)
        record_reconciliation_result("unchanged", report.unchanged)
        record_reconciliation_result("downgraded", report.downgraded)
        record_reconciliation_result("error", report.errors)
        record_reconciliation_result("event_superseded", report.events_superseded)
        logger.info("Reconciliation finished", extra=report.to_dict())
        return report

    @staticmethod
    def _log_extra(candidate: _Candidate):
        return {
            "subscription_id": candidate.subscription_id,
            "stripe_subscription_id": candidate.external_id,
        }

    def _record_failure(self, candidate: _Candidate, exc: Exception, report: ReconciliationReport):
        db.session.rollback()
        report.errors += 1
        report.failures.append(f"{candidate.subscription_id} ({candidate.external_id}): {exc}")
        capture_billing_error(exc, job="reconciliation", **self._log_extra(candidate))

    def _candidates(self, now: datetime) -> Dict[int, _Candidate]:
        candidates: Dict[int, _Candidate] = {}

        for subscription in SubscriptionStore.select_for_reconciliation(
            now, self.period_lag, self.grace, limit=self.batch_size
        ):
            candidates[subscription.id] = _Candidate(subscription.id, subscription.stripe_subscription_id)

        unsettled = EventStore.failed(limit=self.batch_size)
        unsettled += EventStore.stale_pending(now - self.pending_after, limit=self.batch_size)

        for event in unsettled:
            subscription_ref, user_id = subscription_ref_from_payload(event.payload)
            subscription = None
            if subscription_ref:
                subscription = SubscriptionStore.get_by_external_id(subscription_ref)
            if subscription is None and user_id is not None:
                subscription = SubscriptionStore.get_by_user(user_id)

            if subscription is None:
                logger.warning(
                    "Unsettled webhook event matches no subscription; ignoring it",
                    extra={
                        "event_id": event.external_event_id,
                        "event_type": event.type,
                        "processing_status": event.processing_status,
                    },
                )
                EventStore.mark(event, ProcessingStatus.IGNORED, commit=True)
                continue

            candidate = candidates.get(subscription.id)
            if candidate is None:
                candidate = candidates[subscription.id] = _Candidate(
                    subscription.id, subscription.stripe_subscription_id or subscription_ref
                )
            candidate.event_ids.append(event.id)

        return candidates

    def _reconcile_one(self, candidate: _Candidate, now: datetime, report: ReconciliationReport):
        decide_fn = self._expire_only(now)
        authoritative = False
        if candidate.external_id:
            try:
                snapshot = self.gateway.fetch_subscription(candidate.external_id)
            except ProviderSubscriptionMissing:
                logger.warning(
                    "Provider has no record of subscription",
                    extra={"stripe_subscription_id": candidate.external_id},
                )
                decide_fn = self._converge(None, now)
                authoritative = True
            except GatewayDisabledError:
                logger.info(
                    "Gateway disabled; applying local expiry only",
                    extra={"subscription_id": candidate.subscription_id},
                )
            else:
                decide_fn = self._converge(snapshot, now)
                authoritative = True

        superseded = []

        def supersede_events(transition: Transition):
            superseded.clear()
            if not authoritative:
                return
            for event_id in candidate.event_ids:
                event = db.session.get(WebhookEvent, event_id)
                if event is not None and event.processing_status in UNSETTLED_STATUSES:
                    EventStore.mark(event, ProcessingStatus.IGNORED)
                    superseded.append(event.external_event_id)

        with subscription_lock(candidate.subscription_id):
            _, transition = self.store.apply(
                candidate.subscription_id, decide_fn, before_commit=supersede_events
            )

        report.events_superseded += len(superseded)
        if transition.changed:
            report.updated += 1
            if transition.state.tier == Tier.FREE.value and transition.previous.tier != Tier.FREE.value:
                report.downgraded += 1
        else:
            report.unchanged += 1

    def _converge(self, snapshot, now: datetime):
        def decide_fn(current):
            return converge(current, snapshot, now, self.grace)
        return decide_fn

    def _expire_only(self, now: datetime):
        def decide_fn(current):
            state, effects = expire(current, now, self.grace)
            return Transition(current, state, effects)
        return decide_fn

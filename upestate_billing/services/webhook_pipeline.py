# services/webhook_pipeline.py
"""
Webhook ingestion: verify -> persist (dedup) -> decide -> write -> mark.

Every notification that passes signature and envelope checks is stored
before anything else happens, so a crash mid-processing leaves a pending or
failed row for replay and reconciliation.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from upestate_billing.billing.events import parse_envelope, to_billing_event
from upestate_billing.billing.state_machine import Transition, decide
from upestate_billing.errors import (
    BillingError,
    EventNotFound,
    InvalidTransition,
    MalformedEventError,
    WebhookSignatureError,
)
from upestate_billing.models import ProcessingStatus, WebhookEvent
from upestate_billing.observability.metrics import record_webhook_outcome
from upestate_billing.observability.sentry import capture_billing_error
from upestate_billing.services.event_store import EventStore
from upestate_billing.services.subscription_store import SubscriptionStore
from upestate_billing.utils.clock import utcnow
from upestate_billing.utils.locks import subscription_lock

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
DUPLICATE = "duplicate"
INVALID_TRANSITION = "invalid_transition"
FAILED = "failed"


@dataclass(frozen=True)
class IngestResult:
    outcome: str
    external_event_id: str
    event_type: str
    subscription_id: Optional[int] = None
    effects: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self):
        return {
            "received": True,
            "status": self.outcome,
            "event_id": self.external_event_id,
        }


class WebhookPipeline:

    def __init__(self, gateway, price_ids: Mapping[str, str], store: SubscriptionStore = None):
        self.gateway = gateway
        self.store = store or SubscriptionStore()
        self.price_tiers = {price: key.split(":", 1)[0] for key, price in price_ids.items()}

    def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> IngestResult:
        if not self.gateway.verify_signature(raw_body, signature_header):
            record_webhook_outcome("unknown", "invalid_signature")
            raise WebhookSignatureError()

        event_id, event_type, data_object = parse_envelope(raw_body)
        log_extra = {"event_id": event_id, "event_type": event_type}

        record, created = EventStore.record(event_id, event_type, raw_body.decode("utf-8"))
        if not created:
            if record.processing_status == ProcessingStatus.FAILED.value and EventStore.reclaim_failed(event_id):
                logger.info("Retrying previously failed webhook event", extra=log_extra)
            else:
                record_webhook_outcome(event_type, DUPLICATE)
                return IngestResult(DUPLICATE, event_id, event_type)

        logger.info("Webhook event accepted", extra=log_extra)
        return self._process(record, event_type, data_object)

    def replay(self, external_event_id: str) -> IngestResult:
        """
        Re-run a stored failed event. The payload was verified when it was
        first received, so no signature is checked.
        """
        record = EventStore.get(external_event_id)
        if record is None:
            raise EventNotFound(f"No stored event {external_event_id}", event_id=external_event_id)
        if record.processing_status != ProcessingStatus.FAILED.value:
            return IngestResult(DUPLICATE, external_event_id, record.type)
        if not EventStore.reclaim_failed(external_event_id):
            return IngestResult(DUPLICATE, external_event_id, record.type)

        record = EventStore.get(external_event_id)
        _, event_type, data_object = parse_envelope(record.payload.encode("utf-8"))
        logger.info("Replaying webhook event", extra={"event_id": external_event_id, "event_type": event_type})
        return self._process(record, event_type, data_object)

    def _process(self, record: WebhookEvent, event_type: str, data_object) -> IngestResult:
        event_id = record.external_event_id
        log_extra = {"event_id": event_id, "event_type": event_type}

        try:
            billing_event = to_billing_event(event_id, event_type, data_object, self.price_tiers)
        except MalformedEventError:
            logger.warning("Webhook event payload could not be interpreted", extra=log_extra, exc_info=True)
            EventStore.mark_failed(event_id)
            record_webhook_outcome(event_type, FAILED)
            raise

        if billing_event is None:
            EventStore.mark(record, ProcessingStatus.IGNORED, commit=True)
            record_webhook_outcome(event_type, IGNORED)
            logger.info("Webhook event type not handled; ignored", extra=log_extra)
            return IngestResult(IGNORED, event_id, event_type)

        def mark_event(transition: Transition):
            status = ProcessingStatus.PROCESSED if transition.changed else ProcessingStatus.IGNORED
            EventStore.mark(record, status)

        try:
            subscription = SubscriptionStore.find_for_event(billing_event)
            log_extra["subscription_id"] = subscription.id
            with subscription_lock(subscription.id):
                subscription, transition = self.store.apply(
                    subscription.id,
                    lambda current: decide(current, billing_event, utcnow()),
                    before_commit=mark_event,
                )
        except InvalidTransition as exc:
            EventStore.mark_failed(event_id)
            logger.warning(
                "Webhook event rejected by state machine",
                extra={**log_extra, "current_status": exc.current_status, "reason": exc.message},
            )
            record_webhook_outcome(event_type, INVALID_TRANSITION)
            return IngestResult(INVALID_TRANSITION, event_id, event_type, log_extra.get("subscription_id"))
        except BillingError as exc:
            EventStore.mark_failed(event_id)
            logger.error(
                "Webhook event processing failed",
                extra={**log_extra, "error_code": exc.code, "reason": exc.message},
            )
            record_webhook_outcome(event_type, FAILED)
            capture_billing_error(exc, event_id=event_id, event_type=event_type, error_code=exc.code)
            raise
        except Exception as exc:
            EventStore.mark_failed(event_id)
            logger.exception("Unexpected error processing webhook event", extra=log_extra)
            record_webhook_outcome(event_type, FAILED)
            capture_billing_error(exc, event_id=event_id, event_type=event_type)
            raise

        outcome = PROCESSED if transition.changed else IGNORED
        record_webhook_outcome(event_type, outcome)
        logger.info(
            "Webhook event handled",
            extra={**log_extra, "outcome": outcome, "effects": list(transition.effects)},
        )
        return IngestResult(outcome, event_id, event_type, subscription.id, transition.effects)

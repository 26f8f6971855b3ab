# services/event_store.py
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from upestate_billing.extensions import db
from upestate_billing.models import ProcessingStatus, WebhookEvent
from upestate_billing.utils.clock import utcnow

logger = logging.getLogger(__name__)


class EventStore:
    """
    Durable log of provider notifications.

    Deduplication relies solely on the unique constraint on
    external_event_id: the insert either wins or raises IntegrityError.
    """

    @staticmethod
    def get(external_event_id: str) -> Optional[WebhookEvent]:
        return WebhookEvent.query.filter_by(external_event_id=external_event_id).first()

    @staticmethod
    def record(external_event_id: str, event_type: str, payload: str) -> Tuple[WebhookEvent, bool]:
        """
        Persist a notification as pending. Returns (event, created); created is
        False when the id was already stored.
        """
        event = WebhookEvent(
            external_event_id=external_event_id,
            type=event_type,
            payload=payload,
            processing_status=ProcessingStatus.PENDING.value,
        )
        db.session.add(event)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = WebhookEvent.query.filter_by(external_event_id=external_event_id).one()
            logger.info(
                "Duplicate webhook event",
                extra={"event_id": external_event_id, "processing_status": existing.processing_status},
            )
            return existing, False
        return event, True

    @staticmethod
    def reclaim_failed(external_event_id: str) -> bool:
        """
        Atomically move a failed event back to pending so a redelivery can
        retry it. Only one concurrent caller can win.
        """
        result = db.session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.external_event_id == external_event_id,
                WebhookEvent.processing_status == ProcessingStatus.FAILED.value,
            )
            .values(processing_status=ProcessingStatus.PENDING.value, processed_at=None)
            .execution_options(synchronize_session="fetch")
        )
        db.session.commit()
        return result.rowcount == 1

    @staticmethod
    def mark(event: WebhookEvent, status: ProcessingStatus, commit: bool = False) -> WebhookEvent:
        event.processing_status = status.value
        event.processed_at = utcnow()
        if commit:
            db.session.commit()
        return event

    @staticmethod
    def mark_failed(external_event_id: str) -> None:
        """Record a processing failure in its own transaction."""
        db.session.rollback()
        event = WebhookEvent.query.filter_by(external_event_id=external_event_id).first()
        if event is not None:
            EventStore.mark(event, ProcessingStatus.FAILED, commit=True)

    @staticmethod
    def failed(limit: int = 200) -> List[WebhookEvent]:
        return (
            WebhookEvent.query
            .filter_by(processing_status=ProcessingStatus.FAILED.value)
            .order_by(WebhookEvent.received_at)
            .limit(limit)
            .all()
        )

    @staticmethod
    def stale_pending(received_before: datetime, limit: int = 200) -> List[WebhookEvent]:
        """Events still pending since before the cutoff; their worker never finished them."""
        return (
            WebhookEvent.query
            .filter(
                WebhookEvent.processing_status == ProcessingStatus.PENDING.value,
                WebhookEvent.received_at < received_before,
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
            .all()
        )

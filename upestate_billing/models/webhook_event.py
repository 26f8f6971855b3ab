from enum import Enum

from sqlalchemy import CheckConstraint, Index

from upestate_billing.extensions import db
from upestate_billing.utils.clock import utcnow


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebhookEvent(db.Model):
    """
    Append-only record of every provider notification we accepted.

    The unique constraint on external_event_id is the deduplication
    mechanism; rows are only ever updated to set processed_at and
    processing_status.
    """
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    external_event_id = db.Column(db.String(255), nullable=False, unique=True)
    type = db.Column(db.String(100), nullable=False, index=True)
    payload = db.Column(db.Text, nullable=False)
    received_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    processing_status = db.Column(
        db.String(20), nullable=False, default=ProcessingStatus.PENDING.value
    )

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed', 'ignored')",
            name="valid_processing_status",
        ),
        Index("idx_webhook_events_status_received", "processing_status", "received_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "external_event_id": self.external_event_id,
            "type": self.type,
            "processing_status": self.processing_status,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }

    def __repr__(self):
        return f"<WebhookEvent {self.external_event_id} {self.type} {self.processing_status}>"

"""create webhook_events

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

Append-only log of provider notifications; the unique external_event_id
is the deduplication key.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.UniqueConstraint("external_event_id", name="uq_webhook_events_external_event_id"),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed', 'ignored')",
            name="valid_processing_status",
        ),
    )
    op.create_index("ix_webhook_events_type", "webhook_events", ["type"], unique=False)
    op.create_index(
        "idx_webhook_events_status_received", "webhook_events", ["processing_status", "received_at"], unique=False
    )


def downgrade():
    op.drop_index("idx_webhook_events_status_received", table_name="webhook_events")
    op.drop_index("ix_webhook_events_type", table_name="webhook_events")
    op.drop_table("webhook_events")

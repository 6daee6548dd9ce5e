"""
WebhookEvent model for tracking processed provider webhooks.

Used for idempotency - ensures webhooks are processed exactly once.
"""

from sqlalchemy import Column, String, DateTime, Index, func

from creditgate.db_base import Base
from creditgate.models.base import generate_uuid, utcnow


class WebhookEvent(Base):
    """
    Tracks processed provider webhook events for deduplication.

    Providers may deliver webhooks multiple times. This table ensures
    each unique event is processed exactly once.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider event ID (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Event type (e.g., invoice.paid)"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the webhook was processed"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="When the record was created"
    )

    __table_args__ = (
        Index(
            "idx_webhook_events_processed",
            "processed_at",
            postgresql_ops={"processed_at": "DESC"}
        ),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.id}, event_id={self.provider_event_id}, type={self.event_type})>"

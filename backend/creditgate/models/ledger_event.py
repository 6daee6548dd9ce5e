"""
LedgerEvent model - append-only credit history.

CRITICAL: Rows are never updated or deleted. Refunds are new rows.
Balance for an identity = SUM(credits_delta).
"""

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Index

from creditgate.db_base import Base
from creditgate.models.base import generate_uuid, utcnow


class LedgerEventType:
    """Ledger event kinds."""
    PURCHASE = "credit_purchase"
    CONSUMPTION = "credit_used"
    REFUND = "credit_refund"

    ALL = (PURCHASE, CONSUMPTION, REFUND)


# Display names used by transaction history
LEDGER_EVENT_DISPLAY_TYPES = {
    LedgerEventType.PURCHASE: "purchase",
    LedgerEventType.CONSUMPTION: "usage",
    LedgerEventType.REFUND: "refund",
}


class LedgerEvent(Base):
    """Immutable credit change for one identity."""

    __tablename__ = "ledger_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    identity_id = Column(
        String(36),
        ForeignKey("identities.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    event_type = Column(
        String(32),
        nullable=False,
        comment="credit_purchase, credit_used or credit_refund"
    )

    credits_delta = Column(
        Integer,
        nullable=False,
        comment="Signed delta: positive for additions, negative for consumption"
    )

    transaction_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider transaction id used by callers for idempotency (not unique)"
    )

    event_metadata = Column(
        JSON,
        nullable=True,
        comment="Free-form metadata (request id, source, provider ids)"
    )

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True
    )

    __table_args__ = (
        Index("idx_ledger_events_identity_created", "identity_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEvent(id={self.id}, identity_id={self.identity_id}, "
            f"type={self.event_type}, delta={self.credits_delta})>"
        )

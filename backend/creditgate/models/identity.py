"""
Identity model - the billable party behind credits and subscriptions.

Identities are keyed by a normalized email address, created lazily on
first reference and never deleted.

credits_balance is a cached hint only. The authoritative balance is the
signed sum of ledger_events for the identity.
"""

from sqlalchemy import Column, String, Integer

from creditgate.db_base import Base
from creditgate.models.base import TimestampMixin, generate_uuid


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address for identity lookup."""
    return (email or "").strip().lower()


class Identity(Base, TimestampMixin):
    """Billable identity keyed by normalized email."""

    __tablename__ = "identities"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    email = Column(
        String(320),
        nullable=False,
        unique=True,
        index=True,
        comment="Normalized (trimmed, lower-cased) email address"
    )

    credits_balance = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Cached balance hint; ledger_events is authoritative"
    )

    schema_version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Record layout stamp, unrelated to credits"
    )

    def __repr__(self) -> str:
        return f"<Identity(id={self.id}, email={self.email})>"

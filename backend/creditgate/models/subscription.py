"""
Subscription model - one row per (identity, product).

Rows are upserted from provider webhooks and never deleted, so the
latest provider snapshot is always what is stored.
"""

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, ForeignKey, UniqueConstraint
)

from creditgate.db_base import Base
from creditgate.models.base import TimestampMixin, generate_uuid


class Subscription(Base, TimestampMixin):
    """Provider subscription snapshot for an identity and product."""

    __tablename__ = "subscriptions"

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

    product = Column(
        String(64),
        nullable=False,
        comment="Product slug the subscription applies to"
    )

    plan = Column(
        String(32),
        nullable=False,
        default="free"
    )

    status = Column(
        String(32),
        nullable=False,
        comment="Raw provider status string (normalized on read)"
    )

    provider_subscription_id = Column(String(255), nullable=True, index=True)
    provider_customer_id = Column(String(255), nullable=True)
    provider_price_id = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    renews_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)

    provider_metadata = Column(
        JSON,
        nullable=True,
        comment="Snapshot of provider metadata at last sync"
    )

    __table_args__ = (
        UniqueConstraint("identity_id", "product", name="uq_subscriptions_identity_product"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(identity_id={self.identity_id}, product={self.product}, "
            f"plan={self.plan}, status={self.status})>"
        )

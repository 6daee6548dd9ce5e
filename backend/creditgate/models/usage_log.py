"""
UsageLog model - tenant-scoped consumption records.

Free-tier and license usage for a period is the sum of units logged
for the site (or for every site sharing a license).
"""

from sqlalchemy import Column, String, Integer, DateTime, Index

from creditgate.db_base import Base
from creditgate.models.base import generate_uuid, utcnow


class UsageLog(Base):
    """One consumption event against a site's quota."""

    __tablename__ = "usage_logs"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    site_hash = Column(String(255), nullable=False, index=True)
    identity_id = Column(String(36), nullable=True, index=True)
    license_key = Column(String(255), nullable=True)

    quota_source = Column(
        String(32),
        nullable=False,
        comment="Quota source that granted the consumption"
    )

    units = Column(Integer, nullable=False, default=1)
    endpoint = Column(String(255), nullable=True)
    request_id = Column(String(255), nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        Index("idx_usage_logs_site_created", "site_hash", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<UsageLog(site_hash={self.site_hash}, units={self.units}, source={self.quota_source})>"

"""
Site model - anonymous or license-attached consumption context.

A site is identified by a stable hash sent by the consuming client.
"""

from sqlalchemy import Column, String, Integer

from creditgate.db_base import Base
from creditgate.models.base import TimestampMixin, generate_uuid


class Site(Base, TimestampMixin):
    """Tenant record keyed by site hash."""

    __tablename__ = "sites"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    site_hash = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True
    )

    site_url = Column(String(1024), nullable=True)

    product = Column(String(64), nullable=False)

    license_key = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Attached license key, if any"
    )

    plan = Column(String(32), nullable=False, default="free")

    token_limit = Column(
        Integer,
        nullable=False,
        comment="Monthly allowance for the free tier or attached license"
    )

    def __repr__(self) -> str:
        return f"<Site(site_hash={self.site_hash}, plan={self.plan}, license_key={self.license_key})>"

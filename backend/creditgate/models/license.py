"""
License model - maps a license key to a plan and monthly limit.

A license may be shared across many sites of one organization.
"""

from sqlalchemy import Column, String, Integer

from creditgate.db_base import Base
from creditgate.models.base import TimestampMixin, generate_uuid


class LicenseStatus:
    """License status values."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class License(Base, TimestampMixin):
    """License key record."""

    __tablename__ = "licenses"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    license_key = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True
    )

    product = Column(String(64), nullable=False)
    plan = Column(String(32), nullable=False)
    token_limit = Column(Integer, nullable=False)
    status = Column(String(32), nullable=False, default=LicenseStatus.ACTIVE)

    owner_email = Column(String(320), nullable=True, index=True)
    organization_id = Column(String(36), nullable=True, index=True)

    provider_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Provider subscription that created this license"
    )
    provider_customer_id = Column(String(255), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == LicenseStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<License(key={self.license_key}, plan={self.plan}, status={self.status})>"

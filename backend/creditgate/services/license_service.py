"""
License records.

Licenses are created by subscription checkouts and looked up by key during
resolution. Creation is idempotent on the provider subscription id.
"""

import logging
import secrets
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog
from creditgate.models.license import License, LicenseStatus

logger = logging.getLogger(__name__)


def generate_license_key() -> str:
    """Random license key in XXXX-XXXX-XXXX-XXXX form."""
    raw = secrets.token_hex(8).upper()
    return "-".join(raw[i:i + 4] for i in range(0, 16, 4))


class LicenseService:
    """License lookup and creation."""

    def __init__(self, db_session: Session, catalog: Optional[PlanCatalogLoader] = None):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()

    def get(self, license_key: str) -> Optional[License]:
        if not license_key:
            return None
        return self.db.query(License).filter(License.license_key == license_key).first()

    def get_by_provider_subscription(self, provider_subscription_id: str) -> Optional[License]:
        return self.db.query(License).filter(
            License.provider_subscription_id == provider_subscription_id
        ).first()

    def create_for_subscription(
        self,
        provider_subscription_id: str,
        plan: str,
        product: Optional[str] = None,
        owner_email: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> License:
        """
        Create the license for a provider subscription, or return the
        existing one if this subscription already produced a license.
        """
        existing = self.get_by_provider_subscription(provider_subscription_id)
        if existing:
            logger.info(
                "License already exists for subscription",
                extra={"provider_subscription_id": provider_subscription_id},
            )
            return existing

        product = product or self.catalog.default_product
        limits = self.catalog.get_plan_limits(plan, product)
        token_limit = limits.tokens if limits else (self.catalog.get_free_limit(product) or 0)

        license_record = License(
            license_key=generate_license_key(),
            product=product,
            plan=plan,
            token_limit=token_limit,
            status=LicenseStatus.ACTIVE,
            owner_email=owner_email,
            organization_id=organization_id,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
        )
        self.db.add(license_record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_by_provider_subscription(provider_subscription_id)
            if existing is None:
                raise
            return existing

        logger.info(
            "License created",
            extra={
                "license_key": license_record.license_key,
                "plan": plan,
                "product": product,
                "provider_subscription_id": provider_subscription_id,
            },
        )
        return license_record

    def set_status(self, license_record: License, status: str) -> License:
        license_record.status = status
        self.db.commit()
        logger.info(
            "License status changed",
            extra={"license_key": license_record.license_key, "status": status},
        )
        return license_record

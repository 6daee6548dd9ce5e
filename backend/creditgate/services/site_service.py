"""
Site (tenant) records and their period usage.

Sites are created on first contact, keyed by site hash, with the
product's free allowance. Usage is read from usage_logs for the current
calendar month (UTC).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, date
from typing import Optional, List

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog, FREE_PLAN
from creditgate.models.site import Site
from creditgate.models.usage_log import UsageLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsagePeriod:
    """Calendar-month usage window."""
    start: datetime
    end: datetime

    @property
    def reset_date(self) -> date:
        return self.end.date()


def current_period(now: Optional[datetime] = None) -> UsagePeriod:
    """The calendar month containing now; resets on the 1st (UTC)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)

    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return UsagePeriod(start=start, end=end)


class SiteService:
    """Site lookup, creation and usage accounting."""

    def __init__(self, db_session: Session, catalog: Optional[PlanCatalogLoader] = None):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()

    def get(self, site_hash: str) -> Optional[Site]:
        return self.db.query(Site).filter(Site.site_hash == site_hash).first()

    def get_or_create(
        self,
        site_hash: str,
        product: Optional[str] = None,
        site_url: Optional[str] = None,
    ) -> Site:
        """Return the site for a hash, creating it with free-tier limits."""
        site = self.get(site_hash)
        if site:
            return site

        product = product or self.catalog.default_product
        free_limit = self.catalog.get_free_limit(product)
        site = Site(
            site_hash=site_hash,
            site_url=site_url,
            product=product,
            plan=FREE_PLAN,
            token_limit=free_limit if free_limit is not None else 0,
        )
        self.db.add(site)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            site = self.get(site_hash)
            if site is None:
                raise
            return site

        logger.info(
            "Site created",
            extra={"site_hash": site_hash, "product": product, "token_limit": site.token_limit},
        )
        return site

    def attach_license(self, site: Site, license_key: str, plan: str, token_limit: int) -> Site:
        """Point a site at a license, updating its plan and limit in place."""
        previous_key = site.license_key
        site.license_key = license_key
        site.plan = plan
        site.token_limit = token_limit
        self.db.commit()

        logger.info(
            "License attached to site",
            extra={
                "site_hash": site.site_hash,
                "previous_license": previous_key,
                "license_key": license_key,
                "plan": plan,
            },
        )
        return site

    def detach_license(self, site: Site) -> Site:
        """Return a site to its product's free allowance."""
        previous_key = site.license_key
        free_limit = self.catalog.get_free_limit(site.product)
        site.license_key = None
        site.plan = FREE_PLAN
        site.token_limit = free_limit if free_limit is not None else 0
        self.db.commit()

        logger.info(
            "License detached from site",
            extra={"site_hash": site.site_hash, "previous_license": previous_key},
        )
        return site

    def sites_for_license(self, license_key: str) -> List[str]:
        rows = self.db.query(Site.site_hash).filter(Site.license_key == license_key).all()
        return [row[0] for row in rows]

    def get_usage(self, site_hashes: List[str], period: UsagePeriod) -> int:
        """Units consumed by the given sites within the period."""
        if not site_hashes:
            return 0
        total = self.db.query(func.coalesce(func.sum(UsageLog.units), 0)).filter(
            UsageLog.site_hash.in_(site_hashes),
            UsageLog.created_at >= period.start,
            UsageLog.created_at < period.end,
        ).scalar()
        return int(total or 0)

    def record_usage(
        self,
        site_hash: str,
        units: int,
        quota_source: str,
        identity_id: Optional[str] = None,
        license_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> UsageLog:
        log = UsageLog(
            site_hash=site_hash,
            units=units,
            quota_source=quota_source,
            identity_id=identity_id,
            license_key=license_key,
            endpoint=endpoint,
            request_id=request_id,
        )
        self.db.add(log)
        self.db.commit()
        return log

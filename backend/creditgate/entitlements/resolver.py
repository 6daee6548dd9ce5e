"""
Entitlement Resolver - picks the single quota source for a request.

Resolution is an ordered list of strategies. Each returns a Resolution or
None; the first Resolution wins. Default order:

1. SkipListStrategy      - operator-configured site hashes, always unlimited
2. LicenseStrategy       - presented or attached license key
3. SubscriptionStrategy  - verified identity with an active/trial plan
4. FreeTierStrategy      - the site's own monthly allowance

Upgrade changes the ceiling, never the floor: when an account plan
applies to a site, the site's logged usage is kept and a site that has
already exhausted its free allowance stays at remaining=0.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from creditgate.entitlements.errors import MissingTenantIdError, QuotaSourceUnresolvableError
from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog
from creditgate.entitlements.subscription_state import grants_access, plan_limits
from creditgate.models.identity import Identity
from creditgate.models.site import Site
from creditgate.services.license_service import LicenseService
from creditgate.services.site_service import SiteService, UsagePeriod, current_period
from creditgate.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class QuotaSource:
    """Quota source identifiers."""
    SKIP = "skip"
    LICENSE = "license"
    SUBSCRIPTION = "subscription"
    FREE = "free"


@dataclass
class ResolutionContext:
    """Inputs shared by every strategy for one request."""
    tenant_hash: str
    site: Site
    period: UsagePeriod
    now: datetime
    license_key: Optional[str] = None
    identity: Optional[Identity] = None
    requested_units: int = 1


@dataclass
class Resolution:
    """Resolved entitlement for one request."""
    quota_source: str
    plan: str
    used: int
    limit: Optional[int]
    remaining: Optional[int]
    reset_date: str
    unlimited: bool = False
    requested_units: int = 1
    license_key: Optional[str] = None

    @property
    def allowed(self) -> bool:
        if self.unlimited:
            return True
        return (self.remaining or 0) >= self.requested_units

    def to_payload(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "plan": self.plan,
            "resetDate": self.reset_date,
            "quotaSource": self.quota_source,
            "unlimited": self.unlimited,
        }


def _limited(source: str, plan: str, used: int, limit: int, ctx: ResolutionContext,
             remaining: Optional[int] = None, license_key: Optional[str] = None) -> Resolution:
    if remaining is None:
        remaining = max(0, limit - used)
    return Resolution(
        quota_source=source,
        plan=plan,
        used=used,
        limit=limit,
        remaining=remaining,
        reset_date=ctx.period.reset_date.isoformat(),
        requested_units=ctx.requested_units,
        license_key=license_key,
    )


def _unlimited(source: str, plan: str, used: int, ctx: ResolutionContext,
               license_key: Optional[str] = None) -> Resolution:
    return Resolution(
        quota_source=source,
        plan=plan,
        used=used,
        limit=None,
        remaining=None,
        reset_date=ctx.period.reset_date.isoformat(),
        unlimited=True,
        requested_units=ctx.requested_units,
        license_key=license_key,
    )


class ResolverStrategy:
    """One quota source. Returns None when it does not apply."""

    name = "base"

    def resolve(self, ctx: ResolutionContext) -> Optional[Resolution]:
        raise NotImplementedError


class SkipListStrategy(ResolverStrategy):
    """Site hashes exempt from quota checks."""

    name = QuotaSource.SKIP

    def __init__(self, site_service: SiteService, site_hashes: List[str]):
        self.site_service = site_service
        self.site_hashes = frozenset(site_hashes or [])

    def resolve(self, ctx: ResolutionContext) -> Optional[Resolution]:
        if ctx.tenant_hash not in self.site_hashes:
            return None
        used = self.site_service.get_usage([ctx.tenant_hash], ctx.period)
        return _unlimited(QuotaSource.SKIP, ctx.site.plan, used, ctx)


class LicenseStrategy(ResolverStrategy):
    """Presented or attached license key."""

    name = QuotaSource.LICENSE

    def __init__(self, license_service: LicenseService, site_service: SiteService,
                 catalog: PlanCatalogLoader):
        self.license_service = license_service
        self.site_service = site_service
        self.catalog = catalog

    def _usable_license(self, ctx: ResolutionContext):
        """Presented key first, then the key already attached to the site."""
        candidates = []
        for key in (ctx.license_key, ctx.site.license_key):
            if key and key not in candidates:
                candidates.append(key)

        for key in candidates:
            license_record = self.license_service.get(key)
            if license_record is not None and license_record.is_active:
                return license_record
            logger.info(
                "License not usable",
                extra={
                    "site_hash": ctx.tenant_hash,
                    "license_key": key,
                    "found": license_record is not None,
                },
            )
            if ctx.site.license_key == key:
                # Stored limit came from the license; drop back to free
                self.site_service.detach_license(ctx.site)
        return None

    def resolve(self, ctx: ResolutionContext) -> Optional[Resolution]:
        license_record = self._usable_license(ctx)
        if license_record is None:
            return None

        if ctx.site.license_key != license_record.license_key:
            self.site_service.attach_license(
                ctx.site,
                license_record.license_key,
                license_record.plan,
                license_record.token_limit,
            )

        site_hashes = self.site_service.sites_for_license(license_record.license_key)
        if ctx.tenant_hash not in site_hashes:
            site_hashes.append(ctx.tenant_hash)
        used = self.site_service.get_usage(site_hashes, ctx.period)

        limits = plan_limits(license_record.plan, license_record.product, self.catalog)
        if limits.unlimited:
            return _unlimited(QuotaSource.LICENSE, license_record.plan, used, ctx,
                              license_key=license_record.license_key)
        return _limited(QuotaSource.LICENSE, license_record.plan, used,
                        license_record.token_limit, ctx,
                        license_key=license_record.license_key)


class SubscriptionStrategy(ResolverStrategy):
    """Verified identity with an active or trialing subscription."""

    name = QuotaSource.SUBSCRIPTION

    def __init__(self, subscription_service: SubscriptionService, site_service: SiteService):
        self.subscription_service = subscription_service
        self.site_service = site_service

    def resolve(self, ctx: ResolutionContext) -> Optional[Resolution]:
        if ctx.identity is None:
            return None

        view = self.subscription_service.get_status(ctx.identity.id, ctx.site.product, now=ctx.now)
        if not grants_access(view.status):
            return None

        used = self.site_service.get_usage([ctx.tenant_hash], ctx.period)

        if view.unlimited:
            return _unlimited(QuotaSource.SUBSCRIPTION, view.plan, used, ctx)

        account_limit = view.limit or 0
        free_limit = ctx.site.token_limit or 0
        limit = max(account_limit, free_limit)

        # Floor: an exhausted free allowance is not lifted by the account plan
        if free_limit > 0 and used >= free_limit:
            remaining = 0
        else:
            remaining = max(0, limit - used)

        return _limited(QuotaSource.SUBSCRIPTION, view.plan, used, limit, ctx, remaining=remaining)


class FreeTierStrategy(ResolverStrategy):
    """The site's own monthly allowance."""

    name = QuotaSource.FREE

    def __init__(self, site_service: SiteService, catalog: PlanCatalogLoader):
        self.site_service = site_service
        self.catalog = catalog

    def resolve(self, ctx: ResolutionContext) -> Optional[Resolution]:
        # Unknown product with no stored allowance
        if not ctx.site.token_limit and self.catalog.get_free_limit(ctx.site.product) is None:
            return None
        used = self.site_service.get_usage([ctx.tenant_hash], ctx.period)
        return _limited(QuotaSource.FREE, ctx.site.plan or "free", used, ctx.site.token_limit, ctx)


class EntitlementResolver:
    """
    Runs the strategy list for a request.

    Usage:
        resolver = EntitlementResolver(db)
        resolution = resolver.resolve("site-hash", license_key=None, identity=identity)
    """

    def __init__(
        self,
        db_session: Session,
        catalog: Optional[PlanCatalogLoader] = None,
        strategies: Optional[List[ResolverStrategy]] = None,
        skip_site_hashes: Optional[List[str]] = None,
    ):
        self.db = db_session
        self.catalog = catalog or get_plan_catalog()
        self.site_service = SiteService(db_session, self.catalog)
        self.license_service = LicenseService(db_session, self.catalog)
        self.subscription_service = SubscriptionService(db_session, self.catalog)

        if strategies is None:
            strategies = [
                SkipListStrategy(self.site_service, skip_site_hashes or []),
                LicenseStrategy(self.license_service, self.site_service, self.catalog),
                SubscriptionStrategy(self.subscription_service, self.site_service),
                FreeTierStrategy(self.site_service, self.catalog),
            ]
        self.strategies = strategies

    def resolve(
        self,
        tenant_hash: Optional[str],
        license_key: Optional[str] = None,
        identity: Optional[Identity] = None,
        requested_units: int = 1,
        product: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """
        Resolve the quota source for a request.

        Raises:
            MissingTenantIdError: If tenant_hash is empty
            QuotaSourceUnresolvableError: If no strategy applies
        """
        tenant_hash = (tenant_hash or "").strip()
        if not tenant_hash:
            raise MissingTenantIdError()

        period = current_period(now)
        site = self.site_service.get_or_create(tenant_hash, product=product)
        ctx = ResolutionContext(
            tenant_hash=tenant_hash,
            site=site,
            period=period,
            now=now or datetime.now(timezone.utc),
            license_key=(license_key or "").strip() or None,
            identity=identity,
            requested_units=requested_units,
        )

        for strategy in self.strategies:
            resolution = strategy.resolve(ctx)
            if resolution is not None:
                logger.debug(
                    "Quota source resolved",
                    extra={
                        "site_hash": tenant_hash,
                        "quota_source": resolution.quota_source,
                        "plan": resolution.plan,
                        "remaining": resolution.remaining,
                    },
                )
                return resolution

        logger.warning("No quota source applies", extra={"site_hash": tenant_hash})
        raise QuotaSourceUnresolvableError(tenant_hash)

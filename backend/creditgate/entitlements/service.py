"""
Entitlement service - request-facing facade over the resolver, the credit
ledger and the response cache.

Provides:
- check_usage: cached entitlement check for polling clients
- consume: record one unit of work against the resolved quota source,
  falling back to credits when the quota is exhausted
- evaluate_access: allow/deny decision for an account (credits override)
- get_subscription_status / get_dashboard: cached read models

CRITICAL: Entitlement decisions fail closed. A store failure during a
check raises UsageError; it never yields an allowed result.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from creditgate.config.settings import get_settings
from creditgate.entitlements.cache import ResponseCache, CacheNamespace
from creditgate.entitlements.errors import (
    InsufficientCreditsError,
    QuotaExceededError,
    UsageError,
)
from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog, FREE_PLAN
from creditgate.entitlements.resolver import EntitlementResolver, Resolution
from creditgate.entitlements.subscription_state import SubscriptionStatusView
from creditgate.models.identity import Identity
from creditgate.services.credit_ledger import CreditLedger, KeyedLockRegistry, SpendResult
from creditgate.services.identity_service import IdentityService
from creditgate.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Serializes the quota check and the usage insert per site within a process.
# Concurrent consumers on different instances can still overshoot a limit
# by their in-flight units.
_site_locks = KeyedLockRegistry()

NO_ACCESS = "NO_ACCESS"


class AccessReason:
    """Machine-readable denial reasons."""
    NO_IDENTITY = "no_identity"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


_DENIAL_MESSAGES = {
    AccessReason.NO_IDENTITY: "Sign in to continue.",
    AccessReason.NO_SUBSCRIPTION: "No active subscription found. Please subscribe to continue.",
    AccessReason.SUBSCRIPTION_INACTIVE: "Your subscription is inactive. Please renew to continue.",
}


@dataclass
class AccessDecision:
    """Allow/deny decision."""
    allowed: bool
    reason: Optional[str] = None
    via: Optional[str] = None

    @classmethod
    def allow(cls, via: str) -> "AccessDecision":
        return cls(allowed=True, via=via)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        return cls(allowed=False, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        if self.allowed:
            return {"allowed": True, "via": self.via}
        return {
            "allowed": False,
            "code": NO_ACCESS,
            "reason": self.reason,
            "message": _DENIAL_MESSAGES.get(
                self.reason, "Your current plan does not allow this action. Please upgrade."
            ),
        }


@dataclass
class ConsumeResult:
    """Outcome of a successful consumption."""
    quota_source: str
    units: int
    remaining: Optional[int]
    unlimited: bool
    paid_with_credits: bool = False
    credits_remaining: Optional[int] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "quotaSource": self.quota_source,
            "units": self.units,
            "remaining": self.remaining,
            "unlimited": self.unlimited,
            "paidWithCredits": self.paid_with_credits,
            "creditsRemaining": self.credits_remaining,
            "transactionId": self.transaction_id,
        }


def _usage_variant(
    license_key: Optional[str],
    identity: Optional[Identity],
    product: Optional[str] = None,
) -> str:
    return f"{license_key or '-'}|{identity.id if identity else '-'}|{product or '-'}"


class EntitlementService:
    """
    One instance per request; the cache is shared across requests.

    Usage:
        service = EntitlementService(db, cache)
        payload = service.check_usage("site-hash", identity=identity)
    """

    def __init__(
        self,
        db_session: Session,
        cache: ResponseCache,
        catalog: Optional[PlanCatalogLoader] = None,
        skip_site_hashes: Optional[List[str]] = None,
    ):
        self.db = db_session
        self.cache = cache
        self.catalog = catalog or get_plan_catalog()
        if skip_site_hashes is None:
            skip_site_hashes = get_settings().skip_quota_site_hashes
        self.resolver = EntitlementResolver(
            db_session, catalog=self.catalog, skip_site_hashes=skip_site_hashes
        )
        self.ledger = CreditLedger(db_session)
        self.identities = IdentityService(db_session)
        self.subscriptions = SubscriptionService(db_session, self.catalog)

    # ------------------------------------------------------------------
    # Entitlement check
    # ------------------------------------------------------------------

    def check_usage(
        self,
        tenant_hash: Optional[str],
        license_key: Optional[str] = None,
        identity: Optional[Identity] = None,
        product: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Entitlement payload for a site, served from cache within the TTL.

        Raises:
            MissingTenantIdError: If tenant_hash is empty
            QuotaSourceUnresolvableError: If no quota source applies
            UsageError: On store failure
        """
        variant = _usage_variant(license_key, identity, product)
        if tenant_hash:
            cached = self.cache.get(CacheNamespace.USAGE, tenant_hash, variant)
            if cached is not None:
                return cached

        try:
            resolution = self.resolver.resolve(
                tenant_hash, license_key=license_key, identity=identity, product=product, now=now
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Usage check failed",
                extra={"site_hash": tenant_hash, "error": str(e)},
                exc_info=True,
            )
            raise UsageError() from e

        payload = resolution.to_payload()
        if identity is not None:
            payload["credits"] = self.ledger.get_balance(identity.id)
        self.cache.set(
            CacheNamespace.USAGE,
            tenant_hash,
            payload,
            variant,
            related=[identity.id] if identity is not None else None,
        )
        return payload

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def consume(
        self,
        tenant_hash: Optional[str],
        units: int = 1,
        license_key: Optional[str] = None,
        identity: Optional[Identity] = None,
        endpoint: Optional[str] = None,
        request_id: Optional[str] = None,
        product: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """
        Record consumption against the resolved quota source.

        When the quota is exhausted and the caller has credits, the units
        are spent from the credit ledger instead.

        Raises:
            ValueError: If units is not a positive integer
            QuotaExceededError: If neither quota nor credits cover the units
            UsageError: On store failure
        """
        if isinstance(units, bool) or not isinstance(units, int) or units <= 0:
            raise ValueError(f"units must be a positive integer, got {units!r}")

        try:
            with _site_locks.get_lock(tenant_hash or ""):
                resolution = self.resolver.resolve(
                    tenant_hash,
                    license_key=license_key,
                    identity=identity,
                    requested_units=units,
                    product=product,
                    now=now,
                )
                if resolution.allowed:
                    return self._consume_quota(resolution, tenant_hash, units, identity, endpoint, request_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Consumption failed",
                extra={"site_hash": tenant_hash, "units": units, "error": str(e)},
                exc_info=True,
            )
            raise UsageError("Failed to record usage") from e

        if identity is not None:
            try:
                spent = self.ledger.spend(
                    identity.id,
                    units,
                    metadata={
                        "site_hash": tenant_hash,
                        "request_id": request_id,
                        "endpoint": endpoint,
                        "reason": "quota_exhausted",
                    },
                )
            except InsufficientCreditsError:
                spent = None
            except SQLAlchemyError as e:
                raise UsageError("Failed to spend credits") from e
            if spent is not None:
                return self._consumed_with_credits(resolution, tenant_hash, units, identity, spent)

        logger.info(
            "Quota exceeded",
            extra={
                "site_hash": tenant_hash,
                "quota_source": resolution.quota_source,
                "used": resolution.used,
                "limit": resolution.limit,
                "requested": units,
            },
        )
        raise QuotaExceededError(
            quota_source=resolution.quota_source,
            used=resolution.used,
            limit=resolution.limit,
            requested=units,
            reset_date=resolution.reset_date,
        )

    def _consume_quota(
        self,
        resolution: Resolution,
        tenant_hash: str,
        units: int,
        identity: Optional[Identity],
        endpoint: Optional[str],
        request_id: Optional[str],
    ) -> ConsumeResult:
        self.resolver.site_service.record_usage(
            tenant_hash,
            units,
            quota_source=resolution.quota_source,
            identity_id=identity.id if identity else None,
            license_key=resolution.license_key,
            endpoint=endpoint,
            request_id=request_id,
        )
        self._evict_after_consumption(tenant_hash, identity, resolution)

        remaining = None if resolution.unlimited else max(0, resolution.remaining - units)
        return ConsumeResult(
            quota_source=resolution.quota_source,
            units=units,
            remaining=remaining,
            unlimited=resolution.unlimited,
        )

    def _consumed_with_credits(
        self,
        resolution: Resolution,
        tenant_hash: str,
        units: int,
        identity: Identity,
        spent: SpendResult,
    ) -> ConsumeResult:
        self._evict_after_consumption(tenant_hash, identity, resolution)
        logger.info(
            "Consumption paid with credits",
            extra={
                "site_hash": tenant_hash,
                "identity_id": identity.id,
                "units": units,
                "credits_remaining": spent.remaining_balance,
            },
        )
        return ConsumeResult(
            quota_source="credits",
            units=units,
            remaining=resolution.remaining,
            unlimited=False,
            paid_with_credits=True,
            credits_remaining=spent.remaining_balance,
            transaction_id=spent.transaction_id,
        )

    def _evict_after_consumption(
        self,
        tenant_hash: str,
        identity: Optional[Identity],
        resolution: Resolution,
    ) -> None:
        owners = [tenant_hash]
        if identity is not None:
            owners.append(identity.id)
        if resolution.license_key:
            # Every site sharing the license sees the new usage
            owners.extend(self.resolver.site_service.sites_for_license(resolution.license_key))
        self.cache.evict_many(owners, reason="consumption")

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def spend_credits(
        self,
        identity: Identity,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SpendResult:
        """Spend credits and evict the identity's cached payloads."""
        result = self.ledger.spend(identity.id, amount, metadata)
        site_hash = (metadata or {}).get("site_hash")
        self.cache.evict_many([identity.id, site_hash], reason="credit_spend")
        return result

    # ------------------------------------------------------------------
    # Account reads
    # ------------------------------------------------------------------

    def get_subscription_status(
        self,
        identity: Identity,
        product: Optional[str] = None,
    ) -> SubscriptionStatusView:
        return self.subscriptions.get_status(identity.id, product or self.catalog.default_product)

    def get_subscription_payload(self, identity: Identity, product: Optional[str] = None) -> Dict[str, Any]:
        """Subscription status query payload, cached for the subscription TTL."""
        product = product or self.catalog.default_product
        cached = self.cache.get(CacheNamespace.SUBSCRIPTION, identity.id, product)
        if cached is not None:
            return cached

        try:
            payload = self.get_subscription_status(identity, product).to_dict()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Subscription status query failed",
                extra={"identity_id": identity.id, "error": str(e)},
                exc_info=True,
            )
            raise UsageError("Failed to load subscription") from e

        self.cache.set(CacheNamespace.SUBSCRIPTION, identity.id, payload, product)
        return payload

    def evaluate_access(self, email: Optional[str], product: Optional[str] = None) -> AccessDecision:
        """
        Decide whether an account may perform a paid action.

        Credits override subscription state. Store failures deny.
        """
        if not email or not email.strip():
            return AccessDecision.deny(AccessReason.NO_IDENTITY)

        try:
            identity = self.identities.get_or_create(email)
            status = self.get_subscription_status(identity, product)
            balance = self.ledger.get_balance(identity.id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Access evaluation failed, denying",
                extra={"error": str(e)},
                exc_info=True,
            )
            return AccessDecision.deny(AccessReason.SUBSCRIPTION_INACTIVE)

        if balance > 0:
            return AccessDecision.allow("credits")

        if status.plan == FREE_PLAN:
            return AccessDecision.deny(AccessReason.NO_SUBSCRIPTION)

        if not status.grants_access:
            return AccessDecision.deny(AccessReason.SUBSCRIPTION_INACTIVE)

        return AccessDecision.allow("subscription")

    def get_dashboard(self, identity: Identity, product: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate account payload, cached for the dashboard TTL."""
        product = product or self.catalog.default_product
        cached = self.cache.get(CacheNamespace.DASHBOARD, identity.id, product)
        if cached is not None:
            return cached

        try:
            status = self.get_subscription_status(identity, product)
            rollup = self.ledger.get_rollup(identity.id)
            recent = self.ledger.get_transactions(identity.id, page=1, limit=5)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Dashboard aggregation failed",
                extra={"identity_id": identity.id, "error": str(e)},
                exc_info=True,
            )
            raise UsageError("Failed to load dashboard") from e

        payload = {
            "email": identity.email,
            "subscription": status.to_dict(),
            "credits": {
                "balance": self.ledger.get_balance(identity.id),
                **rollup.to_dict(),
            },
            "recentTransactions": recent["transactions"],
        }
        self.cache.set(CacheNamespace.DASHBOARD, identity.id, payload, product)
        return payload

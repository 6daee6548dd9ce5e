"""
Subscription state machine.

Pure functions that map a stored provider subscription snapshot to one of
a small set of canonical statuses and resolve plan limits from the plan
catalog. Nothing here mutates state; every call recomputes from the
latest Subscription row.

Provider status mapping:
    trialing            -> trial
    active              -> active (or expired when renews_at is in the past)
    past_due, unpaid    -> past_due
    canceled, cancelled -> cancelled
    anything else       -> inactive
    no record           -> inactive
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog, FREE_PLAN
from creditgate.models.base import as_utc


class CanonicalStatus(str, Enum):
    """Canonical subscription statuses."""
    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"
    EXPIRED = "expired"


# Statuses that grant a plan's limits
GRANTING_STATUSES = frozenset({CanonicalStatus.ACTIVE, CanonicalStatus.TRIAL})

_PROVIDER_STATUS_MAP: Dict[str, CanonicalStatus] = {
    "active": CanonicalStatus.ACTIVE,
    "trialing": CanonicalStatus.TRIAL,
    "trial": CanonicalStatus.TRIAL,
    "past_due": CanonicalStatus.PAST_DUE,
    "unpaid": CanonicalStatus.PAST_DUE,
    "canceled": CanonicalStatus.CANCELLED,
    "cancelled": CanonicalStatus.CANCELLED,
}


def normalize_status(
    raw_status: Optional[str],
    renews_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> CanonicalStatus:
    """
    Map a raw provider status to a canonical status.

    An active subscription whose renews_at is in the past is expired,
    regardless of what the provider last reported.
    """
    if not raw_status:
        return CanonicalStatus.INACTIVE

    status = _PROVIDER_STATUS_MAP.get(raw_status.strip().lower(), CanonicalStatus.INACTIVE)

    if status == CanonicalStatus.ACTIVE and renews_at is not None:
        now = now or datetime.now(timezone.utc)
        if as_utc(renews_at) < as_utc(now):
            return CanonicalStatus.EXPIRED

    return status


def grants_access(status: CanonicalStatus) -> bool:
    return status in GRANTING_STATUSES


@dataclass(frozen=True)
class ResolvedPlanLimits:
    """Plan limit lookup result."""
    plan: str
    limit: Optional[int]
    unlimited: bool


def plan_limits(
    plan: Optional[str],
    product: Optional[str] = None,
    catalog: Optional[PlanCatalogLoader] = None,
) -> ResolvedPlanLimits:
    """
    Resolve (plan, product) to its monthly limit.

    Unknown plans fall back to the product's free allowance so a
    misconfigured plan never grants more than free.
    """
    catalog = catalog or get_plan_catalog()
    plan = (plan or FREE_PLAN).lower()

    limits = catalog.get_plan_limits(plan, product)
    if limits is None:
        free = catalog.get_plan_limits(FREE_PLAN, product)
        return ResolvedPlanLimits(plan=plan, limit=free.tokens if free else 0, unlimited=False)

    if limits.unlimited:
        return ResolvedPlanLimits(plan=plan, limit=None, unlimited=True)
    return ResolvedPlanLimits(plan=plan, limit=limits.tokens, unlimited=False)


@dataclass
class SubscriptionStatusView:
    """Canonical view of a subscription for status queries."""
    status: CanonicalStatus
    plan: str
    product: str
    limit: Optional[int]
    unlimited: bool
    renews_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None

    @property
    def grants_access(self) -> bool:
        return grants_access(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "plan": self.plan,
            "product": self.product,
            "limit": self.limit,
            "unlimited": self.unlimited,
            "renewsAt": self.renews_at.isoformat() if self.renews_at else None,
            "canceledAt": self.canceled_at.isoformat() if self.canceled_at else None,
            "trialEndsAt": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
        }


def describe(
    record,
    product: Optional[str] = None,
    now: Optional[datetime] = None,
    catalog: Optional[PlanCatalogLoader] = None,
) -> SubscriptionStatusView:
    """
    Build the canonical status view for a Subscription row (or None).

    A missing record is reported as the free plan with status inactive.
    """
    catalog = catalog or get_plan_catalog()

    if record is None:
        product = product or catalog.default_product
        limits = plan_limits(FREE_PLAN, product, catalog)
        return SubscriptionStatusView(
            status=CanonicalStatus.INACTIVE,
            plan=FREE_PLAN,
            product=product,
            limit=limits.limit,
            unlimited=False,
        )

    product = record.product or product or catalog.default_product
    status = normalize_status(record.status, record.renews_at, now)
    limits = plan_limits(record.plan, product, catalog)

    return SubscriptionStatusView(
        status=status,
        plan=limits.plan,
        product=product,
        limit=limits.limit,
        unlimited=limits.unlimited,
        renews_at=as_utc(record.renews_at),
        canceled_at=as_utc(record.canceled_at),
        trial_ends_at=as_utc(record.trial_ends_at),
    )

"""
Billing routes - subscription status, access decisions and dashboard.

All routes require a session credential.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends

from creditgate.api.dependencies import get_entitlement_service, require_identity
from creditgate.entitlements.service import EntitlementService
from creditgate.models.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/subscription")
async def get_subscription(
    product: Optional[str] = None,
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Canonical subscription status, plan, limits and renewal date."""
    return {"ok": True, "subscription": service.get_subscription_payload(identity, product)}


@router.get("/access")
async def get_access(
    product: Optional[str] = None,
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return service.evaluate_access(identity.email, product).to_dict()


@router.get("/dashboard")
async def get_dashboard(
    product: Optional[str] = None,
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return {"ok": True, **service.get_dashboard(identity, product)}

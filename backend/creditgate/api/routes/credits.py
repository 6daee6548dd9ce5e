"""
Credit routes - balance, history, spend and available packs.

All routes except /packs require a session credential.
"""

import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditgate.api.dependencies import get_entitlement_service, require_identity
from creditgate.entitlements.loader import get_plan_catalog
from creditgate.entitlements.service import EntitlementService
from creditgate.models.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["credits"])


class SpendRequest(BaseModel):
    """Request to spend credits."""
    amount: int = Field(1, ge=1, description="Credits to spend")
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.get("/packs")
async def list_packs():
    """Available one-time credit packs."""
    catalog = get_plan_catalog()
    return {"ok": True, "packs": [pack.to_dict() for pack in catalog.get_credit_packs()]}


@router.get("/balance")
async def get_balance(
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    return {
        "ok": True,
        "balance": service.ledger.get_balance(identity.id),
        "email": identity.email,
    }


@router.get("/transactions")
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    history = service.ledger.get_transactions(identity.id, page=page, limit=limit)
    return {"ok": True, **history}


@router.post("/spend")
async def spend(
    body: SpendRequest,
    identity: Identity = Depends(require_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Spend credits; 402 INSUFFICIENT_CREDITS with currentBalance and requested."""
    result = service.spend_credits(identity, body.amount, body.metadata)
    return {"ok": True, **result.to_dict()}

"""
Usage routes - entitlement checks and consumption for consuming clients.

Clients identify the site with X-Site-Hash and may send X-License-Key and
an Authorization session credential. Checks are polled frequently and
served from the response cache.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field

from creditgate.api.dependencies import get_entitlement_service, get_optional_identity
from creditgate.entitlements.errors import EntitlementError, UsageError
from creditgate.entitlements.service import EntitlementService
from creditgate.models.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/usage", tags=["usage"])


class ConsumeRequest(BaseModel):
    """Request to record consumption."""
    units: int = Field(1, ge=1, description="Units of work to consume")
    endpoint: Optional[str] = Field(None, max_length=255)
    request_id: Optional[str] = Field(None, alias="requestId", max_length=255)
    product: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


@router.get("")
async def get_usage(
    x_site_hash: Optional[str] = Header(None, alias="X-Site-Hash"),
    x_license_key: Optional[str] = Header(None, alias="X-License-Key"),
    product: Optional[str] = None,
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """
    Current entitlement for a site.

    Returns used/limit/remaining, plan, resetDate and quotaSource.
    Internal failures return USAGE_ERROR; they never report allowed.
    """
    try:
        return service.check_usage(
            x_site_hash, license_key=x_license_key, identity=identity, product=product
        )
    except EntitlementError:
        raise
    except Exception as e:
        logger.error(
            "Unexpected usage check failure",
            extra={"site_hash": x_site_hash, "error": str(e)},
            exc_info=True,
        )
        raise UsageError() from e


@router.post("/consume")
async def consume(
    body: ConsumeRequest,
    x_site_hash: Optional[str] = Header(None, alias="X-Site-Hash"),
    x_license_key: Optional[str] = Header(None, alias="X-License-Key"),
    identity: Optional[Identity] = Depends(get_optional_identity),
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Record consumption; 402 quota_exceeded when neither quota nor credits cover it."""
    try:
        result = service.consume(
            x_site_hash,
            units=body.units,
            license_key=x_license_key,
            identity=identity,
            endpoint=body.endpoint,
            request_id=body.request_id,
            product=body.product,
        )
    except EntitlementError:
        raise
    except Exception as e:
        logger.error(
            "Unexpected consumption failure",
            extra={"site_hash": x_site_hash, "error": str(e)},
            exc_info=True,
        )
        raise UsageError("Failed to record usage") from e
    return result.to_dict()

"""Health check route (no authentication)."""

import logging

from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    """Liveness probe with configuration readiness flags."""
    return {
        "status": "ok",
        "database_configured": getattr(request.app.state, "database_configured", False),
        "webhooks_configured": getattr(request.app.state, "webhooks_configured", False),
    }

"""
FastAPI application factory.

The response cache is constructed once here (in the lifespan) and shared
by reference with every request handler through app.state.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from creditgate.api.routes import health, usage, credits, billing, webhooks_stripe
from creditgate.config.settings import Settings, get_settings
from creditgate.entitlements.cache import ResponseCache, CacheNamespace
from creditgate.entitlements.errors import EntitlementError

logger = logging.getLogger(__name__)


def build_response_cache(settings: Settings) -> ResponseCache:
    return ResponseCache(ttls={
        CacheNamespace.USAGE: settings.usage_cache_ttl_seconds,
        CacheNamespace.SUBSCRIPTION: settings.subscription_cache_ttl_seconds,
        CacheNamespace.DASHBOARD: settings.dashboard_cache_ttl_seconds,
    })


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info("Starting creditgate API", extra={"env": settings.env})

    if getattr(app.state, "response_cache", None) is None:
        app.state.response_cache = build_response_cache(settings)

    app.state.database_configured = bool(settings.database_url)
    if not settings.database_url:
        logger.error("DATABASE_URL is not set. Database-backed endpoints will return 503.")
    else:
        masked = settings.database_url.split("@")[-1] if "@" in settings.database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})

    app.state.webhooks_configured = bool(settings.stripe_webhook_secret)
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured. Stripe webhooks will be rejected.")
    if not settings.session_jwt_secret:
        logger.warning("SESSION_JWT_SECRET not configured. Session credentials will be rejected.")

    yield

    logger.info("Shutting down creditgate API")
    app.state.response_cache.clear()


async def entitlement_error_handler(request: Request, exc: EntitlementError):
    """Serialize structured errors with their HTTP status."""
    if exc.http_status >= 500:
        logger.error(
            "Request failed",
            extra={"path": request.url.path, "code": exc.error_code, "error": exc.message},
        )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path,
        },
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"ok": False, "code": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    )


def create_app(cache: Optional[ResponseCache] = None) -> FastAPI:
    app = FastAPI(
        title="creditgate API",
        description="Entitlement resolution and credit ledger",
        version="1.0.0",
        lifespan=lifespan,
    )
    if cache is not None:
        app.state.response_cache = cache

    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Health check (no authentication)
    app.include_router(health.router)

    # Entitlement checks and consumption (site hash, optional session)
    app.include_router(usage.router)

    # Credits and billing (session required)
    app.include_router(credits.router)
    app.include_router(billing.router)

    # Stripe webhooks (signature verification, not sessions)
    app.include_router(webhooks_stripe.router)

    return app

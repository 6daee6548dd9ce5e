"""
Shared FastAPI dependencies.

The response cache is created once in the app lifespan and stored on
app.state; handlers receive it by reference through get_response_cache.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from creditgate.auth.session_verifier import SessionVerifier
from creditgate.database.session import get_db_session
from creditgate.entitlements.cache import ResponseCache
from creditgate.entitlements.errors import InvalidSessionError
from creditgate.entitlements.service import EntitlementService
from creditgate.models.identity import Identity
from creditgate.services.email_sender import BillingNotifier
from creditgate.services.identity_service import IdentityService

logger = logging.getLogger(__name__)


def get_response_cache(request: Request) -> ResponseCache:
    cache = getattr(request.app.state, "response_cache", None)
    if cache is None:
        # Lifespan did not run (e.g. app mounted without startup)
        cache = ResponseCache()
        request.app.state.response_cache = cache
        logger.warning("Response cache created lazily outside lifespan")
    return cache


def get_session_verifier() -> SessionVerifier:
    return SessionVerifier()


def get_billing_notifier() -> BillingNotifier:
    return BillingNotifier()


def get_entitlement_service(
    db: Session = Depends(get_db_session),
    cache: ResponseCache = Depends(get_response_cache),
) -> EntitlementService:
    return EntitlementService(db, cache)


def get_optional_identity(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: Session = Depends(get_db_session),
    verifier: SessionVerifier = Depends(get_session_verifier),
) -> Optional[Identity]:
    """
    Identity for a verified session credential, or None if none was sent.

    A credential that is present but invalid is rejected, not ignored.
    """
    claims = verifier.verify(authorization)
    if claims is None:
        return None
    return IdentityService(db).get_or_create(claims.email)


def require_identity(
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Identity:
    if identity is None:
        raise InvalidSessionError("Authentication required")
    return identity

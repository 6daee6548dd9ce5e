"""
Stripe webhook ingress.

SECURITY: Every webhook MUST pass Stripe-Signature verification before
its payload is dispatched. Verification failures return 400
INVALID_SIGNATURE and are logged as security events.

Processing failures return 500 so Stripe retries; every handler is
idempotent, so a retry never re-applies committed ledger changes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from creditgate.api.dependencies import get_billing_notifier, get_response_cache
from creditgate.database.session import get_db_session
from creditgate.entitlements.cache import ResponseCache
from creditgate.entitlements.errors import EntitlementError
from creditgate.services.billing_webhook_handler import BillingWebhookHandler
from creditgate.services.email_sender import BillingNotifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookProcessingError(EntitlementError):
    """Raised when a verified webhook could not be applied."""

    error_code = "WEBHOOK_ERROR"

    def __init__(self, message: str = "Webhook processing failed"):
        super().__init__(message)


def get_stripe_webhook_handler(
    db: Session = Depends(get_db_session),
    cache: ResponseCache = Depends(get_response_cache),
    notifier: BillingNotifier = Depends(get_billing_notifier),
) -> BillingWebhookHandler:
    return BillingWebhookHandler(db, cache=cache, notifier=notifier)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    handler: BillingWebhookHandler = Depends(get_stripe_webhook_handler),
):
    """Verify and apply a Stripe event. Acknowledges with {received: true}."""
    payload = await request.body()

    try:
        result = await handler.handle(payload, stripe_signature)
    except EntitlementError:
        raise
    except SQLAlchemyError as e:
        handler.db.rollback()
        logger.error("Webhook processing failed", extra={"error": str(e)}, exc_info=True)
        raise WebhookProcessingError() from e

    return {
        "received": True,
        "processed": result.processed,
        "message": result.message,
        "eventType": result.event_type,
    }

"""
Billing webhook handler with idempotency support.

Processes Stripe webhooks with:
- Signature verification before anything else is read
- Event deduplication using the Stripe event ID
- Transaction-level idempotency for credit purchases (payment intent ID)
- License creation idempotent on the Stripe subscription ID
- Cache eviction for every identity and site whose state changed

Non-critical side effects (emails) are caught and logged so a failed
email never makes Stripe retry an already-applied ledger change.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Awaitable, List

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditgate.config.settings import get_settings
from creditgate.entitlements.cache import ResponseCache
from creditgate.entitlements.errors import InvalidSignatureError
from creditgate.entitlements.loader import PlanCatalogLoader, get_plan_catalog
from creditgate.entitlements.subscription_state import grants_access, normalize_status
from creditgate.models.invoice import Invoice
from creditgate.models.license import LicenseStatus
from creditgate.models.webhook_event import WebhookEvent
from creditgate.services.credit_ledger import CreditLedger
from creditgate.services.email_sender import BillingNotifier
from creditgate.services.identity_service import IdentityService
from creditgate.services.license_service import LicenseService
from creditgate.services.site_service import SiteService
from creditgate.services.subscription_service import SubscriptionService, SubscriptionSnapshot

logger = logging.getLogger(__name__)

DEFAULT_PAID_PLAN = "pro"
CREDIT_PURCHASE_TYPES = frozenset({"credits", "credit_pack"})


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    skipped_reason: Optional[str] = None


def _from_timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _positive_int(value) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def lookup_customer_email(customer_id: str) -> Optional[str]:
    """Fetch a customer's email from Stripe."""
    settings = get_settings()
    try:
        customer = stripe.Customer.retrieve(customer_id, api_key=settings.stripe_api_key)
    except stripe.StripeError as e:
        logger.warning(
            "Stripe customer lookup failed",
            extra={"customer_id": customer_id, "error": str(e)},
        )
        return None
    return customer.get("email") if customer else None


class BillingWebhookHandler:
    """
    Handler for Stripe billing webhooks with idempotency.

    Ensures each webhook is applied at most once using:
    - Stripe event ID (webhook_events table)
    - Provider transaction IDs on ledger events and licenses
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[ResponseCache] = None,
        notifier: Optional[BillingNotifier] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
        customer_lookup: Optional[Callable[[str], Optional[str]]] = None,
        catalog: Optional[PlanCatalogLoader] = None,
    ):
        settings = get_settings()
        self.db = db_session
        self.cache = cache
        self.notifier = notifier or BillingNotifier()
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.tolerance = tolerance if tolerance is not None else settings.stripe_webhook_tolerance
        self.customer_lookup = customer_lookup or lookup_customer_email
        self.catalog = catalog or get_plan_catalog()

        self.ledger = CreditLedger(db_session)
        self.identities = IdentityService(db_session)
        self.subscriptions = SubscriptionService(db_session, self.catalog)
        self.licenses = LicenseService(db_session, self.catalog)
        self.sites = SiteService(db_session, self.catalog)

        self._handlers: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[WebhookProcessingResult]]] = {
            "customer.subscription.created": self._handle_subscription_event,
            "customer.subscription.updated": self._handle_subscription_event,
            "customer.subscription.deleted": self._handle_subscription_event,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_invoice_payment_failed,
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
            "checkout.session.completed": self._handle_checkout_completed,
        }

    # ------------------------------------------------------------------
    # Verification and dedup
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and parse the payload.

        Raises:
            InvalidSignatureError: If the secret or header is missing, the
                signature does not match, or the payload is not JSON
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting webhook")
            raise InvalidSignatureError("Webhook verification not configured")
        if not signature_header:
            logger.warning("Webhook rejected: missing Stripe-Signature header")
            raise InvalidSignatureError("Missing Stripe-Signature header")

        if isinstance(payload, bytes):
            payload_str = payload.decode("utf-8", errors="replace")
        else:
            payload_str = payload

        try:
            stripe.WebhookSignature.verify_header(
                payload_str, signature_header, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook rejected: invalid signature", extra={"error": str(e)})
            raise InvalidSignatureError()

        try:
            event = json.loads(payload_str)
        except json.JSONDecodeError:
            logger.warning("Webhook rejected: signed payload is not JSON")
            raise InvalidSignatureError("Invalid webhook payload")

        if not isinstance(event, dict) or not event.get("type"):
            logger.warning("Webhook rejected: payload has no event type")
            raise InvalidSignatureError("Invalid webhook payload")
        return event

    def _is_duplicate(self, event_id: str) -> bool:
        existing = self.db.query(WebhookEvent).filter(
            WebhookEvent.provider_event_id == event_id
        ).first()
        return existing is not None

    def _record_event(self, event_id: str, event_type: str, event: Dict[str, Any]) -> None:
        """Record a processed webhook event for deduplication."""
        payload_str = json.dumps(event, sort_keys=True)
        payload_hash = hashlib.sha256(payload_str.encode()).hexdigest()

        self.db.add(WebhookEvent(
            provider_event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash,
            processed_at=datetime.now(timezone.utc),
        ))
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery recorded it first
            self.db.rollback()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle(self, payload: bytes, signature_header: Optional[str]) -> WebhookProcessingResult:
        """Verify, then dispatch. Nothing is read or written before verification."""
        event = self.verify(payload, signature_header)
        return await self.process_event(event)

    async def process_event(self, event: Dict[str, Any]) -> WebhookProcessingResult:
        """Dispatch a verified event by type."""
        event_id = event.get("id")
        event_type = event.get("type")

        if event_id and self._is_duplicate(event_id):
            logger.info("Duplicate webhook skipped", extra={"event_id": event_id, "event_type": event_type})
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                event_id=event_id,
                event_type=event_type,
                skipped_reason="duplicate",
            )

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled webhook event type ignored", extra={"event_id": event_id, "event_type": event_type})
            return WebhookProcessingResult(
                processed=False,
                message="Event type not handled",
                event_id=event_id,
                event_type=event_type,
                skipped_reason="unhandled_type",
            )

        obj = (event.get("data") or {}).get("object") or {}
        logger.info("Processing webhook", extra={"event_id": event_id, "event_type": event_type})
        result = await handler(event, obj)
        result.event_id = event_id
        result.event_type = event_type

        if event_id:
            self._record_event(event_id, event_type, event)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_email(self, obj: Dict[str, Any]) -> Optional[str]:
        metadata = obj.get("metadata") or {}
        details = obj.get("customer_details") or {}
        for candidate in (
            metadata.get("user_email"),
            metadata.get("email"),
            obj.get("customer_email"),
            obj.get("receipt_email"),
            details.get("email"),
        ):
            if candidate:
                return candidate

        customer_id = obj.get("customer")
        if isinstance(customer_id, str) and customer_id:
            return self.customer_lookup(customer_id)
        return None

    def _evict(self, owner_keys: List[Optional[str]], reason: str) -> None:
        if self.cache is not None:
            self.cache.evict_many([key for key in owner_keys if key], reason=reason)

    async def _notify(self, description: str, send: Awaitable[bool]) -> None:
        """Await a non-critical notification; failures are logged, not raised."""
        try:
            sent = await send
        except Exception as e:
            logger.warning(
                "Billing notification failed",
                extra={"notification": description, "error": str(e)},
                exc_info=True,
            )
            return
        if not sent:
            logger.warning("Billing notification not delivered", extra={"notification": description})

    def _plan_for_subscription(self, obj: Dict[str, Any]):
        """Return (plan, product, price_id) for a subscription object."""
        metadata = obj.get("metadata") or {}
        items = ((obj.get("items") or {}).get("data")) or []
        price_id = None
        if items:
            price_id = (items[0].get("price") or {}).get("id")

        limits = self.catalog.get_plan_for_price(price_id)
        product = (
            (limits.product if limits else None)
            or metadata.get("plugin_slug")
            or metadata.get("product")
            or self.catalog.default_product
        )
        plan = (limits.plan if limits else None) or metadata.get("plan") or DEFAULT_PAID_PLAN
        return plan.lower(), product, price_id

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_subscription_event(self, event: Dict[str, Any], obj: Dict[str, Any]) -> WebhookProcessingResult:
        subscription_id = obj.get("id")
        email = self._resolve_email(obj)
        if not subscription_id or not email:
            logger.warning(
                "Subscription webhook missing subscription id or customer email",
                extra={"event_id": event.get("id"), "subscription_id": subscription_id},
            )
            return WebhookProcessingResult(
                processed=False,
                message="Missing subscription id or customer email",
                skipped_reason="missing_fields",
            )

        identity = self.identities.get_or_create(email)
        plan, product, price_id = self._plan_for_subscription(obj)
        items = ((obj.get("items") or {}).get("data")) or [{}]

        renews_at = obj.get("current_period_end") or items[0].get("current_period_end")
        snapshot = SubscriptionSnapshot(
            identity_id=identity.id,
            product=product,
            plan=plan,
            status=obj.get("status") or "incomplete",
            provider_subscription_id=subscription_id,
            provider_customer_id=obj.get("customer") if isinstance(obj.get("customer"), str) else None,
            provider_price_id=price_id,
            quantity=obj.get("quantity") or items[0].get("quantity") or 1,
            renews_at=_from_timestamp(renews_at),
            canceled_at=_from_timestamp(obj.get("canceled_at")),
            trial_ends_at=_from_timestamp(obj.get("trial_end")),
            provider_metadata=obj.get("metadata") or {},
        )
        self.subscriptions.upsert(snapshot)

        evicted = [identity.id]
        license_record = self.licenses.get_by_provider_subscription(subscription_id)
        if license_record is not None:
            granting = grants_access(normalize_status(snapshot.status, snapshot.renews_at))
            if event.get("type") == "customer.subscription.deleted" or not granting:
                if license_record.is_active:
                    self.licenses.set_status(license_record, LicenseStatus.SUSPENDED)
            elif not license_record.is_active:
                self.licenses.set_status(license_record, LicenseStatus.ACTIVE)
            evicted.extend(self.sites.sites_for_license(license_record.license_key))
        self._evict(evicted, reason="subscription_sync")

        if event.get("type") == "customer.subscription.created":
            await self._notify(
                "subscription_confirmation",
                self.notifier.send_subscription_confirmation(identity.email, plan, product),
            )

        return WebhookProcessingResult(processed=True, message="Subscription synced")

    async def _handle_invoice_paid(self, event: Dict[str, Any], obj: Dict[str, Any]) -> WebhookProcessingResult:
        invoice_id = obj.get("id")
        if not invoice_id:
            return WebhookProcessingResult(processed=False, message="Missing invoice id", skipped_reason="missing_fields")

        email = self._resolve_email(obj)
        identity = self.identities.get_or_create(email) if email else None

        invoice = self.db.query(Invoice).filter(Invoice.invoice_id == invoice_id).first()
        if invoice is None:
            invoice = Invoice(invoice_id=invoice_id)
            self.db.add(invoice)
        invoice.identity_id = identity.id if identity else invoice.identity_id
        invoice.product = (obj.get("metadata") or {}).get("plugin_slug") or invoice.product
        invoice.amount_paid = int(obj.get("amount_paid") or 0)
        invoice.currency = obj.get("currency") or "usd"
        invoice.hosted_invoice_url = obj.get("hosted_invoice_url")
        invoice.pdf_url = obj.get("invoice_pdf")
        invoice.paid_at = _from_timestamp(
            (obj.get("status_transitions") or {}).get("paid_at")
        ) or datetime.now(timezone.utc)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            invoice = self.db.query(Invoice).filter(Invoice.invoice_id == invoice_id).one()

        if identity is not None:
            self._evict([identity.id], reason="invoice_paid")

        if email and not invoice.receipt_email_sent:
            try:
                sent = await self.notifier.send_receipt(
                    email, invoice.amount_paid, invoice.currency, invoice.hosted_invoice_url
                )
            except Exception as e:
                logger.warning(
                    "Receipt email failed",
                    extra={"invoice_id": invoice_id, "error": str(e)},
                    exc_info=True,
                )
                sent = False
            if sent:
                invoice.receipt_email_sent = True
                self.db.commit()

        return WebhookProcessingResult(processed=True, message="Invoice recorded")

    async def _handle_invoice_payment_failed(self, event: Dict[str, Any], obj: Dict[str, Any]) -> WebhookProcessingResult:
        email = self._resolve_email(obj)
        logger.warning(
            "Invoice payment failed",
            extra={
                "invoice_id": obj.get("id"),
                "subscription_id": obj.get("subscription"),
                "attempt_count": obj.get("attempt_count"),
            },
        )
        if email:
            identity = self.identities.find_by_email(email)
            if identity is not None:
                self._evict([identity.id], reason="payment_failed")
            await self._notify(
                "payment_failed",
                self.notifier.send_payment_failed(
                    email, int(obj.get("amount_due") or 0), obj.get("currency") or "usd"
                ),
            )
        # Subscription state arrives with the next customer.subscription.updated
        return WebhookProcessingResult(processed=True, message="Payment failure noted")

    async def _handle_payment_intent_succeeded(self, event: Dict[str, Any], obj: Dict[str, Any]) -> WebhookProcessingResult:
        metadata = obj.get("metadata") or {}
        if metadata.get("type") not in CREDIT_PURCHASE_TYPES:
            return WebhookProcessingResult(
                processed=False,
                message="Payment intent is not a credit purchase",
                skipped_reason="not_credit_purchase",
            )
        return await self._apply_credit_purchase(
            obj,
            transaction_id=obj.get("id"),
            source="payment_intent",
        )

    async def _handle_checkout_completed(self, event: Dict[str, Any], obj: Dict[str, Any]) -> WebhookProcessingResult:
        metadata = obj.get("metadata") or {}
        mode = obj.get("mode")

        is_credit_purchase = (
            metadata.get("type") in CREDIT_PURCHASE_TYPES
            or metadata.get("credits")
            or metadata.get("pack_id")
        )
        if mode != "subscription" and is_credit_purchase:
            return await self._apply_credit_purchase(
                obj,
                transaction_id=obj.get("payment_intent") or obj.get("id"),
                source="checkout_session",
            )

        if mode == "subscription" and obj.get("subscription"):
            email = self._resolve_email(obj)
            plan = (metadata.get("plan") or DEFAULT_PAID_PLAN).lower()
            product = metadata.get("plugin_slug") or metadata.get("product") or self.catalog.default_product
            license_record = self.licenses.create_for_subscription(
                provider_subscription_id=obj["subscription"],
                plan=plan,
                product=product,
                owner_email=email.strip().lower() if email else None,
                provider_customer_id=obj.get("customer") if isinstance(obj.get("customer"), str) else None,
                organization_id=metadata.get("organization_id"),
            )
            return WebhookProcessingResult(
                processed=True,
                message=f"License {license_record.license_key} ready",
            )

        return WebhookProcessingResult(
            processed=False,
            message="Checkout session not applicable",
            skipped_reason="not_applicable",
        )

    async def _apply_credit_purchase(self, obj: Dict[str, Any], transaction_id: Optional[str], source: str) -> WebhookProcessingResult:
        metadata = obj.get("metadata") or {}
        email = self._resolve_email(obj)

        credits = _positive_int(metadata.get("credits"))
        if credits is None and metadata.get("pack_id"):
            pack = self.catalog.get_credit_pack(metadata["pack_id"])
            credits = pack.credits if pack else None
        if credits is None:
            credits = _positive_int(metadata.get("amount"))

        if not email or not credits or not transaction_id:
            logger.warning(
                "Credit purchase webhook missing fields",
                extra={"transaction_id": transaction_id, "has_email": bool(email), "credits": credits},
            )
            return WebhookProcessingResult(
                processed=False,
                message="Missing email, credit amount or transaction id",
                skipped_reason="missing_fields",
            )

        identity = self.identities.get_or_create(email)
        result = self.ledger.add_once(
            identity.id,
            credits,
            transaction_id=transaction_id,
            source_metadata={
                "stripe_payment_intent_id": transaction_id,
                "source": source,
                "pack_id": metadata.get("pack_id"),
            },
        )
        if result is None:
            return WebhookProcessingResult(
                processed=False,
                message="Credit purchase already applied",
                skipped_reason="duplicate_transaction",
            )

        self._evict([identity.id], reason="credit_purchase")
        await self._notify(
            "credits_confirmation",
            self.notifier.send_credits_confirmation(identity.email, credits, result.new_balance),
        )
        return WebhookProcessingResult(processed=True, message=f"Added {credits} credits")


def get_webhook_handler(db_session: Session, cache: Optional[ResponseCache] = None) -> BillingWebhookHandler:
    """Factory function to create webhook handler."""
    return BillingWebhookHandler(db_session, cache=cache)

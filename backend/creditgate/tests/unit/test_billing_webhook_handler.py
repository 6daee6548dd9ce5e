"""
Unit tests for BillingWebhookHandler with idempotency.

Tests cover:
- Signature verification before any state is touched
- Webhook deduplication by Stripe event ID
- Credit purchases applied once per payment intent
- Subscription sync, license lifecycle and invoices
- Email failures never fail processing
"""

import json
import time
import uuid

import pytest

from creditgate.entitlements.cache import CacheNamespace
from creditgate.entitlements.errors import InvalidSignatureError
from creditgate.entitlements.loader import get_plan_catalog, reset_plan_catalog
from creditgate.entitlements.service import EntitlementService
from creditgate.entitlements.subscription_state import CanonicalStatus
from creditgate.models.identity import Identity
from creditgate.models.invoice import Invoice
from creditgate.models.ledger_event import LedgerEvent
from creditgate.models.license import License, LicenseStatus
from creditgate.models.webhook_event import WebhookEvent
from creditgate.services.billing_webhook_handler import BillingWebhookHandler
from creditgate.services.credit_ledger import CreditLedger
from creditgate.services.email_sender import BillingNotifier, EmailSender, MockEmailSender
from creditgate.services.site_service import SiteService
from creditgate.services.subscription_service import SubscriptionService

WEBHOOK_SECRET = "whsec_test_secret"
BUYER = "buyer@example.com"


class ExplodingEmailSender(EmailSender):
    """Email sender whose provider is down."""

    async def send(self, message):
        raise RuntimeError("smtp relay unavailable")


@pytest.fixture
def email_sender():
    return MockEmailSender()


@pytest.fixture
def customer_emails():
    return {"cus_known": "lookup@example.com"}


@pytest.fixture
def make_handler(db_session, response_cache, catalog, customer_emails):
    def _make(sender=None, webhook_secret=WEBHOOK_SECRET, handler_catalog=None):
        return BillingWebhookHandler(
            db_session,
            cache=response_cache,
            notifier=BillingNotifier(sender or MockEmailSender()),
            webhook_secret=webhook_secret,
            tolerance=300,
            customer_lookup=customer_emails.get,
            catalog=handler_catalog or catalog,
        )
    return _make


@pytest.fixture
def handler(make_handler, email_sender):
    return make_handler(sender=email_sender)


@pytest.fixture
def entitlements(db_session, response_cache, catalog):
    """Entitlement service sharing the handler's cache."""
    return EntitlementService(db_session, response_cache, catalog=catalog, skip_site_hashes=[])


@pytest.fixture
def deliver(handler, sign_stripe_payload):
    """Sign and deliver an event the way Stripe does."""
    async def _deliver(event, target=None):
        payload = json.dumps(event).encode("utf-8")
        return await (target or handler).handle(payload, sign_stripe_payload(payload, WEBHOOK_SECRET))
    return _deliver


def make_event(event_type, data_object, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


def credit_intent(intent_id="pi_credits_1", email=BUYER, **metadata):
    metadata.setdefault("type", "credits")
    metadata.setdefault("pack_id", "pack_100")
    return {"id": intent_id, "object": "payment_intent", "receipt_email": email, "metadata": metadata}


def subscription_object(status="active", subscription_id="sub_1", plan="pro", **extra):
    obj = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "current_period_end": int(time.time()) + 30 * 24 * 3600,
        "items": {"data": [{"price": {"id": "price_unmapped"}, "quantity": 1}]},
        "metadata": {"user_email": BUYER, "plan": plan},
    }
    obj.update(extra)
    return obj


def _balance(db_session, email=BUYER):
    return CreditLedger(db_session).get_balance_by_email(email)


@pytest.mark.security
class TestSignatureVerification:

    @pytest.mark.asyncio
    async def test_invalid_signature_mutates_nothing(self, handler, db_session, sign_stripe_payload):
        payload = json.dumps(make_event("payment_intent.succeeded", credit_intent())).encode()
        header = sign_stripe_payload(payload, "whsec_wrong_secret")

        with pytest.raises(InvalidSignatureError):
            await handler.handle(payload, header)

        assert db_session.query(WebhookEvent).count() == 0
        assert db_session.query(LedgerEvent).count() == 0
        assert db_session.query(Identity).count() == 0

    @pytest.mark.asyncio
    async def test_tampered_payload_rejected(self, handler, db_session, sign_stripe_payload):
        payload = json.dumps(make_event("payment_intent.succeeded", credit_intent())).encode()
        header = sign_stripe_payload(payload)
        tampered = payload.replace(b"pack_100", b"pack_2500")

        with pytest.raises(InvalidSignatureError):
            await handler.handle(tampered, header)
        assert db_session.query(LedgerEvent).count() == 0

    @pytest.mark.asyncio
    async def test_missing_header_rejected(self, handler):
        with pytest.raises(InvalidSignatureError) as exc_info:
            await handler.handle(b"{}", None)
        assert exc_info.value.message == "Missing Stripe-Signature header"

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, handler, sign_stripe_payload):
        payload = json.dumps(make_event("invoice.paid", {"id": "in_1"})).encode()
        header = sign_stripe_payload(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(InvalidSignatureError):
            await handler.handle(payload, header)

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects(self, make_handler, sign_stripe_payload):
        handler = make_handler(webhook_secret="")
        payload = json.dumps(make_event("invoice.paid", {"id": "in_1"})).encode()

        with pytest.raises(InvalidSignatureError):
            await handler.handle(payload, sign_stripe_payload(payload))

    @pytest.mark.asyncio
    async def test_signed_non_json_rejected(self, handler, sign_stripe_payload):
        payload = b"not json at all"

        with pytest.raises(InvalidSignatureError) as exc_info:
            await handler.handle(payload, sign_stripe_payload(payload))
        assert exc_info.value.message == "Invalid webhook payload"


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_same_event_delivered_twice(self, deliver, db_session):
        event = make_event("payment_intent.succeeded", credit_intent())

        first = await deliver(event)
        second = await deliver(event)

        assert first.processed is True
        assert second.processed is False
        assert second.skipped_reason == "duplicate"
        assert _balance(db_session) == 100
        assert db_session.query(LedgerEvent).count() == 1

    @pytest.mark.asyncio
    async def test_same_payment_under_two_events(self, deliver, db_session):
        """Checkout completion and payment intent success for one payment add credits once."""
        checkout = make_event("checkout.session.completed", {
            "id": "cs_1",
            "mode": "payment",
            "payment_intent": "pi_shared",
            "customer_details": {"email": BUYER},
            "metadata": {"type": "credit_pack", "pack_id": "pack_500"},
        })
        intent = make_event("payment_intent.succeeded", credit_intent("pi_shared", pack_id="pack_500"))

        first = await deliver(checkout)
        second = await deliver(intent)

        assert first.processed is True
        assert second.processed is False
        assert second.skipped_reason == "duplicate_transaction"
        assert _balance(db_session) == 500

    @pytest.mark.asyncio
    async def test_processed_event_recorded(self, deliver, db_session):
        event = make_event("payment_intent.succeeded", credit_intent())

        await deliver(event)

        record = db_session.query(WebhookEvent).one()
        assert record.provider_event_id == event["id"]
        assert record.event_type == "payment_intent.succeeded"
        assert len(record.payload_hash) == 64

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, deliver, db_session):
        result = await deliver(make_event("charge.dispute.created", {"id": "dp_1"}))

        assert result.processed is False
        assert result.skipped_reason == "unhandled_type"
        assert result.event_type == "charge.dispute.created"
        assert db_session.query(LedgerEvent).count() == 0


class TestCreditPurchase:

    @pytest.mark.asyncio
    async def test_explicit_credit_amount(self, deliver, db_session, email_sender):
        intent = credit_intent("pi_explicit", credits="250", pack_id=None)

        result = await deliver(make_event("payment_intent.succeeded", intent))

        assert result.processed is True
        assert _balance(db_session) == 250
        assert [m.tags for m in email_sender.sent_messages] == [["credits"]]

    @pytest.mark.asyncio
    async def test_non_credit_intent_skipped(self, deliver, db_session):
        intent = {"id": "pi_other", "receipt_email": BUYER, "metadata": {"type": "subscription"}}

        result = await deliver(make_event("payment_intent.succeeded", intent))

        assert result.skipped_reason == "not_credit_purchase"
        assert db_session.query(LedgerEvent).count() == 0

    @pytest.mark.asyncio
    async def test_missing_email_skipped(self, deliver, db_session):
        intent = credit_intent("pi_anon", email=None)

        result = await deliver(make_event("payment_intent.succeeded", intent))

        assert result.skipped_reason == "missing_fields"
        assert db_session.query(LedgerEvent).count() == 0

    @pytest.mark.asyncio
    async def test_email_from_customer_lookup(self, deliver, db_session):
        intent = credit_intent("pi_lookup", email=None)
        intent["customer"] = "cus_known"

        await deliver(make_event("payment_intent.succeeded", intent))

        assert _balance(db_session, "lookup@example.com") == 100

    @pytest.mark.asyncio
    async def test_purchase_evicts_cached_payloads(self, deliver, identity_factory, response_cache):
        identity = identity_factory(BUYER)
        response_cache.set(CacheNamespace.DASHBOARD, identity.id, {"credits": {"balance": 0}})

        await deliver(make_event("payment_intent.succeeded", credit_intent()))

        assert response_cache.get(CacheNamespace.DASHBOARD, identity.id) is None

    @pytest.mark.asyncio
    async def test_purchase_refreshes_site_usage_credits(
        self, deliver, identity_factory, entitlements, fake_clock
    ):
        identity = identity_factory(BUYER)
        assert entitlements.check_usage("site-p", identity=identity)["credits"] == 0

        await deliver(make_event("payment_intent.succeeded", credit_intent()))

        # Same clock reading: served fresh only because the purchase evicted it
        assert entitlements.check_usage("site-p", identity=identity)["credits"] == 100

    @pytest.mark.asyncio
    async def test_email_failure_does_not_fail_purchase(self, make_handler, deliver, db_session):
        handler = make_handler(sender=ExplodingEmailSender())

        result = await deliver(make_event("payment_intent.succeeded", credit_intent()), target=handler)

        assert result.processed is True
        assert _balance(db_session) == 100


class TestSubscriptionSync:

    @pytest.mark.asyncio
    async def test_created_upserts_and_confirms(self, deliver, db_session, catalog, email_sender):
        result = await deliver(make_event("customer.subscription.created", subscription_object()))

        assert result.processed is True
        identity = db_session.query(Identity).filter(Identity.email == BUYER).one()
        view = SubscriptionService(db_session, catalog).get_status(identity.id, "alttext-ai")
        assert view.status == CanonicalStatus.ACTIVE
        assert view.plan == "pro"
        assert view.limit == 1000
        assert view.renews_at is not None
        assert [m.tags for m in email_sender.sent_messages] == [["subscription"]]

    @pytest.mark.asyncio
    async def test_update_overwrites_snapshot(self, deliver, db_session, catalog):
        await deliver(make_event("customer.subscription.created", subscription_object()))
        await deliver(make_event("customer.subscription.updated", subscription_object(status="past_due")))

        identity = db_session.query(Identity).filter(Identity.email == BUYER).one()
        view = SubscriptionService(db_session, catalog).get_status(identity.id, "alttext-ai")
        assert view.status == CanonicalStatus.PAST_DUE
        assert len(SubscriptionService(db_session, catalog).list_for_identity(identity.id)) == 1

    @pytest.mark.asyncio
    async def test_sync_evicts_identity_cache(self, deliver, identity_factory, response_cache):
        identity = identity_factory(BUYER)
        response_cache.set(CacheNamespace.SUBSCRIPTION, identity.id, {"status": "inactive"}, "alttext-ai")

        await deliver(make_event("customer.subscription.updated", subscription_object()))

        assert response_cache.get(CacheNamespace.SUBSCRIPTION, identity.id, "alttext-ai") is None

    @pytest.mark.asyncio
    async def test_sync_refreshes_site_usage_for_identity(
        self, deliver, identity_factory, entitlements, fake_clock
    ):
        identity = identity_factory(BUYER)
        before = entitlements.check_usage("site-p", identity=identity)
        assert before["quotaSource"] == "free"

        await deliver(make_event("customer.subscription.created", subscription_object()))

        after = entitlements.check_usage("site-p", identity=identity)
        assert after["quotaSource"] == "subscription"
        assert after["plan"] == "pro"
        assert after["limit"] == 1000

    @pytest.mark.asyncio
    async def test_plan_from_catalog_price(self, make_handler, deliver, db_session, make_yaml_config):
        path = make_yaml_config("plans.yml", {
            "default_product": "alttext-ai",
            "products": {"alttext-ai": {
                "free": {"tokens": 50},
                "agency": {"tokens": 10000, "unlimited": True, "price_id": "price_agency_live"},
            }},
            "credit_packs": [],
        })
        reset_plan_catalog()
        custom = get_plan_catalog(str(path))
        handler = make_handler(handler_catalog=custom)
        obj = subscription_object(plan="pro")
        obj["items"]["data"][0]["price"]["id"] = "price_agency_live"

        await deliver(make_event("customer.subscription.created", obj), target=handler)

        identity = db_session.query(Identity).filter(Identity.email == BUYER).one()
        view = SubscriptionService(db_session, custom).get_status(identity.id, "alttext-ai")
        assert view.plan == "agency"
        assert view.unlimited is True

    @pytest.mark.asyncio
    async def test_missing_email_skipped(self, deliver, db_session):
        obj = subscription_object()
        obj["metadata"] = {}
        obj["customer"] = "cus_unknown"

        result = await deliver(make_event("customer.subscription.created", obj))

        assert result.skipped_reason == "missing_fields"
        assert db_session.query(Identity).count() == 0


class TestLicenseLifecycle:

    @pytest.mark.asyncio
    async def test_checkout_creates_license_once(self, deliver, db_session):
        session_obj = {
            "id": "cs_sub_1",
            "mode": "subscription",
            "subscription": "sub_lic_1",
            "customer": "cus_1",
            "customer_details": {"email": "Agency@Example.com"},
            "metadata": {"plan": "agency", "product": "alttext-ai"},
        }

        await deliver(make_event("checkout.session.completed", session_obj))
        await deliver(make_event("checkout.session.completed", session_obj))

        license_record = db_session.query(License).one()
        assert license_record.plan == "agency"
        assert license_record.owner_email == "agency@example.com"
        assert license_record.token_limit == 10000
        assert license_record.status == LicenseStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_deletion_suspends_and_reactivation_restores(self, deliver, db_session):
        await deliver(make_event("checkout.session.completed", {
            "id": "cs_sub_2",
            "mode": "subscription",
            "subscription": "sub_lic_2",
            "customer_details": {"email": BUYER},
            "metadata": {"plan": "pro"},
        }))

        await deliver(make_event(
            "customer.subscription.deleted",
            subscription_object(status="canceled", subscription_id="sub_lic_2"),
        ))
        license_record = db_session.query(License).one()
        assert license_record.status == LicenseStatus.SUSPENDED

        await deliver(make_event(
            "customer.subscription.updated",
            subscription_object(status="active", subscription_id="sub_lic_2"),
        ))
        db_session.refresh(license_record)
        assert license_record.status == LicenseStatus.ACTIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["canceled", "incomplete_expired", "unpaid"])
    async def test_update_to_non_granting_status_suspends(
        self, deliver, db_session, catalog, entitlements, response_cache, status
    ):
        await deliver(make_event("checkout.session.completed", {
            "id": "cs_sub_3",
            "mode": "subscription",
            "subscription": "sub_lic_3",
            "customer_details": {"email": BUYER},
            "metadata": {"plan": "pro"},
        }))
        license_record = db_session.query(License).one()
        sites = SiteService(db_session, catalog)
        sites.attach_license(
            sites.get_or_create("site-lic"), license_record.license_key, "pro", license_record.token_limit
        )
        assert entitlements.check_usage("site-lic")["quotaSource"] == "license"

        await deliver(make_event(
            "customer.subscription.updated",
            subscription_object(status=status, subscription_id="sub_lic_3"),
        ))

        db_session.refresh(license_record)
        assert license_record.status == LicenseStatus.SUSPENDED
        assert response_cache.get(CacheNamespace.USAGE, "site-lic", "-|-|-") is None
        assert entitlements.check_usage("site-lic")["quotaSource"] == "free"


class TestInvoices:

    @pytest.mark.asyncio
    async def test_invoice_paid_recorded_and_receipt_sent_once(self, deliver, db_session, email_sender):
        invoice_obj = {
            "id": "in_100",
            "customer_email": BUYER,
            "amount_paid": 1499,
            "currency": "usd",
            "hosted_invoice_url": "https://invoice.example.com/in_100",
            "status_transitions": {"paid_at": int(time.time())},
        }

        await deliver(make_event("invoice.paid", invoice_obj))
        await deliver(make_event("invoice.paid", invoice_obj))

        invoice = db_session.query(Invoice).one()
        assert invoice.amount_paid == 1499
        assert invoice.receipt_email_sent is True
        receipts = [m for m in email_sender.sent_messages if m.tags == ["receipt"]]
        assert len(receipts) == 1
        assert "14.99 USD" in receipts[0].text_body

    @pytest.mark.asyncio
    async def test_payment_failed_notifies(self, deliver, email_sender):
        result = await deliver(make_event("invoice.payment_failed", {
            "id": "in_200",
            "customer_email": BUYER,
            "amount_due": 900,
            "currency": "eur",
        }))

        assert result.processed is True
        assert [m.tags for m in email_sender.sent_messages] == [["payment_failed"]]

"""
Database models for identities, the credit ledger, subscriptions and
tenant quotas.

Importing this package registers every table on Base.metadata.
"""

from creditgate.models.base import TimestampMixin, generate_uuid
from creditgate.models.identity import Identity, normalize_email
from creditgate.models.ledger_event import LedgerEvent, LedgerEventType
from creditgate.models.subscription import Subscription
from creditgate.models.site import Site
from creditgate.models.license import License, LicenseStatus
from creditgate.models.usage_log import UsageLog
from creditgate.models.invoice import Invoice
from creditgate.models.webhook_event import WebhookEvent

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "Identity",
    "normalize_email",
    "LedgerEvent",
    "LedgerEventType",
    "Subscription",
    "Site",
    "License",
    "LicenseStatus",
    "UsageLog",
    "Invoice",
    "WebhookEvent",
]

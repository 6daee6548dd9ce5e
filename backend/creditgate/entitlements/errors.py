"""
Structured error classes for entitlement resolution and the credit ledger.

Every error carries a machine-readable code and the HTTP status the API
layer returns for it. Route handlers serialize errors with to_dict().
"""

from typing import Optional, Dict, Any
from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement and ledger errors."""

    error_code = "ENTITLEMENT_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        payload = {
            "ok": False,
            "code": self.error_code,
            "message": self.message,
        }
        payload.update(self.details())
        return payload


class MissingTenantIdError(EntitlementError):
    """Raised when a request carries no tenant (site) hash."""

    error_code = "MISSING_TENANT_ID"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Site hash is required"):
        super().__init__(message)


class QuotaSourceUnresolvableError(EntitlementError):
    """Raised when no quota source applies to a request."""

    error_code = "QUOTA_SOURCE_UNRESOLVABLE"
    http_status = 422

    def __init__(self, tenant_hash: str):
        self.tenant_hash = tenant_hash
        super().__init__(f"No quota source applies to site '{tenant_hash}'")


class UsageError(EntitlementError):
    """
    Raised when an entitlement check fails internally.

    The decision is never defaulted to allowed when this is raised.
    """

    error_code = "USAGE_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Failed to check usage"):
        super().__init__(message)


class QuotaExceededError(EntitlementError):
    """Raised when a consumption request exceeds the resolved quota."""

    error_code = "quota_exceeded"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        quota_source: str,
        used: int,
        limit: Optional[int],
        requested: int,
        reset_date: Optional[str] = None,
    ):
        self.quota_source = quota_source
        self.used = used
        self.limit = limit
        self.requested = requested
        self.reset_date = reset_date
        super().__init__("Monthly quota exceeded")

    def details(self) -> Dict[str, Any]:
        return {
            "quotaSource": self.quota_source,
            "used": self.used,
            "limit": self.limit,
            "requested": self.requested,
            "resetDate": self.reset_date,
        }


class InsufficientCreditsError(EntitlementError):
    """Raised by the ledger when a spend exceeds the current balance."""

    error_code = "INSUFFICIENT_CREDITS"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, current_balance: int, requested: int):
        self.current_balance = current_balance
        self.requested = requested
        super().__init__(
            f"Insufficient credits: balance {current_balance}, requested {requested}"
        )

    def details(self) -> Dict[str, Any]:
        return {
            "currentBalance": self.current_balance,
            "requested": self.requested,
        }


class InvalidSignatureError(EntitlementError):
    """Raised when a webhook signature cannot be verified."""

    error_code = "INVALID_SIGNATURE"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)


class InvalidSessionError(EntitlementError):
    """Raised when a session credential is present but cannot be verified."""

    error_code = "INVALID_SESSION"
    http_status = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Invalid or expired session"):
        super().__init__(message)

"""
Email sender abstraction for billing notifications.

Supports:
- SendGrid (production)
- Mock (testing)

Send failures are logged and reported as False; callers treat email as
non-critical.
"""

import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List

import httpx

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailMessage:
    """Email message data."""
    to_email: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    tags: Optional[List[str]] = None


class EmailSender(ABC):
    """Abstract base class for email sending."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> bool:
        """
        Send an email asynchronously.

        Returns:
            True on success, False on failure
        """
        pass


class SendGridEmailSender(EmailSender):
    """SendGrid email sender implementation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
    ):
        self.api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.from_email = from_email or os.getenv(
            "NOTIFICATION_FROM_EMAIL", "billing@example.com"
        )
        self.from_name = from_name or os.getenv("NOTIFICATION_FROM_NAME", "Billing")

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    async def send(self, message: EmailMessage) -> bool:
        """Send email via SendGrid API."""
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured")
            return False

        payload = {
            "personalizations": [{"to": [{"email": message.to_email}]}],
            "from": {
                "email": message.from_email or self.from_email,
                "name": message.from_name or self.from_name,
            },
            "subject": message.subject,
            "content": [{"type": "text/html", "value": message.html_body}],
        }
        if message.text_body:
            payload["content"].insert(0, {"type": "text/plain", "value": message.text_body})
        if message.tags:
            payload["categories"] = message.tags

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(
                "Failed to send email via SendGrid",
                extra={"to_email": message.to_email, "error": str(e)},
            )
            return False

        if response.status_code in (200, 202):
            logger.info(
                "Email sent successfully",
                extra={"to_email": message.to_email, "subject": message.subject},
            )
            return True

        logger.error(
            "SendGrid API error",
            extra={
                "status_code": response.status_code,
                "response": response.text,
                "to_email": message.to_email,
            },
        )
        return False


class MockEmailSender(EmailSender):
    """Mock email sender for testing."""

    def __init__(self):
        self.sent_messages: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> bool:
        """Record email in sent_messages list."""
        self.sent_messages.append(message)
        logger.info(
            "Mock email sent",
            extra={"to_email": message.to_email, "subject": message.subject},
        )
        return True

    def clear(self) -> None:
        self.sent_messages.clear()


def get_email_sender() -> EmailSender:
    """Get configured email sender based on environment."""
    provider = os.getenv("NOTIFICATION_EMAIL_PROVIDER", "sendgrid").lower()
    if provider == "mock":
        return MockEmailSender()
    return SendGridEmailSender()


class BillingNotifier:
    """Billing emails sent from webhook processing."""

    def __init__(self, sender: Optional[EmailSender] = None):
        self.sender = sender or get_email_sender()

    async def send_receipt(self, email: str, amount_paid: int, currency: str,
                           invoice_url: Optional[str] = None) -> bool:
        amount = f"{amount_paid / 100:.2f} {currency.upper()}"
        link = f'<p><a href="{invoice_url}">View invoice</a></p>' if invoice_url else ""
        return await self.sender.send(EmailMessage(
            to_email=email,
            subject="Your payment receipt",
            html_body=f"<p>We received your payment of {amount}.</p>{link}",
            text_body=f"We received your payment of {amount}.",
            tags=["receipt"],
        ))

    async def send_subscription_confirmation(self, email: str, plan: str, product: str) -> bool:
        return await self.sender.send(EmailMessage(
            to_email=email,
            subject=f"Welcome to {plan.title()}",
            html_body=f"<p>Your {plan} plan for {product} is now active.</p>",
            text_body=f"Your {plan} plan for {product} is now active.",
            tags=["subscription"],
        ))

    async def send_credits_confirmation(self, email: str, credits: int, balance: int) -> bool:
        return await self.sender.send(EmailMessage(
            to_email=email,
            subject="Credits added to your account",
            html_body=f"<p>{credits} credits were added. Your balance is {balance}.</p>",
            text_body=f"{credits} credits were added. Your balance is {balance}.",
            tags=["credits"],
        ))

    async def send_payment_failed(self, email: str, amount_due: int, currency: str) -> bool:
        amount = f"{amount_due / 100:.2f} {currency.upper()}"
        return await self.sender.send(EmailMessage(
            to_email=email,
            subject="Payment failed",
            html_body=f"<p>We could not collect your payment of {amount}. Please update your card.</p>",
            text_body=f"We could not collect your payment of {amount}. Please update your card.",
            tags=["payment_failed"],
        ))

"""Invoice model - paid provider invoices, upserted by invoice id."""

from sqlalchemy import Column, String, Integer, Boolean, DateTime

from creditgate.db_base import Base
from creditgate.models.base import TimestampMixin, generate_uuid


class Invoice(Base, TimestampMixin):
    """Provider invoice record."""

    __tablename__ = "invoices"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    invoice_id = Column(String(255), nullable=False, unique=True, index=True)
    identity_id = Column(String(36), nullable=True, index=True)
    product = Column(String(64), nullable=True)

    amount_paid = Column(Integer, nullable=False, default=0, comment="Minor currency units")
    currency = Column(String(8), nullable=False, default="usd")

    hosted_invoice_url = Column(String(2048), nullable=True)
    pdf_url = Column(String(2048), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    receipt_email_sent = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<Invoice(invoice_id={self.invoice_id}, amount_paid={self.amount_paid})>"

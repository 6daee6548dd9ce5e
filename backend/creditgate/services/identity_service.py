"""
Identity lookup and lazy creation.

Identities are keyed by normalized email and created on first reference.
Concurrent first references race on the unique email index; the loser
re-reads the winner's row.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditgate.models.identity import Identity, normalize_email

logger = logging.getLogger(__name__)


class IdentityService:
    """Find or create identities by email."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def find_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.db.query(Identity).filter(Identity.email == normalized).first()

    def get(self, identity_id: str) -> Optional[Identity]:
        return self.db.query(Identity).filter(Identity.id == identity_id).first()

    def get_or_create(self, email: str) -> Identity:
        """
        Return the identity for an email, creating it if absent.

        Raises:
            ValueError: If email is empty
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("email is required")

        identity = self.find_by_email(normalized)
        if identity:
            return identity

        identity = Identity(email=normalized, credits_balance=0, schema_version=1)
        self.db.add(identity)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created it first
            self.db.rollback()
            identity = self.find_by_email(normalized)
            if identity is None:
                raise
            return identity

        logger.info("Identity created", extra={"identity_id": identity.id})
        return identity

"""
Session credential verification.

This module does NOT issue session tokens. It only verifies HS256 session
JWTs issued by the account service and extracts the email they carry.

JWT Claims Used:
- sub: account id
- email: account email (identity key)
- exp: Expiration timestamp
- iat: Issued at timestamp
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from creditgate.config.settings import get_settings
from creditgate.entitlements.errors import InvalidSessionError
from creditgate.models.identity import normalize_email

logger = logging.getLogger(__name__)

CLOCK_SKEW_SECONDS = 30


@dataclass(frozen=True)
class SessionClaims:
    """Verified session claims."""
    subject: str
    email: str


class SessionVerifier:
    """Verifies session JWTs with a shared secret."""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        settings = get_settings()
        self._secret = secret if secret is not None else settings.session_jwt_secret
        self._algorithm = algorithm or settings.session_jwt_algorithm

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def verify(self, token: Optional[str]) -> Optional[SessionClaims]:
        """
        Verify a session credential.

        Returns:
            SessionClaims, or None when no credential was presented

        Raises:
            InvalidSessionError: If a credential is present but invalid
        """
        if not token:
            return None

        if token.startswith("Bearer "):
            token = token[7:]
        token = token.strip()
        if not token:
            return None

        if not self.configured:
            logger.error("SESSION_JWT_SECRET not configured, rejecting session credential")
            raise InvalidSessionError("Session verification not configured")

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat", "sub"]},
                leeway=CLOCK_SKEW_SECONDS,
            )
        except ExpiredSignatureError:
            logger.warning("Session token has expired")
            raise InvalidSessionError("Session has expired")
        except InvalidTokenError as e:
            logger.warning("Invalid session token", extra={"error": str(e)})
            raise InvalidSessionError()

        email = normalize_email(claims.get("email", ""))
        if not email:
            logger.warning("Session token has no email claim", extra={"sub": claims.get("sub")})
            raise InvalidSessionError("Session has no email")

        return SessionClaims(subject=str(claims["sub"]), email=email)

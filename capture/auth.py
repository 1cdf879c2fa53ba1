"""
Identity verification.

Token verification is an external collaborator: something that turns a
bearer token into `Principal(subject_id, email)` or fails. StaticTokenVerifier
is the development implementation, configured from AUTH_TOKENS.
"""

import logging
from typing import Optional, Protocol

from capture.errors import AuthenticationFailed
from capture.models import Principal

logger = logging.getLogger("auth")


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> Principal:
        ...


class StaticTokenVerifier:
    """Verifies tokens against a fixed token -> (subject, email) table."""

    def __init__(self, tokens: Optional[dict[str, tuple[str, Optional[str]]]] = None):
        self._tokens = dict(tokens or {})

    async def verify(self, token: str) -> Principal:
        identity = self._tokens.get(token)
        if identity is None:
            logger.warning("Rejected unknown token")
            raise AuthenticationFailed("Invalid or expired token")
        subject_id, email = identity
        return Principal(subject_id=subject_id, email=email)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer ...` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()

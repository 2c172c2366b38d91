"""Session credential — bearer token plus the expiry read from it.

The client never verifies the token signature (it does not hold the
secret); it only reads the ``exp`` claim to decide when to renew.

Usage::

    cred = SessionCredential.from_tokens(access_token, refresh_token)
    if cred.expires_at is not None and cred.expires_at < time.time() + 600:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jwt

log = logging.getLogger(__name__)


def read_expiry(token: str) -> Optional[float]:
    """Return the ``exp`` claim of a JWT in epoch seconds.

    Returns None when the token cannot be decoded or carries no expiry.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as e:
        log.warning("Cannot read token expiry: %s", e)
        return None
    exp = payload.get("exp")
    if exp is None:
        return None
    try:
        return float(exp)
    except (TypeError, ValueError):
        log.warning("Token exp claim is not numeric: %r", exp)
        return None


@dataclass(frozen=True)
class SessionCredential:
    """Access token, optional refresh token, and expiry (epoch seconds).

    ``expires_at`` is None when the expiry is unknown.
    """

    token: str
    expires_at: Optional[float] = None
    refresh_token: str = ""

    @classmethod
    def from_tokens(cls, token: str, refresh_token: str = "",
                    expires_at: Optional[float] = None) -> SessionCredential:
        """Build a credential, reading the expiry from the token if not given."""
        if expires_at is None:
            expires_at = read_expiry(token)
        return cls(token=token, expires_at=expires_at, refresh_token=refresh_token)

    def seconds_left(self, now: float) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - now

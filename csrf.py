# csrf.py
"""Session-bound synchronizer-token CSRF protection."""
from __future__ import annotations

import hmac
import secrets
from typing import Callable, Optional

from sessions import Session

CSRF_SESSION_KEY = "csrf_token"
CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER = "x-csrf-token"
EXEMPT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# 32 random bytes -> 64 hex chars
TOKEN_BYTES = 32


class CsrfTokenService:
    """
    One token per session.

    The token is created the first time it is asked for and only changes
    when the session itself is regenerated (login/logout) or regenerate()
    is called explicitly. Rendering a form does not rotate it.
    """

    def __init__(self, session: Session, random_hex: Optional[Callable[[int], str]] = None):
        self._session = session
        self._random_hex = random_hex or secrets.token_hex

    def generate(self) -> str:
        token = self._random_hex(TOKEN_BYTES)
        self._session.set(CSRF_SESSION_KEY, token)
        return token

    def get_token(self) -> str:
        token = self._session.get(CSRF_SESSION_KEY)
        if not token:
            return self.generate()
        return token

    def regenerate(self) -> str:
        return self.generate()

    def validate(self, token: Optional[str]) -> bool:
        stored = self._session.get(CSRF_SESSION_KEY)
        if not isinstance(stored, str) or not stored or not token:
            return False
        # constant-time compare
        return hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8"))

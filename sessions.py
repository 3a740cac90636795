# sessions.py
"""
Cookie-backed sessions.

The whole session dict is JSON-encoded and HMAC-signed into one cookie,
the same scheme the admin session cookie always used. Nothing is stored
server-side, so there is no cross-process coordination to worry about.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Optional

SESSION_COOKIE = "cms_session"
SESSION_MAX_AGE = 7200  # 2 hours


def _b64u(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64u_dec(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


class Session(dict):
    """
    Per-client session data.

    `new` is True for a session created during this request;
    `modified` tracks whether the cookie has to be re-issued.
    """

    def __init__(self, data: Optional[dict[str, Any]] = None, new: bool = False):
        super().__init__(data or {})
        self.new = new
        self.modified = False
        self.destroyed = False

    def set(self, key: str, value: Any) -> None:
        self[key] = value
        self.modified = True

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def remove(self, key: str) -> None:
        if key in self:
            del self[key]
            self.modified = True

    def regenerate(self) -> None:
        """Start a fresh session (login/logout). Drops every stored value."""
        self.clear()
        self.new = True
        self.modified = True

    def destroy(self) -> None:
        self.clear()
        self.destroyed = True
        self.modified = True


class SessionCodec:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret.encode("utf-8")

    def _sig(self, body: str) -> str:
        return _b64u(hmac.new(self._secret, body.encode("ascii"), hashlib.sha256).digest())

    def dumps(self, data: dict[str, Any]) -> str:
        raw = json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        body = _b64u(raw)
        return f"{body}.{self._sig(body)}"

    def loads(self, token: str) -> Optional[dict[str, Any]]:
        try:
            body, sig = token.split(".", 1)
            if not hmac.compare_digest(sig, self._sig(body)):
                return None
            data = json.loads(_b64u_dec(body).decode("utf-8"))
        except (ValueError, UnicodeError):
            return None
        if not isinstance(data, dict):
            return None
        return data

    def open(self, cookie_value: Optional[str]) -> Session:
        data = self.loads(cookie_value) if cookie_value else None
        if data is None:
            return Session(new=True)
        return Session(data)

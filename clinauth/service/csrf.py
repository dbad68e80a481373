from __future__ import annotations

import hmac
import secrets
from typing import Any, Mapping, Optional

CSRF_HEADER_NAMES = ("X-CSRF-Token", "X-XSRF-Token")
CSRF_BODY_FIELD = "csrf_token"
CSRF_COOKIE_NAME = "csrf_token"
CSRF_SESSION_META_KEY = "csrf_token"


class CsrfValidator:
    """Issues and checks tokens bound to a session or cookie scope.

    The bound value is whatever the caller's scope holds: the token stored in
    a live session's meta, or the ``csrf_token`` cookie before login.
    """

    def __init__(self, token_bytes: int = 32) -> None:
        self.token_bytes = token_bytes

    def issue(self) -> str:
        return secrets.token_urlsafe(self.token_bytes)

    @staticmethod
    def extract(headers: Mapping[str, str], body: Any = None) -> Optional[str]:
        """Find the submitted token in a header, then the JSON body."""
        for name in CSRF_HEADER_NAMES:
            value = headers.get(name)
            if value:
                return value
        if isinstance(body, dict):
            value = body.get(CSRF_BODY_FIELD)
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def validate(submitted: Optional[str], bound: Optional[str]) -> bool:
        if not submitted or not bound:
            return False
        return hmac.compare_digest(submitted.encode(), bound.encode())

    def ensure_session_token(self, meta: Optional[dict]) -> tuple[str, dict, bool]:
        """Return (token, meta, changed) with a token present in session meta."""
        updated = dict(meta or {})
        existing = updated.get(CSRF_SESSION_META_KEY)
        if isinstance(existing, str) and existing:
            return existing, updated, False
        token = self.issue()
        updated[CSRF_SESSION_META_KEY] = token
        return token, updated, True

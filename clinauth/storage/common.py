"""Storage utilities shared between the memory and postgres implementations.

Both backends satisfy :class:`AuthStore`; services are typed against the
protocol so either can be injected.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from clinauth.storage.models import (
    Credential,
    OtpCode,
    PendingChallenge,
    Session,
    User,
    UserPreferences,
)


class AuthStore(Protocol):
    def ping(self) -> None: ...

    # Identity (read-mostly)
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        two_factor_enabled: bool = True,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def set_account_lockout(
        self, user_id: str, until: Optional[datetime], *, status: str = "active"
    ) -> None: ...

    # Preferences
    def get_preferences(self, user_id: str) -> Optional[UserPreferences]: ...

    def set_idle_timeout(self, user_id: str, seconds: int) -> UserPreferences: ...

    # Challenges
    def replace_challenge(self, challenge: PendingChallenge, code: OtpCode) -> None: ...

    def get_challenge(self, user_id: str, purpose: str) -> Optional[PendingChallenge]: ...

    def decrement_challenge_attempts(self, challenge_id: str) -> Optional[int]: ...

    def delete_challenge(self, challenge_id: str) -> bool: ...

    def get_otp_code(self, code_id: str) -> Optional[OtpCode]: ...

    def mark_otp_used(self, code_id: str, used_at: datetime, *, challenge_id: str) -> bool: ...

    def purge_expired_challenges(self, now: datetime, code_retention_seconds: int) -> int: ...

    # Sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def set_session_meta(self, session_id: str, meta: Dict) -> None: ...

    def deactivate_session(self, session_id: str, *, reason: str, at: datetime) -> bool: ...

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        created_before: datetime,
        except_token_hash: Optional[str] = None,
    ) -> int: ...

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]: ...

    def purge_sessions(self, now: datetime, retention_days: int) -> tuple[int, int]: ...


def normalize_username(username: str) -> str:
    """Usernames compare case-insensitively with surrounding whitespace ignored."""
    return username.strip().lower()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a metadata column from a JSON string or dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def generate_uuid() -> str:
    return str(uuid.uuid4())

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    two_factor_enabled: bool = True
    meta: Dict | None = None


@dataclass
class Credential:
    """Password verifier and lockout state for one account.

    Owned by the identity store; the authentication core only reads it.
    """

    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    status: str = "active"
    lockout_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        if self.status == "locked":
            return True
        return self.lockout_until is not None and self.lockout_until > now


@dataclass
class OtpCode:
    id: str
    user_id: str
    purpose: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None

    @property
    def used(self) -> bool:
        return self.used_at is not None


@dataclass
class PendingChallenge:
    id: str
    user_id: str
    username: str
    email: str
    purpose: str
    otp_code_id: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at and self.attempts_remaining > 0


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        lifetime_seconds: int = 3600,
        *,
        device_info: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        meta: Dict | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(seconds=lifetime_seconds),
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
            meta=meta,
        )


@dataclass
class UserPreferences:
    user_id: str
    idle_timeout: Optional[int] = None
    theme: str = "system"
    notifications_enabled: bool = True
    updated_at: datetime = field(default_factory=utcnow)

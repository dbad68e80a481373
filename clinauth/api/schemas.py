from __future__ import annotations

import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinauth.logging import get_correlation_id


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error portion of the response envelope with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class LoginRequest(BaseModel):
    # Optional so empty input reaches the service and gets per-field messages
    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip()


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: Optional[str] = Field(default=None, max_length=32)
    trust_device: bool = Field(default=False, alias="trustDevice")

    @field_validator("code", mode="before")
    @classmethod
    def _coerce_code(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return str(value).strip()


class LogoutSessionRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)


class TimeoutPreferenceRequest(BaseModel):
    timeout: Optional[int] = None
    timeout_seconds: Optional[int] = None
    timeout_minutes: Optional[int] = None


class UserInfo(BaseModel):
    id: str
    username: str
    email: Optional[str] = None
    role: str = "user"
    two_factor_enabled: Optional[bool] = None


class ActiveSession(BaseModel):
    id: str
    device: str
    origin: str
    created_at: str
    last_activity: str
    expires_at: Optional[str] = None
    is_current: bool = False


class ActiveSessionList(BaseModel):
    sessions: List[ActiveSession]
    count: int

from __future__ import annotations

import hashlib
import ipaddress
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from clinauth.logging import get_logger
from clinauth.service.csrf import CSRF_SESSION_META_KEY, CsrfValidator
from clinauth.service.errors import ValidationError
from clinauth.service.events import EventEmitter
from clinauth.service.tokens import SignedTokenCodec
from clinauth.storage.common import AuthStore
from clinauth.storage.errors import StoreUnavailable
from clinauth.storage.models import Session, utcnow

LOCAL_STATE_TYP = "auth_state"
DEFAULT_DEVICE = "Unknown Device"

_BROWSER_PATTERNS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Firefox", re.compile(r"Firefox/([\d.]+)")),
    ("Chrome", re.compile(r"Chrome/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
)
_WINDOWS_VERSIONS = {"10.0": "10/11", "6.3": "8.1", "6.2": "8", "6.1": "7"}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def parse_device(user_agent: Optional[str]) -> str:
    """Describe a user agent as "Browser version on OS"."""
    if not user_agent:
        return DEFAULT_DEVICE

    browser = "Unknown Browser"
    for name, pattern in _BROWSER_PATTERNS:
        match = pattern.search(user_agent)
        if match:
            major = match.group(1).split(".")[0]
            browser = f"{name} {major}"
            break

    os_name = "Unknown OS"
    windows = re.search(r"Windows NT ([\d.]+)", user_agent)
    if windows:
        os_name = f"Windows {_WINDOWS_VERSIONS.get(windows.group(1), windows.group(1))}"
    elif re.search(r"iPhone|iPad|iPod", user_agent):
        os_name = "iOS"
    elif "Mac OS X" in user_agent or "Macintosh" in user_agent:
        os_name = "macOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Linux" in user_agent:
        os_name = "Linux"

    return f"{browser} on {os_name}"


def mask_origin(ip: Optional[str]) -> str:
    if not ip:
        return "Unknown"
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return "Unknown"
    if addr.version == 4:
        octets = str(addr).split(".")
        return ".".join(octets[:3] + ["***"])
    groups = str(addr).split(":")
    return ":".join(groups[:-1] + ["****"])


@dataclass
class TouchResult:
    valid: bool
    remaining_time: int
    idle_timeout: int
    expires_at: Optional[datetime] = None

    @classmethod
    def invalid(cls, idle_timeout: int) -> "TouchResult":
        return cls(valid=False, remaining_time=0, idle_timeout=idle_timeout)


def _remaining(
    now: datetime, last_activity: datetime, idle_timeout: int, expires_at: datetime
) -> int:
    idle_left = idle_timeout - (now - last_activity).total_seconds()
    hard_left = (expires_at - now).total_seconds()
    return max(0, int(min(idle_left, hard_left)))


class ResolvedSession:
    """A session backed by a durable store record."""

    degraded = False

    def __init__(self, record: Session, idle_timeout: int, manager: "SessionManager") -> None:
        self.record = record
        self.idle_timeout = idle_timeout
        self._manager = manager

    @property
    def user_id(self) -> str:
        return self.record.user_id

    @property
    def session_id(self) -> str:
        return self.record.id

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at

    @property
    def last_activity(self) -> datetime:
        return self.record.last_activity

    def is_live(self, now: datetime) -> bool:
        if not self.record.is_active or now >= self.record.expires_at:
            return False
        return (now - self.record.last_activity).total_seconds() < self.idle_timeout

    def remaining(self, now: datetime) -> int:
        if not self.record.is_active:
            return 0
        return _remaining(now, self.record.last_activity, self.idle_timeout, self.record.expires_at)

    def touch(self) -> TouchResult:
        return self._manager._touch_record(self.record, self.idle_timeout)


class DegradedSession:
    """A session declared by the signed ``auth_state`` cookie.

    Used only when the store cannot vouch for the caller's token. Its activity
    clock lives in the cookie and is re-signed after every touch.
    """

    degraded = True

    def __init__(
        self,
        *,
        user_id: str,
        session_id: Optional[str],
        username: Optional[str],
        role: Optional[str],
        last_activity: datetime,
        idle_timeout: int,
        expires_at: datetime,
        manager: "SessionManager",
    ) -> None:
        self.user_id = user_id
        self.session_id = session_id
        self.username = username
        self.role = role
        self.last_activity = last_activity
        self.idle_timeout = idle_timeout
        self.expires_at = expires_at
        self._manager = manager

    def is_live(self, now: datetime) -> bool:
        if now >= self.expires_at:
            return False
        return (now - self.last_activity).total_seconds() < self.idle_timeout

    def remaining(self, now: datetime) -> int:
        return _remaining(now, self.last_activity, self.idle_timeout, self.expires_at)

    def touch(self) -> TouchResult:
        now = self._manager._now()
        if not self.is_live(now):
            self._manager.events.emit(
                "timeout",
                {"user_id": self.user_id, "session_id": self.session_id, "degraded": True},
            )
            return TouchResult.invalid(self.idle_timeout)
        remaining = self.remaining(now)
        self.last_activity = now
        self._manager.events.emit(
            "activity_ping",
            {"user_id": self.user_id, "session_id": self.session_id, "degraded": True},
        )
        return TouchResult(
            valid=True,
            remaining_time=remaining,
            idle_timeout=self.idle_timeout,
            expires_at=self.expires_at,
        )


AnySession = Union[ResolvedSession, DegradedSession]


class SessionManager:
    """Creates, validates, lists and terminates login sessions.

    Tokens are 64 hex characters handed to the client once; only their
    SHA-256 digest is stored. Liveness is bounded both by an idle timeout
    (per-user preference, clamped to the configured range) and by a hard
    expiry fixed at creation.
    """

    def __init__(
        self,
        store: AuthStore,
        events: EventEmitter,
        csrf: CsrfValidator,
        codec: SignedTokenCodec,
        *,
        idle_timeout_seconds: int = 1800,
        min_idle_timeout_seconds: int = 300,
        max_idle_timeout_seconds: int = 3600,
        max_lifetime_seconds: int = 3600,
        expiring_threshold_seconds: int = 300,
        retention_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.events = events
        self.csrf = csrf
        self.codec = codec
        self.idle_timeout_seconds = idle_timeout_seconds
        self.min_idle_timeout_seconds = min_idle_timeout_seconds
        self.max_idle_timeout_seconds = max_idle_timeout_seconds
        self.max_lifetime_seconds = max_lifetime_seconds
        self.expiring_threshold_seconds = expiring_threshold_seconds
        self.retention_days = retention_days
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    # -- idle timeout policy -------------------------------------------------

    def _clamp(self, seconds: int) -> int:
        return max(self.min_idle_timeout_seconds, min(self.max_idle_timeout_seconds, seconds))

    def get_idle_timeout(self, user_id: str) -> int:
        prefs = self.store.get_preferences(user_id)
        if prefs is None or prefs.idle_timeout is None:
            return self._clamp(self.idle_timeout_seconds)
        return self._clamp(int(prefs.idle_timeout))

    def set_idle_timeout(self, user_id: str, seconds: Any) -> int:
        try:
            value = int(seconds)
        except (TypeError, ValueError):
            raise ValidationError(
                "Timeout must be a whole number of seconds", status_code=422
            ) from None
        low, high = self.min_idle_timeout_seconds, self.max_idle_timeout_seconds
        if value < low:
            raise ValidationError(
                f"Timeout must be at least {low} seconds ({low // 60} minutes)",
                status_code=422,
                detail={"min_timeout": low},
            )
        if value > high:
            raise ValidationError(
                f"Timeout cannot exceed {high} seconds ({high // 60} minutes)",
                status_code=422,
                detail={"max_timeout": high},
            )
        self.store.set_idle_timeout(user_id, value)
        self.logger.info("idle_timeout_updated", user_id=user_id, timeout=value)
        return value

    def preferences(self, user_id: str) -> Dict[str, Any]:
        timeout = self.get_idle_timeout(user_id)
        prefs = self.store.get_preferences(user_id)
        return {
            "timeout": timeout,
            "timeout_minutes": timeout // 60,
            "min_timeout": self.min_idle_timeout_seconds,
            "max_timeout": self.max_idle_timeout_seconds,
            "min_minutes": self.min_idle_timeout_seconds // 60,
            "max_minutes": self.max_idle_timeout_seconds // 60,
            "preferences": {
                "theme": prefs.theme if prefs else "system",
                "notifications_enabled": prefs.notifications_enabled if prefs else True,
            },
        }

    # -- lifecycle ------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> tuple[str, Session]:
        """Mint a session; the returned token is never retrievable again."""
        token = secrets.token_hex(32)
        now = self._now()
        session = Session.new(
            user_id,
            hash_token(token),
            self.max_lifetime_seconds,
            device_info=device_info or parse_device(user_agent),
            ip_address=ip_address,
            user_agent=user_agent,
            meta={CSRF_SESSION_META_KEY: self.csrf.issue()},
            now=now,
        )
        stored = self.store.create_session(session)
        self.events.emit(
            "login",
            {
                "user_id": user_id,
                "session_id": stored.id,
                "device": stored.device_info,
                "origin": mask_origin(ip_address),
                "expires_at": stored.expires_at,
            },
        )
        return token, stored

    def _lookup(self, token: Optional[str]) -> Optional[Session]:
        if not token:
            return None
        return self.store.get_session_by_token_hash(hash_token(token))

    def _touch_record(self, record: Session, idle_timeout: int) -> TouchResult:
        now = self._now()
        if not record.is_active or now >= record.expires_at:
            return TouchResult.invalid(idle_timeout)
        if (now - record.last_activity).total_seconds() >= idle_timeout:
            if self.store.deactivate_session(record.id, reason="timeout", at=now):
                self.events.emit(
                    "timeout",
                    {"user_id": record.user_id, "session_id": record.id, "idle_timeout": idle_timeout},
                )
            record.is_active = False
            return TouchResult.invalid(idle_timeout)

        remaining = _remaining(now, record.last_activity, idle_timeout, record.expires_at)
        if not self.store.touch_session(record.id, now):
            return TouchResult.invalid(idle_timeout)
        record.last_activity = now
        self.events.emit(
            "activity_ping",
            {"user_id": record.user_id, "session_id": record.id, "remaining_time": remaining},
        )
        return TouchResult(
            valid=True,
            remaining_time=remaining,
            idle_timeout=idle_timeout,
            expires_at=record.expires_at,
        )

    def touch(self, token: Optional[str]) -> TouchResult:
        """Record activity on a token and report how long it stays alive."""
        record = self._lookup(token)
        if record is None:
            return TouchResult.invalid(self._clamp(self.idle_timeout_seconds))
        return self._touch_record(record, self.get_idle_timeout(record.user_id))

    def inspect(self, token: Optional[str]) -> Optional[ResolvedSession]:
        """Return the live session for a token without recording activity."""
        record = self._lookup(token)
        if record is None:
            return None
        resolved = ResolvedSession(record, self.get_idle_timeout(record.user_id), self)
        return resolved if resolved.is_live(self._now()) else None

    # -- two-tier resolution --------------------------------------------------

    def encode_local_state(
        self,
        *,
        user_id: str,
        session_id: Optional[str],
        username: Optional[str],
        role: Optional[str],
        last_activity: datetime,
        idle_timeout: int,
        expires_at: datetime,
    ) -> str:
        payload = {
            "sub": user_id,
            "sid": session_id,
            "usr": username,
            "role": role,
            "lat": int(last_activity.timestamp()),
            "idle": idle_timeout,
        }
        return self.codec.encode(LOCAL_STATE_TYP, payload, expires_at=expires_at.timestamp())

    def decode_local_state(self, value: Optional[str]) -> Optional[DegradedSession]:
        now = self._now()
        payload = self.codec.decode(value, LOCAL_STATE_TYP, now=now.timestamp())
        if not payload or not payload.get("sub"):
            return None
        try:
            last_activity = datetime.fromtimestamp(int(payload["lat"]), tz=now.tzinfo)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=now.tzinfo)
            idle_timeout = self._clamp(int(payload.get("idle") or self.idle_timeout_seconds))
        except (KeyError, TypeError, ValueError):
            return None
        return DegradedSession(
            user_id=str(payload["sub"]),
            session_id=payload.get("sid"),
            username=payload.get("usr"),
            role=payload.get("role"),
            last_activity=last_activity,
            idle_timeout=idle_timeout,
            expires_at=expires_at,
            manager=self,
        )

    def resolve(self, token: Optional[str], local_state: Optional[str]) -> Optional[AnySession]:
        """Pick the session tier for a request.

        A store record for the token always wins, live or not. The signed
        local state is consulted only when there is no record or the store
        cannot be reached, and is refused if the store holds an ended record
        for the session it names.
        """
        store_down = False
        try:
            record = self._lookup(token)
            if record is not None:
                return ResolvedSession(record, self.get_idle_timeout(record.user_id), self)
        except StoreUnavailable:
            store_down = True
            self.logger.warning("session_store_unavailable_degrading")

        degraded = self.decode_local_state(local_state)
        if degraded is None:
            return None
        if not store_down and degraded.session_id:
            try:
                named = self.store.get_session(degraded.session_id)
            except StoreUnavailable:
                named = None
            if named is not None and (
                not named.is_active
                or named.user_id != degraded.user_id
                or self._now() >= named.expires_at
            ):
                return None
        return degraded

    def local_state_for(self, session: AnySession, *, username: str, role: str) -> str:
        return self.encode_local_state(
            user_id=session.user_id,
            session_id=session.session_id,
            username=username,
            role=role,
            last_activity=session.last_activity,
            idle_timeout=session.idle_timeout,
            expires_at=session.expires_at,
        )

    # -- csrf binding ---------------------------------------------------------

    def csrf_token_for(self, token: Optional[str], *, create: bool = False) -> Optional[str]:
        """Return the CSRF token bound to a live session, optionally minting one."""
        resolved = self.inspect(token)
        if resolved is None:
            return None
        value, meta, changed = self.csrf.ensure_session_token(resolved.record.meta)
        if changed:
            if not create:
                return None
            self.store.set_session_meta(resolved.session_id, meta)
        return value

    # -- listing and termination ---------------------------------------------

    def list_sessions(self, user_id: str, current_token: Optional[str]) -> List[Dict[str, Any]]:
        current_hash = hash_token(current_token) if current_token else None
        sessions = self.store.list_active_sessions(user_id, self._now())
        return [
            {
                "id": sess.id,
                "device": sess.device_info or DEFAULT_DEVICE,
                "origin": mask_origin(sess.ip_address),
                "created_at": sess.created_at.isoformat(),
                "last_activity": sess.last_activity.isoformat(),
                "expires_at": sess.expires_at.isoformat(),
                "is_current": current_hash is not None and sess.token_hash == current_hash,
            }
            for sess in sessions
        ]

    def terminate(self, session_id: str, *, user_id: Optional[str] = None, reason: str = "logout") -> bool:
        """End one session; ending an already ended session succeeds."""
        record = self.store.get_session(session_id)
        if record is None:
            return False
        if user_id is not None and record.user_id != user_id:
            return False
        if not record.is_active:
            return True
        if self.store.deactivate_session(session_id, reason=reason, at=self._now()):
            self.events.emit(
                "logout" if reason == "logout" else "forced_logout",
                {"user_id": record.user_id, "session_id": session_id, "reason": reason},
            )
        return True

    def end_current(self, token: Optional[str], *, reason: str = "logout") -> bool:
        record = self._lookup(token)
        if record is None:
            return False
        return self.terminate(record.id, reason=reason)

    def terminate_all_except(self, user_id: str, current_token: Optional[str]) -> int:
        started_at = self._now()
        count = self.store.deactivate_user_sessions(
            user_id,
            reason="forced_logout",
            at=started_at,
            created_before=started_at,
            except_token_hash=hash_token(current_token) if current_token else None,
        )
        self.events.emit(
            "forced_logout", {"user_id": user_id, "count": count, "scope": "others"}
        )
        return count

    def terminate_all(self, user_id: str) -> int:
        started_at = self._now()
        count = self.store.deactivate_user_sessions(
            user_id, reason="forced_logout", at=started_at, created_before=started_at
        )
        self.events.emit("forced_logout", {"user_id": user_id, "count": count, "scope": "all"})
        return count

    def stats(self, user_id: str) -> Dict[str, Any]:
        sessions = self.store.list_active_sessions(user_id, self._now())
        if not sessions:
            return {"active_sessions": 0, "last_activity": None, "oldest_session": None}
        return {
            "active_sessions": len(sessions),
            "last_activity": max(s.last_activity for s in sessions).isoformat(),
            "oldest_session": min(s.created_at for s in sessions).isoformat(),
        }

    def session_summary(self, session: AnySession) -> Dict[str, Any]:
        now = self._now()
        remaining = session.remaining(now)
        created_at = session.record.created_at if isinstance(session, ResolvedSession) else None
        return {
            "created_at": created_at.isoformat() if created_at else None,
            "expires_at": session.expires_at.isoformat(),
            "remaining_seconds": remaining,
            "is_expiring": remaining < self.expiring_threshold_seconds,
        }

    def cleanup(self) -> tuple[int, int]:
        expired, deleted = self.store.purge_sessions(self._now(), self.retention_days)
        if expired or deleted:
            self.logger.info("sessions_purged", expired=expired, deleted=deleted)
        return expired, deleted

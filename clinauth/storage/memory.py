from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from clinauth.logging import get_logger
from clinauth.storage.common import (
    ensure_utc,
    generate_uuid,
    normalize_email,
    normalize_username,
)
from clinauth.storage.errors import ConstraintViolation
from clinauth.storage.models import (
    Credential,
    OtpCode,
    PendingChallenge,
    Session,
    User,
    UserPreferences,
    utcnow,
)


class MemoryStore:
    """In-process backing store with a JSON snapshot under ``fs_root``.

    Used for tests and single-node development. Every mutation is serialized
    through one re-entrant lock and flushed to ``state/memory_store.json`` so a
    restarted process picks up the same users, challenges and sessions.
    """

    def __init__(self, fs_root: str = "/tmp/clinauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.preferences: Dict[str, UserPreferences] = {}
        self.challenges: Dict[str, PendingChallenge] = {}
        self.otp_codes: Dict[str, OtpCode] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self._persist = persist
        self.fs_root = Path(fs_root)
        if self._persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def ping(self) -> None:
        """Always reachable."""

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if raw is None:
            return None
        return ensure_utc(datetime.fromisoformat(raw))

    # -- identity -----------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        two_factor_enabled: bool = True,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_username = normalize_username(username)
        normalized_email = normalize_email(email)
        with self._data_lock:
            if any(u.username == normalized_username for u in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if any(u.email == normalized_email for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                username=normalized_username,
                email=normalized_email,
                role=role,
                is_active=is_active,
                two_factor_enabled=two_factor_enabled,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        needle = normalize_username(username)
        with self._data_lock:
            found = next((u for u in self.users.values() if u.username == needle), None)
            return replace(found) if found else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = normalize_email(email)
        with self._data_lock:
            found = next((u for u in self.users.values() if u.email == needle), None)
            return replace(found) if found else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            if existing:
                existing.password_hash = password_hash
                existing.password_algo = password_algo
                existing.last_updated_at = utcnow()
            else:
                self.credentials[user_id] = Credential(
                    user_id=user_id,
                    password_hash=password_hash,
                    password_algo=password_algo,
                )
            self._persist_state()

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return replace(cred) if cred else None

    def set_account_lockout(
        self, user_id: str, until: Optional[datetime], *, status: str = "active"
    ) -> None:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if cred is None:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            cred.lockout_until = until
            cred.status = status
            cred.last_updated_at = utcnow()
            self._persist_state()

    # -- preferences --------------------------------------------------------

    def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        with self._data_lock:
            prefs = self.preferences.get(user_id)
            return replace(prefs) if prefs else None

    def set_idle_timeout(self, user_id: str, seconds: int) -> UserPreferences:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            prefs = self.preferences.get(user_id) or UserPreferences(user_id=user_id)
            prefs.idle_timeout = seconds
            prefs.updated_at = utcnow()
            self.preferences[user_id] = prefs
            self._persist_state()
            return replace(prefs)

    # -- challenges ---------------------------------------------------------

    def replace_challenge(self, challenge: PendingChallenge, code: OtpCode) -> None:
        with self._data_lock:
            if challenge.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": challenge.user_id})
            stale = [
                cid
                for cid, existing in self.challenges.items()
                if existing.user_id == challenge.user_id
                and existing.purpose == challenge.purpose
            ]
            for cid in stale:
                self.challenges.pop(cid, None)
            for existing_code in self.otp_codes.values():
                if (
                    existing_code.user_id == code.user_id
                    and existing_code.purpose == code.purpose
                    and existing_code.used_at is None
                    and existing_code.invalidated_at is None
                ):
                    existing_code.invalidated_at = code.created_at
            self.otp_codes[code.id] = code
            self.challenges[challenge.id] = challenge
            self._persist_state()

    def get_challenge(self, user_id: str, purpose: str) -> Optional[PendingChallenge]:
        with self._data_lock:
            found = next(
                (
                    c
                    for c in self.challenges.values()
                    if c.user_id == user_id and c.purpose == purpose
                ),
                None,
            )
            return replace(found) if found else None

    def decrement_challenge_attempts(self, challenge_id: str) -> Optional[int]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if challenge is None or challenge.attempts_remaining <= 0:
                return None
            challenge.attempts_remaining -= 1
            self._persist_state()
            return challenge.attempts_remaining

    def delete_challenge(self, challenge_id: str) -> bool:
        with self._data_lock:
            removed = self.challenges.pop(challenge_id, None)
            if removed is not None:
                code = self.otp_codes.get(removed.otp_code_id)
                if code and code.used_at is None and code.invalidated_at is None:
                    code.invalidated_at = utcnow()
                self._persist_state()
            return removed is not None

    def get_otp_code(self, code_id: str) -> Optional[OtpCode]:
        with self._data_lock:
            code = self.otp_codes.get(code_id)
            return replace(code) if code else None

    def mark_otp_used(self, code_id: str, used_at: datetime, *, challenge_id: str) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if (
                challenge is None
                or challenge.otp_code_id != code_id
                or challenge.attempts_remaining <= 0
            ):
                return False
            code = self.otp_codes.get(code_id)
            if code is None or code.used_at is not None or code.invalidated_at is not None:
                return False
            code.used_at = used_at
            self._persist_state()
            return True

    def purge_expired_challenges(self, now: datetime, code_retention_seconds: int) -> int:
        cutoff = now - timedelta(seconds=code_retention_seconds)
        with self._data_lock:
            expired = [cid for cid, c in self.challenges.items() if c.expires_at <= now]
            for cid in expired:
                self.challenges.pop(cid, None)
            stale_codes = [cid for cid, c in self.otp_codes.items() if c.expires_at < cutoff]
            for cid in stale_codes:
                self.otp_codes.pop(cid, None)
            if expired or stale_codes:
                self._persist_state()
            return len(expired)

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("session token collision", {"field": "token_hash"})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.token_hash == token_hash), None
            )
            return replace(sess) if sess else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or not sess.is_active:
                return False
            sess.last_activity = at
            self._persist_state()
            return True

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.meta = dict(meta)
            self._persist_state()

    def deactivate_session(self, session_id: str, *, reason: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or not sess.is_active:
                return False
            sess.is_active = False
            sess.ended_at = at
            sess.end_reason = reason
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        created_before: datetime,
        except_token_hash: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if sess.created_at >= created_before:
                    continue
                if except_token_hash is not None and sess.token_hash == except_token_hash:
                    continue
                sess.is_active = False
                sess.ended_at = at
                sess.end_reason = reason
                count += 1
            if count:
                self._persist_state()
            return count

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.expires_at > now
            ]
        active.sort(key=lambda s: s.last_activity, reverse=True)
        return active

    def purge_sessions(self, now: datetime, retention_days: int) -> tuple[int, int]:
        cutoff = now - timedelta(days=retention_days)
        with self._data_lock:
            expired = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    sess.ended_at = now
                    sess.end_reason = "expired"
                    expired += 1
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if not sess.is_active and (sess.ended_at or sess.expires_at) < cutoff
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if expired or stale:
                self._persist_state()
            return expired, len(stale)

    # -- snapshot -----------------------------------------------------------

    def _persist_state(self) -> None:
        if not self._persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "preferences": [
                {
                    "user_id": p.user_id,
                    "idle_timeout": p.idle_timeout,
                    "theme": p.theme,
                    "notifications_enabled": p.notifications_enabled,
                    "updated_at": self._serialize_datetime(p.updated_at),
                }
                for p in self.preferences.values()
            ],
            "challenges": [
                self._serialize_challenge(c) for c in self.challenges.values()
            ],
            "otp_codes": [self._serialize_otp_code(c) for c in self.otp_codes.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except ValueError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.preferences = {
            p["user_id"]: UserPreferences(
                user_id=p["user_id"],
                idle_timeout=p.get("idle_timeout"),
                theme=p.get("theme", "system"),
                notifications_enabled=p.get("notifications_enabled", True),
                updated_at=self._deserialize_datetime(p.get("updated_at")) or utcnow(),
            )
            for p in data.get("preferences", [])
        }
        self.challenges = {
            c["id"]: self._deserialize_challenge(c) for c in data.get("challenges", [])
        }
        self.otp_codes = {
            c["id"]: self._deserialize_otp_code(c) for c in data.get("otp_codes", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "two_factor_enabled": user.two_factor_enabled,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            two_factor_enabled=data.get("two_factor_enabled", True),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, cred: Credential) -> dict:
        return {
            "user_id": cred.user_id,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "status": cred.status,
            "lockout_until": self._serialize_datetime(cred.lockout_until),
            "created_at": self._serialize_datetime(cred.created_at),
            "last_updated_at": self._serialize_datetime(cred.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            user_id=data["user_id"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            status=data.get("status", "active"),
            lockout_until=self._deserialize_datetime(data.get("lockout_until")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_challenge(self, challenge: PendingChallenge) -> dict:
        return {
            "id": challenge.id,
            "user_id": challenge.user_id,
            "username": challenge.username,
            "email": challenge.email,
            "purpose": challenge.purpose,
            "otp_code_id": challenge.otp_code_id,
            "issued_at": self._serialize_datetime(challenge.issued_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempts_remaining": challenge.attempts_remaining,
        }

    def _deserialize_challenge(self, data: dict) -> PendingChallenge:
        return PendingChallenge(
            id=data["id"],
            user_id=data["user_id"],
            username=data["username"],
            email=data["email"],
            purpose=data["purpose"],
            otp_code_id=data["otp_code_id"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts_remaining=int(data["attempts_remaining"]),
        )

    def _serialize_otp_code(self, code: OtpCode) -> dict:
        return {
            "id": code.id,
            "user_id": code.user_id,
            "purpose": code.purpose,
            "code_hash": code.code_hash,
            "created_at": self._serialize_datetime(code.created_at),
            "expires_at": self._serialize_datetime(code.expires_at),
            "used_at": self._serialize_datetime(code.used_at),
            "invalidated_at": self._serialize_datetime(code.invalidated_at),
        }

    def _deserialize_otp_code(self, data: dict) -> OtpCode:
        return OtpCode(
            id=data["id"],
            user_id=data["user_id"],
            purpose=data["purpose"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
            invalidated_at=self._deserialize_datetime(data.get("invalidated_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token_hash": session.token_hash,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity": self._serialize_datetime(session.last_activity),
            "expires_at": self._serialize_datetime(session.expires_at),
            "device_info": session.device_info,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
            "is_active": session.is_active,
            "ended_at": self._serialize_datetime(session.ended_at),
            "end_reason": session.end_reason,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_activity=self._deserialize_datetime(data["last_activity"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=data.get("device_info"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=data.get("is_active", True),
            ended_at=self._deserialize_datetime(data.get("ended_at")),
            end_reason=data.get("end_reason"),
            meta=data.get("meta"),
        )

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from clinauth.logging import get_logger
from clinauth.storage.common import (
    ensure_utc,
    generate_uuid,
    normalize_email,
    normalize_username,
    parse_json_meta,
)
from clinauth.storage.errors import ConstraintViolation, StoreUnavailable
from clinauth.storage.models import (
    Credential,
    OtpCode,
    PendingChallenge,
    Session,
    User,
    UserPreferences,
    utcnow,
)

REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "user_preferences",
    "otp_code",
    "pending_challenge",
    "user_session",
]


class PostgresStore:
    """Postgres-backed identity, challenge and session store.

    Every call reads through to the database; nothing is cached between
    requests so expiry and activity are always judged against stored rows.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user = User(
            id=generate_uuid(),
            username=normalize_username(username),
            email=normalize_email(email),
            role=role,
            is_active=is_active,
            two_factor_enabled=two_factor_enabled,
            meta=dict(meta) if meta else {},
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, role, is_active, two_factor_enabled, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.role,
                        user.is_active,
                        user.two_factor_enabled,
                        user.created_at,
                        json.dumps(user.meta),
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            role=row.get("role", "user"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            is_active=row.get("is_active", True),
            two_factor_enabled=row.get("two_factor_enabled", True),
            meta=parse_json_meta(row.get("meta")),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s",
                (normalize_username(username),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_auth_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return Credential(
            user_id=str(row["user_id"]),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            status=row.get("status") or "active",
            lockout_until=ensure_utc(row.get("lockout_until")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            last_updated_at=ensure_utc(row.get("last_updated_at")),
        )

    def set_account_lockout(
        self, user_id: str, until: Optional[datetime], *, status: str = "active"
    ) -> None:
        with self._connect() as conn:
            updated = conn.execute(
                """
                UPDATE user_auth_credential
                SET lockout_until = %s, status = %s, last_updated_at = now()
                WHERE user_id = %s
                """,
                (until, status, user_id),
            ).rowcount
        if not updated:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    # -- preferences --------------------------------------------------------

    def get_preferences(self, user_id: str) -> Optional[UserPreferences]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_preferences WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return UserPreferences(
            user_id=str(row["user_id"]),
            idle_timeout=row.get("idle_timeout"),
            theme=row.get("theme") or "system",
            notifications_enabled=row.get("notifications_enabled", True),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    def set_idle_timeout(self, user_id: str, seconds: int) -> UserPreferences:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_preferences (user_id, idle_timeout, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET idle_timeout = EXCLUDED.idle_timeout, updated_at = now()
                    RETURNING *
                    """,
                    (user_id, seconds),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return UserPreferences(
            user_id=str(row["user_id"]),
            idle_timeout=row.get("idle_timeout"),
            theme=row.get("theme") or "system",
            notifications_enabled=row.get("notifications_enabled", True),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    # -- challenges ---------------------------------------------------------

    def replace_challenge(self, challenge: PendingChallenge, code: OtpCode) -> None:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Serialize concurrent issues for the same (user, purpose)
                    conn.execute(
                        "SELECT id FROM app_user WHERE id = %s FOR UPDATE",
                        (challenge.user_id,),
                    )
                    conn.execute(
                        "DELETE FROM pending_challenge WHERE user_id = %s AND purpose = %s",
                        (challenge.user_id, challenge.purpose),
                    )
                    conn.execute(
                        """
                        UPDATE otp_code SET invalidated_at = %s
                        WHERE user_id = %s AND purpose = %s
                          AND used_at IS NULL AND invalidated_at IS NULL
                        """,
                        (code.created_at, code.user_id, code.purpose),
                    )
                    conn.execute(
                        """
                        INSERT INTO otp_code (id, user_id, purpose, code_hash, created_at, expires_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            code.id,
                            code.user_id,
                            code.purpose,
                            code.code_hash,
                            code.created_at,
                            code.expires_at,
                        ),
                    )
                    conn.execute(
                        """
                        INSERT INTO pending_challenge (id, user_id, username, email, purpose, otp_code_id, issued_at, expires_at, attempts_remaining)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            challenge.id,
                            challenge.user_id,
                            challenge.username,
                            challenge.email,
                            challenge.purpose,
                            challenge.otp_code_id,
                            challenge.issued_at,
                            challenge.expires_at,
                            challenge.attempts_remaining,
                        ),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": challenge.user_id})

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> PendingChallenge:
        return PendingChallenge(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            username=row["username"],
            email=row["email"],
            purpose=row["purpose"],
            otp_code_id=str(row["otp_code_id"]),
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            attempts_remaining=int(row["attempts_remaining"]),
        )

    def get_challenge(self, user_id: str, purpose: str) -> Optional[PendingChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_challenge WHERE user_id = %s AND purpose = %s",
                (user_id, purpose),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def decrement_challenge_attempts(self, challenge_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pending_challenge
                SET attempts_remaining = attempts_remaining - 1
                WHERE id = %s AND attempts_remaining > 0
                RETURNING attempts_remaining
                """,
                (challenge_id,),
            ).fetchone()
        return int(row["attempts_remaining"]) if row else None

    def delete_challenge(self, challenge_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "DELETE FROM pending_challenge WHERE id = %s RETURNING otp_code_id",
                    (challenge_id,),
                ).fetchone()
                if row:
                    conn.execute(
                        """
                        UPDATE otp_code SET invalidated_at = now()
                        WHERE id = %s AND used_at IS NULL AND invalidated_at IS NULL
                        """,
                        (row["otp_code_id"],),
                    )
        return row is not None

    def get_otp_code(self, code_id: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM otp_code WHERE id = %s", (code_id,)).fetchone()
        if not row:
            return None
        return OtpCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            code_hash=row["code_hash"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            used_at=ensure_utc(row.get("used_at")),
            invalidated_at=ensure_utc(row.get("invalidated_at")),
        )

    def mark_otp_used(self, code_id: str, used_at: datetime, *, challenge_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                # Row lock serializes against attempt decrements on the same challenge
                live = conn.execute(
                    """
                    SELECT id FROM pending_challenge
                    WHERE id = %s AND otp_code_id = %s AND attempts_remaining > 0
                    FOR UPDATE
                    """,
                    (challenge_id, code_id),
                ).fetchone()
                if not live:
                    return False
                row = conn.execute(
                    """
                    UPDATE otp_code SET used_at = %s
                    WHERE id = %s AND used_at IS NULL AND invalidated_at IS NULL
                    RETURNING id
                    """,
                    (used_at, code_id),
                ).fetchone()
        return row is not None

    def purge_expired_challenges(self, now: datetime, code_retention_seconds: int) -> int:
        cutoff = now - timedelta(seconds=code_retention_seconds)
        with self._connect() as conn:
            removed = conn.execute(
                "DELETE FROM pending_challenge WHERE expires_at <= %s", (now,)
            ).rowcount
            conn.execute("DELETE FROM otp_code WHERE expires_at < %s", (cutoff,))
        return removed or 0

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_session (id, user_id, token_hash, device_info, ip_address, user_agent,
                                              created_at, last_activity, expires_at, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.device_info,
                        session.ip_address,
                        session.user_agent,
                        session.created_at,
                        session.last_activity,
                        session.expires_at,
                        json.dumps(session.meta) if session.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"field": "token_hash"})
        return session

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        raw_ip = row.get("ip_address")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            created_at=ensure_utc(row["created_at"]),
            last_activity=ensure_utc(row["last_activity"]),
            expires_at=ensure_utc(row["expires_at"]),
            device_info=row.get("device_info"),
            ip_address=str(raw_ip) if raw_ip is not None else None,
            user_agent=row.get("user_agent"),
            is_active=row.get("is_active", True),
            ended_at=ensure_utc(row.get("ended_at")),
            end_reason=row.get("end_reason"),
            meta=parse_json_meta(row.get("meta")),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, at: datetime) -> bool:
        # Last write wins; GREATEST keeps a late, older write from moving activity backwards
        with self._connect() as conn:
            updated = conn.execute(
                """
                UPDATE user_session SET last_activity = GREATEST(last_activity, %s)
                WHERE id = %s AND is_active
                """,
                (at, session_id),
            ).rowcount
        return bool(updated)

    def set_session_meta(self, session_id: str, meta: Dict) -> None:
        if not isinstance(meta, dict):
            raise ValueError("session meta must be a dictionary")
        try:
            serialized_meta = json.dumps(meta)
        except TypeError as exc:
            raise ValueError("session meta must be JSON serializable") from exc
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_session SET meta = %s WHERE id = %s",
                (serialized_meta, session_id),
            )

    def deactivate_session(self, session_id: str, *, reason: str, at: datetime) -> bool:
        with self._connect() as conn:
            updated = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, ended_at = %s, end_reason = %s
                WHERE id = %s AND is_active
                """,
                (at, reason, session_id),
            ).rowcount
        return bool(updated)

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        created_before: datetime,
        except_token_hash: Optional[str] = None,
    ) -> int:
        sql = """
            UPDATE user_session SET is_active = FALSE, ended_at = %s, end_reason = %s
            WHERE user_id = %s AND is_active AND created_at < %s
        """
        params: list[Any] = [at, reason, user_id, created_before]
        if except_token_hash is not None:
            sql += " AND token_hash <> %s"
            params.append(except_token_hash)
        with self._connect() as conn:
            updated = conn.execute(sql, params).rowcount
        return updated or 0

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def purge_sessions(self, now: datetime, retention_days: int) -> tuple[int, int]:
        cutoff = now - timedelta(days=retention_days)
        with self._connect() as conn:
            expired = conn.execute(
                """
                UPDATE user_session SET is_active = FALSE, ended_at = %s, end_reason = 'expired'
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            ).rowcount
            deleted = conn.execute(
                """
                DELETE FROM user_session
                WHERE NOT is_active AND COALESCE(ended_at, expires_at) < %s
                """,
                (cutoff,),
            ).rowcount
        return expired or 0, deleted or 0

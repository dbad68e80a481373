from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from clinauth.logging import get_logger
from clinauth.service.credentials import (
    STAGE_AUTHENTICATED,
    STAGE_PENDING_2FA,
    CredentialVerifier,
)
from clinauth.service.csrf import CsrfValidator
from clinauth.service.errors import (
    AuthenticationError,
    ChallengeNotFoundError,
    CsrfError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from clinauth.service.events import EventEmitter
from clinauth.service.notifier import mask_email
from clinauth.service.otp import OtpManager
from clinauth.service.rate_limit import RateLimitDecision, RateLimiter
from clinauth.service.sessions import (
    AnySession,
    DegradedSession,
    SessionManager,
    TouchResult,
)
from clinauth.service.tokens import SignedTokenCodec
from clinauth.storage.common import AuthStore
from clinauth.storage.errors import StoreUnavailable
from clinauth.storage.models import Session, User, utcnow

PENDING_TYP = "pending_2fa"
LOGIN_PURPOSE = "login"
SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def rate_key(self) -> str:
        return self.ip_address or "unknown"


@dataclass
class RateBudget:
    max_attempts: int
    window_seconds: int


@dataclass
class AuthContext:
    """Everything an authenticated request carries, resolved once per request."""

    user_id: str
    username: str
    role: str
    session: AnySession
    activity: TouchResult
    client: ClientInfo = field(default_factory=ClientInfo)
    session_token: Optional[str] = None
    local_state: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id

    @property
    def degraded(self) -> bool:
        return self.session.degraded


@dataclass
class LoginOutcome:
    stage: str
    user: User
    expires_in: Optional[int] = None
    pending_token: Optional[str] = None
    session_token: Optional[str] = None
    session: Optional[Session] = None
    csrf_token: Optional[str] = None
    local_state: Optional[str] = None
    rate: Optional[RateLimitDecision] = None


class AuthService:
    """Drives a caller from credentials through the second factor to a session.

    Flow: ``login`` checks credentials and either mints a session or issues a
    one-time code; ``verify_second_factor`` consumes the code and mints the
    session. The pending step is anchored in the store by (user, purpose); the
    signed ``pending_2fa`` value handed to the client only names that anchor.
    """

    def __init__(
        self,
        store: AuthStore,
        credentials: CredentialVerifier,
        otp: OtpManager,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        csrf: CsrfValidator,
        codec: SignedTokenCodec,
        events: EventEmitter,
        *,
        rate_budgets: Optional[Dict[str, RateBudget]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.otp = otp
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.csrf = csrf
        self.codec = codec
        self.events = events
        self.rate_budgets = rate_budgets or {
            "login": RateBudget(5, 300),
            "verify2fa": RateBudget(10, 600),
            "resend_otp": RateBudget(3, 300),
        }
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return self._clock()

    async def _enforce_rate_limit(self, action: str, client: ClientInfo, message: str) -> RateLimitDecision:
        budget = self.rate_budgets[action]
        decision = await self.rate_limiter.check(
            action, client.rate_key, budget.max_attempts, budget.window_seconds
        )
        if not decision.allowed:
            raise RateLimitedError(
                f"{message} Please try again in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
                limit=decision.limit,
            )
        return decision

    # -- pending second factor -----------------------------------------------

    def _pending_pointer(self, user_id: str, purpose: str) -> str:
        expires_at = self._now() + timedelta(seconds=self.otp.expiry_seconds)
        return self.codec.encode(
            PENDING_TYP, {"sub": user_id, "purpose": purpose}, expires_at=expires_at.timestamp()
        )

    def _read_pending(self, pending_token: Optional[str]) -> Optional[tuple[str, str]]:
        payload = self.codec.decode(pending_token, PENDING_TYP, now=self._now().timestamp())
        if not payload or not payload.get("sub") or not payload.get("purpose"):
            return None
        return str(payload["sub"]), str(payload["purpose"])

    # -- login flow -----------------------------------------------------------

    def _establish(self, user: User, client: ClientInfo) -> LoginOutcome:
        token, session = self.sessions.create_session(
            user.id, ip_address=client.ip_address, user_agent=client.user_agent
        )
        csrf_token, _, _ = self.csrf.ensure_session_token(session.meta)
        local_state = self.sessions.encode_local_state(
            user_id=user.id,
            session_id=session.id,
            username=user.username,
            role=user.role,
            last_activity=session.last_activity,
            idle_timeout=self.sessions.get_idle_timeout(user.id),
            expires_at=session.expires_at,
        )
        self.logger.info("session_established", user_id=user.id, session_id=session.id)
        return LoginOutcome(
            stage=STAGE_AUTHENTICATED,
            user=user,
            session_token=token,
            session=session,
            csrf_token=csrf_token,
            local_state=local_state,
        )

    async def login(
        self, username: Optional[str], password: Optional[str], client: ClientInfo
    ) -> LoginOutcome:
        decision = await self._enforce_rate_limit("login", client, "Too many login attempts.")
        # Password hashing and mail delivery block; run them off the event loop
        check = await asyncio.to_thread(self.credentials.verify, username, password)
        user = check.user

        if check.stage == STAGE_PENDING_2FA:
            issued = await asyncio.to_thread(
                self.otp.issue, user.id, user.email, user.username, LOGIN_PURPOSE
            )
            self.logger.info("login_pending_second_factor", user_id=user.id)
            return LoginOutcome(
                stage=STAGE_PENDING_2FA,
                user=user,
                expires_in=issued.expires_in,
                pending_token=self._pending_pointer(user.id, LOGIN_PURPOSE),
                rate=decision,
            )

        outcome = self._establish(user, client)
        outcome.rate = decision
        return outcome

    async def verify_second_factor(
        self, pending_token: Optional[str], code: Any, client: ClientInfo
    ) -> LoginOutcome:
        decision = await self._enforce_rate_limit(
            "verify2fa", client, "Too many verification attempts."
        )
        pointer = self._read_pending(pending_token)
        if pointer is None:
            raise ChallengeNotFoundError()
        user_id, purpose = pointer

        self.otp.verify(user_id, code if isinstance(code, str) else "", purpose)
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid username or password")

        outcome = self._establish(user, client)
        outcome.rate = decision
        return outcome

    async def resend_code(self, pending_token: Optional[str], client: ClientInfo) -> LoginOutcome:
        decision = await self._enforce_rate_limit(
            "resend_otp", client, "Too many resend requests."
        )
        pointer = self._read_pending(pending_token)
        challenge = self.otp.pending(*pointer) if pointer else None
        if challenge is None:
            raise ValidationError(SESSION_EXPIRED_MESSAGE, detail={"reason": "no_pending_challenge"})
        user = self.store.get_user(challenge.user_id)
        if user is None or not user.is_active:
            raise ValidationError(SESSION_EXPIRED_MESSAGE, detail={"reason": "no_pending_challenge"})

        issued = await asyncio.to_thread(
            self.otp.issue, user.id, user.email, user.username, challenge.purpose
        )
        return LoginOutcome(
            stage=STAGE_PENDING_2FA,
            user=user,
            expires_in=issued.expires_in,
            pending_token=self._pending_pointer(user.id, challenge.purpose),
            rate=decision,
        )

    # -- authenticated requests -----------------------------------------------

    def authenticate(
        self,
        session_token: Optional[str],
        local_state: Optional[str],
        client: Optional[ClientInfo] = None,
    ) -> AuthContext:
        """Resolve and touch the caller's session.

        Raises:
            AuthenticationError: no session, or the session is no longer live.
        """
        session = self.sessions.resolve(session_token, local_state)
        if session is None:
            raise AuthenticationError("Not authenticated")

        activity = session.touch()
        if not activity.valid:
            raise AuthenticationError(
                "Session expired due to inactivity", detail={"reason": "session_expired"}
            )

        username, role = self._identity_for(session)
        return AuthContext(
            user_id=session.user_id,
            username=username,
            role=role,
            session=session,
            activity=activity,
            client=client or ClientInfo(),
            session_token=None if session.degraded else session_token,
            local_state=self.sessions.local_state_for(session, username=username, role=role),
        )

    def _identity_for(self, session: AnySession) -> tuple[str, str]:
        if isinstance(session, DegradedSession):
            try:
                user = self.store.get_user(session.user_id)
            except StoreUnavailable:
                user = None
                if session.username:
                    return session.username, session.role or "user"
            if user is None:
                raise AuthenticationError("Not authenticated")
        else:
            user = self.store.get_user(session.user_id)
            if user is None:
                raise AuthenticationError("Not authenticated")
        if not user.is_active:
            if session.session_id:
                self.sessions.terminate(session.session_id, reason="forced_logout")
            raise AuthenticationError("Not authenticated")
        return user.username, user.role

    def logout(self, session_token: Optional[str], local_state: Optional[str]) -> bool:
        """End whatever session the caller holds; succeeds when there is none."""
        ended = False
        if session_token:
            ended = self.sessions.end_current(session_token)
        if not ended:
            degraded = self.sessions.decode_local_state(local_state)
            if degraded is not None and degraded.session_id:
                ended = self.sessions.terminate(
                    degraded.session_id, user_id=degraded.user_id, reason="logout"
                )
        return ended

    def current_user(self, ctx: AuthContext) -> Dict[str, Any]:
        user = None
        try:
            user = self.store.get_user(ctx.user_id)
        except StoreUnavailable:
            if not ctx.degraded:
                raise
        return {
            "id": ctx.user_id,
            "username": ctx.username,
            "email": user.email if user else None,
            "role": ctx.role,
            "two_factor_enabled": user.two_factor_enabled if user else None,
        }

    # -- csrf -----------------------------------------------------------------

    def csrf_token(self, session_token: Optional[str]) -> str:
        """Return the token bound to the caller's session, or a fresh cookie-scope token."""
        bound = None
        try:
            bound = self.sessions.csrf_token_for(session_token, create=True)
        except StoreUnavailable:
            self.logger.warning("csrf_session_lookup_unavailable")
        return bound or self.csrf.issue()

    def check_csrf(
        self,
        submitted: Optional[str],
        session_token: Optional[str],
        cookie_token: Optional[str],
    ) -> None:
        bound = None
        try:
            bound = self.sessions.csrf_token_for(session_token)
        except StoreUnavailable:
            self.logger.warning("csrf_session_lookup_unavailable")
        if bound is None:
            bound = cookie_token
        if not self.csrf.validate(submitted, bound):
            self.events.emit("csrf_rejected", {"has_token": bool(submitted)})
            raise CsrfError()

    # -- session maintenance --------------------------------------------------

    def refresh_session(self, ctx: AuthContext) -> Dict[str, Any]:
        self.events.emit(
            "session_extend",
            {
                "user_id": ctx.user_id,
                "session_id": ctx.session_id,
                "remaining_time": ctx.activity.remaining_time,
            },
        )
        expires_at = ctx.activity.expires_at
        return {
            "expires_in": ctx.activity.remaining_time,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }

    def ping_activity(self, ctx: AuthContext) -> Dict[str, Any]:
        expires_at = ctx.activity.expires_at
        return {
            "remaining_time": ctx.activity.remaining_time,
            "idle_timeout": ctx.activity.idle_timeout,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "session_valid": ctx.activity.valid,
            "db_session": not ctx.degraded,
        }

    def session_status(
        self,
        session_token: Optional[str],
        local_state: Optional[str],
        pending_token: Optional[str],
    ) -> Dict[str, Any]:
        """Read-only liveness summary; never records activity."""
        session: Optional[AnySession] = None
        try:
            session = self.sessions.resolve(session_token, local_state)
        except StoreUnavailable:
            self.logger.warning("session_status_store_unavailable")
        if session is not None and not session.is_live(self._now()):
            session = None

        if session is not None:
            try:
                username, role = self._identity_for(session)
            except AuthenticationError:
                session = None
            else:
                return {
                    "valid": True,
                    "authenticated": True,
                    "stage": "authenticated",
                    "user": {"id": session.user_id, "username": username, "role": role},
                    "session": self.sessions.session_summary(session),
                    "db_session": not session.degraded,
                }

        pointer = self._read_pending(pending_token)
        challenge = self.otp.pending(*pointer) if pointer else None
        if challenge is not None:
            return {
                "valid": True,
                "authenticated": False,
                "stage": "otp",
                "user": {"username": challenge.username, "email": mask_email(challenge.email)},
            }
        return {"valid": False, "authenticated": False, "stage": "idle", "user": None}

    def list_sessions(self, ctx: AuthContext) -> List[Dict[str, Any]]:
        return self.sessions.list_sessions(ctx.user_id, ctx.session_token)

    def terminate_session(self, ctx: AuthContext, session_id: Optional[str]) -> None:
        if not session_id:
            raise ValidationError("Session ID required")
        if not self.sessions.terminate(session_id, user_id=ctx.user_id, reason="forced_logout"):
            raise NotFoundError("Session not found")

    def logout_all(self, ctx: AuthContext) -> int:
        return self.sessions.terminate_all_except(ctx.user_id, ctx.session_token)

    def logout_everywhere(self, ctx: AuthContext) -> int:
        return self.sessions.terminate_all(ctx.user_id)

    # -- preferences ----------------------------------------------------------

    def timeout_preferences(self, ctx: AuthContext) -> Dict[str, Any]:
        return self.sessions.preferences(ctx.user_id)

    def update_timeout(
        self,
        ctx: AuthContext,
        *,
        timeout: Any = None,
        timeout_seconds: Any = None,
        timeout_minutes: Any = None,
    ) -> Dict[str, Any]:
        seconds = timeout if timeout is not None else timeout_seconds
        if seconds is None and timeout_minutes is not None:
            try:
                seconds = int(timeout_minutes) * 60
            except (TypeError, ValueError):
                raise ValidationError(
                    "Timeout must be a whole number of minutes", status_code=422
                ) from None
        if seconds is None:
            raise ValidationError("Timeout value is required", status_code=422)
        self.sessions.set_idle_timeout(ctx.user_id, seconds)
        return self.sessions.preferences(ctx.user_id)

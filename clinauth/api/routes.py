from __future__ import annotations

import time
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from clinauth.api.schemas import (
    ActiveSession,
    ActiveSessionList,
    Envelope,
    LoginRequest,
    LogoutSessionRequest,
    TimeoutPreferenceRequest,
    UserInfo,
    VerifyRequest,
)
from clinauth.config import Settings, get_settings
from clinauth.logging import get_logger
from clinauth.service.auth import AuthContext, ClientInfo, LoginOutcome
from clinauth.service.credentials import STAGE_PENDING_2FA
from clinauth.service.csrf import CSRF_COOKIE_NAME, CsrfValidator
from clinauth.service.notifier import mask_email
from clinauth.service.rate_limit import RateLimitDecision
from clinauth.service.runtime import get_runtime
from clinauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

AUTH_STATE_COOKIE = "auth_state"
PENDING_COOKIE = "pending_2fa"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(
            decision.limit,
            decision.remaining,
            max(0, decision.reset_at - int(time.time())),
        )

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _session_token(request: Request, settings: Settings) -> Optional[str]:
    return request.cookies.get(settings.session_cookie_name)


def _user_payload(user: User, *, mask: bool = False) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": mask_email(user.email) if mask else user.email,
        "role": user.role,
    }


def _apply_session_cookies(response: Response, settings: Settings, outcome: LoginOutcome) -> None:
    expires_at = outcome.session.expires_at
    response.set_cookie(
        settings.session_cookie_name,
        outcome.session_token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )
    response.set_cookie(
        AUTH_STATE_COOKIE,
        outcome.local_state,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )
    _set_csrf_cookie(response, settings, outcome.csrf_token)
    response.delete_cookie(PENDING_COOKIE, path="/", secure=settings.session_cookie_secure, samesite="lax")


def _set_csrf_cookie(response: Response, settings: Settings, token: str) -> None:
    # Readable by scripts so clients can echo it in X-CSRF-Token
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        httponly=False,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )


def _set_pending_cookie(response: Response, settings: Settings, outcome: LoginOutcome) -> None:
    response.set_cookie(
        PENDING_COOKIE,
        outcome.pending_token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        max_age=outcome.expires_in,
        path="/",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.session_cookie_name, AUTH_STATE_COOKIE, PENDING_COOKIE, CSRF_COOKIE_NAME):
        response.delete_cookie(name, path="/", secure=settings.session_cookie_secure, samesite="lax")


async def require_csrf(request: Request) -> None:
    """Reject state-changing calls whose CSRF token is absent or unbound."""
    body = None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
    settings = get_settings()
    runtime = get_runtime()
    runtime.auth.check_csrf(
        CsrfValidator.extract(request.headers, body),
        _session_token(request, settings),
        request.cookies.get(CSRF_COOKIE_NAME),
    )


async def get_auth_context(request: Request, response: Response) -> AuthContext:
    settings = get_settings()
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(
        _session_token(request, settings),
        request.cookies.get(AUTH_STATE_COOKIE),
        _client_info(request),
    )
    if ctx.local_state:
        response.set_cookie(
            AUTH_STATE_COOKIE,
            ctx.local_state,
            httponly=True,
            secure=settings.session_cookie_secure,
            samesite="lax",
            expires=ctx.session.expires_at,
            path="/",
        )
    return ctx


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials and either start a session or send a verification code.

    Raises:
        401: bad credentials or locked account
        422: username or password missing
        429: too many attempts from this client
    """
    settings = get_settings()
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.username, body.password, _client_info(request))
    if outcome.rate is not None:
        RateLimitInfo.from_decision(outcome.rate).apply_headers(response)

    if outcome.stage == STAGE_PENDING_2FA:
        _set_pending_cookie(response, settings, outcome)
        return Envelope(
            success=True,
            message="Verification code sent to your email",
            data={
                "stage": outcome.stage,
                "user": {
                    "username": outcome.user.username,
                    "email": mask_email(outcome.user.email),
                },
                "expires_in": outcome.expires_in,
            },
        )

    _apply_session_cookies(response, settings, outcome)
    return Envelope(
        success=True,
        message="Login successful",
        data={
            "stage": outcome.stage,
            "user": _user_payload(outcome.user),
            "session": {"expires_at": outcome.session.expires_at.isoformat()},
            "csrf_token": outcome.csrf_token,
            "dashboard_url": settings.dashboard_url,
        },
    )


@router.post("/verify-2fa", response_model=Envelope)
async def verify_second_factor(body: VerifyRequest, request: Request, response: Response):
    settings = get_settings()
    runtime = get_runtime()
    outcome = await runtime.auth.verify_second_factor(
        request.cookies.get(PENDING_COOKIE), body.code, _client_info(request)
    )
    if outcome.rate is not None:
        RateLimitInfo.from_decision(outcome.rate).apply_headers(response)
    _apply_session_cookies(response, settings, outcome)
    return Envelope(
        success=True,
        message="Verification successful",
        data={
            "stage": outcome.stage,
            "user": _user_payload(outcome.user),
            "session": {"expires_at": outcome.session.expires_at.isoformat()},
            "csrf_token": outcome.csrf_token,
            "dashboard_url": settings.dashboard_url,
        },
    )


@router.post("/resend-otp", response_model=Envelope)
async def resend_otp(request: Request, response: Response):
    settings = get_settings()
    runtime = get_runtime()
    outcome = await runtime.auth.resend_code(
        request.cookies.get(PENDING_COOKIE), _client_info(request)
    )
    if outcome.rate is not None:
        RateLimitInfo.from_decision(outcome.rate).apply_headers(response)
    _set_pending_cookie(response, settings, outcome)
    return Envelope(
        success=True,
        message="A new verification code has been sent",
        data={"expires_in": outcome.expires_in},
    )


@router.post("/logout", response_model=Envelope, dependencies=[Depends(require_csrf)])
async def logout(request: Request, response: Response):
    settings = get_settings()
    runtime = get_runtime()
    runtime.auth.logout(
        _session_token(request, settings), request.cookies.get(AUTH_STATE_COOKIE)
    )
    _clear_auth_cookies(response, settings)
    return Envelope(success=True, message="Logged out successfully")


@router.get("/current-user", response_model=Envelope)
async def current_user(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = UserInfo(**runtime.auth.current_user(ctx))
    return Envelope(success=True, data={"user": user.model_dump()})


@router.get("/csrf-token", response_model=Envelope)
async def csrf_token(request: Request, response: Response):
    settings = get_settings()
    runtime = get_runtime()
    token = runtime.auth.csrf_token(_session_token(request, settings))
    _set_csrf_cookie(response, settings, token)
    return Envelope(success=True, data={"token": token})


@router.post(
    "/refresh-session", response_model=Envelope, dependencies=[Depends(require_csrf)]
)
async def refresh_session(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(
        success=True,
        message="Session refreshed",
        data=runtime.auth.refresh_session(ctx),
    )


@router.get("/session-status", response_model=Envelope)
async def session_status(request: Request):
    settings = get_settings()
    runtime = get_runtime()
    status = runtime.auth.session_status(
        _session_token(request, settings),
        request.cookies.get(AUTH_STATE_COOKIE),
        request.cookies.get(PENDING_COOKIE),
    )
    return Envelope(success=True, data=status)


@router.post("/ping-activity", response_model=Envelope)
async def ping_activity(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(success=True, data=runtime.auth.ping_activity(ctx))


@router.get("/active-sessions", response_model=Envelope)
async def active_sessions(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = [ActiveSession(**item) for item in runtime.auth.list_sessions(ctx)]
    payload = ActiveSessionList(sessions=sessions, count=len(sessions))
    return Envelope(success=True, data=payload.model_dump())


@router.post(
    "/logout-session", response_model=Envelope, dependencies=[Depends(require_csrf)]
)
async def logout_session(
    response: Response,
    body: Optional[LogoutSessionRequest] = None,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    session_id = body.session_id if body else None
    runtime.auth.terminate_session(ctx, session_id)
    if session_id == ctx.session_id:
        _clear_auth_cookies(response, get_settings())
    return Envelope(success=True, message="Session terminated successfully")


@router.post("/logout-all", response_model=Envelope, dependencies=[Depends(require_csrf)])
async def logout_all(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    count = runtime.auth.logout_all(ctx)
    return Envelope(
        success=True,
        message=f"Logged out of {count} other session(s)",
        data={"count": count},
    )


@router.post(
    "/logout-everywhere", response_model=Envelope, dependencies=[Depends(require_csrf)]
)
async def logout_everywhere(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    count = runtime.auth.logout_everywhere(ctx)
    _clear_auth_cookies(response, get_settings())
    return Envelope(
        success=True,
        message=f"Logged out of {count} session(s)",
        data={"count": count},
    )


@router.get("/preferences/timeout", response_model=Envelope)
async def get_timeout_preference(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    return Envelope(success=True, data=runtime.auth.timeout_preferences(ctx))


@router.put(
    "/preferences/timeout", response_model=Envelope, dependencies=[Depends(require_csrf)]
)
async def update_timeout_preference(
    body: TimeoutPreferenceRequest, ctx: AuthContext = Depends(get_auth_context)
):
    runtime = get_runtime()
    prefs = runtime.auth.update_timeout(
        ctx,
        timeout=body.timeout,
        timeout_seconds=body.timeout_seconds,
        timeout_minutes=body.timeout_minutes,
    )
    return Envelope(success=True, message="Timeout preference updated", data=prefs)

"""Unit tests for the login / second-factor / session orchestrator."""

import asyncio
import time

import pytest

from clinauth.service.auth import AuthService, ClientInfo, RateBudget
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
    InvalidCodeError,
    NotFoundError,
    OtpFormatError,
    RateLimitedError,
    ValidationError,
)
from clinauth.service.otp import OtpManager
from clinauth.service.rate_limit import RateLimiter
from clinauth.service.sessions import SessionManager
from clinauth.service.tokens import SignedTokenCodec
from clinauth.storage.memory import MemoryStore

PASSWORD = "Correct-Horse-9"
CLIENT = ClientInfo(ip_address="198.51.100.7", user_agent="pytest")


@pytest.fixture
def store():
    return MemoryStore(persist=False)


@pytest.fixture
def auth(store, notifier, events, clock):
    codec = SignedTokenCodec("s" * 40)
    csrf = CsrfValidator()
    credentials = CredentialVerifier(store, events, clock=clock)
    otp = OtpManager(store, notifier, events, secret_key="s" * 40, clock=clock)
    sessions = SessionManager(store, events, csrf, codec, clock=clock)
    limiter = RateLimiter(None, events=events, clock=clock.timestamp)
    service = AuthService(
        store,
        credentials,
        otp,
        sessions,
        limiter,
        csrf,
        codec,
        events,
        rate_budgets={
            "login": RateBudget(5, 300),
            "verify2fa": RateBudget(10, 600),
            "resend_otp": RateBudget(3, 300),
        },
        clock=clock,
    )
    return service


@pytest.fixture
def alice(store, auth):
    user = store.create_user("alice", "alice@example.org")
    auth.credentials.set_password(user.id, PASSWORD)
    return user


@pytest.fixture
def bob(store, auth):
    user = store.create_user("bob", "bob@example.org", two_factor_enabled=False)
    auth.credentials.set_password(user.id, PASSWORD)
    return user


async def _login_alice(auth, notifier):
    pending = await auth.login("alice", PASSWORD, CLIENT)
    return pending, notifier.last_code


@pytest.mark.asyncio
async def test_alice_scenario(auth, alice, notifier, clock, store):
    pending, code = await _login_alice(auth, notifier)
    assert pending.stage == STAGE_PENDING_2FA
    assert pending.expires_in == 600
    assert pending.session_token is None

    wrong = "000000" if code != "000000" else "111111"
    with pytest.raises(InvalidCodeError) as excinfo:
        await auth.verify_second_factor(pending.pending_token, wrong, CLIENT)
    assert excinfo.value.remaining_attempts == 4

    clock.advance(30)
    outcome = await auth.verify_second_factor(pending.pending_token, code, CLIENT)

    assert outcome.stage == STAGE_AUTHENTICATED
    assert (outcome.session.expires_at - clock.now).total_seconds() == 3600
    assert store.get_session(outcome.session.id).is_active


@pytest.mark.asyncio
async def test_login_without_second_factor_mints_session(auth, bob):
    outcome = await auth.login("bob", PASSWORD, CLIENT)

    assert outcome.stage == STAGE_AUTHENTICATED
    assert outcome.session_token
    assert outcome.csrf_token == outcome.session.meta["csrf_token"]
    assert outcome.local_state


@pytest.mark.asyncio
async def test_login_rate_limit(auth, alice, clock):
    for _ in range(5):
        with pytest.raises(AuthenticationError):
            await auth.login("alice", "wrong", CLIENT)

    with pytest.raises(RateLimitedError) as excinfo:
        await auth.login("alice", PASSWORD, CLIENT)
    assert excinfo.value.retry_after > 0

    clock.advance(301)
    outcome = await auth.login("alice", PASSWORD, CLIENT)
    assert outcome.stage == STAGE_PENDING_2FA


@pytest.mark.asyncio
async def test_verify_requires_pending_pointer(auth, alice):
    with pytest.raises(ChallengeNotFoundError):
        await auth.verify_second_factor(None, "123456", CLIENT)


@pytest.mark.asyncio
async def test_malformed_code_keeps_attempts(auth, alice, notifier, store):
    pending, _ = await _login_alice(auth, notifier)

    with pytest.raises(OtpFormatError):
        await auth.verify_second_factor(pending.pending_token, "12ab56", CLIENT)
    assert store.get_challenge(alice.id, "login").attempts_remaining == 5


@pytest.mark.asyncio
async def test_resend_issues_new_code(auth, alice, notifier):
    pending, first = await _login_alice(auth, notifier)

    resent = await auth.resend_code(pending.pending_token, CLIENT)

    assert resent.expires_in == 600
    assert len(notifier.sent) == 2
    outcome = await auth.verify_second_factor(resent.pending_token, notifier.last_code, CLIENT)
    assert outcome.stage == STAGE_AUTHENTICATED


@pytest.mark.asyncio
async def test_resend_without_live_challenge(auth, alice, notifier, clock):
    with pytest.raises(ValidationError) as excinfo:
        await auth.resend_code(None, CLIENT)
    assert excinfo.value.message == "Session expired. Please login again."

    pending, _ = await _login_alice(auth, notifier)
    clock.advance(601)
    with pytest.raises(ValidationError):
        await auth.resend_code(pending.pending_token, CLIENT)


@pytest.mark.asyncio
async def test_resend_rate_limit(auth, alice, notifier):
    pending, _ = await _login_alice(auth, notifier)
    token = pending.pending_token
    for _ in range(3):
        token = (await auth.resend_code(token, CLIENT)).pending_token

    with pytest.raises(RateLimitedError):
        await auth.resend_code(token, CLIENT)


@pytest.mark.asyncio
async def test_authenticate_touches_once(auth, bob, clock):
    outcome = await auth.login("bob", PASSWORD, CLIENT)
    clock.advance(1000)

    ctx = auth.authenticate(outcome.session_token, outcome.local_state, CLIENT)

    assert ctx.user_id == bob.id
    assert ctx.username == "bob"
    assert not ctx.degraded
    assert ctx.activity.remaining_time == 800
    ping = auth.ping_activity(ctx)
    assert ping["remaining_time"] == 800
    assert ping["db_session"] is True


@pytest.mark.asyncio
async def test_authenticate_after_idle_timeout(auth, bob, clock):
    outcome = await auth.login("bob", PASSWORD, CLIENT)
    clock.advance(1800)

    with pytest.raises(AuthenticationError):
        auth.authenticate(outcome.session_token, outcome.local_state, CLIENT)


def test_authenticate_without_anything(auth):
    with pytest.raises(AuthenticationError) as excinfo:
        auth.authenticate(None, None, CLIENT)
    assert excinfo.value.message == "Not authenticated"


@pytest.mark.asyncio
async def test_csrf_bound_to_session(auth, bob):
    outcome = await auth.login("bob", PASSWORD, CLIENT)

    auth.check_csrf(outcome.csrf_token, outcome.session_token, None)
    with pytest.raises(CsrfError):
        auth.check_csrf("guess", outcome.session_token, "guess")
    with pytest.raises(CsrfError):
        auth.check_csrf(None, outcome.session_token, outcome.csrf_token)


def test_csrf_cookie_scope_without_session(auth):
    token = auth.csrf_token(None)
    auth.check_csrf(token, None, token)
    with pytest.raises(CsrfError):
        auth.check_csrf(token, None, None)


@pytest.mark.asyncio
async def test_logout_is_idempotent(auth, bob):
    outcome = await auth.login("bob", PASSWORD, CLIENT)

    assert auth.logout(outcome.session_token, outcome.local_state)
    assert auth.logout(outcome.session_token, outcome.local_state)
    assert not auth.logout(None, None)
    with pytest.raises(AuthenticationError):
        auth.authenticate(outcome.session_token, outcome.local_state, CLIENT)


@pytest.mark.asyncio
async def test_session_status_stages(auth, alice, notifier):
    assert auth.session_status(None, None, None)["stage"] == "idle"

    pending, code = await _login_alice(auth, notifier)
    status = auth.session_status(None, None, pending.pending_token)
    assert status["stage"] == "otp"
    assert status["user"]["email"] == "ali***@example.org"

    outcome = await auth.verify_second_factor(pending.pending_token, code, CLIENT)
    status = auth.session_status(outcome.session_token, outcome.local_state, None)
    assert status["authenticated"]
    assert status["session"]["remaining_seconds"] == 1800
    assert status["session"]["is_expiring"] is False


@pytest.mark.asyncio
async def test_session_status_reports_expiring(auth, bob, clock):
    outcome = await auth.login("bob", PASSWORD, CLIENT)
    clock.advance(1600)

    status = auth.session_status(outcome.session_token, outcome.local_state, None)
    assert status["session"]["remaining_seconds"] == 200
    assert status["session"]["is_expiring"] is True


@pytest.mark.asyncio
async def test_terminate_session_errors(auth, bob, store):
    outcome = await auth.login("bob", PASSWORD, CLIENT)
    ctx = auth.authenticate(outcome.session_token, outcome.local_state, CLIENT)

    with pytest.raises(ValidationError):
        auth.terminate_session(ctx, None)
    with pytest.raises(NotFoundError):
        auth.terminate_session(ctx, "no-such-session")

    other = store.create_user("eve", "eve@example.org", two_factor_enabled=False)
    auth.credentials.set_password(other.id, PASSWORD)
    foreign = await auth.login("eve", PASSWORD, CLIENT)
    with pytest.raises(NotFoundError):
        auth.terminate_session(ctx, foreign.session.id)


@pytest.mark.asyncio
async def test_logout_all_and_everywhere(auth, bob, clock):
    first = await auth.login("bob", PASSWORD, CLIENT)
    await auth.login("bob", PASSWORD, CLIENT)
    await auth.login("bob", PASSWORD, CLIENT)
    clock.advance(1)

    ctx = auth.authenticate(first.session_token, first.local_state, CLIENT)
    assert auth.logout_all(ctx) == 2
    assert len(auth.list_sessions(ctx)) == 1

    clock.advance(1)
    assert auth.logout_everywhere(ctx) == 1
    assert auth.list_sessions(ctx) == []


@pytest.mark.asyncio
async def test_update_timeout_accepts_minutes(auth, bob):
    outcome = await auth.login("bob", PASSWORD, CLIENT)
    ctx = auth.authenticate(outcome.session_token, outcome.local_state, CLIENT)

    prefs = auth.update_timeout(ctx, timeout_minutes=20)
    assert prefs["timeout"] == 1200

    with pytest.raises(ValidationError):
        auth.update_timeout(ctx)
    with pytest.raises(ValidationError) as excinfo:
        auth.update_timeout(ctx, timeout=120)
    assert "at least 300 seconds" in excinfo.value.message


@pytest.mark.asyncio
async def test_slow_mail_delivery_does_not_stall_other_requests(auth, alice, notifier, monkeypatch):
    deliver = notifier.send_otp

    def slow_send(*args, **kwargs):
        time.sleep(0.3)
        return deliver(*args, **kwargs)

    monkeypatch.setattr(notifier, "send_otp", slow_send)

    gaps = []

    async def heartbeat():
        last = time.monotonic()
        while True:
            await asyncio.sleep(0.01)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    ticker = asyncio.create_task(heartbeat())
    try:
        pending = await auth.login("alice", PASSWORD, CLIENT)
        resent = await auth.resend_code(pending.pending_token, CLIENT)
    finally:
        ticker.cancel()

    assert pending.stage == STAGE_PENDING_2FA
    assert resent.stage == STAGE_PENDING_2FA
    assert len(notifier.sent) == 2
    assert gaps
    assert max(gaps) < 0.2

import pytest
from fastapi.testclient import TestClient

from clinauth import app as app_module
from clinauth.service.runtime import get_runtime

PASSWORD = "Correct-Horse-9"


@pytest.fixture
def runtime(notifier):
    rt = get_runtime()
    rt.otp.notifier = notifier
    return rt


@pytest.fixture
def accounts(runtime):
    alice = runtime.store.create_user("alice", "alice@clinic.example", role="clinician")
    runtime.credentials.set_password(alice.id, PASSWORD)
    bob = runtime.store.create_user(
        "bob", "bob@clinic.example", role="clinician", two_factor_enabled=False
    )
    runtime.credentials.set_password(bob.id, PASSWORD)
    return {"alice": alice, "bob": bob}


def _client() -> TestClient:
    # https so the secure session cookies are sent back
    return TestClient(app_module.app, base_url="https://testserver")


def _login_bob(client: TestClient) -> str:
    resp = client.post("/auth/login", json={"username": "bob", "password": PASSWORD})
    assert resp.status_code == 200
    return resp.json()["data"]["csrf_token"]


def test_two_factor_login_flow(runtime, accounts):
    client = _client()

    resp = client.post("/auth/login", json={"username": "alice", "password": PASSWORD})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["stage"] == "pending_2fa"
    assert body["data"]["user"] == {"username": "alice", "email": "ali***@clinic.example"}
    assert body["data"]["expires_in"] == 600
    assert "pending_2fa" in client.cookies
    assert "session_id" not in client.cookies
    assert resp.headers["X-RateLimit-Limit"] == "5"

    status = client.get("/auth/session-status").json()["data"]
    assert status["stage"] == "otp"
    assert status["authenticated"] is False

    code = runtime.otp.notifier.last_code
    wrong = "000000" if code != "000000" else "111111"
    resp = client.post("/auth/verify-2fa", json={"code": wrong})
    assert resp.status_code == 401
    error = resp.json()["error"]
    assert error["code"] == "unauthorized"
    assert error["details"]["remaining_attempts"] == 4

    resp = client.post("/auth/verify-2fa", json={"code": code})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["stage"] == "authenticated"
    assert data["user"]["username"] == "alice"
    assert client.cookies.get("session_id")
    assert client.cookies.get("auth_state")
    assert client.cookies.get("csrf_token") == data["csrf_token"]

    resp = client.get("/auth/current-user")
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["username"] == "alice"

    # the code is single use
    resp = client.post("/auth/verify-2fa", json={"code": code})
    assert resp.status_code == 401


def test_malformed_code_is_rejected_without_consuming_attempts(runtime, accounts):
    client = _client()
    client.post("/auth/login", json={"username": "alice", "password": PASSWORD})

    resp = client.post("/auth/verify-2fa", json={"code": "12ab"})
    assert resp.status_code == 422

    resp = client.post("/auth/verify-2fa", json={"code": "999999"})
    if runtime.otp.notifier.last_code != "999999":
        assert resp.json()["error"]["details"]["remaining_attempts"] == 4


def test_verify_without_pending_login(accounts):
    client = _client()
    resp = client.post("/auth/verify-2fa", json={"code": "123456"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Session expired. Please login again."


def test_resend_otp_issues_new_code(runtime, accounts):
    client = _client()
    client.post("/auth/login", json={"username": "alice", "password": PASSWORD})
    first = runtime.otp.notifier.last_code

    resp = client.post("/auth/resend-otp")
    assert resp.status_code == 200
    assert resp.json()["data"]["expires_in"] == 600
    assert len(runtime.otp.notifier.sent) == 2

    if first != runtime.otp.notifier.last_code:
        resp = client.post("/auth/verify-2fa", json={"code": first})
        assert resp.status_code == 401

    resp = client.post("/auth/verify-2fa", json={"code": runtime.otp.notifier.last_code})
    assert resp.status_code == 200


def test_resend_without_pending_login(accounts):
    client = _client()
    resp = client.post("/auth/resend-otp")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_login_requires_fields(accounts):
    client = _client()
    resp = client.post("/auth/login", json={})
    assert resp.status_code == 422
    fields = resp.json()["error"]["details"]["fields"]
    assert set(fields) == {"username", "password"}


def test_bad_credentials_share_one_message(accounts):
    client = _client()
    unknown = client.post("/auth/login", json={"username": "mallory", "password": PASSWORD})
    wrong = client.post("/auth/login", json={"username": "bob", "password": "not-it-at-all"})
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json()["message"] == wrong.json()["message"] == "Invalid username or password"


def test_login_rate_limit_returns_retry_after(accounts):
    client = _client()
    for _ in range(5):
        resp = client.post("/auth/login", json={"username": "nobody", "password": "whatever"})
        assert resp.status_code == 401

    resp = client.post("/auth/login", json={"username": "bob", "password": PASSWORD})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert resp.json()["error"]["code"] == "rate_limited"


def test_csrf_is_checked_before_authentication(accounts):
    client = _client()
    resp = client.post("/auth/logout-all")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"

    token = client.get("/auth/csrf-token").json()["data"]["token"]
    resp = client.post("/auth/logout-all", headers={"X-CSRF-Token": token})
    assert resp.status_code == 401


def test_csrf_token_must_match_session(accounts):
    client = _client()
    csrf = _login_bob(client)

    resp = client.post("/auth/refresh-session", headers={"X-CSRF-Token": "forged"})
    assert resp.status_code == 403

    resp = client.post("/auth/refresh-session", headers={"X-CSRF-Token": csrf})
    assert resp.status_code == 200
    assert resp.json()["data"]["expires_in"] > 0

    assert client.get("/auth/csrf-token").json()["data"]["token"] == csrf


def test_session_status_and_ping(accounts):
    client = _client()
    assert client.get("/auth/session-status").json()["data"]["stage"] == "idle"

    _login_bob(client)
    status = client.get("/auth/session-status").json()["data"]
    assert status["stage"] == "authenticated"
    assert status["db_session"] is True
    assert status["user"]["username"] == "bob"
    assert status["session"]["is_expiring"] is False

    resp = client.post("/auth/ping-activity")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["session_valid"] is True
    assert data["db_session"] is True
    assert data["idle_timeout"] == 1800
    assert 0 < data["remaining_time"] <= 1800


def test_unauthenticated_requests_are_rejected(accounts):
    client = _client()
    for path in ("/auth/current-user", "/auth/active-sessions", "/auth/preferences/timeout"):
        resp = client.get(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


def test_logout_clears_session(accounts):
    client = _client()
    csrf = _login_bob(client)

    resp = client.post("/auth/logout", headers={"X-CSRF-Token": csrf})
    assert resp.status_code == 200
    assert "session_id" not in client.cookies

    assert client.get("/auth/current-user").status_code == 401


def test_active_sessions_and_remote_logout(accounts):
    desk = _client()
    ward = _client()
    desk_csrf = _login_bob(desk)
    _login_bob(ward)

    resp = desk.get("/auth/active-sessions")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["count"] == 2
    current = [s for s in data["sessions"] if s["is_current"]]
    other = [s for s in data["sessions"] if not s["is_current"]]
    assert len(current) == 1 and len(other) == 1

    resp = desk.post("/auth/logout-session", json={}, headers={"X-CSRF-Token": desk_csrf})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Session ID required"

    resp = desk.post(
        "/auth/logout-session",
        json={"session_id": "no-such-session"},
        headers={"X-CSRF-Token": desk_csrf},
    )
    assert resp.status_code == 404

    resp = desk.post(
        "/auth/logout-session",
        json={"session_id": other[0]["id"]},
        headers={"X-CSRF-Token": desk_csrf},
    )
    assert resp.status_code == 200
    assert ward.get("/auth/current-user").status_code == 401
    assert desk.get("/auth/current-user").status_code == 200


def test_logout_all_keeps_current_session(accounts):
    clients = [_client() for _ in range(3)]
    tokens = [_login_bob(c) for c in clients]

    resp = clients[0].post("/auth/logout-all", headers={"X-CSRF-Token": tokens[0]})
    assert resp.status_code == 200
    assert resp.json()["data"]["count"] == 2
    assert clients[0].get("/auth/current-user").status_code == 200
    assert clients[1].get("/auth/current-user").status_code == 401


def test_logout_everywhere_ends_every_session(accounts):
    clients = [_client() for _ in range(2)]
    tokens = [_login_bob(c) for c in clients]

    resp = clients[0].post("/auth/logout-everywhere", headers={"X-CSRF-Token": tokens[0]})
    assert resp.status_code == 200
    assert resp.json()["data"]["count"] == 2
    for c in clients:
        assert c.get("/auth/current-user").status_code == 401


def test_timeout_preferences(accounts):
    client = _client()
    csrf = _login_bob(client)

    prefs = client.get("/auth/preferences/timeout").json()["data"]
    assert prefs["timeout"] == 1800
    assert prefs["min_timeout"] == 300
    assert prefs["max_timeout"] == 3600

    resp = client.put(
        "/auth/preferences/timeout",
        json={"timeout_minutes": 45},
        headers={"X-CSRF-Token": csrf},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["timeout"] == 2700

    resp = client.put(
        "/auth/preferences/timeout",
        json={"timeout": 120},
        headers={"X-CSRF-Token": csrf},
    )
    assert resp.status_code == 422
    assert "at least 300 seconds" in resp.json()["message"]

    resp = client.put(
        "/auth/preferences/timeout", json={}, headers={"X-CSRF-Token": csrf}
    )
    assert resp.status_code == 422


def test_health_and_headers():
    client = _client()
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"].startswith("no-store")


def test_error_envelope_carries_request_id(accounts):
    client = _client()
    resp = client.get("/auth/current-user", headers={"X-Request-ID": "trace-42"})
    body = resp.json()
    assert body["success"] is False
    assert body["request_id"] == "trace-42"
    assert resp.headers["X-Request-ID"] == "trace-42"


def test_unknown_route_uses_envelope():
    client = _client()
    resp = client.get("/auth/does-not-exist")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "not_found"

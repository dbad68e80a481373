import json
import time
from datetime import datetime, timezone

import httpx
import pytest
from structlog.testing import capture_logs

from clinauth.logging import set_correlation_id
from clinauth.service.events import (
    FanoutEventEmitter,
    HttpEventEmitter,
    LogEventEmitter,
    build_emitter,
)
from clinauth.service.notifier import PURPOSE_SUBJECTS, EmailOtpNotifier, mask_email
from clinauth.service.runtime import get_runtime


def test_http_emitter_posts_json_payload():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    emitter = HttpEventEmitter("https://audit.example/events", client=client)
    set_correlation_id("corr-1")

    at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    emitter.emit("login", {"user_id": "u-1", "at": at, "extra": {"k": 1}})
    emitter.close()

    assert len(received) == 1
    payload = received[0]
    assert payload["event"] == "login"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"]["user_id"] == "u-1"
    assert payload["fields"]["at"] == at.isoformat()
    assert payload["fields"]["extra"] == "{'k': 1}"


def test_http_emitter_swallows_delivery_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    emitter = HttpEventEmitter("https://audit.example/events", client=client)

    emitter.emit("logout", {"user_id": "u-1"})

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    emitter.client = httpx.Client(transport=httpx.MockTransport(refuse))
    emitter.emit("logout", {"user_id": "u-1"})
    emitter.close()


def test_fanout_delivers_to_every_emitter(events):
    other = []

    class ListEmitter:
        def emit(self, event, fields):
            other.append(event)

    fanout = FanoutEventEmitter([events, ListEmitter()])
    fanout.emit("timeout", {"session_id": "s-1"})

    assert events.names() == ["timeout"]
    assert other == ["timeout"]


def test_build_emitter_selects_sinks():
    assert isinstance(build_emitter(None), LogEventEmitter)

    emitter = build_emitter("https://audit.example/events", timeout=1.0)
    assert isinstance(emitter, FanoutEventEmitter)
    assert isinstance(emitter.emitters[0], LogEventEmitter)
    assert isinstance(emitter.emitters[1], HttpEventEmitter)
    emitter.close()


def test_http_emitter_returns_before_slow_collector_answers():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        time.sleep(0.3)
        received.append(json.loads(request.content)["event"])
        return httpx.Response(202)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    emitter = HttpEventEmitter("https://audit.example/events", client=client)

    started = time.monotonic()
    emitter.emit("session_extend", {"user_id": "u-1"})
    assert time.monotonic() - started < 0.1

    emitter.close()
    assert received == ["session_extend"]


def test_log_emitter_renders_datetimes_as_iso():
    expires_at = datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)
    with capture_logs() as captured:
        LogEventEmitter("tests.audit").emit(
            "otp_challenge_issued", {"user_id": "u-1", "expires_at": expires_at}
        )

    assert captured[0]["event"] == "otp_challenge_issued"
    assert captured[0]["expires_at"] == "2026-03-02T09:10:00+00:00"


def test_fanout_close_releases_http_client():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(202)))
    http_emitter = HttpEventEmitter("https://audit.example/events", client=client)
    fanout = FanoutEventEmitter([LogEventEmitter(), http_emitter])

    fanout.close()

    assert client.is_closed
    # Late events after shutdown are dropped quietly
    fanout.emit("logout", {"user_id": "u-1"})


@pytest.mark.asyncio
async def test_runtime_close_closes_event_sinks():
    closed = []

    class ClosingEmitter:
        def emit(self, event, fields):
            pass

        def close(self):
            closed.append(True)

    rt = get_runtime()
    rt.events = FanoutEventEmitter([ClosingEmitter()])

    await rt.close()

    assert closed == [True]


def test_mask_email():
    assert mask_email("alice@clinic.example") == "ali***@clinic.example"
    assert mask_email("al@clinic.example") == "al***@clinic.example"
    assert mask_email("not-an-address") == "***"


def test_notifier_dev_mode_reports_delivery():
    notifier = EmailOtpNotifier()
    assert notifier.is_configured is False
    assert notifier.send_otp(
        "alice@clinic.example", "123456", username="alice", purpose="login", expires_in=600
    )


def test_notifier_subject_follows_purpose(monkeypatch):
    notifier = EmailOtpNotifier(smtp_host="smtp.example", from_email="noreply@clinic.example")
    sent = []

    def fake_send(to_email, subject, html_body, text_body):
        sent.append((to_email, subject, text_body))
        return True

    monkeypatch.setattr(notifier, "_send_email", fake_send)

    notifier.send_otp("a@x.example", "482913", username="alice", purpose="password_reset", expires_in=600)
    notifier.send_otp("a@x.example", "482913", username="alice", purpose="unknown", expires_in=90)

    assert sent[0][1] == PURPOSE_SUBJECTS["password_reset"]
    assert "482913" in sent[0][2]
    assert "10 minutes" in sent[0][2]
    assert sent[1][1] == PURPOSE_SUBJECTS["security"]


def test_notifier_reports_smtp_failure(monkeypatch):
    import smtplib

    class BrokenSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "try later")

    monkeypatch.setattr(smtplib, "SMTP", BrokenSMTP)
    notifier = EmailOtpNotifier(smtp_host="smtp.example", from_email="noreply@clinic.example")

    assert notifier.send_otp(
        "alice@clinic.example", "123456", username="alice", purpose="login", expires_in=600
    ) is False

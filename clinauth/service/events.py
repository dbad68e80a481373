"""Structured event emission for session and challenge lifecycle.

Components call ``emit(event, fields)``; where the events end up (log stream,
HTTP audit collector, test recorder) is the emitter's business.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

import httpx

from clinauth.logging import get_correlation_id, get_logger


class EventEmitter(Protocol):
    def emit(self, event: str, fields: Dict[str, Any]) -> None: ...


class LogEventEmitter:
    """Writes each event as a structured log line on the ``clinauth.audit`` logger."""

    def __init__(self, logger_name: str = "clinauth.audit") -> None:
        self.logger = get_logger(logger_name)

    def emit(self, event: str, fields: Dict[str, Any]) -> None:
        self.logger.info(event, **_jsonable(fields))


class HttpEventEmitter:
    """Forwards events as JSON to an external audit collector.

    Delivery is best effort and happens on a single background worker, so
    ``emit`` returns at once and a slow or failing collector never holds up
    a request. Failed POSTs are logged and dropped. ``close`` drains the
    queue before releasing the client.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 2.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-forward")
        self.logger = get_logger(__name__)

    def emit(self, event: str, fields: Dict[str, Any]) -> None:
        payload = {
            "event": event,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "correlation_id": get_correlation_id(),
            "fields": _jsonable(fields),
        }
        try:
            self._executor.submit(self._deliver, payload)
        except RuntimeError:
            # Executor already shut down
            self.logger.warning("audit_forward_dropped", audit_event=event)

    def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self.logger.warning(
                "audit_forward_failed",
                audit_event=payload["event"],
                correlation_id=payload["correlation_id"],
                error=str(exc),
            )

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.client.close()


class FanoutEventEmitter:
    def __init__(self, emitters: Iterable[EventEmitter]) -> None:
        self.emitters = list(emitters)

    def emit(self, event: str, fields: Dict[str, Any]) -> None:
        for emitter in self.emitters:
            emitter.emit(event, fields)

    def close(self) -> None:
        close_emitters(self.emitters)


def close_emitters(emitters: Iterable[Any]) -> None:
    """Close every emitter that holds a resource."""
    for emitter in emitters:
        close = getattr(emitter, "close", None)
        if callable(close):
            close()


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, (str, int, float, bool)) or value is None:
            out[key] = value
        else:
            out[key] = str(value)
    return out


def build_emitter(audit_sink_url: Optional[str], *, timeout: float = 2.0) -> EventEmitter:
    log_emitter = LogEventEmitter()
    if not audit_sink_url:
        return log_emitter
    return FanoutEventEmitter([log_emitter, HttpEventEmitter(audit_sink_url, timeout=timeout)])

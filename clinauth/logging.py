from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id of the call being served, echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field-name fragments whose values never reach the log stream in clear
_SECRET_KEY_FRAGMENTS = ("password", "secret", "token", "code", "authorization", "cookie")
_CONTACT_KEY_FRAGMENTS = ("email",)
_ADDRESS_KEYS = frozenset({"ip", "ip_address", "client_ip"})
# Structural fields that merely contain a fragment above
_PASSTHROUGH_KEYS = frozenset({"event", "error_code", "status_code", "smtp_status"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, minting one when absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secret(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _mask_contact(value: str) -> str:
    if "@" not in value:
        return _mask_secret(value)
    local, domain = value.split("@", 1)
    return f"{local[:3]}***@{domain}"


def _mask_address(value: str) -> str:
    if "." in value:
        return value.rsplit(".", 1)[0] + ".***"
    if ":" in value:
        return value.rsplit(":", 1)[0] + ":****"
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials, codes, contact details and client addresses.

    Secrets keep two characters at each end; emails keep the prefix shown
    in the verification prompt.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in _PASSTHROUGH_KEYS:
            continue
        if lower_key in _ADDRESS_KEYS:
            event_dict[key] = _mask_address(value)
        elif any(fragment in lower_key for fragment in _CONTACT_KEY_FRAGMENTS):
            event_dict[key] = _mask_contact(value)
        elif any(fragment in lower_key for fragment in _SECRET_KEY_FRAGMENTS):
            event_dict[key] = _mask_secret(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain shared by every module logger.

    Args:
        log_level: minimum level emitted (DEBUG, INFO, WARNING, ERROR)
        json_output: one JSON object per line when True
        development_mode: coloured console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

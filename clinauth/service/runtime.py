from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit

from clinauth.config import Settings, get_settings, reset_settings_cache
from clinauth.logging import get_logger
from clinauth.service.auth import AuthService, RateBudget
from clinauth.service.credentials import CredentialVerifier
from clinauth.service.csrf import CsrfValidator
from clinauth.service.events import build_emitter, close_emitters
from clinauth.service.notifier import EmailOtpNotifier
from clinauth.service.otp import OtpManager
from clinauth.service.rate_limit import RateLimiter
from clinauth.service.sessions import SessionManager
from clinauth.service.tokens import SignedTokenCodec
from clinauth.storage.memory import MemoryStore
from clinauth.storage.postgres import PostgresStore
from clinauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

AnyCache = Union[RedisCache, SyncRedisCache]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password of a connection URL before it is logged.

    ``redis://:pw@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        return parts._replace(netloc=f"{parts.username or ''}:***@{host}").geturl()
    except ValueError:
        return "***url_parse_error***"


def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    if settings.use_memory_store:
        # Test runs keep state per process; nothing is written to disk
        return MemoryStore(fs_root=settings.shared_fs_root, persist=not settings.test_mode)
    return PostgresStore(settings.database_url)


def _build_cache(settings: Settings) -> Optional[AnyCache]:
    """Connect the shared rate-limit cache, or fall back to per-process counters.

    Without Redis, limits are only enforced per worker, so the fallback is
    allowed in TEST_MODE or with ALLOW_REDIS_FALLBACK_DEV only.
    """
    error: Exception | None = None
    if settings.redis_url:
        # A sync client in test mode avoids binding to a closed event loop
        cache: AnyCache = (
            SyncRedisCache(settings.redis_url)
            if settings.test_mode
            else RedisCache(settings.redis_url)
        )
        try:
            cache.verify_connection()
            return cache
        except Exception as exc:
            error = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for shared rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from error
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(error) if error else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Wires the store, cache and services once per process."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.cache = _build_cache(self.settings)

        self.events = build_emitter(
            self.settings.audit_sink_url, timeout=self.settings.audit_sink_timeout_seconds
        )
        self.codec = SignedTokenCodec(self.settings.secret_key)
        self.csrf = CsrfValidator()
        self.rate_limiter = RateLimiter(self.cache, events=self.events)
        self.notifier = EmailOtpNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.otp = OtpManager(
            self.store,
            self.notifier,
            self.events,
            secret_key=self.settings.secret_key,
            expiry_seconds=self.settings.otp_expiry_seconds,
            max_attempts=self.settings.otp_max_attempts,
            code_retention_seconds=self.settings.otp_code_retention_seconds,
        )
        self.credentials = CredentialVerifier(
            self.store, self.events, mfa_enabled=self.settings.enable_mfa
        )
        self.sessions = SessionManager(
            self.store,
            self.events,
            self.csrf,
            self.codec,
            idle_timeout_seconds=self.settings.session_idle_timeout_seconds,
            min_idle_timeout_seconds=self.settings.session_idle_timeout_min_seconds,
            max_idle_timeout_seconds=self.settings.session_idle_timeout_max_seconds,
            max_lifetime_seconds=self.settings.session_max_lifetime_seconds,
            expiring_threshold_seconds=self.settings.session_expiring_threshold_seconds,
            retention_days=self.settings.session_retention_days,
        )
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.otp,
            self.sessions,
            self.rate_limiter,
            self.csrf,
            self.codec,
            self.events,
            rate_budgets={
                "login": RateBudget(
                    self.settings.login_rate_limit, self.settings.login_rate_window_seconds
                ),
                "verify2fa": RateBudget(
                    self.settings.verify_rate_limit, self.settings.verify_rate_window_seconds
                ),
                "resend_otp": RateBudget(
                    self.settings.resend_rate_limit, self.settings.resend_rate_window_seconds
                ),
            },
        )

        logger.info(
            "runtime_initialized",
            store_type=self.store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.notifier.is_configured,
            mfa_enabled=self.settings.enable_mfa,
            audit_forwarding=bool(self.settings.audit_sink_url),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        # Drains queued audit deliveries, so it runs off the loop
        await asyncio.to_thread(close_emitters, [self.events])
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide runtime, building it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            # Re-checked under the lock so concurrent first calls build once
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        previous, runtime = runtime, None
        if previous is not None:
            close_emitters([previous.events])
        if previous is not None and previous.cache is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.cache.close())
            else:
                # Inside a running loop the old client is dropped unclosed
                logger.debug("runtime_reset_cache_close_skipped")

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

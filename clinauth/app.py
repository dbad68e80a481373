from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinauth.api.error_handling import register_exception_handlers
from clinauth.api.routes import router
from clinauth.config import Settings, get_settings
from clinauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Expire stale sessions and purge spent challenges on a fixed interval."""
    from clinauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        runtime = get_runtime()
        try:
            await asyncio.to_thread(runtime.sessions.cleanup)
            await asyncio.to_thread(runtime.otp.cleanup_expired)
        except Exception as exc:
            logger.error("session_cleanup_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from clinauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_session_cleanup(interval))
        logger.info("session_cleanup_scheduled", interval_seconds=interval)

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _check_component(component: str, func: Callable[[], None]) -> bool:
    """Run a blocking reachability check off the loop, bounded in time."""
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=component, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_check_failed", component=component, error=str(exc))
        return False
    return True


def _allowed_origins(settings: Settings) -> List[str]:
    # Never a wildcard: credentials are allowed
    return [origin for origin in settings.cors_allow_origins if origin != "*"]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Clinical Records Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "X-CSRF-Token",
            "X-XSRF-Token",
            "X-Request-ID",
        ],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag the request with X-Request-ID (or a fresh UUID) for structured logs."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report store and rate-limit cache reachability with build info."""
        from clinauth.service.runtime import get_runtime

        runtime = get_runtime()
        checks_to_run = {"database": runtime.store.ping}
        if runtime.cache is not None:
            checks_to_run["redis"] = runtime.cache.verify_connection

        checks: Dict[str, Dict[str, Any]] = {}
        for component, check in checks_to_run.items():
            ok = await _check_component(component, check)
            checks[component] = {"status": "healthy" if ok else "unhealthy"}
        checks["database"]["type"] = runtime.store_type
        if "redis" not in checks:
            checks["redis"] = {"status": "not_configured"}

        healthy = all(c["status"] != "unhealthy" for c in checks.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": settings.build_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()

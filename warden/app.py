from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.config import Settings
from warden.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweep on startup and stop it on shutdown."""
    from warden.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.session_cleanup_enabled:
            await runtime.cleanup_worker.start()
            logger.info("session_cleanup_started_on_startup")
    except Exception as exc:
        logger.error("startup_session_cleanup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.cleanup_worker.stop()
        if runtime.cache is not None and hasattr(runtime.cache, "close"):
            result = runtime.cache.close()
            if asyncio.iscoroutine(result):
                await result
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id is taken from ``X-Request-ID`` when the client sends one and is
    echoed back on the response.
    """
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
    response.headers.setdefault("API-Version", __version__)
    # Token responses must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability plus build info."""
    from warden.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    failures: Dict[str, str] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            failures[label] = "timeout"
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
            failures[label] = sanitize_error_message(str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "_connect"):
        def _db_ping() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        # Sessions still resolve from the store when the cache is down
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    for label, reason in failures.items():
        checks[label]["error"] = reason

    checks["session_cleanup"] = {
        "running": runtime.cleanup_worker.running,
        "last_deleted": runtime.cleanup_worker.last_deleted,
    }

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app


__all__ = ["app", "create_app"]

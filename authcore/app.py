from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request

from authcore.api.error_handling import register_exception_handlers, service_error_response
from authcore.api.routes import client_ip, router
from authcore.logging import get_logger, set_correlation_id
from authcore.service.errors import RateLimitedError
from authcore.service.rate_limit import resolve_category
from authcore.service.runtime import get_runtime
from authcore.service.tokens import extract_bearer

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_UNLIMITED_PATHS = frozenset({"/healthz"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sweep scheduler on startup and release resources on shutdown."""
    runtime = get_runtime()
    await runtime.scheduler.start()
    yield
    try:
        await runtime.scheduler.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _track_session(authorization: str | None, ip_address: str | None, user_agent: str | None):
    runtime = get_runtime()
    token = extract_bearer(authorization)
    if not token:
        return None
    claims = runtime.tokens.authenticate(token)
    if claims is None:
        return None
    if claims.session_id:
        touched = runtime.sessions.touch(claims.session_id)
        return touched.id if touched else None
    session = runtime.sessions.create(
        claims.subject, ip_address=ip_address, user_agent=user_agent
    )
    return session.id


async def track_session(request: Request, call_next):
    """Refresh the caller's session on every authenticated request.

    Tokens carrying a ``sid`` claim touch that session; tokens without one get
    a session created on the fly. The id is exposed as ``request.state.session_id``.
    """
    request.state.session_id = await asyncio.to_thread(
        _track_session,
        request.headers.get("Authorization"),
        client_ip(request),
        request.headers.get("user-agent"),
    )
    return await call_next(request)


async def enforce_rate_limit(request: Request, call_next):
    path = request.url.path
    category = resolve_category(path)
    if category is None or path in _UNLIMITED_PATHS:
        return await call_next(request)
    ip_address = client_ip(request) or "unknown"
    decision = await asyncio.to_thread(
        get_runtime().rate_limiter.try_consume, ip_address, category
    )
    if not decision.allowed:
        # Handlers do not see exceptions raised from middleware
        return service_error_response(
            RateLimitedError(retry_after_seconds=decision.retry_after_seconds)
        )
    response = await call_next(request)
    response.headers["X-Rate-Limit-Remaining"] = str(decision.remaining)
    return response


async def add_correlation_id(request: Request, call_next):
    """Tag logs and the response with the caller's X-Request-ID, or a fresh one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    app = FastAPI(title="AuthCore", version=__version__, lifespan=lifespan)
    # Last registered runs outermost
    app.middleware("http")(track_session)
    app.middleware("http")(enforce_rate_limit)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()

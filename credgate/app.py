from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from credgate.api.error_handling import register_exception_handlers
from credgate.api.routes import router
from credgate.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from credgate.service.runtime import get_runtime

    # A missing or weak JWT_SECRET aborts startup here
    get_runtime()
    logger.info("credgate_started", version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="credgate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Tag each request with a request ID.

    The client's X-Request-ID is reused when present, otherwise a new one is
    generated. It is bound into the structlog context and echoed back in the
    X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    request_id = bind_request_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report cache connectivity and version info."""
    from credgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    verify = getattr(runtime.cache, "verify_connection", None)
    if verify is None:
        checks["cache"] = {"status": "healthy", "type": "memory"}
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["cache"] = {"status": "healthy", "type": "redis"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            checks["cache"] = {"status": "unhealthy", "type": "redis"}
            healthy = False
        except Exception as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            checks["cache"] = {"status": "unhealthy", "type": "redis"}
            healthy = False

    checks["email"] = {"status": "configured" if runtime.email.is_configured else "dev_mode"}
    checks["sms"] = {"status": "configured" if runtime.sms.is_configured else "dev_mode"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "mfa_enabled": runtime.settings.enable_mfa,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

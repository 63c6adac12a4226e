from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from edutenant.api.error_handling import register_exception_handlers
from edutenant.api.routes import router
from edutenant.config import get_settings
from edutenant.logging import clear_request_scope, get_logger, set_correlation_id
from edutenant.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and release its connections on shutdown."""
    runtime = get_runtime()
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Edutenant Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs and the response with X-Request-ID, taken from the client or generated."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    try:
        response = await call_next(request)
    finally:
        clear_request_scope()
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report whether the credential store answers within the timeout."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {
        "store": {"status": "ok", "type": type(runtime.store).__name__},
    }
    healthy = True
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["credential_store"] = {"status": "ok", "type": type(runtime.cache).__name__}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", check="credential_store")
        checks["credential_store"] = {"status": "timeout"}
        healthy = False
    except Exception as exc:
        logger.error("health_check_failed", check="credential_store", error=str(exc))
        checks["credential_store"] = {"status": "error", "error": type(exc).__name__}
        healthy = False
    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)

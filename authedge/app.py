from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from authedge.api.error_handling import (
    register_exception_handlers,
    service_error_response,
    store_unavailable_response,
)
from authedge.api.routes import router
from authedge.logging import get_logger, set_correlation_id
from authedge.service.errors import NotFoundError, ServiceError
from authedge.service.gate import clear_identity
from authedge.service.runtime import get_runtime
from authedge.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except StoreUnavailable as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthEdge", version=__version__, lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def authenticate_session(request: Request, call_next):
    """Run the session gate in front of every /v1 route.

    A token that names no session is answered with 404 and the cookie is
    cleared so the client stops presenting it.
    """
    if not request.url.path.startswith("/v1/"):
        return await call_next(request)

    runtime = get_runtime()
    cookie_name = runtime.settings.session_cookie_name
    clear_identity()
    try:
        ctx = await runtime.gate.authenticate(
            request.cookies.get(cookie_name), request.headers.get("Authorization")
        )
    except NotFoundError as exc:
        response = service_error_response(request, exc)
        response.delete_cookie(
            cookie_name, path="/", secure=runtime.settings.cookie_secure, samesite="lax"
        )
        return response
    except ServiceError as exc:
        return service_error_response(request, exc)
    except StoreUnavailable as exc:
        return store_unavailable_response(request, exc)

    request.state.auth = ctx
    request.state.session_id = ctx.session_id if ctx else None
    try:
        return await call_next(request)
    finally:
        clear_identity()


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for logging, echoed in ``X-Request-ID``.

    Taken from the client's ``X-Request-ID`` header when present, otherwise
    generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report process health and session store reachability."""
    runtime = get_runtime()
    store_type = type(runtime.kv).__name__
    verify = getattr(runtime.kv, "verify_connection", None)
    healthy = True
    if verify is not None:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            healthy = False
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            healthy = False
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": {"store": {"status": "healthy" if healthy else "unhealthy", "type": store_type}},
    }

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List
from urllib.parse import urlsplit

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.config import Settings
from gatehouse.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        purged = runtime.sessions.delete_expired_sessions()
        purged_links = runtime.magic_links.purge_expired()
        logger.info(
            "startup_purge_complete", sessions=purged, verification_tokens=purged_links
        )
    except Exception as exc:
        logger.error("startup_purge_failed", error=str(exc))

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def _allowed_origins() -> List[str]:
    return _settings.cors_allow_origins


def _origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else ""


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    """Resolve the session cookie into ``request.state.auth`` before any handler runs.

    A renewed session gets a fresh cookie and an unknown or expired one gets
    the blank cookie, unless the handler already wrote the session cookie
    itself (login, logout and the sign-in callbacks do).
    """
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    authenticator = runtime.authenticator
    outcome = authenticator.authenticate(request.cookies.get(authenticator.cookie_name))
    request.state.auth = outcome.context
    response = await call_next(request)
    if outcome.cookie is not None:
        prefix = f"{authenticator.cookie_name}="
        already_set = any(
            header.startswith(prefix) for header in response.headers.getlist("set-cookie")
        )
        if not already_set:
            outcome.cookie.apply(response)
    return response


@app.middleware("http")
async def enforce_same_origin(request: Request, call_next):
    """Reject cross-site state-changing requests that would ride the session cookie."""
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    origin = request.headers.get("Origin")
    if not origin:
        return await call_next(request)
    allowed = set(_allowed_origins()) | {
        _origin_of(_settings.app_base_url),
        f"{request.url.scheme}://{request.url.netloc}",
    }
    if origin not in allowed:
        logger.warning("csrf_origin_rejected", origin=origin, path=request.url.path)
        return JSONResponse(
            status_code=403,
            content={
                "status": "error",
                "error": {"code": "forbidden", "message": "cross-origin request rejected"},
            },
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with X-Request-ID (client-supplied or generated) and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# added last so it wraps everything, preflights included
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    from gatehouse.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(get_runtime().store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = {"status": "ok"}
    except Exception as exc:
        logger.warning("health_store_failed", error_type=type(exc).__name__, error=str(exc))
        checks["store"] = {"status": "error", "error": type(exc).__name__}

    healthy = all(check["status"] == "ok" for check in checks.values())
    body = {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)


def create_app() -> FastAPI:
    return app

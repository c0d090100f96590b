from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from gatehouse.api.error_handling import service_error_response
from gatehouse.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MagicLinkRequest,
    MagicLinkResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    ValidateResponse,
    normalize_email,
)
from gatehouse.logging import get_logger
from gatehouse.service.auth import to_public_user
from gatehouse.service.authenticator import AuthContext
from gatehouse.service.errors import InvalidOrExpiredTokenError, ServiceError, UserNotFoundError
from gatehouse.service.runtime import get_runtime
from gatehouse.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

OAUTH_STATE_COOKIE = "google_oauth_state"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_auth_context(request: Request) -> AuthContext:
    """Identity attached by the authentication middleware; anonymous if absent."""
    return getattr(request.state, "auth", None) or AuthContext()


def require_user(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.is_authenticated:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


def _apply_session_cookie(response: Response, session: Session) -> None:
    get_runtime().sessions.create_session_cookie(session.id).apply(response)


def _auth_envelope(user: User, session: Session) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_expires_at=session.expires_at,
            user=to_public_user(user),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password and set the session cookie.

    Raises:
        400: invalid_credentials, for an unknown email or a wrong password alike
    """
    runtime = get_runtime()
    user, session = await runtime.auth.login(body.email, body.password)
    _apply_session_cookie(response, session)
    return _auth_envelope(user, session)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a password account and sign it in.

    Raises:
        409: user_exists
    """
    runtime = get_runtime()
    user, session = await runtime.auth.register(
        body.email, body.password, body.name, nickname=body.nickname
    )
    _apply_session_cookie(response, session)
    return _auth_envelope(user, session)


@router.get("/auth/google", tags=["auth"])
async def google_start():
    runtime = get_runtime()
    start = runtime.auth.start_oauth()
    response = RedirectResponse(start.authorization_url, status_code=302)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        start.sealed_state,
        max_age=runtime.settings.oauth_state_ttl_minutes * 60,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    return response


@router.get("/auth/callback/google", tags=["auth"])
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=512),
):
    """Finish the Google flow and land on the app with a session cookie.

    Raises:
        400: oauth_state_mismatch before any provider call, or oauth_provider_error
        500: any other exchange failure
    """
    runtime = get_runtime()
    try:
        user, session = await runtime.auth.complete_oauth(
            code, state, request.cookies.get(OAUTH_STATE_COOKIE)
        )
    except ServiceError as exc:
        # the sealed state is spent either way
        failed = service_error_response(request, exc)
        failed.delete_cookie(OAUTH_STATE_COOKIE, path="/")
        return failed
    response = RedirectResponse(runtime.settings.login_redirect_url, status_code=302)
    _apply_session_cookie(response, session)
    response.delete_cookie(OAUTH_STATE_COOKIE, path="/")
    return response


@router.post("/auth/magic", response_model=Envelope, tags=["auth"])
async def request_magic_link(body: MagicLinkRequest):
    """Email a single-use sign-in link to an existing user.

    Raises:
        404: user_not_found
    """
    runtime = get_runtime()
    issued = await runtime.magic_links.request(body.email)
    return Envelope(status="ok", data=MagicLinkResponse(expires_at=issued.expires))


@router.get("/auth/magic/callback", tags=["auth"])
async def magic_link_callback(
    identifier: str = Query(..., max_length=256),
    email: str = Query(..., max_length=254),
):
    runtime = get_runtime()
    try:
        user, session = runtime.magic_links.exchange(identifier, normalize_email(email))
    except (InvalidOrExpiredTokenError, UserNotFoundError, ValueError) as exc:
        code = getattr(exc, "error_code", "invalid_or_expired_token")
        logger.info("magic_link_rejected", error_code=code)
        retry_url = f"{runtime.settings.magic_link_retry_url}?{urlencode({'error': code})}"
        return RedirectResponse(retry_url, status_code=302)
    response = RedirectResponse(runtime.settings.login_redirect_url, status_code=302)
    _apply_session_cookie(response, session)
    return response


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    runtime.auth.logout(ctx.session)
    runtime.sessions.create_blank_session_cookie().apply(response)
    return Envelope(status="ok", data=MessageResponse(message="success"))


@router.get("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(status="ok", data=ValidateResponse(session=ctx.is_authenticated))


@router.get("/users/@me", response_model=Envelope, tags=["users"])
async def current_user(ctx: AuthContext = Depends(require_user)):
    return Envelope(status="ok", data=MeResponse(user=to_public_user(ctx.user)))

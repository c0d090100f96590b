from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from gatehouse.logging import get_logger
from gatehouse.service.errors import OAuthProviderError, ServerError
from gatehouse.service.tokens import SignedTokenCodec

logger = get_logger(__name__)

GOOGLE_AUTHORIZATION_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
DEFAULT_SCOPES = ("openid", "profile", "email")


@dataclass
class OAuthTokens:
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass
class GoogleUserInfo:
    sub: str
    email: str
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    email_verified: bool = False


@dataclass
class PendingAuthorization:
    state: str
    code_verifier: str


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_code_verifier() -> str:
    # 43 chars of base64url, inside the 43-128 range PKCE allows
    return secrets.token_urlsafe(32)


def code_challenge_s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class OAuthStateSealer:
    """Carries ``state`` and ``code_verifier`` in a signed, self-expiring cookie value."""

    token_type = "oauth_state"

    def __init__(self, codec: SignedTokenCodec, ttl_minutes: int = 10) -> None:
        self.codec = codec
        self.ttl_seconds = ttl_minutes * 60

    def seal(self, pending: PendingAuthorization) -> str:
        return self.codec.encode(
            self.token_type,
            {"state": pending.state, "code_verifier": pending.code_verifier},
            self.ttl_seconds,
        )

    def unseal(self, sealed: Optional[str]) -> Optional[PendingAuthorization]:
        claims = self.codec.decode(sealed, self.token_type)
        if not claims:
            return None
        state = claims.get("state")
        verifier = claims.get("code_verifier")
        if not isinstance(state, str) or not isinstance(verifier, str):
            return None
        return PendingAuthorization(state=state, code_verifier=verifier)


def states_match(provided: Optional[str], pending: Optional[PendingAuthorization]) -> bool:
    if not provided or pending is None:
        return False
    return hmac.compare_digest(provided.encode(), pending.state.encode())


class GoogleOAuthClient:
    """Authorization-code + PKCE (S256) client for Google's OpenID Connect endpoints."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def create_authorization_url(
        self, state: str, code_verifier: str, scopes: tuple[str, ...] = DEFAULT_SCOPES
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "scope": " ".join(scopes),
            "code_challenge": code_challenge_s256(code_verifier),
            "code_challenge_method": "S256",
        }
        return f"{GOOGLE_AUTHORIZATION_URL}?{urlencode(params)}"

    @staticmethod
    def _parse_json(response: httpx.Response, stage: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            logger.error("oauth_response_parse_error", stage=stage, error=str(exc))
            raise ServerError("identity provider returned an unreadable response") from exc
        if not isinstance(body, dict):
            logger.error("oauth_response_not_object", stage=stage)
            raise ServerError("identity provider returned an unreadable response")
        return body

    @staticmethod
    def _raise_for_provider_error(response: httpx.Response, stage: str) -> None:
        if response.status_code >= 500:
            logger.error("oauth_provider_unavailable", stage=stage, status=response.status_code)
            raise ServerError("identity provider unavailable")
        if response.status_code >= 400:
            error = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    error = body.get("error")
            except ValueError:
                pass
            logger.warning(
                "oauth_provider_rejected",
                stage=stage,
                status=response.status_code,
                error=error,
            )
            raise OAuthProviderError(
                "identity provider rejected the request",
                detail={"stage": stage, "error": error or f"http_{response.status_code}"},
            )

    async def validate_authorization_code(
        self, code: str, code_verifier: str
    ) -> OAuthTokens:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        async with self._client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        self._raise_for_provider_error(response, "token")
        body = self._parse_json(response, "token")
        if body.get("error"):
            # some providers report errors with a 200
            raise OAuthProviderError(
                "identity provider rejected the request",
                detail={"stage": "token", "error": body.get("error")},
            )
        access_token = body.get("access_token")
        if not access_token:
            logger.error("oauth_no_access_token")
            raise ServerError("identity provider returned no access token")
        return OAuthTokens(
            access_token=access_token,
            token_type=body.get("token_type", "Bearer"),
            expires_in=body.get("expires_in"),
            id_token=body.get("id_token"),
            refresh_token=body.get("refresh_token"),
        )

    async def fetch_user_info(self, access_token: str) -> GoogleUserInfo:
        async with self._client() as client:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        self._raise_for_provider_error(response, "userinfo")
        body = self._parse_json(response, "userinfo")
        sub = body.get("sub")
        email = body.get("email")
        if not sub or not email:
            logger.error("oauth_userinfo_incomplete", has_sub=bool(sub), has_email=bool(email))
            raise ServerError("identity provider returned an incomplete profile")
        return GoogleUserInfo(
            sub=str(sub),
            email=str(email).strip().lower(),
            name=body.get("name"),
            given_name=body.get("given_name"),
            family_name=body.get("family_name"),
            picture=body.get("picture"),
            email_verified=bool(body.get("email_verified", False)),
        )

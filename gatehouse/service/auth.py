from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from gatehouse.logging import get_logger
from gatehouse.service.errors import (
    InvalidCredentialsError,
    OAuthStateMismatchError,
    ServerError,
    UserExistsError,
)
from gatehouse.service.oauth import (
    GoogleOAuthClient,
    OAuthStateSealer,
    PendingAuthorization,
    generate_code_verifier,
    generate_state,
    states_match,
)
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.sessions import SessionManager
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        nickname: Optional[str] = None,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

class PublicUser(BaseModel):
    email: str
    name: Optional[str] = None
    nickname: Optional[str] = None


def to_public_user(user: User) -> PublicUser:
    """Project a stored user onto the fields that may leave the service."""
    return PublicUser(email=user.email, name=user.name, nickname=user.nickname)


@dataclass
class OAuthStart:
    authorization_url: str
    sealed_state: str


class AuthService:
    """Credential and Google sign-in flows that end in a new session."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        hasher: PasswordHasher,
        google: GoogleOAuthClient,
        state_sealer: OAuthStateSealer,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.hasher = hasher
        self.google = google
        self.state_sealer = state_sealer
        self.logger = logger

    async def login(self, email: str, password: str) -> tuple[User, Session]:
        user = self.store.get_user_by_email(email)
        if not user or not self.hasher.verify(user.password_hash, password):
            self.logger.warning("login_failed")
            raise InvalidCredentialsError()
        if self.hasher.needs_rehash(user.password_hash):
            self.store.update_password_hash(user.id, self.hasher.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)
        session = self.sessions.create_session(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, session

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        nickname: Optional[str] = None,
    ) -> tuple[User, Session]:
        # advisory only; the store's unique index is what actually decides
        if self.store.get_user_by_email(email):
            raise UserExistsError()
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(
                email, name=name, nickname=nickname, password_hash=password_hash
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", field=exc.detail.get("field"))
            raise UserExistsError() from exc
        session = self.sessions.create_session(user.id)
        self.logger.info("user_registered", user_id=user.id)
        return user, session

    def start_oauth(self) -> OAuthStart:
        if not self.google.is_configured:
            self.logger.error("oauth_credentials_missing", provider="google")
            raise ServerError("google sign-in is not configured")
        pending = PendingAuthorization(
            state=generate_state(), code_verifier=generate_code_verifier()
        )
        url = self.google.create_authorization_url(pending.state, pending.code_verifier)
        return OAuthStart(
            authorization_url=url, sealed_state=self.state_sealer.seal(pending)
        )

    async def complete_oauth(
        self,
        code: Optional[str],
        state: Optional[str],
        sealed_state: Optional[str],
    ) -> tuple[User, Session]:
        pending = self.state_sealer.unseal(sealed_state)
        if not code or not states_match(state, pending):
            self.logger.warning(
                "oauth_state_rejected",
                has_state=bool(state),
                has_stored_state=pending is not None,
                has_code=bool(code),
            )
            raise OAuthStateMismatchError()

        try:
            tokens = await self.google.validate_authorization_code(
                code, pending.code_verifier
            )
            profile = await self.google.fetch_user_info(tokens.access_token)
        except httpx.HTTPError as exc:
            self.logger.error(
                "oauth_transport_error", error_type=type(exc).__name__, error=str(exc)
            )
            raise ServerError("identity provider unreachable") from exc

        user = self.store.get_user_by_google_id(profile.sub)
        if not user:
            try:
                user = self.store.create_user(
                    profile.email, name=profile.name, google_id=profile.sub
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "google_id":
                    raise UserExistsError() from exc
                # lost a race with a parallel callback for the same account
                user = self.store.get_user_by_google_id(profile.sub)
                if not user:
                    raise
            self.logger.info("oauth_user_created", user_id=user.id, provider="google")
        session = self.sessions.create_session(user.id)
        self.logger.info("oauth_login_succeeded", user_id=user.id, provider="google")
        return user, session

    def logout(self, session: Optional[Session]) -> None:
        if session:
            self.sessions.invalidate_session(session.id)
            self.logger.info("logout", user_id=session.user_id)

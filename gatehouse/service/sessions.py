from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Optional, Protocol

from starlette.responses import Response

from gatehouse.logging import get_logger
from gatehouse.storage.models import Session, User, ensure_utc, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_seconds: int) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session_expiration(self, session_id: str, expires_at) -> None: ...

    def delete_session(self, session_id: str) -> None: ...

    def delete_expired_sessions(self) -> int: ...


@dataclass
class SessionValidation:
    user: Optional[User] = None
    session: Optional[Session] = None

    @property
    def is_valid(self) -> bool:
        return self.session is not None


@dataclass
class SessionCookie:
    """Bearer artifact for a session id, or the blank cookie that clears it."""

    name: str
    value: str
    max_age: int
    secure: bool = False
    attributes: dict = field(
        default_factory=lambda: {"httponly": True, "samesite": "lax", "path": "/"}
    )

    @property
    def is_blank(self) -> bool:
        return not self.value

    def apply(self, response: Response) -> None:
        response.set_cookie(
            self.name,
            self.value,
            max_age=self.max_age,
            secure=self.secure,
            **self.attributes,
        )


class SessionManager:
    """Create, validate with sliding renewal, and invalidate sessions.

    A session lives for ``ttl_seconds``. Once less than half of that remains,
    a successful validation pushes ``expires_at`` out to a full lifetime again
    and returns the session flagged ``fresh`` so the caller can reissue the
    cookie.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: int,
        cookie_name: str = "auth_session",
        cookie_secure: bool = False,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.cookie_name = cookie_name
        self.cookie_secure = cookie_secure

    @property
    def renewal_threshold(self) -> timedelta:
        return self.ttl / 2

    def create_session(self, user_id: str) -> Session:
        session = self.store.create_session(user_id, int(self.ttl.total_seconds()))
        logger.info("session_created", user_id=user_id)
        return session

    def validate_session(self, session_id: Optional[str]) -> SessionValidation:
        if not session_id:
            return SessionValidation()
        session = self.store.get_session(session_id)
        if not session:
            return SessionValidation()

        now = utcnow()
        expires_at = ensure_utc(session.expires_at)
        if now >= expires_at:
            self.store.delete_session(session.id)
            logger.info("session_expired_purged", user_id=session.user_id)
            return SessionValidation()

        user = self.store.get_user(session.user_id)
        if not user:
            # owner vanished; drop the orphan
            self.store.delete_session(session.id)
            logger.warning("session_orphan_purged", user_id=session.user_id)
            return SessionValidation()

        if expires_at - now < self.renewal_threshold:
            renewed_until = now + self.ttl
            self.store.update_session_expiration(session.id, renewed_until)
            logger.info("session_renewed", user_id=user.id)
            return SessionValidation(
                user=user,
                session=replace(session, expires_at=renewed_until, fresh=True),
            )
        return SessionValidation(user=user, session=replace(session, fresh=False))

    def invalidate_session(self, session_id: str) -> None:
        self.store.delete_session(session_id)

    def delete_expired_sessions(self) -> int:
        purged = self.store.delete_expired_sessions()
        if purged:
            logger.info("expired_sessions_purged", count=purged)
        return purged

    def create_session_cookie(self, session_id: str) -> SessionCookie:
        return SessionCookie(
            name=self.cookie_name,
            value=session_id,
            max_age=int(self.ttl.total_seconds()),
            secure=self.cookie_secure,
        )

    def create_blank_session_cookie(self) -> SessionCookie:
        return SessionCookie(
            name=self.cookie_name,
            value="",
            max_age=0,
            secure=self.cookie_secure,
        )

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from gatehouse.service.sessions import SessionCookie, SessionManager
from gatehouse.storage.models import Session, User


@dataclass
class AuthContext:
    """Identity resolved for one request; both fields are None for anonymous callers."""

    user: Optional[User] = None
    session: Optional[Session] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None and self.session is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None


@dataclass
class AuthOutcome:
    context: AuthContext = field(default_factory=AuthContext)
    # cookie to send back: a renewed session cookie or the blank one
    cookie: Optional[SessionCookie] = None


class RequestAuthenticator:
    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    @property
    def cookie_name(self) -> str:
        return self.sessions.cookie_name

    def authenticate(self, session_id: Optional[str]) -> AuthOutcome:
        if not session_id:
            return AuthOutcome()
        result = self.sessions.validate_session(session_id)
        if not result.is_valid:
            return AuthOutcome(cookie=self.sessions.create_blank_session_cookie())
        context = AuthContext(user=result.user, session=result.session)
        if result.session.fresh:
            return AuthOutcome(
                context=context,
                cookie=self.sessions.create_session_cookie(result.session.id),
            )
        return AuthOutcome(context=context)

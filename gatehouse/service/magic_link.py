from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol
from urllib.parse import urlencode

from gatehouse.logging import get_logger
from gatehouse.service.email import EmailService
from gatehouse.service.errors import InvalidOrExpiredTokenError, UserNotFoundError
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import SingleUseTokenIssuer
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import Session, User, VerificationToken, utcnow

logger = get_logger(__name__)

MAGIC_LINK_CALLBACK_PATH = "/v1/auth/magic/callback"


class VerificationTokenStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken: ...

    def get_verification_token(self, identifier: str) -> Optional[VerificationToken]: ...

    def delete_verification_token(self, identifier: str) -> bool: ...

    def delete_expired_verification_tokens(self) -> int: ...


@dataclass
class MagicLinkIssued:
    identifier: str
    expires: datetime
    url: str


class MagicLinkService:
    """Passwordless login through a signed token referenced by a one-time identifier.

    The identifier travels in the emailed URL; the signed token stays in the
    store. An exchange needs both a live record and a valid signature, and
    succeeds at most once because the record is deleted on use.
    """

    def __init__(
        self,
        store: VerificationTokenStore,
        issuer: SingleUseTokenIssuer,
        sessions: SessionManager,
        email: EmailService,
        *,
        base_url: str,
        ttl_minutes: int = 15,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.sessions = sessions
        self.email = email
        self.base_url = base_url.rstrip("/")
        self.ttl_minutes = ttl_minutes

    def build_callback_url(self, identifier: str, email: str) -> str:
        query = urlencode({"identifier": identifier, "email": email})
        return f"{self.base_url}{MAGIC_LINK_CALLBACK_PATH}?{query}"

    def _persist(self, token: str, expires: datetime) -> VerificationToken:
        try:
            return self.store.create_verification_token(
                secrets.token_urlsafe(32), token, expires
            )
        except ConstraintViolation:
            # identifier collision; one retry with fresh randomness
            logger.warning("magic_link_identifier_collision")
            return self.store.create_verification_token(
                secrets.token_urlsafe(32), token, expires
            )

    async def request(self, email: str) -> MagicLinkIssued:
        user = self.store.get_user_by_email(email)
        if not user:
            raise UserNotFoundError()
        token = self.issuer.issue(user.email, self.ttl_minutes)
        record = self._persist(token, utcnow() + timedelta(minutes=self.ttl_minutes))
        url = self.build_callback_url(record.identifier, user.email)

        sent = await asyncio.to_thread(
            self.email.send_magic_link, user.email, url, self.ttl_minutes
        )
        if not sent:
            logger.warning("magic_link_email_failed", user_id=user.id)
        logger.info("magic_link_issued", user_id=user.id)
        return MagicLinkIssued(identifier=record.identifier, expires=record.expires, url=url)

    def exchange(self, identifier: str, email: str) -> tuple[User, Session]:
        record = self.store.get_verification_token(identifier)
        if not record:
            raise InvalidOrExpiredTokenError()
        if record.is_expired():
            self.store.delete_verification_token(identifier)
            raise InvalidOrExpiredTokenError()

        user = self.store.get_user_by_email(email)
        if not user:
            raise UserNotFoundError()

        if not self.issuer.verify(record.token, user.email):
            logger.warning("magic_link_signature_invalid", user_id=user.id)
            raise InvalidOrExpiredTokenError()

        # the delete is the single-use gate: only one caller sees True
        if not self.store.delete_verification_token(identifier):
            raise InvalidOrExpiredTokenError()

        session = self.sessions.create_session(user.id)
        logger.info("magic_link_exchanged", user_id=user.id)
        return user, session

    def purge_expired(self) -> int:
        return self.store.delete_expired_verification_tokens()

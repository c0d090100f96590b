from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    nickname: Optional[str] = None
    password_hash: Optional[str] = None
    google_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        name: str | None = None,
        nickname: str | None = None,
        password_hash: str | None = None,
        google_id: str | None = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            nickname=nickname,
            password_hash=password_hash,
            google_id=google_id,
        )


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    # set only on the copy returned by a renewing validation; never persisted
    fresh: bool = False

    @classmethod
    def new(cls, user_id: str, ttl_seconds: int) -> "Session":
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= ensure_utc(self.expires_at)


@dataclass
class VerificationToken:
    identifier: str
    token: str
    expires: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= ensure_utc(self.expires)

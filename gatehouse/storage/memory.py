from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.models import (
    Session,
    User,
    VerificationToken,
    ensure_utc,
    utcnow,
)


class MemoryStore:
    """In-process store for development and tests, snapshotted to a JSON file."""

    def __init__(self, fs_root: str = "/tmp/gatehouse", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        # RLock so helpers can re-enter while the caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_utc(datetime.fromisoformat(raw))

    def ping(self) -> None:
        if self.persist:
            self._state_path()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        nickname: Optional[str] = None,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and any(
                existing.google_id == google_id for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            user = User.new(
                email,
                name=name,
                nickname=nickname,
                password_hash=password_hash,
                google_id=google_id,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.password_hash = password_hash
            self._persist_state()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            for sid in [s.id for s in self.sessions.values() if s.user_id == user_id]:
                self.sessions.pop(sid, None)
            self._persist_state()
            return True

    # sessions
    def create_session(self, user_id: str, ttl_seconds: int) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(user_id, ttl_seconds)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.expires_at = expires_at
            self._persist_state()

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def delete_expired_sessions(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # verification tokens
    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken:
        with self._data_lock:
            if identifier in self.verification_tokens:
                raise ConstraintViolation(
                    "verification token already exists", {"field": "identifier"}
                )
            record = VerificationToken(identifier=identifier, token=token, expires=expires)
            self.verification_tokens[identifier] = record
            self._persist_state()
            return record

    def get_verification_token(self, identifier: str) -> Optional[VerificationToken]:
        with self._data_lock:
            return self.verification_tokens.get(identifier)

    def delete_verification_token(self, identifier: str) -> bool:
        with self._data_lock:
            removed = self.verification_tokens.pop(identifier, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def delete_expired_verification_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            stale = [
                key for key, record in self.verification_tokens.items()
                if record.is_expired(now)
            ]
            for key in stale:
                self.verification_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "verification_tokens": [
                self._serialize_verification_token(t)
                for t in self.verification_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load in-memory state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.verification_tokens = {
            t["identifier"]: self._deserialize_verification_token(t)
            for t in data.get("verification_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            path=str(path),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "nickname": user.nickname,
            "password_hash": user.password_hash,
            "google_id": user.google_id,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            nickname=data.get("nickname"),
            password_hash=data.get("password_hash"),
            google_id=data.get("google_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_verification_token(self, record: VerificationToken) -> dict:
        return {
            "identifier": record.identifier,
            "token": record.token,
            "expires": self._serialize_datetime(record.expires),
        }

    def _deserialize_verification_token(self, data: dict) -> VerificationToken:
        return VerificationToken(
            identifier=data["identifier"],
            token=data["token"],
            expires=self._deserialize_datetime(data["expires"]),
        )

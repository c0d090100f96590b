from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StorageError
from gatehouse.storage.models import (
    Session,
    User,
    VerificationToken,
    ensure_utc,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        google_id TEXT UNIQUE,
        name TEXT,
        email TEXT NOT NULL UNIQUE,
        password TEXT,
        nickname TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS verification_tokens (
        identifier TEXT NOT NULL,
        token TEXT NOT NULL,
        expires TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (identifier, token)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS verification_tokens_identifier_idx
        ON verification_tokens (identifier)
    """,
)


class PostgresStore:
    """Postgres-backed store for users, sessions and magic-link tokens."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operation_failed", error=str(exc))
            raise StorageError("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            nickname=row.get("nickname"),
            password_hash=row.get("password"),
            google_id=row.get("google_id"),
            created_at=ensure_utc(row.get("created_at") or utcnow()),
        )

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
        user = User.new(
            email,
            name=name,
            nickname=nickname,
            password_hash=password_hash,
            google_id=google_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, google_id, name, email, password, nickname, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        google_id,
                        name,
                        email,
                        password_hash,
                        nickname,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "google_id" if "google_id" in constraint else "email"
            message = (
                "google account already linked"
                if field == "google_id"
                else "email already exists"
            )
            raise ConstraintViolation(message, {"field": field})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE google_id = %s", (google_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password = %s WHERE id = %s", (password_hash, user_id)
            )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(self, user_id: str, ttl_seconds: int) -> Session:
        sess = Session.new(user_id, ttl_seconds)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO sessions (id, user_id, expires_at) VALUES (%s, %s, %s)",
                    (sess.id, sess.user_id, sess.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            expires_at=ensure_utc(row["expires_at"]),
        )

    def update_session_expiration(self, session_id: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE sessions SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE id = %s", (session_id,))

    def delete_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (utcnow(),)
            )
            return result.rowcount

    # verification tokens
    def create_verification_token(
        self, identifier: str, token: str, expires: datetime
    ) -> VerificationToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_tokens (identifier, token, expires)
                    VALUES (%s, %s, %s)
                    """,
                    (identifier, token, expires),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "verification token already exists", {"field": "identifier"}
            )
        return VerificationToken(identifier=identifier, token=token, expires=expires)

    def get_verification_token(self, identifier: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_tokens WHERE identifier = %s", (identifier,)
            ).fetchone()
        if not row:
            return None
        return VerificationToken(
            identifier=row["identifier"],
            token=row["token"],
            expires=ensure_utc(row["expires"]),
        )

    def delete_verification_token(self, identifier: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM verification_tokens WHERE identifier = %s", (identifier,)
            )
            return result.rowcount > 0

    def delete_expired_verification_tokens(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM verification_tokens WHERE expires <= %s", (utcnow(),)
            )
            return result.rowcount

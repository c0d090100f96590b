from __future__ import annotations

import threading
from typing import Optional

import httpx

from gatehouse.config import get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.authenticator import RequestAuthenticator
from gatehouse.service.email import EmailService
from gatehouse.service.magic_link import MagicLinkService
from gatehouse.service.oauth import GoogleOAuthClient, OAuthStateSealer
from gatehouse.service.passwords import PasswordHasher
from gatehouse.service.sessions import SessionManager
from gatehouse.service.tokens import SignedTokenCodec, SingleUseTokenIssuer
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds the store and every service built from the current settings."""

    def __init__(self, *, oauth_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        if self.settings.use_memory_store:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                persist=self.settings.memory_store_persist,
            )
        else:
            self.store = PostgresStore(
                self.settings.database_url, fs_root=self.settings.shared_fs_root
            )

        self.hasher = PasswordHasher()
        self.sessions = SessionManager(
            self.store,
            ttl_seconds=self.settings.session_ttl_seconds,
            cookie_name=self.settings.session_cookie_name,
            cookie_secure=self.settings.cookie_secure,
        )
        self.authenticator = RequestAuthenticator(self.sessions)
        codec = SignedTokenCodec(self.settings.jwt_secret, self.settings.jwt_issuer)
        self.token_issuer = SingleUseTokenIssuer(codec)
        self.state_sealer = OAuthStateSealer(
            codec, ttl_minutes=self.settings.oauth_state_ttl_minutes
        )
        self.google = GoogleOAuthClient(
            self.settings.oauth_google_client_id,
            self.settings.oauth_google_client_secret,
            self.settings.oauth_redirect_uri,
            transport=oauth_transport,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthService(
            self.store, self.sessions, self.hasher, self.google, self.state_sealer
        )
        self.magic_links = MagicLinkService(
            self.store,
            self.token_issuer,
            self.sessions,
            self.email,
            base_url=self.settings.app_base_url,
            ttl_minutes=self.settings.magic_link_ttl_minutes,
        )

        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            email_configured=self.email.is_configured,
            google_configured=self.google.is_configured,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, oauth_transport: Optional[httpx.AsyncBaseTransport] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(oauth_transport=oauth_transport)
        return runtime

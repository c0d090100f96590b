from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that is rendered in the response envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never told apart."""
    status_code = 400
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserExistsError(ConflictError):
    error_code = "user_exists"

    def __init__(
        self, message: str = "User with that email already exists.", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(ValidationError):
    """Magic-link record missing, expired, consumed, or badly signed."""
    error_code = "invalid_or_expired_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OAuthStateMismatchError(ValidationError):
    error_code = "oauth_state_mismatch"

    def __init__(self, message: str = "oauth state mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OAuthProviderError(ValidationError):
    """The identity provider rejected the authorization code or access token."""
    error_code = "oauth_provider_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "InvalidCredentialsError",
    "UserExistsError",
    "UserNotFoundError",
    "InvalidOrExpiredTokenError",
    "OAuthStateMismatchError",
    "OAuthProviderError",
]

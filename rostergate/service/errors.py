from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for errors surfaced across the consumer boundary.

    Each subclass carries a stable ``error_code`` and an HTTP-style
    ``status_code`` so a presentation layer can map it without inspecting
    messages. ``retryable`` tells the caller whether repeating the same
    request may succeed without user action.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Roster or remote secret mismatch.

    The message is deliberately identical for every cause so callers cannot
    tell an unknown identifier from a wrong secret.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid identifier or secret", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired; the caller must authenticate again (401)."""
    error_code = "session_expired"

    def __init__(self, message: str = "Session expired, please log in again", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LockedError(ServiceError):
    """Too many failed attempts; the identifier is locked out (423)."""
    status_code = 423
    error_code = "locked"

    def __init__(
        self,
        message: str,
        *,
        locked_until: Optional[datetime] = None,
        retry_after_seconds: int = 0,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.locked_until = locked_until
        self.retry_after_seconds = retry_after_seconds
        self.detail.setdefault("retry_after_seconds", retry_after_seconds)


class AccessWindowClosedError(ServiceError):
    """Login attempted outside the permitted access hours (403)."""
    status_code = 403
    error_code = "access_window_closed"


class ConflictError(ServiceError):
    """Operation conflicts with current state (409)."""
    status_code = 409
    error_code = "conflict"


class ProviderUnavailableError(ServiceError):
    """Transient identity provider failure; safe to retry (503)."""
    status_code = 503
    error_code = "provider_unavailable"
    retryable = True


class ProviderMisconfiguredError(ServiceError):
    """Deployment-level identity provider configuration problem (500)."""
    status_code = 500
    error_code = "provider_misconfigured"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionExpiredError",
    "LockedError",
    "AccessWindowClosedError",
    "ConflictError",
    "ProviderUnavailableError",
    "ProviderMisconfiguredError",
]

from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Every subclass carries an HTTP-ish ``status_code`` and a stable
    ``error_code`` so the (external) routing layer can translate failures
    without inspecting messages:
    - validation_error (400)
    - unauthorized / token_invalid (401)
    - account_locked / login_not_supported (403)
    - not_found (404)
    - conflict (409)
    - notifier_unavailable / infrastructure_failure (503)
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


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password.

    The message is identical for both cases so callers cannot enumerate accounts.
    """

    def __init__(self, message: str = "Invalid account name, email or password.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    """Refresh or access token is absent, expired or revoked; the client must log in again."""
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid or expired refresh token.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Account is banned; rejected even with valid credentials (403)."""
    status_code = 403
    error_code = "account_locked"

    def __init__(self, message: str = "This account has been permanently banned and locked.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LoginNotSupportedError(ServiceError):
    """Account type cannot hold an interactive session (403)."""
    status_code = 403
    error_code = "login_not_supported"

    def __init__(self, message: str = "Direct login is not supported for this account type.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class NotifierUnavailableError(ServiceError):
    """Verification delivery channel is disabled; no code was generated (503)."""
    status_code = 503
    error_code = "notifier_unavailable"

    def __init__(self, message: str = "Verification delivery is not available.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InfrastructureError(ServiceError):
    """Storage or another backing service failed (503).

    Kept distinct from authentication failures so callers can choose to retry.
    """
    status_code = 503
    error_code = "infrastructure_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "AccountLockedError",
    "LoginNotSupportedError",
    "NotFoundError",
    "ConflictError",
    "NotifierUnavailableError",
    "InfrastructureError",
]

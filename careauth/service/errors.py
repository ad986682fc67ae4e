from __future__ import annotations

from typing import Any, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a stable ``error_code`` and a
    default caller-facing ``message``/``errors`` pair so flows can simply
    ``raise InvalidCredentialError()``:

    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked (423)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed"
    default_errors: tuple[str, ...] = ()

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        errors: Optional[List[str]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        detail: Optional[dict] = None,
        data: Any = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.errors = list(errors) if errors is not None else list(self.default_errors)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.data = data


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Access denied"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Resource temporarily locked (423)."""
    status_code = 423
    error_code = "locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "An unexpected error occurred"


# Identity taxonomy


class InvalidCredentialError(AuthenticationError):
    """Wrong email or password; never says which."""
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"
    default_errors = ("Invalid credentials",)


class AccountLockedError(LockedError):
    error_code = "account_locked"
    default_message = "Account is temporarily locked"
    default_errors = ("Account is locked due to multiple failed login attempts",)


class AccountNotActiveError(ForbiddenError):
    error_code = "account_not_active"
    default_message = "Account is not active"
    default_errors = ("Account is not active. Please contact support.",)


class TokenInvalidOrExpiredError(AuthenticationError):
    """Used, expired and attempt-exhausted tokens all collapse to this."""
    error_code = "token_invalid"
    default_message = "Invalid or expired token"
    default_errors = ("Token is invalid or has expired",)


class RefreshTokenReusedError(TokenInvalidOrExpiredError):
    """A refresh token was presented after it had been rotated away."""
    error_code = "refresh_token_reused"
    default_message = "Invalid or expired refresh token"


class TwoFactorRequiredError(AuthenticationError):
    error_code = "two_factor_required"
    default_message = "Two-factor authentication required"


class TwoFactorCodeInvalidError(AuthenticationError):
    error_code = "two_factor_invalid"
    default_message = "Invalid two-factor authentication code"
    default_errors = ("Invalid 2FA code",)


class PasswordPolicyViolationError(ValidationError):
    error_code = "password_policy"
    default_message = "Password does not meet security requirements"
    default_errors = (
        "Password must be 8-128 characters and include upper case, lower case, digit and special characters",
    )


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"
    default_message = "Email address is already registered"
    default_errors = ("Email already exists",)


class SessionNotFoundError(NotFoundError):
    error_code = "session_not_found"
    default_message = "Session not found or already inactive"
    default_errors = ("Session not found",)


class InternalFailureError(ServerError):
    error_code = "internal_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "ServerError",
    "InvalidCredentialError",
    "AccountLockedError",
    "AccountNotActiveError",
    "TokenInvalidOrExpiredError",
    "RefreshTokenReusedError",
    "TwoFactorRequiredError",
    "TwoFactorCodeInvalidError",
    "PasswordPolicyViolationError",
    "DuplicateEmailError",
    "SessionNotFoundError",
    "InternalFailureError",
]

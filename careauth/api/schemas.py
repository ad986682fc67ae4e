from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from careauth.logging import get_correlation_id
from careauth.storage.common import email_format_problem

# Upper bound for any opaque token presented by a client
MAX_TOKEN_LENGTH = 2048
MAX_PASSWORD_INPUT = 256


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Response envelope shared by every auth route."""

    success: bool
    message: str
    data: Optional[Any] = None
    errors: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    request_id: str = Field(default_factory=_request_id)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    problem = email_format_problem(value)
    if problem:
        raise ValueError(problem)
    return value.strip()


class _DeviceFields(BaseModel):
    device_id: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=128)
    device_type: Optional[str] = Field(default=None, max_length=32)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ResendVerificationRequest(BaseModel):
    email: str = Field(..., max_length=254)


class LoginRequest(_DeviceFields):
    # no format check: malformed and unknown addresses fail identically
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    two_factor_code: Optional[str] = Field(default=None, max_length=16)
    trusted_device_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class TwoFactorLoginRequest(_DeviceFields):
    two_factor_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    code: str = Field(..., min_length=1, max_length=16)
    trust_device: bool = False


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)
    all_devices: bool = False


class RevokeTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)
    keep_current_session: bool = True


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., max_length=254)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class EnableTwoFactorRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)


class DisableTwoFactorRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)


class DeactivateAccountRequest(BaseModel):
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT)

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request
from fastapi.responses import JSONResponse

from careauth.api.schemas import (
    ChangePasswordRequest,
    DeactivateAccountRequest,
    DisableTwoFactorRequest,
    EnableTwoFactorRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RevokeTokenRequest,
    TwoFactorLoginRequest,
    VerifyEmailRequest,
)
from careauth.logging import get_logger
from careauth.service.auth import AuthResult
from careauth.service.runtime import get_runtime
from careauth.storage.models import AccessTokenClaims, DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _respond(result: AuthResult) -> JSONResponse:
    envelope = Envelope(
        success=result.success,
        message=result.message,
        data=result.data,
        errors=result.errors,
        timestamp=result.timestamp,
    )
    return JSONResponse(
        status_code=result.status_code, content=envelope.model_dump(mode="json")
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_principal(
    authorization: Optional[str] = Header(None),
) -> AccessTokenClaims:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


# ----------------------------------------------------------------------
# registration and verification
# ----------------------------------------------------------------------


@router.post("/register", status_code=201)
async def register(body: RegisterRequest, request: Request):
    """Create a pending account and send the email verification link."""
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


@router.post("/verify-email")
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.verify_email(body.token))


@router.post("/resend-verification")
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.resend_verification(body.email))


@router.get("/check-email")
async def check_email(email: str = Query(..., max_length=254)):
    """Report whether an address is well formed; never whether it is registered."""
    runtime = get_runtime()
    return _respond(await runtime.auth.check_email_availability(email))


# ----------------------------------------------------------------------
# login and tokens
# ----------------------------------------------------------------------


@router.post("/login")
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns a token pair, or a two-factor challenge token with a 401 when the
    account has two-factor authentication enabled and no code was supplied.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        two_factor_code=body.two_factor_code,
        trusted_device_token=body.trusted_device_token,
        device=DeviceInfo.from_request(body.device_id, body.device_name, body.device_type),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


@router.post("/login/two-factor")
async def login_two_factor(body: TwoFactorLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.complete_two_factor_login(
        body.two_factor_token,
        body.code,
        device=DeviceInfo.from_request(body.device_id, body.device_name, body.device_type),
        trust_device=body.trust_device,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


@router.post("/refresh-token")
async def refresh_token(body: RefreshTokenRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(
        body.refresh_token,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


@router.post("/logout")
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AccessTokenClaims = Depends(get_principal),
):
    """End one session, or every session of the caller when none is named."""
    body = body or LogoutRequest()
    runtime = get_runtime()
    result = await runtime.auth.logout(
        principal.sub,
        session_id=body.session_id,
        all_devices=body.all_devices,
        access_token_id=principal.jti,
    )
    return _respond(result)


@router.post("/revoke-token")
async def revoke_token(body: RevokeTokenRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.revoke_token(body.refresh_token))


@router.post("/revoke-all")
async def revoke_all(principal: AccessTokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.revoke_all_tokens(principal.sub))


# ----------------------------------------------------------------------
# passwords
# ----------------------------------------------------------------------


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AccessTokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.sub,
        body.current_password,
        body.new_password,
        current_session_id=principal.sid if body.keep_current_session else None,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


@router.post("/forgot-password")
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    return _respond(await runtime.auth.forgot_password(body.email))


@router.post("/reset-password")
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(
        body.token,
        body.new_password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _respond(result)


# ----------------------------------------------------------------------
# two-factor
# ----------------------------------------------------------------------


@router.post("/two-factor/setup")
async def two_factor_setup(principal: AccessTokenClaims = Depends(get_principal)):
    """Provision a TOTP secret and backup codes; enabling needs a confirming code."""
    runtime = get_runtime()
    return _respond(await runtime.auth.setup_two_factor(principal.sub))


@router.post("/two-factor/enable")
async def two_factor_enable(
    body: EnableTwoFactorRequest, principal: AccessTokenClaims = Depends(get_principal)
):
    runtime = get_runtime()
    return _respond(await runtime.auth.enable_two_factor(principal.sub, body.code))


@router.post("/two-factor/disable")
async def two_factor_disable(
    body: DisableTwoFactorRequest, principal: AccessTokenClaims = Depends(get_principal)
):
    runtime = get_runtime()
    return _respond(await runtime.auth.disable_two_factor(principal.sub, body.password))


# ----------------------------------------------------------------------
# sessions and account
# ----------------------------------------------------------------------


@router.get("/sessions")
async def list_sessions(principal: AccessTokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.list_sessions(principal.sub, current_session_id=principal.sid)
    return _respond(result)


@router.delete("/sessions/{session_id}")
async def terminate_session(
    session_id: str = Path(..., max_length=128),
    principal: AccessTokenClaims = Depends(get_principal),
):
    runtime = get_runtime()
    return _respond(await runtime.auth.terminate_session(principal.sub, session_id))


@router.delete("/sessions")
async def terminate_other_sessions(principal: AccessTokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    result = await runtime.auth.terminate_all_sessions(
        principal.sub, except_session_id=principal.sid
    )
    return _respond(result)


@router.get("/profile")
async def profile(principal: AccessTokenClaims = Depends(get_principal)):
    runtime = get_runtime()
    return _respond(await runtime.auth.get_profile(principal.sub))


@router.post("/deactivate")
async def deactivate(
    body: DeactivateAccountRequest, principal: AccessTokenClaims = Depends(get_principal)
):
    runtime = get_runtime()
    return _respond(await runtime.auth.deactivate_account(principal.sub, body.password))

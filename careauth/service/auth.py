from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from careauth.config import Settings
from careauth.logging import get_logger
from careauth.service.email import EmailNotifier
from careauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    AuthenticationError,
    DuplicateEmailError,
    ForbiddenError,
    InternalFailureError,
    InvalidCredentialError,
    NotFoundError,
    PasswordPolicyViolationError,
    RefreshTokenReusedError,
    ServiceError,
    SessionNotFoundError,
    TokenInvalidOrExpiredError,
    TwoFactorCodeInvalidError,
    TwoFactorRequiredError,
    ValidationError,
)
from careauth.service.passwords import CredentialStore, password_policy_violations
from careauth.service.roles import ResolvedRoles, RoleResolver
from careauth.service.sessions import SessionManager
from careauth.service.tokens import TokenIssuer
from careauth.service.two_factor import TwoFactorAuthenticator
from careauth.service.verification import VerificationTokenLedger, trusted_device_purpose
from careauth.storage.common import AuthStore, email_format_problem, normalize_email
from careauth.storage.errors import ConcurrencyConflict, ConstraintViolation
from careauth.storage.models import (
    AccessTokenClaims,
    AccountStatus,
    DeviceInfo,
    LoginResult,
    SessionSummary,
    TokenPair,
    TokenType,
    User,
    UserProfile,
    UserSession,
    dto_to_dict,
    new_id,
)

logger = get_logger(__name__)

LOCKOUT_REASON = "Too many failed login attempts"


@dataclass
class AuthResult:
    """Uniform outcome of an orchestrator operation."""

    success: bool
    message: str
    data: Any = None
    errors: List[str] = field(default_factory=list)
    status_code: int = 200
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def ok(cls, message: str, data: Any = None, *, status_code: int = 200) -> "AuthResult":
        return cls(success=True, message=message, data=data, status_code=status_code)

    @classmethod
    def from_error(cls, exc: ServiceError) -> "AuthResult":
        return cls(
            success=False,
            message=exc.message,
            data=exc.data,
            errors=list(exc.errors),
            status_code=exc.status_code,
            error_code=exc.error_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


def auth_operation(operation: str, label: str) -> Callable:
    """Run an orchestrator coroutine behind the uniform failure boundary.

    Service errors become failure results carrying their own message; any
    other exception is logged and reported generically. Cancellation is a
    ``BaseException`` and passes through untouched.
    """

    def decorator(func: Callable[..., Awaitable[AuthResult]]) -> Callable[..., Awaitable[AuthResult]]:
        @functools.wraps(func)
        async def wrapper(self: "AuthService", *args: Any, **kwargs: Any) -> AuthResult:
            try:
                return await func(self, *args, **kwargs)
            except ServiceError as exc:
                self.logger.info(
                    "auth_operation_rejected",
                    operation=func.__name__,
                    error_code=exc.error_code,
                    status_code=exc.status_code,
                )
                return AuthResult.from_error(exc)
            except Exception:
                self.logger.exception("auth_operation_failed", operation=func.__name__)
                return AuthResult(
                    success=False,
                    message=f"An error occurred {operation}",
                    errors=[f"{label} failed. Please try again."],
                    status_code=500,
                    error_code=InternalFailureError.error_code,
                )

        return wrapper

    return decorator


class AuthService:
    """Registration, login and account-security flows over the identity components."""

    def __init__(
        self,
        store: AuthStore,
        credentials: CredentialStore,
        ledger: VerificationTokenLedger,
        two_factor: TwoFactorAuthenticator,
        sessions: SessionManager,
        tokens: TokenIssuer,
        roles: RoleResolver,
        settings: Settings,
        *,
        email: Optional[EmailNotifier] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.ledger = ledger
        self.two_factor = two_factor
        self.sessions = sessions
        self.tokens = tokens
        self.roles = roles
        self.settings = settings
        self.email = email
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", errors=["The specified user could not be found"])
        return user

    def _update_user(self, user_id: str, mutate: Callable[[User], User]) -> User:
        """Apply ``mutate`` to the latest row, retrying on version conflicts."""
        for attempt in range(self.settings.optimistic_retry_limit):
            current = self._require_user(user_id)
            try:
                return self.store.update_user(mutate(current), expected_version=current.version)
            except ConcurrencyConflict:
                self.logger.info("user_update_conflict", user_id=user_id, attempt=attempt + 1)
        raise InternalFailureError(
            "User record is busy", errors=["Please try again in a moment."]
        )

    async def _notify(self, send: Callable[..., bool], *args: Any) -> None:
        if self.email is None:
            return
        delivered = await asyncio.to_thread(send, *args)
        if not delivered:
            self.logger.warning("notification_not_delivered", kind=send.__name__)

    async def _revoke_access_tokens(self, revoked: Iterable[Optional[UserSession]]) -> None:
        now = self._now()
        for session in revoked:
            if session is None or not session.access_token_id:
                continue
            expires_at = session.access_token_expires_at
            if expires_at is not None and expires_at <= now:
                continue
            await self.tokens.revoke(session.access_token_id, expires_at)

    def _profile(self, user: User, resolved: ResolvedRoles) -> UserProfile:
        return UserProfile(
            user_id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone=user.phone,
            role=user.role,
            account_status=user.status.value,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            two_factor_enabled=user.two_factor_enabled,
            require_password_change=user.require_password_change,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            preferences=user.preferences.to_dict(),
            roles=resolved.assignments(),
            permissions=list(resolved.permissions),
        )

    @staticmethod
    def _summary(session: UserSession, current_session_id: Optional[str]) -> SessionSummary:
        return SessionSummary(
            session_id=session.id,
            device_id=session.device.device_id,
            device_name=session.device.device_name,
            device_type=session.device.device_type,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            is_trusted_device=session.is_trusted_device,
            created_at=session.created_at,
            last_accessed_at=session.last_accessed_at,
            expires_at=session.expires_at,
            is_current=session.id == current_session_id,
        )

    def _start_session(
        self,
        user: User,
        device: Optional[DeviceInfo],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        trusted: bool = False,
    ) -> Tuple[TokenPair, ResolvedRoles]:
        resolved = self.roles.resolve(user.id)
        organization_id, role_context = resolved.primary_context()
        with self.store.transaction():
            session, refresh_token = self.sessions.open(
                user.id,
                device,
                ip_address=ip_address,
                user_agent=user_agent,
                trusted=trusted,
                organization_id=organization_id,
                role_context=role_context,
            )
            issued = self.tokens.issue(
                user, resolved.roles, resolved.permissions, session_id=session.id
            )
            self.sessions.bind_access_token(session.id, issued.token_id, issued.expires_at)
        pair = TokenPair(
            access_token=issued.token,
            refresh_token=refresh_token,
            token_expires=issued.expires_at,
            session_id=session.id,
        )
        return pair, resolved

    async def _record_failed_login(self, user_id: str) -> User:
        """Count a failed credential check and lock the account at the threshold."""
        now = self._now()
        threshold = self.settings.lockout_threshold

        def _mutate(current: User) -> User:
            attempts = current.failed_login_attempts
            locked_until = current.account_locked_until
            reason = current.lockout_reason
            if locked_until is not None and locked_until <= now:
                # previous lockout has lapsed; start a fresh count
                attempts, locked_until, reason = 0, None, None
            attempts += 1
            if attempts >= threshold:
                locked_until = now + timedelta(minutes=self.settings.lockout_minutes)
                reason = LOCKOUT_REASON
            return replace(
                current,
                failed_login_attempts=attempts,
                last_failed_login_at=now,
                account_locked_until=locked_until,
                lockout_reason=reason,
            )

        updated = self._update_user(user_id, _mutate)
        self.logger.warning(
            "login_failed", user_id=user_id, attempts=updated.failed_login_attempts
        )
        if updated.failed_login_attempts >= threshold and updated.is_locked(now):
            revoked = self.sessions.revoke_all_for_user(user_id, reason="account_locked")
            await self._revoke_access_tokens(revoked)
            self.logger.warning(
                "account_locked",
                user_id=user_id,
                locked_until=updated.account_locked_until.isoformat(),
            )
        return updated

    def _clear_failures(self, user_id: str, **changes: Any) -> User:
        now = self._now()

        def _mutate(current: User) -> User:
            return replace(
                current,
                failed_login_attempts=0,
                last_failed_login_at=None,
                account_locked_until=None,
                lockout_reason=None,
                last_login_at=now,
                last_activity_at=now,
                **changes,
            )

        return self._update_user(user_id, _mutate)

    def _check_login_allowed(self, user: User) -> None:
        if user.is_locked(self._now()):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise AccountLockedError()

    def _trusted_device_valid(
        self, user: User, token: Optional[str], device: DeviceInfo
    ) -> bool:
        if not token:
            return False
        record = self.ledger.get_valid(
            token,
            TokenType.TRUSTED_DEVICE,
            purpose=trusted_device_purpose(device.device_id),
        )
        if record is None:
            return False
        if record.user_id != user.id:
            self.ledger.record_failure(token)
            return False
        return True

    def _check_new_password(self, password: str) -> None:
        problems = password_policy_violations(password)
        if problems:
            raise PasswordPolicyViolationError(errors=problems)

    async def _check_not_reused(self, user: User, password: str) -> None:
        if await self.credentials.matches_current_async(user, password):
            raise ValidationError(
                "New password cannot be the same as current password",
                errors=["Please choose a different password"],
            )
        if await self.credentials.in_history_async(user.id, password):
            raise ValidationError(
                "New password was used recently",
                errors=[
                    "Please choose a password you have not used in your last "
                    f"{self.settings.password_history_depth} changes"
                ],
            )

    # ------------------------------------------------------------------
    # registration and email verification
    # ------------------------------------------------------------------

    @auth_operation("during registration", "Registration")
    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError(
                "Registration is disabled", errors=["New accounts cannot be created at this time"]
            )
        problem = email_format_problem(email)
        if problem:
            raise ValidationError("Invalid email address", errors=[problem])
        normalized = normalize_email(email)
        self._check_new_password(password)
        if self.store.get_user_by_email(normalized) is not None:
            raise DuplicateEmailError(errors=["Email address is already in use"])

        hashed = await self.credentials.hash_async(password)
        now = self._now()
        try:
            with self.store.transaction():
                user = self.store.create_user(
                    User(
                        id=new_id(),
                        email=normalized,
                        password_hash=hashed.hash,
                        password_salt=hashed.salt,
                        password_algorithm=hashed.algorithm,
                        first_name=(first_name or "").strip(),
                        last_name=(last_name or "").strip(),
                        phone=phone,
                        status=AccountStatus.PENDING,
                        password_changed_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
                self.credentials.record_history(
                    user.id,
                    hashed,
                    reason="registration",
                    actor=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                verification = self.ledger.issue(
                    user.id, TokenType.EMAIL_VERIFICATION, email=normalized
                )
        except ConstraintViolation as exc:
            raise DuplicateEmailError(errors=["Email address is already in use"]) from exc

        self.logger.info("user_registered", user_id=user.id)
        if self.email is not None:
            await self._notify(self.email.send_email_verification, user.email, verification.token)
        return AuthResult.ok(
            "Registration successful. Please verify your email address to activate your account.",
            {
                "user_id": user.id,
                "email": user.email,
                "account_status": user.status.value,
                "requires_email_verification": True,
            },
            status_code=201,
        )

    @auth_operation("during email verification", "Email verification")
    async def verify_email(self, token: str) -> AuthResult:
        invalid = TokenInvalidOrExpiredError(
            "Invalid or expired verification token",
            errors=["The verification token is invalid or has expired"],
        )
        record = self.ledger.get_valid(token, TokenType.EMAIL_VERIFICATION)
        if record is None:
            raise invalid
        now = self._now()

        def _activate(current: User) -> User:
            status = current.status
            if status == AccountStatus.PENDING:
                status = AccountStatus.ACTIVE
            return replace(current, email_verified=True, status=status, last_activity_at=now)

        with self.store.transaction():
            if not self.ledger.consume(token):
                raise invalid
            user = self._update_user(record.user_id, _activate)
        self.logger.info("email_verified", user_id=user.id)
        return AuthResult.ok(
            "Email verified successfully",
            {"user_id": user.id, "account_status": user.status.value, "email_verified": True},
        )

    @auth_operation("while resending verification email", "Resending verification email")
    async def resend_verification(self, email: str) -> AuthResult:
        message = "If the account exists and is unverified, a verification email has been sent"
        user = self.store.get_user_by_email(normalize_email(email)) if email else None
        if user is None or user.email_verified or user.status == AccountStatus.DISABLED:
            self.logger.info("verification_resend_skipped")
            return AuthResult.ok(message)
        verification = self.ledger.issue(user.id, TokenType.EMAIL_VERIFICATION, email=user.email)
        if self.email is not None:
            await self._notify(self.email.send_email_verification, user.email, verification.token)
        return AuthResult.ok(message)

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    @auth_operation("during login", "Login")
    async def login(
        self,
        email: str,
        password: str,
        *,
        two_factor_code: Optional[str] = None,
        trusted_device_token: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        device = device or DeviceInfo()
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if user is None:
            await self.credentials.dummy_verify_async(password or "")
            self.logger.info("login_failed_unknown_account")
            raise InvalidCredentialError()

        self._check_login_allowed(user)
        if not await self.credentials.verify_user_async(user, password or ""):
            await self._record_failed_login(user.id)
            raise InvalidCredentialError()
        if user.status != AccountStatus.ACTIVE:
            self.logger.warning(
                "login_rejected_inactive", user_id=user.id, status=user.status.value
            )
            raise AccountNotActiveError()

        trusted = False
        if user.two_factor_enabled:
            trusted = self._trusted_device_valid(user, trusted_device_token, device)
            if not trusted and not two_factor_code:
                challenge = self.ledger.issue(user.id, TokenType.TWO_FACTOR, email=user.email)
                self.logger.info("login_two_factor_challenge", user_id=user.id)
                raise TwoFactorRequiredError(
                    errors=["Enter the code from your authenticator app"],
                    data=dto_to_dict(
                        LoginResult(requires_two_factor=True, two_factor_token=challenge.token)
                    ),
                )
            if not trusted and not self.two_factor.verify(user.id, two_factor_code):
                await self._record_failed_login(user.id)
                raise TwoFactorCodeInvalidError()

        rehash = None
        if self.credentials.needs_rehash(user):
            rehash = await self.credentials.hash_async(password)
        changes: Dict[str, Any] = {}
        if rehash is not None:
            changes = {
                "password_hash": rehash.hash,
                "password_salt": rehash.salt,
                "password_algorithm": rehash.algorithm,
            }
        user = self._clear_failures(user.id, **changes)
        if rehash is not None:
            self.logger.info("password_rehashed", user_id=user.id, algorithm=rehash.algorithm)

        pair, resolved = self._start_session(
            user, device, ip_address=ip_address, user_agent=user_agent, trusted=trusted
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=pair.session_id)
        return AuthResult.ok(
            "Login successful",
            dto_to_dict(LoginResult(tokens=pair, user=self._profile(user, resolved))),
        )

    @auth_operation("during login", "Login")
    async def complete_two_factor_login(
        self,
        two_factor_token: str,
        code: str,
        *,
        device: Optional[DeviceInfo] = None,
        trust_device: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        device = device or DeviceInfo()
        invalid = TokenInvalidOrExpiredError(
            "Invalid or expired two-factor token",
            errors=["Two-factor authentication session expired"],
        )
        challenge_purpose = self.ledger.policies[TokenType.TWO_FACTOR].purpose
        record = self.ledger.get_valid(
            two_factor_token, TokenType.TWO_FACTOR, purpose=challenge_purpose
        )
        if record is None:
            raise invalid
        user = self.store.get_user(record.user_id)
        if user is None:
            raise invalid
        self._check_login_allowed(user)
        if user.status != AccountStatus.ACTIVE:
            raise AccountNotActiveError()

        if not self.two_factor.verify(user.id, code):
            self.ledger.record_failure(two_factor_token)
            await self._record_failed_login(user.id)
            raise TwoFactorCodeInvalidError()
        if not self.ledger.consume(two_factor_token):
            raise invalid

        user = self._clear_failures(user.id)
        pair, resolved = self._start_session(
            user, device, ip_address=ip_address, user_agent=user_agent, trusted=trust_device
        )
        result = LoginResult(tokens=pair, user=self._profile(user, resolved))
        if trust_device:
            attestation = self.ledger.issue(
                user.id,
                TokenType.TRUSTED_DEVICE,
                email=user.email,
                purpose=trusted_device_purpose(device.device_id),
            )
            result.trusted_device_token = attestation.token
        self.logger.info(
            "login_two_factor_completed",
            user_id=user.id,
            session_id=pair.session_id,
            trusted=trust_device,
        )
        return AuthResult.ok("Login successful", dto_to_dict(result))

    # ------------------------------------------------------------------
    # tokens and sessions
    # ------------------------------------------------------------------

    @auth_operation("during token refresh", "Token refresh")
    async def refresh_token(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        try:
            session, new_refresh = self.sessions.refresh(
                refresh_token, ip_address=ip_address, user_agent=user_agent
            )
        except RefreshTokenReusedError as exc:
            await self._revoke_access_tokens(exc.detail.get("revoked_sessions", []))
            raise

        user = self.store.get_user(session.user_id)
        if user is None or user.status != AccountStatus.ACTIVE or user.is_locked(self._now()):
            revoked = self.sessions.revoke(session.id, reason="account_inactive")
            await self._revoke_access_tokens([revoked])
            raise TokenInvalidOrExpiredError(
                "User not found or inactive",
                errors=["The user associated with this token is not valid"],
            )
        # the rotated row still names the access token minted before this refresh
        await self._revoke_access_tokens([session])
        resolved = self.roles.resolve(user.id)
        issued = self.tokens.issue(user, resolved.roles, resolved.permissions, session_id=session.id)
        self.sessions.bind_access_token(session.id, issued.token_id, issued.expires_at)
        pair = TokenPair(
            access_token=issued.token,
            refresh_token=new_refresh,
            token_expires=issued.expires_at,
            session_id=session.id,
        )
        return AuthResult.ok("Token refreshed successfully", dto_to_dict(pair))

    @auth_operation("during logout", "Logout")
    async def logout(
        self,
        user_id: str,
        *,
        session_id: Optional[str] = None,
        all_devices: bool = False,
        access_token_id: Optional[str] = None,
    ) -> AuthResult:
        """Deactivate one session, or every session when no id is given."""
        if session_id and not all_devices:
            session = self.sessions.get(session_id)
            if session is None or session.user_id != user_id or not session.is_active:
                raise SessionNotFoundError(
                    errors=["The specified session could not be found or is already inactive"]
                )
            revoked = [self.sessions.revoke(session_id, reason="logout")]
        else:
            revoked = self.sessions.revoke_all_for_user(user_id, reason="logout_all")
        await self._revoke_access_tokens(revoked)
        if access_token_id:
            await self.tokens.revoke(access_token_id)
        count = len([s for s in revoked if s is not None])
        self.logger.info("logout", user_id=user_id, sessions_revoked=count)
        return AuthResult.ok("Logged out successfully", {"sessions_revoked": count})

    @auth_operation("while revoking the token", "Token revocation")
    async def revoke_token(self, refresh_token: str) -> AuthResult:
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None or not session.is_active:
            raise NotFoundError(
                "Refresh token not found",
                errors=["The specified refresh token could not be found"],
            )
        revoked = self.sessions.revoke(session.id, reason="token_revoked")
        await self._revoke_access_tokens([revoked])
        return AuthResult.ok("Token revoked successfully")

    @auth_operation("while revoking tokens", "Token revocation")
    async def revoke_all_tokens(self, user_id: str) -> AuthResult:
        self._require_user(user_id)
        revoked = self.sessions.revoke_all_for_user(user_id, reason="revoke_all")
        await self._revoke_access_tokens(revoked)
        return AuthResult.ok(
            f"Successfully revoked {len(revoked)} tokens", {"sessions_revoked": len(revoked)}
        )

    @auth_operation("while retrieving sessions", "Session retrieval")
    async def list_sessions(
        self, user_id: str, *, current_session_id: Optional[str] = None
    ) -> AuthResult:
        summaries = [
            dto_to_dict(self._summary(s, current_session_id))
            for s in self.sessions.list_active(user_id)
        ]
        return AuthResult.ok("Sessions retrieved successfully", {"sessions": summaries})

    @auth_operation("while terminating the session", "Session termination")
    async def terminate_session(self, user_id: str, session_id: str) -> AuthResult:
        session = self.sessions.get(session_id)
        if session is None or session.user_id != user_id or not session.is_active:
            raise SessionNotFoundError(
                errors=["The specified session could not be found or is already inactive"]
            )
        revoked = self.sessions.revoke(session_id, reason="terminated")
        await self._revoke_access_tokens([revoked])
        return AuthResult.ok("Session terminated successfully")

    @auth_operation("while terminating sessions", "Session termination")
    async def terminate_all_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> AuthResult:
        revoked = self.sessions.revoke_all_for_user(
            user_id, except_session_id=except_session_id, reason="terminated"
        )
        await self._revoke_access_tokens(revoked)
        return AuthResult.ok(
            "Sessions terminated successfully", {"sessions_revoked": len(revoked)}
        )

    # ------------------------------------------------------------------
    # passwords
    # ------------------------------------------------------------------

    @auth_operation("while changing the password", "Password change")
    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self._require_user(user_id)
        if not await self.credentials.verify_user_async(user, current_password or ""):
            raise InvalidCredentialError(
                "Invalid current password",
                errors=["The current password provided is incorrect"],
            )
        self._check_new_password(new_password)
        await self._check_not_reused(user, new_password)

        hashed = await self.credentials.hash_async(new_password)
        now = self._now()
        with self.store.transaction():
            user = self._update_user(
                user.id,
                lambda current: replace(
                    current,
                    password_hash=hashed.hash,
                    password_salt=hashed.salt,
                    password_algorithm=hashed.algorithm,
                    password_changed_at=now,
                    require_password_change=False,
                ),
            )
            self.credentials.record_history(
                user.id,
                hashed,
                reason="password_change",
                actor=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            revoked = self.sessions.revoke_all_for_user(
                user.id, except_session_id=current_session_id, reason="password_change"
            )
        await self._revoke_access_tokens(revoked)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=len(revoked))
        if self.email is not None:
            await self._notify(self.email.send_password_changed, user.email)
        return AuthResult.ok("Password changed successfully", {"sessions_revoked": len(revoked)})

    @auth_operation("while processing the password reset request", "Password reset request")
    async def forgot_password(self, email: str) -> AuthResult:
        message = "If an account with that email exists, a password reset link has been sent"
        user = self.store.get_user_by_email(normalize_email(email)) if email else None
        if user is None or user.status == AccountStatus.DISABLED:
            self.logger.info("password_reset_request_skipped")
            return AuthResult.ok(message)
        reset = self.ledger.issue(user.id, TokenType.PASSWORD_RESET, email=user.email)
        self.logger.info("password_reset_requested", user_id=user.id)
        if self.email is not None:
            await self._notify(self.email.send_password_reset, user.email, reset.token)
        return AuthResult.ok(message)

    @auth_operation("while resetting the password", "Password reset")
    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        invalid = TokenInvalidOrExpiredError(
            "Invalid or expired reset token",
            errors=["The password reset token is invalid or has expired"],
        )
        self._check_new_password(new_password)
        record = self.ledger.get_valid(token, TokenType.PASSWORD_RESET)
        if record is None:
            raise invalid
        user = self.store.get_user(record.user_id)
        if user is None or user.status == AccountStatus.DISABLED:
            raise AccountNotActiveError(
                "User not found or inactive", errors=["The user account is not valid"]
            )
        await self._check_not_reused(user, new_password)

        hashed = await self.credentials.hash_async(new_password)
        now = self._now()
        with self.store.transaction():
            if not self.ledger.consume(token):
                raise invalid
            user = self._update_user(
                user.id,
                lambda current: replace(
                    current,
                    password_hash=hashed.hash,
                    password_salt=hashed.salt,
                    password_algorithm=hashed.algorithm,
                    password_changed_at=now,
                    require_password_change=False,
                    failed_login_attempts=0,
                    last_failed_login_at=None,
                    account_locked_until=None,
                    lockout_reason=None,
                ),
            )
            self.credentials.record_history(
                user.id,
                hashed,
                reason="password_reset",
                actor=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            revoked = self.sessions.revoke_all_for_user(user.id, reason="password_reset")
        await self._revoke_access_tokens(revoked)
        self.logger.info("password_reset_completed", user_id=user.id)
        return AuthResult.ok("Password reset successfully")

    # ------------------------------------------------------------------
    # two-factor
    # ------------------------------------------------------------------

    @auth_operation("while setting up two-factor authentication", "2FA setup")
    async def setup_two_factor(self, user_id: str) -> AuthResult:
        setup = self.two_factor.provision(user_id)
        return AuthResult.ok("Two-factor authentication setup prepared", dto_to_dict(setup))

    @auth_operation("while enabling two-factor authentication", "2FA enable")
    async def enable_two_factor(self, user_id: str, code: str) -> AuthResult:
        if not self.two_factor.confirm_enable(user_id, code):
            raise ValidationError(
                "Invalid verification code",
                errors=["The verification code is incorrect or has expired"],
            )
        user = self._require_user(user_id)
        if self.email is not None:
            await self._notify(self.email.send_two_factor_enabled, user.email)
        return AuthResult.ok("Two-factor authentication enabled successfully")

    @auth_operation("while disabling two-factor authentication", "2FA disable")
    async def disable_two_factor(self, user_id: str, password: str) -> AuthResult:
        user = self._require_user(user_id)
        if not user.two_factor_enabled:
            raise ValidationError(
                "Two-factor authentication is not enabled",
                errors=["2FA is not enabled for this account"],
            )
        await self.two_factor.disable(user_id, password)
        self.ledger.invalidate(user_id, TokenType.TRUSTED_DEVICE)
        self.ledger.invalidate(user_id, TokenType.TWO_FACTOR)
        return AuthResult.ok("Two-factor authentication disabled successfully")

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------

    @auth_operation("while checking email availability", "Email availability check")
    async def check_email_availability(self, email: str) -> AuthResult:
        valid = email_format_problem(email) is None
        return AuthResult.ok(
            "Email address format is valid" if valid else "Email address format is invalid",
            {"valid_format": valid},
        )

    @auth_operation("while retrieving profile", "Profile retrieval")
    async def get_profile(self, user_id: str) -> AuthResult:
        user = self._require_user(user_id)
        profile = self._profile(user, self.roles.resolve(user.id))
        return AuthResult.ok("Profile retrieved successfully", dto_to_dict(profile))

    @auth_operation("while deactivating the account", "Account deactivation")
    async def deactivate_account(self, user_id: str, password: str) -> AuthResult:
        user = self._require_user(user_id)
        if not await self.credentials.verify_user_async(user, password or ""):
            raise InvalidCredentialError(
                "Invalid password", errors=["The password provided is incorrect"]
            )
        with self.store.transaction():
            self.store.deactivate_user(user.id, self._now())
            for token_type in TokenType:
                self.ledger.invalidate(user.id, token_type)
            revoked = self.sessions.revoke_all_for_user(user.id, reason="account_deactivated")
        await self._revoke_access_tokens(revoked)
        self.logger.info("account_deactivated", user_id=user.id)
        return AuthResult.ok("Account deactivated successfully")

    async def authenticate(self, access_token: Optional[str]) -> AccessTokenClaims:
        """Resolve a bearer token to its claims or raise ``AuthenticationError``."""
        claims = await self.tokens.validate(access_token) if access_token else None
        if claims is None:
            raise AuthenticationError(
                "Invalid or expired access token", errors=["Authentication required"]
            )
        if claims.account_status != AccountStatus.ACTIVE.value:
            raise AccountNotActiveError()
        return claims

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    def cleanup_verification_tokens(self) -> Dict[str, int]:
        removed = {
            "expired": self.ledger.cleanup_expired(),
            "used": self.ledger.cleanup_used(),
        }
        if self.settings.password_history_retention_days > 0:
            removed["password_history"] = self.credentials.purge_history(
                self.settings.password_history_retention_days
            )
        return removed

    def sweep_expired_sessions(self) -> int:
        return self.sessions.sweep_expired()

    async def run_maintenance(self) -> Dict[str, int]:
        tokens = await asyncio.to_thread(self.cleanup_verification_tokens)
        swept = await asyncio.to_thread(self.sweep_expired_sessions)
        return {**tokens, "sessions_expired": swept}

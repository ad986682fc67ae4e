from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote

from cryptography.fernet import Fernet, InvalidToken

from careauth.config import Settings
from careauth.logging import get_logger
from careauth.service.errors import (
    ConflictError,
    InternalFailureError,
    InvalidCredentialError,
    NotFoundError,
)
from careauth.service.passwords import CredentialStore
from careauth.service.verification import VerificationTokenLedger
from careauth.storage.common import AuthStore
from careauth.storage.errors import ConcurrencyConflict
from careauth.storage.models import TokenType, TwoFactorSetup, User

logger = get_logger(__name__)

TOTP_PERIOD = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_DIGITS = 8
SETUP_PURPOSE = "Two-factor authentication setup confirmation"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_PERIOD, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    at: Optional[float] = None,
    window: int = 2,
    interval: int = TOTP_PERIOD,
) -> bool:
    if not code or not code.isdigit() or len(code) != TOTP_DIGITS:
        return False
    now = time.time() if at is None else at
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode("utf-8")).hexdigest()


class SecretCipher:
    """Fernet wrapper keeping TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize MFA cipher without key material")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> Optional[str]:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            logger.error("mfa_secret_decrypt_failed")
            return None


class TwoFactorAuthenticator:
    """TOTP enrolment and verification with single-use backup codes."""

    def __init__(
        self,
        store: AuthStore,
        ledger: VerificationTokenLedger,
        credentials: CredentialStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.credentials = credentials
        self.settings = settings
        self.cipher = SecretCipher(settings.mfa_encryption_key or settings.jwt_secret)
        self.clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _load_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", errors=["User not found"])
        return user

    def _update_user(self, user_id: str, mutate: Callable[[User], User]) -> User:
        """Apply ``mutate`` to the latest row, retrying on version conflicts."""
        for attempt in range(self.settings.optimistic_retry_limit):
            current = self._load_user(user_id)
            try:
                return self.store.update_user(mutate(current), expected_version=current.version)
            except ConcurrencyConflict:
                self.logger.info("user_update_conflict", user_id=user_id, attempt=attempt + 1)
        raise InternalFailureError(
            "User record is busy", errors=["Please try again in a moment."]
        )

    def provisioning_uri(self, email: str, secret: str) -> str:
        issuer = quote(self.settings.totp_issuer)
        return (
            f"otpauth://totp/{issuer}:{quote(email)}"
            f"?secret={secret}&issuer={issuer}&algorithm=SHA1"
            f"&digits={TOTP_DIGITS}&period={TOTP_PERIOD}"
        )

    def _generate_backup_codes(self) -> List[str]:
        upper = 10**BACKUP_CODE_DIGITS
        return [
            str(secrets.randbelow(upper)).zfill(BACKUP_CODE_DIGITS)
            for _ in range(self.settings.backup_code_count)
        ]

    def provision(self, user_id: str) -> TwoFactorSetup:
        user = self._load_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError(
                "Two-factor authentication is already enabled",
                errors=["2FA is already enabled for this account"],
            )
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        backup_codes = self._generate_backup_codes()
        with self.store.transaction():
            encrypted = self.cipher.encrypt(secret)
            hashed_codes = [hash_backup_code(c) for c in backup_codes]
            self._update_user(
                user.id,
                lambda current: replace(
                    current,
                    two_factor_secret=encrypted,
                    two_factor_backup_codes=hashed_codes,
                    two_factor_enabled_at=None,
                ),
            )
            setup = self.ledger.issue(
                user.id, TokenType.TWO_FACTOR, email=user.email, purpose=SETUP_PURPOSE
            )
        self.logger.info("two_factor_provisioned", user_id=user.id)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=self.provisioning_uri(user.email, secret),
            backup_codes=backup_codes,
            setup_token=setup.token,
        )

    def _secret_for(self, user: User) -> Optional[str]:
        if not user.two_factor_secret:
            return None
        return self.cipher.decrypt(user.two_factor_secret)

    def _check_totp(self, secret: str, code: str) -> bool:
        return verify_totp(
            secret, (code or "").strip(), at=self.clock(), window=self.settings.totp_window
        )

    def confirm_enable(self, user_id: str, code: str) -> bool:
        user = self._load_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError(
                "Two-factor authentication is already enabled",
                errors=["2FA is already enabled for this account"],
            )
        secret = self._secret_for(user)
        if secret is None:
            raise NotFoundError(
                "Two-factor authentication not set up",
                errors=["Run two-factor setup before enabling it"],
            )
        if not self._check_totp(secret, code):
            self.logger.warning("two_factor_enable_code_rejected", user_id=user.id)
            return False

        def _enable(current: User) -> User:
            if current.two_factor_secret != user.two_factor_secret:
                raise ConflictError(
                    "Two-factor setup changed",
                    errors=["Run two-factor setup again before enabling it"],
                )
            return replace(current, two_factor_enabled=True, two_factor_enabled_at=self._now())

        with self.store.transaction():
            self._update_user(user.id, _enable)
            # retire the setup confirmation token
            self.ledger.invalidate(user.id, TokenType.TWO_FACTOR)
        self.logger.info("two_factor_enabled", user_id=user.id)
        return True

    def verify(self, user_id: str, code: str) -> bool:
        """Check a TOTP or unused backup code against the active secret."""
        user = self.store.get_user(user_id)
        if user is None or not user.two_factor_enabled:
            return False
        secret = self._secret_for(user)
        if secret and self._check_totp(secret, code):
            return True
        return self._consume_backup_code(user, code)

    def _consume_backup_code(self, user: User, code: str) -> bool:
        if not code or len(code.strip()) != BACKUP_CODE_DIGITS:
            return False
        digest = hash_backup_code(code)
        for _ in range(self.settings.optimistic_retry_limit):
            remaining = [
                h for h in user.two_factor_backup_codes if not hmac.compare_digest(h, digest)
            ]
            if len(remaining) == len(user.two_factor_backup_codes):
                return False
            try:
                self.store.update_user(
                    replace(user, two_factor_backup_codes=remaining),
                    expected_version=user.version,
                )
            except ConcurrencyConflict:
                refreshed = self.store.get_user(user.id)
                if refreshed is None:
                    return False
                user = refreshed
                continue
            self.logger.info(
                "two_factor_backup_code_used", user_id=user.id, remaining=len(remaining)
            )
            return True
        return False

    async def disable(self, user_id: str, password: str) -> bool:
        user = self._load_user(user_id)
        if not await self.credentials.verify_user_async(user, password):
            raise InvalidCredentialError(
                "Invalid password", errors=["The password provided is incorrect"]
            )
        if not user.two_factor_enabled and not user.two_factor_secret:
            return False
        self._update_user(
            user.id,
            lambda current: replace(
                current,
                two_factor_enabled=False,
                two_factor_secret=None,
                two_factor_enabled_at=None,
                two_factor_backup_codes=[],
            ),
        )
        self.logger.info("two_factor_disabled", user_id=user.id)
        return True

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from careauth.config import Settings
from careauth.logging import get_logger
from careauth.storage.common import AuthStore, normalize_email
from careauth.storage.models import TokenType, VerificationToken, new_id

logger = get_logger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenPolicy:
    ttl: timedelta
    max_attempts: int
    purpose: str


def trusted_device_purpose(device_id: str) -> str:
    return f"Trusted device token for device: {device_id}"


def default_policies(settings: Settings) -> Dict[TokenType, TokenPolicy]:
    return {
        TokenType.EMAIL_VERIFICATION: TokenPolicy(
            ttl=timedelta(hours=settings.email_verification_ttl_hours),
            max_attempts=5,
            purpose="Email verification for account activation",
        ),
        TokenType.PASSWORD_RESET: TokenPolicy(
            ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            max_attempts=3,
            purpose="Password reset verification",
        ),
        TokenType.TWO_FACTOR: TokenPolicy(
            ttl=timedelta(minutes=settings.two_factor_token_ttl_minutes),
            max_attempts=3,
            purpose="Two-factor authentication verification",
        ),
        TokenType.TRUSTED_DEVICE: TokenPolicy(
            ttl=timedelta(days=settings.trusted_device_ttl_days),
            max_attempts=1,
            purpose=trusted_device_purpose("Unknown"),
        ),
    }


class VerificationTokenLedger:
    """Issues and checks single-use, typed, expiring verification tokens.

    A token moves from issued to exactly one terminal state: used, expired or
    attempts exhausted. Expiry and attempt exhaustion are checked
    independently, and any failed check against an existing token counts as
    an attempt. Issuing a token retires every other live token of the same
    type for that user.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.policies = default_policies(settings)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(
        self,
        user_id: str,
        token_type: TokenType,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        ttl: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        purpose: Optional[str] = None,
    ) -> VerificationToken:
        policy = self.policies[token_type]
        now = self._now()
        with self.store.transaction():
            retired = self.store.invalidate_verification_tokens(user_id, token_type, now)
            record = self.store.create_verification_token(
                VerificationToken(
                    id=new_id(),
                    token=secrets.token_urlsafe(TOKEN_BYTES),
                    user_id=user_id,
                    token_type=token_type,
                    email=normalize_email(email) if email else None,
                    phone=phone,
                    expires_at=now + (ttl or policy.ttl),
                    max_attempts=max_attempts or policy.max_attempts,
                    purpose=purpose or policy.purpose,
                    created_at=now,
                )
            )
        self.logger.info(
            "verification_token_issued",
            user_id=user_id,
            token_type=token_type.value,
            retired=retired,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    def get_valid(
        self,
        token: str,
        token_type: TokenType,
        *,
        email: Optional[str] = None,
        purpose: Optional[str] = None,
    ) -> Optional[VerificationToken]:
        """Return the token record if it may be used right now, else None."""
        if not token:
            return None
        record = self.store.get_verification_token(token)
        if record is None:
            return None
        now = self._now()
        reason = None
        if record.token_type != token_type:
            reason = "type_mismatch"
        elif record.is_used:
            reason = "used"
        elif now >= record.expires_at:
            reason = "expired"
        elif record.attempt_count >= record.max_attempts:
            reason = "attempts_exhausted"
        elif email is not None and normalize_email(email) != (record.email or ""):
            reason = "email_mismatch"
        elif purpose is not None and purpose != record.purpose:
            reason = "purpose_mismatch"
        if reason:
            self.record_failure(token)
            self.logger.warning(
                "verification_token_rejected",
                user_id=record.user_id,
                token_type=record.token_type.value,
                reason=reason,
            )
            return None
        return record

    def validate(
        self, token: str, token_type: TokenType, email: Optional[str] = None
    ) -> bool:
        return self.get_valid(token, token_type, email=email) is not None

    def record_failure(self, token: str) -> Optional[VerificationToken]:
        """Count a failed use of ``token`` toward its attempt limit."""
        return self.store.increment_token_attempts(token)

    def consume(self, token: str) -> bool:
        """Mark the token used; only the first call for a usable token wins."""
        consumed = self.store.consume_verification_token(token, self._now())
        if not consumed:
            self.logger.info("verification_token_consume_rejected")
        return consumed

    def invalidate(self, user_id: str, token_type: TokenType) -> int:
        return self.store.invalidate_verification_tokens(user_id, token_type, self._now())

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_verification_tokens(self._now())
        if removed:
            self.logger.info("verification_tokens_expired_removed", removed=removed)
        return removed

    def cleanup_used(self, retention_days: Optional[int] = None) -> int:
        days = (
            self.settings.verification_token_retention_days
            if retention_days is None
            else retention_days
        )
        cutoff = self._now() - timedelta(days=days)
        removed = self.store.delete_used_verification_tokens(cutoff)
        if removed:
            self.logger.info("verification_tokens_used_removed", removed=removed)
        return removed

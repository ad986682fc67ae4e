from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from careauth.config import RefreshReusePolicy, Settings
from careauth.logging import get_logger
from careauth.service.errors import RefreshTokenReusedError, TokenInvalidOrExpiredError
from careauth.storage.common import AuthStore, parse_ip_address
from careauth.storage.models import DeviceInfo, UserSession, new_id

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64


def hash_refresh_token(refresh_token: str) -> str:
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()


def generate_refresh_token() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii").rstrip("=")


class SessionManager:
    """Login sessions keyed by rotating opaque refresh tokens.

    Only SHA-256 digests of refresh tokens are stored. Each rotation moves the
    previous digest into the session's retired list, so presenting a stale
    token identifies the session it was stolen from.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def _skew(self) -> timedelta:
        return timedelta(seconds=self.settings.clock_skew_seconds)

    def open(
        self,
        user_id: str,
        device: Optional[DeviceInfo] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        trusted: bool = False,
        organization_id: Optional[str] = None,
        role_context: Optional[str] = None,
    ) -> Tuple[UserSession, str]:
        """Create a session and return it with its plaintext refresh token."""
        now = self._now()
        refresh_token = generate_refresh_token()
        session = self.store.create_session(
            UserSession(
                id=new_id(),
                user_id=user_id,
                refresh_token_hash=hash_refresh_token(refresh_token),
                expires_at=now + timedelta(days=self.settings.session_ttl_days),
                device=device or DeviceInfo(),
                ip_address=parse_ip_address(ip_address),
                user_agent=user_agent,
                is_trusted_device=trusted,
                organization_id=organization_id,
                role_context=role_context,
                created_at=now,
                last_accessed_at=now,
            )
        )
        self.logger.info(
            "session_opened",
            user_id=user_id,
            session_id=session.id,
            device_type=session.device.device_type,
            trusted=trusted,
        )
        return session, refresh_token

    def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[UserSession, str]:
        """Rotate ``refresh_token`` and extend the session it belongs to.

        Raises ``RefreshTokenReusedError`` when the token was already rotated
        away (including losing a concurrent rotation race), after revoking
        the affected session family; any other failure raises
        ``TokenInvalidOrExpiredError``.
        """
        if not refresh_token:
            raise TokenInvalidOrExpiredError("Invalid or expired refresh token")
        presented = hash_refresh_token(refresh_token)
        session = self.store.get_session_by_refresh_hash(presented)
        if session is None:
            stale = self.store.find_session_by_retired_refresh_hash(presented)
            if stale is not None:
                self._handle_reuse(stale)
            raise TokenInvalidOrExpiredError("Invalid or expired refresh token")

        now = self._now()
        if not session.is_active:
            raise TokenInvalidOrExpiredError("Invalid or expired refresh token")
        if session.expires_at <= now - self._skew:
            self.store.deactivate_session(session.id, reason="expired", when=now)
            raise TokenInvalidOrExpiredError("Invalid or expired refresh token")

        new_token = generate_refresh_token()
        rotated = self.store.rotate_refresh_token(
            session.id,
            expected_hash=presented,
            new_hash=hash_refresh_token(new_token),
            expires_at=now + timedelta(days=self.settings.session_refresh_ttl_days),
            accessed_at=now,
            ip_address=parse_ip_address(ip_address),
            user_agent=user_agent,
        )
        if rotated is None:
            # another request rotated this token first
            current = self.store.get_session(session.id)
            self._handle_reuse(current or session)
        self.logger.info("session_refreshed", user_id=rotated.user_id, session_id=rotated.id)
        return rotated, new_token

    def _handle_reuse(self, session: UserSession) -> None:
        now = self._now()
        policy = self.settings.refresh_reuse_policy
        revoked: List[UserSession] = []
        if policy == RefreshReusePolicy.REVOKE_ALL:
            revoked = self.store.deactivate_user_sessions(
                session.user_id, reason="refresh_token_reuse", when=now
            )
        elif policy == RefreshReusePolicy.REVOKE_SESSION:
            single = self.store.deactivate_session(
                session.id, reason="refresh_token_reuse", when=now
            )
            revoked = [single] if single else []
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=session.user_id,
            session_id=session.id,
            revoked=len(revoked),
        )
        raise RefreshTokenReusedError(detail={"revoked_sessions": revoked})

    def get(self, session_id: str) -> Optional[UserSession]:
        return self.store.get_session(session_id)

    def find_by_refresh_token(self, refresh_token: str) -> Optional[UserSession]:
        if not refresh_token:
            return None
        return self.store.get_session_by_refresh_hash(hash_refresh_token(refresh_token))

    def bind_access_token(self, session_id: str, token_id: str, expires_at: datetime) -> None:
        self.store.bind_access_token(session_id, token_id, expires_at)

    def revoke(self, session_id: str, *, reason: str = "logout") -> Optional[UserSession]:
        revoked = self.store.deactivate_session(session_id, reason=reason, when=self._now())
        if revoked is not None:
            self.logger.info(
                "session_revoked", user_id=revoked.user_id, session_id=session_id, reason=reason
            )
        return revoked

    def revoke_all_for_user(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "logout_all",
    ) -> List[UserSession]:
        revoked = self.store.deactivate_user_sessions(
            user_id, reason=reason, when=self._now(), except_session_id=except_session_id
        )
        self.logger.info(
            "sessions_revoked", user_id=user_id, count=len(revoked), reason=reason
        )
        return revoked

    def list_active(self, user_id: str) -> List[UserSession]:
        now = self._now()
        return [s for s in self.store.list_sessions(user_id) if s.is_valid(now - self._skew)]

    def sweep_expired(self) -> int:
        swept = self.store.deactivate_expired_sessions(self._now() - self._skew)
        if swept:
            self.logger.info("sessions_expired_swept", count=swept)
        return swept

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, Union

from careauth.config import Settings
from careauth.logging import get_logger
from careauth.storage.common import dedupe_preserving_order
from careauth.storage.models import AccessTokenClaims, User, UserRole
from careauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class RevocationStore(Protocol):
    """Set of revoked access-token ids, each held until its token expires."""

    async def revoke(self, token_id: str, expires_at: datetime) -> None: ...

    async def is_revoked(self, token_id: str) -> bool: ...


class InMemoryRevocationStore:
    """Process-local revocation set for single-instance deployments."""

    def __init__(self, *, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self._entries: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _prune(self, now: datetime) -> None:
        stale = [jti for jti, exp in self._entries.items() if exp <= now]
        for jti in stale:
            del self._entries[jti]

    async def revoke(self, token_id: str, expires_at: datetime) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            if expires_at > now:
                self._entries[token_id] = expires_at

    async def is_revoked(self, token_id: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(token_id)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._entries[token_id]
                return False
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisRevocationStore:
    """Revocation set shared by every instance through Redis key expiry."""

    def __init__(self, cache: Union[RedisCache, SyncRedisCache]) -> None:
        self.cache = cache

    async def revoke(self, token_id: str, expires_at: datetime) -> None:
        await self.cache.denylist_access_token(token_id, expires_at)

    async def is_revoked(self, token_id: str) -> bool:
        return await self.cache.is_access_token_denylisted(token_id)


@dataclass
class IssuedAccessToken:
    token: str
    token_id: str
    expires_at: datetime
    claims: AccessTokenClaims


class TokenIssuer:
    """Signs and checks HS256 access tokens in compact JWT form."""

    def __init__(
        self,
        settings: Settings,
        revocations: RevocationStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.revocations = revocations
        self.clock = clock
        self.logger = logger

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        signature = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(signature)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self,
        user: User,
        roles: Sequence[UserRole],
        permissions: Sequence[str],
        *,
        session_id: Optional[str] = None,
    ) -> IssuedAccessToken:
        issued_at = int(self.clock())
        expires = issued_at + self.settings.access_token_ttl_minutes * 60
        role_names = dedupe_preserving_order(r.role_name for r in roles)
        claims = AccessTokenClaims(
            sub=user.id,
            name=user.full_name,
            email=user.email,
            role=user.role,
            jti=uuid.uuid4().hex,
            iat=issued_at,
            exp=expires,
            iss=self.settings.jwt_issuer,
            aud=self.settings.jwt_audience,
            sid=session_id,
            roles=role_names,
            role_sections=dedupe_preserving_order(f"{r.section}:{r.role_name}" for r in roles),
            role_section_ids=dedupe_preserving_order(
                f"{r.section}:{r.section_id}:{r.role_name}" for r in roles if r.section_id
            ),
            permissions=dedupe_preserving_order(permissions),
            account_status=user.status.value,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            two_factor_enabled=user.two_factor_enabled,
        )
        token = self._encode_jwt(claims.to_payload())
        return IssuedAccessToken(
            token=token,
            token_id=claims.jti,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            claims=claims,
        )

    def decode(self, token: str) -> Optional[AccessTokenClaims]:
        """Verify signature, issuer, audience and lifetime; no revocation check."""
        # base64url segments are ASCII; anything else cannot be a token we issued
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        # only HS256; "none" and asymmetric algs are refused
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
            claims = AccessTokenClaims.from_payload(payload)
        except (ValueError, TypeError, KeyError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None

        if claims.iss != self.settings.jwt_issuer or claims.aud != self.settings.jwt_audience:
            return None
        if claims.token_type != "access":
            return None
        now = self.clock()
        skew = self.settings.clock_skew_seconds
        if claims.exp <= now - skew:
            return None
        if claims.iat > now + skew + 1:
            return None
        return claims

    async def validate(self, token: str) -> Optional[AccessTokenClaims]:
        claims = self.decode(token)
        if claims is None:
            return None
        if await self.revocations.is_revoked(claims.jti):
            self.logger.info("access_token_revoked_presented", user_id=claims.sub)
            return None
        return claims

    async def revoke(self, token_id: str, expires_at: Optional[datetime] = None) -> None:
        if not token_id:
            return
        if expires_at is None:
            expires_at = datetime.fromtimestamp(self.clock(), tz=timezone.utc) + timedelta(
                minutes=self.settings.access_token_ttl_minutes
            )
        await self.revocations.revoke(token_id, expires_at)
        self.logger.info("access_token_revoked", token_id=token_id)

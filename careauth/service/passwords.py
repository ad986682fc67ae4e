from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from careauth.config import PasswordHashAlgorithm, Settings
from careauth.logging import get_logger
from careauth.storage.common import AuthStore
from careauth.storage.models import User, UserPasswordHistory, new_id

logger = get_logger(__name__)

PBKDF2_TAG = PasswordHashAlgorithm.PBKDF2.value
ARGON2_TAG = PasswordHashAlgorithm.ARGON2ID.value
PBKDF2_HASH_BYTES = 32
PBKDF2_SALT_BYTES = 16
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass(frozen=True)
class PasswordHash:
    hash: str
    salt: Optional[str]
    algorithm: str


def password_policy_violations(password: Optional[str]) -> List[str]:
    """Return the unmet rules of the default password policy."""
    if not password:
        return ["Password is required"]
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not any(ch.isupper() for ch in password):
        problems.append("Password must contain at least one uppercase letter")
    if not any(ch.islower() for ch in password):
        problems.append("Password must contain at least one lowercase letter")
    if not any(ch.isdigit() for ch in password):
        problems.append("Password must contain at least one digit")
    if all(ch.isalnum() for ch in password):
        problems.append("Password must contain at least one special character")
    return problems


class CredentialStore:
    """Password hashing, verification and history for user accounts."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._argon = PasswordHasher(type=Type.ID)
        self.logger = logger
        # fixed decoy so unknown-account checks cost the same as real ones
        self._decoy = self._pbkdf2(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # hashing
    # ------------------------------------------------------------------

    def _pbkdf2(self, password: str, salt: Optional[bytes] = None) -> PasswordHash:
        salt = salt or secrets.token_bytes(PBKDF2_SALT_BYTES)
        digest = hashlib.pbkdf2_hmac(
            "sha256",
            password.encode("utf-8"),
            salt,
            self.settings.pbkdf2_iterations,
            dklen=PBKDF2_HASH_BYTES,
        )
        return PasswordHash(
            hash=base64.b64encode(digest).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
            algorithm=PBKDF2_TAG,
        )

    def hash(self, password: str) -> PasswordHash:
        if self.settings.password_hash_algorithm == PasswordHashAlgorithm.ARGON2ID:
            return PasswordHash(hash=self._argon.hash(password), salt=None, algorithm=ARGON2_TAG)
        return self._pbkdf2(password)

    def verify(
        self, password: str, hashed: Optional[str], salt: Optional[str], algorithm: Optional[str]
    ) -> bool:
        if not password or not hashed:
            return False
        if algorithm == ARGON2_TAG:
            try:
                return self._argon.verify(hashed, password)
            except (InvalidHash, VerifyMismatchError, VerificationError):
                return False
        if algorithm == PBKDF2_TAG and salt:
            try:
                raw_salt = base64.b64decode(salt)
            except ValueError:
                self.logger.warning("password_salt_invalid")
                return False
            candidate = self._pbkdf2(password, raw_salt)
            return hmac.compare_digest(candidate.hash, hashed)
        self.logger.warning("password_algo_unsupported", algo=algorithm)
        return False

    def verify_user(self, user: User, password: str) -> bool:
        return self.verify(
            password, user.password_hash, user.password_salt, user.password_algorithm
        )

    def dummy_verify(self, password: str) -> bool:
        self.verify(password, self._decoy.hash, self._decoy.salt, self._decoy.algorithm)
        return False

    def needs_rehash(self, user: User) -> bool:
        configured = self.settings.password_hash_algorithm.value
        if user.password_algorithm != configured:
            return True
        if configured == ARGON2_TAG and user.password_hash:
            return self._argon.check_needs_rehash(user.password_hash)
        return False

    # CPU-bound work runs in a worker thread so request handling keeps flowing

    async def hash_async(self, password: str) -> PasswordHash:
        return await asyncio.to_thread(self.hash, password)

    async def verify_user_async(self, user: User, password: str) -> bool:
        return await asyncio.to_thread(self.verify_user, user, password)

    async def dummy_verify_async(self, password: str) -> bool:
        return await asyncio.to_thread(self.dummy_verify, password)

    # ------------------------------------------------------------------
    # policy and history
    # ------------------------------------------------------------------

    @staticmethod
    def is_strong(password: Optional[str]) -> bool:
        return not password_policy_violations(password)

    def record_history(
        self,
        user_id: str,
        hashed: PasswordHash,
        *,
        reason: str,
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> UserPasswordHistory:
        entry = UserPasswordHistory(
            id=new_id(),
            user_id=user_id,
            password_hash=hashed.hash,
            password_salt=hashed.salt,
            password_algorithm=hashed.algorithm,
            change_reason=reason,
            changed_by=actor,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=self._now(),
        )
        self.store.add_password_history(entry)
        return entry

    def matches_current(self, user: User, password: str) -> bool:
        return self.verify_user(user, password)

    def in_history(self, user_id: str, password: str) -> bool:
        depth = self.settings.password_history_depth
        for entry in self.store.list_password_history(user_id, depth):
            if self.verify(
                password, entry.password_hash, entry.password_salt, entry.password_algorithm
            ):
                return True
        return False

    async def matches_current_async(self, user: User, password: str) -> bool:
        return await asyncio.to_thread(self.matches_current, user, password)

    async def in_history_async(self, user_id: str, password: str) -> bool:
        return await asyncio.to_thread(self.in_history, user_id, password)

    def purge_history(self, retention_days: int) -> int:
        cutoff = self._now() - timedelta(days=retention_days)
        removed = self.store.delete_password_history_before(cutoff)
        if removed:
            self.logger.info("password_history_purged", removed=removed)
        return removed

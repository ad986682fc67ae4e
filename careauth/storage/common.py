"""Common storage utilities shared between memory and postgres implementations.

Both backends satisfy the ``AuthStore`` protocol below; services depend on the
protocol only, so either store can back the runtime.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from ipaddress import ip_address
from typing import (
    Any,
    ContextManager,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
)

from careauth.storage.models import (
    AccessPermission,
    TokenType,
    User,
    UserPasswordHistory,
    UserRole,
    UserSession,
    VerificationToken,
)

# Number of rotated-away refresh token digests a session remembers
RETIRED_REFRESH_HASH_LIMIT = 10


class AuthStore(Protocol):
    """Repository contract the identity core needs from persistence."""

    def transaction(self) -> ContextManager[Any]: ...

    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user: User, *, expected_version: Optional[int] = None) -> User: ...

    def deactivate_user(self, user_id: str, when: datetime) -> bool: ...

    # password history
    def add_password_history(self, entry: UserPasswordHistory) -> None: ...

    def list_password_history(self, user_id: str, limit: int) -> List[UserPasswordHistory]: ...

    def delete_password_history_before(self, cutoff: datetime) -> int: ...

    # verification tokens
    def create_verification_token(self, token: VerificationToken) -> VerificationToken: ...

    def get_verification_token(self, token: str) -> Optional[VerificationToken]: ...

    def list_verification_tokens(
        self, user_id: str, token_type: Optional[TokenType] = None
    ) -> List[VerificationToken]: ...

    def invalidate_verification_tokens(
        self, user_id: str, token_type: TokenType, when: datetime
    ) -> int: ...

    def increment_token_attempts(self, token: str) -> Optional[VerificationToken]: ...

    def consume_verification_token(self, token: str, when: datetime) -> bool: ...

    def delete_expired_verification_tokens(self, now: datetime) -> int: ...

    def delete_used_verification_tokens(self, cutoff: datetime) -> int: ...

    # sessions
    def create_session(self, session: UserSession) -> UserSession: ...

    def get_session(self, session_id: str) -> Optional[UserSession]: ...

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]: ...

    def find_session_by_retired_refresh_hash(
        self, refresh_hash: str
    ) -> Optional[UserSession]: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        *,
        expected_hash: str,
        new_hash: str,
        expires_at: datetime,
        accessed_at: datetime,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> Optional[UserSession]: ...

    def bind_access_token(
        self, session_id: str, access_token_id: str, expires_at: datetime
    ) -> None: ...

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]: ...

    def deactivate_session(
        self, session_id: str, *, reason: str, when: datetime
    ) -> Optional[UserSession]: ...

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        when: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]: ...

    def deactivate_expired_sessions(self, now: datetime) -> int: ...

    # roles and permissions
    def assign_user_role(self, role: UserRole) -> UserRole: ...

    def list_user_roles(self, user_id: str) -> List[UserRole]: ...

    def add_access_permission(self, permission: AccessPermission) -> AccessPermission: ...

    def list_permissions_for_roles(self, role_ids: Sequence[str]) -> List[str]: ...


def normalize_email(email: str) -> str:
    """Canonical form used for the case-insensitive uniqueness check."""
    return (email or "").strip().lower()


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a normalised IP string, or None for missing/garbled input."""
    if raw_ip is None:
        return None
    stripped = str(raw_ip).strip()
    if not stripped:
        return None
    try:
        return str(ip_address(stripped))
    except ValueError:
        return None


def retire_refresh_hash(history: Iterable[str], refresh_hash: str) -> List[str]:
    """Append a rotated-away digest, keeping only the most recent entries."""
    retired = [h for h in history if h != refresh_hash]
    retired.append(refresh_hash)
    return retired[-RETIRED_REFRESH_HASH_LIMIT:]


def dedupe_preserving_order(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def email_format_problem(value: Any) -> Optional[str]:
    """Describe why ``value`` is not a usable email address, or None if it is."""
    if not isinstance(value, str):
        return "email must be a string"
    normalized = unicodedata.normalize("NFKC", normalize_email(value))
    if len(normalized) > 254:
        return "email address too long"
    if len(normalized) < 3:
        return "email address too short"
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        return "invalid email address"
    if len(local) > 64:
        return "email local part too long"
    if not _EMAIL_LOCAL_PART.match(local):
        return "invalid email address format"
    labels = domain.split(".")
    if len(labels) < 2:
        return "invalid email address format"
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return "invalid email address format"
    return None

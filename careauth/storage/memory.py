from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from careauth.logging import get_logger
from careauth.storage.common import (
    dedupe_preserving_order,
    normalize_email,
    retire_refresh_hash,
)
from careauth.storage.errors import ConcurrencyConflict, ConstraintViolation
from careauth.storage.models import (
    AccessPermission,
    AccountStatus,
    TokenType,
    User,
    UserPasswordHistory,
    UserRole,
    UserSession,
    VerificationToken,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Every read hands back a deep copy so callers cannot mutate store state
    behind the versioning checks. ``transaction()`` holds the data lock for
    the whole unit of work and restores a snapshot if the block raises.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.password_history: Dict[str, List[UserPasswordHistory]] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        self.sessions: Dict[str, UserSession] = {}
        self.user_roles: Dict[str, UserRole] = {}
        self.access_permissions: Dict[str, AccessPermission] = {}
        # RLock so repository calls can nest inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = self._snapshot()
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                self.logger.warning("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0
            self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "users": self.users,
                "password_history": self.password_history,
                "verification_tokens": self.verification_tokens,
                "sessions": self.sessions,
                "user_roles": self.user_roles,
                "access_permissions": self.access_permissions,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.users = snapshot["users"]
        self.password_history = snapshot["password_history"]
        self.verification_tokens = snapshot["verification_tokens"]
        self.sessions = snapshot["sessions"]
        self.user_roles = snapshot["user_roles"]
        self.access_permissions = snapshot["access_permissions"]

    def ping(self) -> bool:
        return True

    def _commit(self) -> None:
        if not self._tx_depth:
            self._persist_state()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        wanted = normalize_email(email)
        return any(
            normalize_email(existing.email) == wanted and existing.id != exclude_id
            for existing in self.users.values()
        )

    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"field": "id"})
            if self._email_taken(user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.deepcopy(user)
            self.users[stored.id] = stored
            self._commit()
            return copy.deepcopy(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        wanted = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if normalize_email(user.email) == wanted:
                    return copy.deepcopy(user)
            return None

    def update_user(self, user: User, *, expected_version: Optional[int] = None) -> User:
        with self._data_lock:
            current = self.users.get(user.id)
            if current is None:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            if expected_version is not None and current.version != expected_version:
                raise ConcurrencyConflict("user", user.id, expected_version)
            if self._email_taken(user.email, exclude_id=user.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(
                copy.deepcopy(user), version=current.version + 1, updated_at=self._now()
            )
            self.users[user.id] = stored
            self._commit()
            return copy.deepcopy(stored)

    def deactivate_user(self, user_id: str, when: datetime) -> bool:
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None or current.status == AccountStatus.DISABLED:
                return False
            self.users[user_id] = replace(
                current,
                status=AccountStatus.DISABLED,
                deactivated_at=when,
                updated_at=when,
                version=current.version + 1,
            )
            self._commit()
            return True

    # ------------------------------------------------------------------
    # password history
    # ------------------------------------------------------------------

    def add_password_history(self, entry: UserPasswordHistory) -> None:
        with self._data_lock:
            if entry.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": entry.user_id})
            self.password_history.setdefault(entry.user_id, []).append(
                copy.deepcopy(entry)
            )
            self._commit()

    def list_password_history(self, user_id: str, limit: int) -> List[UserPasswordHistory]:
        with self._data_lock:
            entries = sorted(
                self.password_history.get(user_id, []),
                key=lambda e: e.created_at,
                reverse=True,
            )
            return copy.deepcopy(entries[:limit])

    def delete_password_history_before(self, cutoff: datetime) -> int:
        removed = 0
        with self._data_lock:
            for user_id, entries in self.password_history.items():
                kept = [e for e in entries if e.created_at >= cutoff]
                removed += len(entries) - len(kept)
                self.password_history[user_id] = kept
            if removed:
                self._commit()
        return removed

    # ------------------------------------------------------------------
    # verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            if token.token in self.verification_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            self.verification_tokens[token.token] = copy.deepcopy(token)
            self._commit()
            return copy.deepcopy(token)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            return copy.deepcopy(record) if record else None

    def list_verification_tokens(
        self, user_id: str, token_type: Optional[TokenType] = None
    ) -> List[VerificationToken]:
        with self._data_lock:
            matches = [
                t
                for t in self.verification_tokens.values()
                if t.user_id == user_id and (token_type is None or t.token_type == token_type)
            ]
            matches.sort(key=lambda t: t.created_at, reverse=True)
            return copy.deepcopy(matches)

    def invalidate_verification_tokens(
        self, user_id: str, token_type: TokenType, when: datetime
    ) -> int:
        count = 0
        with self._data_lock:
            for record in self.verification_tokens.values():
                if (
                    record.user_id == user_id
                    and record.token_type == token_type
                    and record.is_usable(when)
                ):
                    record.is_used = True
                    record.used_at = when
                    count += 1
            if count:
                self._commit()
        return count

    def increment_token_attempts(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if record is None:
                return None
            record.attempt_count += 1
            self._commit()
            return copy.deepcopy(record)

    def consume_verification_token(self, token: str, when: datetime) -> bool:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if record is None or not record.is_usable(when):
                return False
            record.is_used = True
            record.used_at = when
            self._commit()
            return True

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [k for k, t in self.verification_tokens.items() if t.expires_at <= now]
            for key in stale:
                del self.verification_tokens[key]
            if stale:
                self._commit()
            return len(stale)

    def delete_used_verification_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                k
                for k, t in self.verification_tokens.items()
                if t.is_used and t.used_at is not None and t.used_at < cutoff
            ]
            for key in stale:
                del self.verification_tokens[key]
            if stale:
                self._commit()
            return len(stale)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(
                s.refresh_token_hash == session.refresh_token_hash
                for s in self.sessions.values()
            ):
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token_hash"}
                )
            self.sessions[session.id] = copy.deepcopy(session)
            self._commit()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.refresh_token_hash == refresh_hash:
                    return copy.deepcopy(session)
            return None

    def find_session_by_retired_refresh_hash(
        self, refresh_hash: str
    ) -> Optional[UserSession]:
        with self._data_lock:
            for session in self.sessions.values():
                if refresh_hash in session.retired_refresh_token_hashes:
                    return copy.deepcopy(session)
            return None

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
    ) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                session is None
                or not session.is_active
                or session.refresh_token_hash != expected_hash
            ):
                return None
            session.retired_refresh_token_hashes = retire_refresh_hash(
                session.retired_refresh_token_hashes, expected_hash
            )
            session.refresh_token_hash = new_hash
            session.expires_at = expires_at
            session.last_accessed_at = accessed_at
            session.ip_address = ip_address or session.ip_address
            session.user_agent = user_agent or session.user_agent
            self._commit()
            return copy.deepcopy(session)

    def bind_access_token(
        self, session_id: str, access_token_id: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None:
                return
            session.access_token_id = access_token_id
            session.access_token_expires_at = expires_at
            self._commit()

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        with self._data_lock:
            matches = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
            matches.sort(key=lambda s: s.last_accessed_at, reverse=True)
            return copy.deepcopy(matches)

    def _deactivate(self, session: UserSession, reason: str, when: datetime) -> UserSession:
        session.is_active = False
        session.revoked_at = when
        session.revoked_reason = reason
        return copy.deepcopy(session)

    def deactivate_session(
        self, session_id: str, *, reason: str, when: datetime
    ) -> Optional[UserSession]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or not session.is_active:
                return None
            revoked = self._deactivate(session, reason, when)
            self._commit()
            return revoked

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        when: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]:
        with self._data_lock:
            revoked = [
                self._deactivate(s, reason, when)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.id != except_session_id
            ]
            if revoked:
                self._commit()
            return revoked

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                s for s in self.sessions.values() if s.is_active and s.expires_at <= now
            ]
            for session in expired:
                self._deactivate(session, "expired", now)
            if expired:
                self._commit()
            return len(expired)

    # ------------------------------------------------------------------
    # roles and permissions
    # ------------------------------------------------------------------

    def assign_user_role(self, role: UserRole) -> UserRole:
        with self._data_lock:
            if role.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": role.user_id})
            self.user_roles[role.id] = copy.deepcopy(role)
            self._commit()
            return copy.deepcopy(role)

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._data_lock:
            roles = [r for r in self.user_roles.values() if r.user_id == user_id]
            roles.sort(key=lambda r: r.assigned_at)
            return copy.deepcopy(roles)

    def add_access_permission(self, permission: AccessPermission) -> AccessPermission:
        with self._data_lock:
            self.access_permissions[permission.id] = copy.deepcopy(permission)
            self._commit()
            return copy.deepcopy(permission)

    def list_permissions_for_roles(self, role_ids: Sequence[str]) -> List[str]:
        wanted = set(role_ids)
        with self._data_lock:
            names = sorted(
                p.name
                for p in self.access_permissions.values()
                if p.is_active and p.role_id in wanted
            )
        return dedupe_preserving_order(names)

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "careauth_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [u.to_record() for u in self.users.values()],
            "password_history": [
                e.to_record() for entries in self.password_history.values() for e in entries
            ],
            "verification_tokens": [
                t.to_record() for t in self.verification_tokens.values()
            ],
            "sessions": [s.to_record() for s in self.sessions.values()],
            "user_roles": [r.to_record() for r in self.user_roles.values()],
            "access_permissions": [
                p.to_record() for p in self.access_permissions.values()
            ],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except (OSError, TypeError) as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: User.from_record(u) for u in data.get("users", [])}
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = UserPasswordHistory.from_record(raw)
            self.password_history.setdefault(entry.user_id, []).append(entry)
        self.verification_tokens = {
            t["token"]: VerificationToken.from_record(t)
            for t in data.get("verification_tokens", [])
        }
        self.sessions = {
            s["id"]: UserSession.from_record(s) for s in data.get("sessions", [])
        }
        self.user_roles = {
            r["id"]: UserRole.from_record(r) for r in data.get("user_roles", [])
        }
        self.access_permissions = {
            p["id"]: AccessPermission.from_record(p)
            for p in data.get("access_permissions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

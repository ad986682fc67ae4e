from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from careauth.logging import get_logger
from careauth.storage.common import RETIRED_REFRESH_HASH_LIMIT, dedupe_preserving_order
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

REQUIRED_TABLES = (
    "app_user",
    "user_password_history",
    "verification_token",
    "user_session",
    "user_role",
    "access_permission",
)

_USER_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "password_salt",
    "password_algorithm",
    "first_name",
    "last_name",
    "phone",
    "role",
    "status",
    "email_verified",
    "phone_verified",
    "failed_login_attempts",
    "last_failed_login_at",
    "account_locked_until",
    "lockout_reason",
    "two_factor_enabled",
    "two_factor_secret",
    "two_factor_enabled_at",
    "two_factor_backup_codes",
    "require_password_change",
    "last_login_at",
    "last_activity_at",
    "password_changed_at",
    "deactivated_at",
    "preferences",
    "created_at",
    "updated_at",
    "version",
)

_SESSION_COLUMNS = (
    "id",
    "user_id",
    "refresh_token_hash",
    "retired_refresh_token_hashes",
    "access_token_id",
    "access_token_expires_at",
    "expires_at",
    "device_id",
    "device_name",
    "device_type",
    "ip_address",
    "user_agent",
    "is_trusted_device",
    "is_active",
    "organization_id",
    "role_context",
    "created_at",
    "last_accessed_at",
    "revoked_at",
    "revoked_reason",
)


def _user_params(user: User) -> tuple:
    return (
        user.id,
        user.email,
        user.password_hash,
        user.password_salt,
        user.password_algorithm,
        user.first_name,
        user.last_name,
        user.phone,
        user.role,
        user.status.value,
        user.email_verified,
        user.phone_verified,
        user.failed_login_attempts,
        user.last_failed_login_at,
        user.account_locked_until,
        user.lockout_reason,
        user.two_factor_enabled,
        user.two_factor_secret,
        user.two_factor_enabled_at,
        list(user.two_factor_backup_codes),
        user.require_password_change,
        user.last_login_at,
        user.last_activity_at,
        user.password_changed_at,
        user.deactivated_at,
        json.dumps(user.preferences.to_dict()),
        user.created_at,
        user.updated_at,
        user.version,
    )


def _session_params(session: UserSession) -> tuple:
    return (
        session.id,
        session.user_id,
        session.refresh_token_hash,
        list(session.retired_refresh_token_hashes),
        session.access_token_id,
        session.access_token_expires_at,
        session.expires_at,
        session.device.device_id,
        session.device.device_name,
        session.device.device_type,
        session.ip_address,
        session.user_agent,
        session.is_trusted_device,
        session.is_active,
        session.organization_id,
        session.role_context,
        session.created_at,
        session.last_accessed_at,
        session.revoked_at,
        session.revoked_reason,
    )


class PostgresStore:
    """Postgres-backed repositories for the identity core.

    Repository calls made inside ``transaction()`` share one pooled
    connection (tracked in a context variable) and commit or roll back
    together; calls outside a transaction each run in their own.
    """

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._active_conn: ContextVar[Optional[Any]] = ContextVar(
            f"careauth_pg_conn_{id(self)}", default=None
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        active = self._active_conn.get()
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        active = self._active_conn.get()
        if active is not None:
            # nested unit of work becomes a savepoint
            with active.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            token = self._active_conn.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                self._active_conn.reset(token)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply careauth/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO app_user ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
                    _user_params(user),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User.from_record(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return User.from_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip(),)
            ).fetchone()
        return User.from_record(row) if row else None

    def update_user(self, user: User, *, expected_version: Optional[int] = None) -> User:
        assignments = ", ".join(
            f"{col} = %s" for col in _USER_COLUMNS if col not in {"id", "created_at", "version"}
        )
        params = [
            value
            for col, value in zip(_USER_COLUMNS, _user_params(user))
            if col not in {"id", "created_at", "version"}
        ]
        sql = f"UPDATE app_user SET {assignments}, updated_at = now(), version = version + 1 WHERE id = %s"
        params.append(user.id)
        if expected_version is not None:
            sql += " AND version = %s"
            params.append(expected_version)
        sql += " RETURNING *"
        try:
            with self._connect() as conn:
                row = conn.execute(sql, tuple(params)).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if row is None:
            if expected_version is not None:
                raise ConcurrencyConflict("user", user.id, expected_version)
            raise ConstraintViolation("user does not exist", {"user_id": user.id})
        return User.from_record(row)

    def deactivate_user(self, user_id: str, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET status = %s, deactivated_at = %s, updated_at = %s, version = version + 1
                WHERE id = %s AND status <> %s
                """,
                (
                    AccountStatus.DISABLED.value,
                    when,
                    when,
                    user_id,
                    AccountStatus.DISABLED.value,
                ),
            )
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # password history
    # ------------------------------------------------------------------

    def add_password_history(self, entry: UserPasswordHistory) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_password_history
                        (id, user_id, password_hash, password_salt, password_algorithm,
                         change_reason, changed_by, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        entry.id,
                        entry.user_id,
                        entry.password_hash,
                        entry.password_salt,
                        entry.password_algorithm,
                        entry.change_reason,
                        entry.changed_by,
                        entry.ip_address,
                        entry.user_agent,
                        entry.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": entry.user_id})

    def list_password_history(self, user_id: str, limit: int) -> List[UserPasswordHistory]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_password_history
                WHERE user_id = %s ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [UserPasswordHistory.from_record(r) for r in rows]

    def delete_password_history_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_password_history WHERE created_at < %s", (cutoff,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO verification_token
                        (id, token, user_id, token_type, email, phone, expires_at,
                         is_used, used_at, attempt_count, max_attempts, purpose, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        token.id,
                        token.token,
                        token.user_id,
                        token.token_type.value,
                        token.email,
                        token.phone,
                        token.expires_at,
                        token.is_used,
                        token.used_at,
                        token.attempt_count,
                        token.max_attempts,
                        token.purpose,
                        token.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return VerificationToken.from_record(row)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_token WHERE token = %s", (token,)
            ).fetchone()
        return VerificationToken.from_record(row) if row else None

    def list_verification_tokens(
        self, user_id: str, token_type: Optional[TokenType] = None
    ) -> List[VerificationToken]:
        sql = "SELECT * FROM verification_token WHERE user_id = %s"
        params: list[Any] = [user_id]
        if token_type is not None:
            sql += " AND token_type = %s"
            params.append(token_type.value)
        sql += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [VerificationToken.from_record(r) for r in rows]

    def invalidate_verification_tokens(
        self, user_id: str, token_type: TokenType, when: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_token SET is_used = TRUE, used_at = %s
                WHERE user_id = %s AND token_type = %s AND NOT is_used
                  AND expires_at > %s AND attempt_count < max_attempts
                """,
                (when, user_id, token_type.value, when),
            )
            return cur.rowcount

    def increment_token_attempts(self, token: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_token SET attempt_count = attempt_count + 1
                WHERE token = %s RETURNING *
                """,
                (token,),
            ).fetchone()
        return VerificationToken.from_record(row) if row else None

    def consume_verification_token(self, token: str, when: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_token SET is_used = TRUE, used_at = %s
                WHERE token = %s AND NOT is_used
                  AND expires_at > %s AND attempt_count < max_attempts
                """,
                (when, token, when),
            )
            return cur.rowcount == 1

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    def delete_used_verification_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_token WHERE is_used AND used_at < %s", (cutoff,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: UserSession) -> UserSession:
        placeholders = ", ".join(["%s"] * len(_SESSION_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO user_session ({', '.join(_SESSION_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
                    _session_params(session),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token_hash"}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return UserSession.from_record(row)

    def get_session(self, session_id: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE id = %s", (session_id,)
            ).fetchone()
        return UserSession.from_record(row) if row else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token_hash = %s", (refresh_hash,)
            ).fetchone()
        return UserSession.from_record(row) if row else None

    def find_session_by_retired_refresh_hash(
        self, refresh_hash: str
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE %s = ANY(retired_refresh_token_hashes) LIMIT 1",
                (refresh_hash,),
            ).fetchone()
        return UserSession.from_record(row) if row else None

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
        # single conditional update: the losing side of a race matches no row
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session
                SET refresh_token_hash = %s,
                    retired_refresh_token_hashes =
                        (array_append(retired_refresh_token_hashes, refresh_token_hash))[
                            greatest(1, cardinality(retired_refresh_token_hashes) + 2 - %s):
                        ],
                    expires_at = %s,
                    last_accessed_at = %s,
                    ip_address = COALESCE(%s, ip_address),
                    user_agent = COALESCE(%s, user_agent)
                WHERE id = %s AND refresh_token_hash = %s AND is_active
                RETURNING *
                """,
                (
                    new_hash,
                    RETIRED_REFRESH_HASH_LIMIT,
                    expires_at,
                    accessed_at,
                    ip_address,
                    user_agent,
                    session_id,
                    expected_hash,
                ),
            ).fetchone()
        return UserSession.from_record(row) if row else None

    def bind_access_token(
        self, session_id: str, access_token_id: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_session SET access_token_id = %s, access_token_expires_at = %s
                WHERE id = %s
                """,
                (access_token_id, expires_at, session_id),
            )

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[UserSession]:
        sql = "SELECT * FROM user_session WHERE user_id = %s"
        if active_only:
            sql += " AND is_active"
        sql += " ORDER BY last_accessed_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [UserSession.from_record(r) for r in rows]

    def deactivate_session(
        self, session_id: str, *, reason: str, when: datetime
    ) -> Optional[UserSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (when, reason, session_id),
            ).fetchone()
        return UserSession.from_record(row) if row else None

    def deactivate_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        when: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[UserSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING *
                """,
                (when, reason, user_id, except_session_id),
            ).fetchall()
        return [UserSession.from_record(r) for r in rows]

    def deactivate_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_session
                SET is_active = FALSE, revoked_at = %s, revoked_reason = 'expired'
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # roles and permissions
    # ------------------------------------------------------------------

    def assign_user_role(self, role: UserRole) -> UserRole:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_role
                        (id, user_id, role_id, role_name, section, section_id,
                         is_active, assigned_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        role.id,
                        role.user_id,
                        role.role_id,
                        role.role_name,
                        role.section,
                        role.section_id,
                        role.is_active,
                        role.assigned_at,
                        role.expires_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": role.user_id})
        return UserRole.from_record(row)

    def list_user_roles(self, user_id: str) -> List[UserRole]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_role WHERE user_id = %s ORDER BY assigned_at",
                (user_id,),
            ).fetchall()
        return [UserRole.from_record(r) for r in rows]

    def add_access_permission(self, permission: AccessPermission) -> AccessPermission:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO access_permission (id, role_id, name, is_active)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (role_id, name) DO UPDATE SET is_active = EXCLUDED.is_active
                """,
                (permission.id, permission.role_id, permission.name, permission.is_active),
            )
        return permission

    def list_permissions_for_roles(self, role_ids: Sequence[str]) -> List[str]:
        if not role_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT name FROM access_permission
                WHERE is_active AND role_id = ANY(%s) ORDER BY name
                """,
                (list(role_ids),),
            ).fetchall()
        return dedupe_preserving_order(r["name"] for r in rows)

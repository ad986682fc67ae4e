from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def new_id() -> str:
    return uuid.uuid4().hex


class AccountStatus(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    SUSPENDED = "Suspended"
    LOCKED = "Locked"
    DISABLED = "Disabled"


class TokenType(str, Enum):
    EMAIL_VERIFICATION = "EmailVerification"
    PASSWORD_RESET = "PasswordReset"
    TWO_FACTOR = "TwoFactor"
    TRUSTED_DEVICE = "TrustedDevice"


@dataclass
class UserPreferences:
    """Versioned per-user preference document stored as JSON."""

    SCHEMA_VERSION: ClassVar[int] = 1

    locale: Optional[str] = None
    timezone: Optional[str] = None
    theme: Optional[str] = None
    notifications_enabled: bool = True
    schema_version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "UserPreferences":
        if not raw:
            return cls()
        known = {
            "locale": raw.get("locale"),
            "timezone": raw.get("timezone"),
            "theme": raw.get("theme"),
            "notifications_enabled": bool(raw.get("notifications_enabled", True)),
        }
        return cls(**known, schema_version=cls.SCHEMA_VERSION)


@dataclass
class DeviceInfo:
    device_id: str = "Unknown"
    device_name: str = "Unknown Device"
    device_type: str = "Unknown"

    @classmethod
    def from_request(
        cls,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> "DeviceInfo":
        return cls(
            device_id=device_id or "Unknown",
            device_name=device_name or "Unknown Device",
            device_type=device_type or "Unknown",
        )


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    password_algorithm: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    role: str = "user"
    status: AccountStatus = AccountStatus.PENDING
    email_verified: bool = False
    phone_verified: bool = False
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    account_locked_until: Optional[datetime] = None
    lockout_reason: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_enabled_at: Optional[datetime] = None
    two_factor_backup_codes: List[str] = field(default_factory=list)
    require_password_change: bool = False
    last_login_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    preferences: UserPreferences = field(default_factory=UserPreferences)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 1

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return self.account_locked_until is not None and self.account_locked_until > now

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "password_hash": self.password_hash,
            "password_salt": self.password_salt,
            "password_algorithm": self.password_algorithm,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "role": self.role,
            "status": self.status.value,
            "email_verified": self.email_verified,
            "phone_verified": self.phone_verified,
            "failed_login_attempts": self.failed_login_attempts,
            "last_failed_login_at": _format_ts(self.last_failed_login_at),
            "account_locked_until": _format_ts(self.account_locked_until),
            "lockout_reason": self.lockout_reason,
            "two_factor_enabled": self.two_factor_enabled,
            "two_factor_secret": self.two_factor_secret,
            "two_factor_enabled_at": _format_ts(self.two_factor_enabled_at),
            "two_factor_backup_codes": list(self.two_factor_backup_codes),
            "require_password_change": self.require_password_change,
            "last_login_at": _format_ts(self.last_login_at),
            "last_activity_at": _format_ts(self.last_activity_at),
            "password_changed_at": _format_ts(self.password_changed_at),
            "deactivated_at": _format_ts(self.deactivated_at),
            "preferences": self.preferences.to_dict(),
            "created_at": _format_ts(self.created_at),
            "updated_at": _format_ts(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            password_salt=row.get("password_salt"),
            password_algorithm=row.get("password_algorithm"),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            role=row.get("role") or "user",
            status=AccountStatus(row.get("status") or AccountStatus.PENDING.value),
            email_verified=bool(row.get("email_verified")),
            phone_verified=bool(row.get("phone_verified")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            last_failed_login_at=_parse_ts(row.get("last_failed_login_at")),
            account_locked_until=_parse_ts(row.get("account_locked_until")),
            lockout_reason=row.get("lockout_reason"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=row.get("two_factor_secret"),
            two_factor_enabled_at=_parse_ts(row.get("two_factor_enabled_at")),
            two_factor_backup_codes=list(row.get("two_factor_backup_codes") or []),
            require_password_change=bool(row.get("require_password_change")),
            last_login_at=_parse_ts(row.get("last_login_at")),
            last_activity_at=_parse_ts(row.get("last_activity_at")),
            password_changed_at=_parse_ts(row.get("password_changed_at")),
            deactivated_at=_parse_ts(row.get("deactivated_at")),
            preferences=UserPreferences.from_dict(row.get("preferences")),
            created_at=_parse_ts(row.get("created_at")) or _utcnow(),
            updated_at=_parse_ts(row.get("updated_at")) or _utcnow(),
            version=int(row.get("version") or 1),
        )


@dataclass
class UserPasswordHistory:
    id: str
    user_id: str
    password_hash: str
    password_salt: Optional[str]
    password_algorithm: str
    change_reason: str
    changed_by: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["created_at"] = _format_ts(self.created_at)
        return record

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "UserPasswordHistory":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            password_salt=row.get("password_salt"),
            password_algorithm=row["password_algorithm"],
            change_reason=row.get("change_reason") or "",
            changed_by=row.get("changed_by"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=_parse_ts(row.get("created_at")) or _utcnow(),
        )


@dataclass
class VerificationToken:
    id: str
    token: str
    user_id: str
    token_type: TokenType
    expires_at: datetime
    max_attempts: int
    purpose: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    is_used: bool = False
    used_at: Optional[datetime] = None
    attempt_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    def is_usable(self, now: datetime) -> bool:
        return (
            not self.is_used
            and now < self.expires_at
            and self.attempt_count < self.max_attempts
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "token": self.token,
            "user_id": self.user_id,
            "token_type": self.token_type.value,
            "expires_at": _format_ts(self.expires_at),
            "max_attempts": self.max_attempts,
            "purpose": self.purpose,
            "email": self.email,
            "phone": self.phone,
            "is_used": self.is_used,
            "used_at": _format_ts(self.used_at),
            "attempt_count": self.attempt_count,
            "created_at": _format_ts(self.created_at),
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "VerificationToken":
        return cls(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            token_type=TokenType(row["token_type"]),
            expires_at=_parse_ts(row["expires_at"]),
            max_attempts=int(row["max_attempts"]),
            purpose=row.get("purpose") or "",
            email=row.get("email"),
            phone=row.get("phone"),
            is_used=bool(row.get("is_used")),
            used_at=_parse_ts(row.get("used_at")),
            attempt_count=int(row.get("attempt_count") or 0),
            created_at=_parse_ts(row.get("created_at")) or _utcnow(),
        )


@dataclass
class UserSession:
    id: str
    user_id: str
    refresh_token_hash: str
    expires_at: datetime
    device: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_trusted_device: bool = False
    is_active: bool = True
    access_token_id: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    retired_refresh_token_hashes: List[str] = field(default_factory=list)
    organization_id: Optional[str] = None
    role_context: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_accessed_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "refresh_token_hash": self.refresh_token_hash,
            "expires_at": _format_ts(self.expires_at),
            "device_id": self.device.device_id,
            "device_name": self.device.device_name,
            "device_type": self.device.device_type,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "is_trusted_device": self.is_trusted_device,
            "is_active": self.is_active,
            "access_token_id": self.access_token_id,
            "access_token_expires_at": _format_ts(self.access_token_expires_at),
            "retired_refresh_token_hashes": list(self.retired_refresh_token_hashes),
            "organization_id": self.organization_id,
            "role_context": self.role_context,
            "created_at": _format_ts(self.created_at),
            "last_accessed_at": _format_ts(self.last_accessed_at),
            "revoked_at": _format_ts(self.revoked_at),
            "revoked_reason": self.revoked_reason,
        }

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "UserSession":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=_parse_ts(row["expires_at"]),
            device=DeviceInfo.from_request(
                row.get("device_id"), row.get("device_name"), row.get("device_type")
            ),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_trusted_device=bool(row.get("is_trusted_device")),
            is_active=bool(row.get("is_active")),
            access_token_id=row.get("access_token_id"),
            access_token_expires_at=_parse_ts(row.get("access_token_expires_at")),
            retired_refresh_token_hashes=list(
                row.get("retired_refresh_token_hashes") or []
            ),
            organization_id=row.get("organization_id"),
            role_context=row.get("role_context"),
            created_at=_parse_ts(row.get("created_at")) or _utcnow(),
            last_accessed_at=_parse_ts(row.get("last_accessed_at")) or _utcnow(),
            revoked_at=_parse_ts(row.get("revoked_at")),
            revoked_reason=row.get("revoked_reason"),
        )


@dataclass
class UserRole:
    id: str
    user_id: str
    role_id: str
    role_name: str
    section: str = "General"
    section_id: Optional[str] = None
    is_active: bool = True
    assigned_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or self.expires_at > now)

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["assigned_at"] = _format_ts(self.assigned_at)
        record["expires_at"] = _format_ts(self.expires_at)
        return record

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "UserRole":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            role_id=str(row["role_id"]),
            role_name=row["role_name"],
            section=row.get("section") or "General",
            section_id=row.get("section_id"),
            is_active=bool(row.get("is_active", True)),
            assigned_at=_parse_ts(row.get("assigned_at")) or _utcnow(),
            expires_at=_parse_ts(row.get("expires_at")),
        )


@dataclass
class AccessPermission:
    id: str
    role_id: str
    name: str
    is_active: bool = True

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "AccessPermission":
        return cls(
            id=str(row["id"]),
            role_id=str(row["role_id"]),
            name=row["name"],
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class AccessTokenClaims:
    """Claim set embedded in a signed access token; never persisted."""

    sub: str
    name: str
    email: str
    role: str
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    sid: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    role_sections: List[str] = field(default_factory=list)
    role_section_ids: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    account_status: str = AccountStatus.ACTIVE.value
    email_verified: bool = False
    phone_verified: bool = False
    two_factor_enabled: bool = False
    token_type: str = "access"

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AccessTokenClaims":
        return cls(
            sub=str(payload["sub"]),
            name=str(payload.get("name", "")),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            jti=str(payload["jti"]),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            iss=str(payload["iss"]),
            aud=str(payload["aud"]),
            sid=payload.get("sid"),
            roles=list(payload.get("roles") or []),
            role_sections=list(payload.get("role_sections") or []),
            role_section_ids=list(payload.get("role_section_ids") or []),
            permissions=list(payload.get("permissions") or []),
            account_status=str(payload.get("account_status", "")),
            email_verified=bool(payload.get("email_verified")),
            phone_verified=bool(payload.get("phone_verified")),
            two_factor_enabled=bool(payload.get("two_factor_enabled")),
            token_type=str(payload.get("token_type", "")),
        )


# Outward DTOs: flat, fully populated, safe to serialise.


@dataclass
class RoleAssignment:
    role_id: str
    role_name: str
    section: str
    section_id: Optional[str] = None


@dataclass
class UserProfile:
    user_id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    phone: Optional[str]
    role: str
    account_status: str
    email_verified: bool
    phone_verified: bool
    two_factor_enabled: bool
    require_password_change: bool
    last_login_at: Optional[datetime]
    created_at: datetime
    preferences: Dict[str, Any] = field(default_factory=dict)
    roles: List[RoleAssignment] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


@dataclass
class SessionSummary:
    session_id: str
    device_id: str
    device_name: str
    device_type: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_trusted_device: bool
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    is_current: bool = False


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_expires: datetime
    session_id: str
    token_type: str = "Bearer"


@dataclass
class LoginResult:
    """Either a token pair or a pending two-factor challenge, never both."""

    requires_two_factor: bool = False
    two_factor_token: Optional[str] = None
    tokens: Optional[TokenPair] = None
    user: Optional[UserProfile] = None
    trusted_device_token: Optional[str] = None


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]
    setup_token: str


def dto_to_dict(obj: Any) -> Dict[str, Any]:
    """Serialise a DTO dataclass with ISO timestamps."""

    def _convert(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_convert(v) for v in value]
        return value

    return _convert(asdict(obj))

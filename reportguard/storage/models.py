from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = "Viewer"
    # None means the account still resolves permissions through the legacy role name
    role_id: Optional[str] = None
    department_id: Optional[str] = None
    is_active: bool = True
    max_concurrent_sessions: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Credential:
    user_id: str
    password_hash: str
    salt: Optional[str] = None
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=_utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class MfaEnrollment:
    user_id: str
    encrypted_secret: str
    encrypted_backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    enabled_at: Optional[datetime] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.enabled_at is not None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshToken:
    token: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    created_by_ip: Optional[str] = None
    session_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by_ip: Optional[str] = None
    reason_revoked: Optional[str] = None
    replaced_by_token: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "Unknown"
    device_name: Optional[str] = None
    location: Optional[str] = None
    remember_me: bool = False
    is_active: bool = True
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    is_suspicious: bool = False
    suspicious_reason: Optional[str] = None
    last_mfa_verification: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        now: datetime,
        timeout_minutes: int,
        *,
        device_fingerprint: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_type: str = "Unknown",
        device_name: str | None = None,
        location: str | None = None,
        remember_me: bool = False,
        mfa_verified: bool = False,
    ) -> "Session":
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            last_accessed_at=now,
            expires_at=now + timedelta(minutes=timeout_minutes),
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
            device_name=device_name,
            location=location,
            remember_me=remember_me,
            last_mfa_verification=now if mfa_verified else None,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and not self.is_revoked and self.expires_at > now


@dataclass
class DeviceFingerprint:
    fingerprint: str
    user_id: str
    first_seen: datetime
    last_seen: datetime
    device_name: Optional[str] = None
    device_type: str = "Unknown"
    is_trusted: bool = False
    is_blocked: bool = False
    blocked_reason: Optional[str] = None


@dataclass
class Permission:
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Role:
    name: str
    description: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class PermissionGrant:
    """Shared shape of the user, role and department grant variants."""

    principal_id: str
    permission: str
    is_granted: bool = True
    granted_at: datetime = field(default_factory=_utcnow)
    granted_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_granted and (self.expires_at is None or self.expires_at > now)


@dataclass
class UserPermission(PermissionGrant):
    pass


@dataclass
class RolePermission(PermissionGrant):
    pass


@dataclass
class DepartmentPermission(PermissionGrant):
    pass


GRANT_TYPES: Dict[str, type] = {
    "user": UserPermission,
    "role": RolePermission,
    "department": DepartmentPermission,
}

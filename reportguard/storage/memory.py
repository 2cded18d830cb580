from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from reportguard.logging import get_logger
from reportguard.storage.common import grant_needs_change, next_mfa_failure_state
from reportguard.storage.errors import ConstraintViolation
from reportguard.storage.models import (
    GRANT_TYPES,
    Credential,
    DeviceFingerprint,
    MfaEnrollment,
    Permission,
    PermissionGrant,
    RefreshToken,
    Role,
    Session,
    User,
)


class MemoryStore:
    """In-memory backing store for tests and single-process development.

    Every record handed out is a copy, so callers can only change state through
    the store's methods. Conditional transitions are checked and applied under
    one lock, which gives the same per-row atomicity the Postgres store gets
    from its transactions.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Credential] = {}
        self.mfa: Dict[str, MfaEnrollment] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.devices: Dict[Tuple[str, str], DeviceFingerprint] = {}
        self.permissions: Dict[str, Permission] = {}
        self.roles: Dict[str, Role] = {}
        self.grants: Dict[Tuple[str, str, str], PermissionGrant] = {}
        # RLock so helpers can nest inside a held transition
        self._data_lock = threading.RLock()

    # users / credentials
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "Viewer",
        role_id: Optional[str] = None,
        department_id: Optional[str] = None,
        is_active: bool = True,
        max_concurrent_sessions: Optional[int] = None,
    ) -> User:
        with self._data_lock:
            lowered = username.lower()
            for existing in self.users.values():
                if existing.username.lower() == lowered:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if existing.email.lower() == email.lower():
                    raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                role_id=role_id,
                department_id=department_id,
                is_active=is_active,
                max_concurrent_sessions=max_concurrent_sessions,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        lowered = username.lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username.lower() == lowered), None
            )
            return replace(user) if user else None

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            return True

    def set_user_role(self, user_id: str, *, role: str, role_id: Optional[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.role = role
            user.role_id = role_id
            return True

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        salt: Optional[str],
        password_algo: str,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            existing = self.credentials.get(user_id)
            if existing:
                existing.password_hash = password_hash
                existing.salt = salt
                existing.password_algo = password_algo
                existing.last_updated_at = at
            else:
                self.credentials[user_id] = Credential(
                    user_id=user_id,
                    password_hash=password_hash,
                    salt=salt,
                    password_algo=password_algo,
                )

    def get_password_record(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    # mfa
    def get_mfa_enrollment(self, user_id: str) -> Optional[MfaEnrollment]:
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if not enrollment:
                return None
            return replace(
                enrollment, encrypted_backup_codes=list(enrollment.encrypted_backup_codes)
            )

    def save_pending_mfa(self, enrollment: MfaEnrollment) -> bool:
        """Store a pending enrollment unless an enabled one already exists."""
        with self._data_lock:
            existing = self.mfa.get(enrollment.user_id)
            if existing and existing.is_enabled:
                return False
            self.mfa[enrollment.user_id] = replace(
                enrollment,
                encrypted_backup_codes=list(enrollment.encrypted_backup_codes),
                enabled_at=None,
            )
            return True

    def enable_mfa(self, user_id: str, enabled_at: datetime) -> bool:
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if not enrollment or enrollment.is_enabled:
                return False
            enrollment.enabled_at = enabled_at
            enrollment.failed_attempts = 0
            enrollment.locked_until = None
            return True

    def record_mfa_failure(
        self, user_id: str, *, now: datetime, threshold: int, lockout: timedelta
    ) -> Optional[MfaEnrollment]:
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if not enrollment:
                return None
            enrollment.failed_attempts, enrollment.locked_until = next_mfa_failure_state(
                enrollment.failed_attempts,
                enrollment.locked_until,
                now=now,
                threshold=threshold,
                lockout=lockout,
            )
            return replace(enrollment)

    def reset_mfa_failures(self, user_id: str) -> None:
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if enrollment:
                enrollment.failed_attempts = 0
                enrollment.locked_until = None

    def consume_backup_code(self, user_id: str, encrypted_code: str) -> Optional[int]:
        """Remove one stored code; returns the remaining count or None if absent."""
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if not enrollment or encrypted_code not in enrollment.encrypted_backup_codes:
                return None
            enrollment.encrypted_backup_codes.remove(encrypted_code)
            return len(enrollment.encrypted_backup_codes)

    def replace_backup_codes(self, user_id: str, encrypted_codes: List[str]) -> bool:
        with self._data_lock:
            enrollment = self.mfa.get(user_id)
            if not enrollment:
                return False
            enrollment.encrypted_backup_codes = list(encrypted_codes)
            return True

    def delete_mfa_enrollment(self, user_id: str) -> bool:
        with self._data_lock:
            return self.mfa.pop(user_id, None) is not None

    # refresh tokens
    def add_refresh_token(self, record: RefreshToken) -> None:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[record.token] = replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(
        self,
        old_token: str,
        new_record: RefreshToken,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool:
        """Revoke ``old_token`` and insert ``new_record`` as one unit.

        Returns False without changing anything when the old token is no longer
        active, so two concurrent rotations can never both succeed.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_token)
            if old is None or not old.is_active(revoked_at):
                return False
            if new_record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            old.revoked = True
            old.revoked_at = revoked_at
            old.revoked_by_ip = revoked_by_ip
            old.reason_revoked = reason
            old.replaced_by_token = new_record.token
            self.refresh_tokens[new_record.token] = replace(new_record)
            return True

    def revoke_refresh_token(
        self,
        token: str,
        *,
        revoked_at: datetime,
        revoked_by_ip: Optional[str],
        reason: str,
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = revoked_at
            record.revoked_by_ip = revoked_by_ip
            record.reason_revoked = reason
            return True

    def list_refresh_tokens(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[RefreshToken]:
        with self._data_lock:
            results = [
                replace(r)
                for r in self.refresh_tokens.values()
                if (user_id is None or r.user_id == user_id)
                and (session_id is None or r.session_id == session_id)
                and (include_revoked or not r.revoked)
            ]
        return sorted(results, key=lambda r: r.issued_at)

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [t for t, r in self.refresh_tokens.items() if r.expires_at < expired_before]
            for token in stale:
                del self.refresh_tokens[token]
            return len(stale)

    # sessions
    def add_session(self, session: Session) -> None:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", {"field": "id"})
            self.sessions[session.id] = replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def list_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id
                and (not active_only or (s.is_active and not s.is_revoked))
            ]

    def list_expired_active_sessions(self, now: datetime, limit: int = 500) -> List[Session]:
        with self._data_lock:
            expired = [
                replace(s)
                for s in self.sessions.values()
                if s.is_active and not s.is_revoked and s.expires_at <= now
            ]
        return sorted(expired, key=lambda s: s.expires_at)[:limit]

    def list_suspicious_sessions(self) -> List[Session]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.sessions.values()
                if s.is_suspicious and s.is_active and not s.is_revoked
            ]

    def revoke_session(self, session_id: str, *, reason: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.is_revoked or not session.is_active:
                return False
            session.is_active = False
            session.is_revoked = True
            session.revoked_at = revoked_at
            session.revocation_reason = reason
            return True

    def touch_session(
        self,
        session_id: str,
        *,
        last_accessed_at: datetime,
        expires_at: datetime,
        is_suspicious: bool,
        suspicious_reason: Optional[str],
    ) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.is_revoked or not session.is_active:
                return False
            session.last_accessed_at = last_accessed_at
            session.expires_at = expires_at
            session.is_suspicious = is_suspicious
            session.suspicious_reason = suspicious_reason
            return True

    def set_session_mfa_verified(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.is_revoked:
                return False
            session.last_mfa_verification = at
            return True

    # devices
    def get_device(self, user_id: str, fingerprint: str) -> Optional[DeviceFingerprint]:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            return replace(device) if device else None

    def touch_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        seen_at: datetime,
        device_name: Optional[str] = None,
        device_type: str = "Unknown",
    ) -> DeviceFingerprint:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            if device is None:
                device = DeviceFingerprint(
                    fingerprint=fingerprint,
                    user_id=user_id,
                    first_seen=seen_at,
                    last_seen=seen_at,
                    device_name=device_name,
                    device_type=device_type,
                )
                self.devices[(user_id, fingerprint)] = device
            else:
                device.last_seen = seen_at
            return replace(device)

    def set_device_flags(
        self,
        user_id: str,
        fingerprint: str,
        *,
        is_trusted: Optional[bool] = None,
        is_blocked: Optional[bool] = None,
        blocked_reason: Optional[str] = None,
    ) -> Optional[DeviceFingerprint]:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            if device is None:
                return None
            if is_trusted is not None:
                device.is_trusted = is_trusted
            if is_blocked is not None:
                device.is_blocked = is_blocked
                device.blocked_reason = blocked_reason if is_blocked else None
            return replace(device)

    def list_devices(self, user_id: str) -> List[DeviceFingerprint]:
        with self._data_lock:
            devices = [replace(d) for d in self.devices.values() if d.user_id == user_id]
        return sorted(devices, key=lambda d: d.last_seen, reverse=True)

    # permissions / roles
    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            if name in self.permissions:
                raise ConstraintViolation("permission already exists", {"field": "name"})
            permission = Permission(
                name=name, resource=resource, action=action, description=description
            )
            self.permissions[name] = permission
            return replace(permission)

    def get_permission(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            permission = self.permissions.get(name)
            return replace(permission) if permission else None

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(r.name.lower() == name.lower() for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(name=name, description=description)
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        lowered = name.lower()
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name.lower() == lowered), None)
            return replace(role) if role else None

    def get_grant(self, kind: str, principal_id: str, permission: str) -> Optional[PermissionGrant]:
        with self._data_lock:
            grant = self.grants.get((kind, principal_id, permission))
            return replace(grant) if grant else None

    def list_grants(self, kind: str, principal_id: str) -> List[PermissionGrant]:
        with self._data_lock:
            return [
                replace(g)
                for (k, pid, _), g in self.grants.items()
                if k == kind and pid == principal_id
            ]

    def upsert_grant(
        self,
        kind: str,
        principal_id: str,
        permission: str,
        *,
        is_granted: bool,
        at: datetime,
        actor: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> bool:
        """Flip a grant to the requested state; returns False when nothing changed."""
        grant_cls = GRANT_TYPES[kind]
        key = (kind, principal_id, permission)
        with self._data_lock:
            if permission not in self.permissions:
                raise ConstraintViolation("unknown permission", {"permission": permission})
            grant = self.grants.get(key)
            if not grant_needs_change(grant, is_granted=is_granted, expires_at=expires_at):
                return False
            if grant is None:
                self.grants[key] = grant_cls(
                    principal_id=principal_id,
                    permission=permission,
                    is_granted=True,
                    granted_at=at,
                    granted_by=actor,
                    expires_at=expires_at,
                )
            elif is_granted:
                grant.is_granted = True
                grant.granted_at = at
                grant.granted_by = actor
                grant.expires_at = expires_at
                grant.revoked_at = None
                grant.revoked_by = None
            else:
                grant.is_granted = False
                grant.revoked_at = at
                grant.revoked_by = actor
            return True

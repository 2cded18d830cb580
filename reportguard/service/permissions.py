from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Set

from reportguard.logging import get_logger
from reportguard.service.audit import SecurityAuditor, Severity
from reportguard.service.clock import Clock, SystemClock
from reportguard.service.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from reportguard.storage.errors import ConstraintViolation
from reportguard.storage.models import Permission, PermissionGrant, Role, User

logger = get_logger(__name__)

DEFAULT_ROLE = "Viewer"
PRINCIPAL_KINDS = ("user", "role", "department")


class PermissionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_user_role(self, user_id: str, *, role: str, role_id: Optional[str]) -> bool: ...

    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission: ...

    def get_permission(self, name: str) -> Optional[Permission]: ...

    def create_role(self, name: str, description: Optional[str] = None) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_grants(self, kind: str, principal_id: str) -> List[PermissionGrant]: ...

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
    ) -> bool: ...


class PermissionResolver:
    """Union-of-grants authorization across four sources.

    1. direct user grants
    2. grants on the user's role (``role_id``)
    3. grants on the legacy role name, only for users without a ``role_id``
    4. grants on the requested department, or the user's own

    Nothing subtracts: a revoked grant is stored with ``is_granted=False`` and
    simply stops contributing.
    """

    def __init__(
        self,
        store: PermissionStore,
        *,
        auditor: Optional[SecurityAuditor] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.auditor = auditor or SecurityAuditor()
        self.clock = clock or SystemClock()
        self.logger = logger

    def _role_principal(self, user: User) -> Optional[str]:
        if user.role_id:
            return user.role_id
        if not user.role:
            return None
        legacy = self.store.get_role_by_name(user.role)
        return legacy.id if legacy else None

    def _grant_sources(self, user: User, department_id: Optional[str]) -> Iterable[List[PermissionGrant]]:
        # lazily, so has_permission can stop at the first matching source
        yield self.store.list_grants("user", user.id)
        role_principal = self._role_principal(user)
        if role_principal:
            yield self.store.list_grants("role", role_principal)
        department = department_id or user.department_id
        if department:
            yield self.store.list_grants("department", department)

    def has_permission(
        self, user_id: str, permission: str, department_id: Optional[str] = None
    ) -> bool:
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            return False
        now = self.clock.now()
        for grants in self._grant_sources(user, department_id):
            if any(g.permission == permission and g.is_effective(now) for g in grants):
                return True
        return False

    def list_permissions(self, user_id: str, department_id: Optional[str] = None) -> Set[str]:
        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            return set()
        now = self.clock.now()
        names: Set[str] = set()
        for grants in self._grant_sources(user, department_id):
            names.update(g.permission for g in grants if g.is_effective(now))
        return names

    async def check(
        self,
        user_id: str,
        permission: str,
        department_id: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
    ) -> None:
        """Raise ``PermissionDeniedError`` (and audit it) unless the user holds ``permission``."""
        if self.has_permission(user_id, permission, department_id):
            return
        await self.auditor.record(
            "PERMISSION_DENIED",
            "Permission",
            user_id=user_id,
            success=False,
            failure_reason="Missing permission",
            details={"permission": permission, "department_id": department_id},
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )
        raise PermissionDeniedError("You do not have permission to perform this action")

    # catalog
    def create_permission(
        self, name: str, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        if not name or not resource or not action:
            raise ValidationError("permission name, resource and action are required")
        try:
            return self.store.create_permission(name, resource, action, description)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        if not name:
            raise ValidationError("role name is required")
        try:
            return self.store.create_role(name, description)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    async def assign_role(
        self,
        user_id: str,
        role_name: str,
        *,
        assigned_by: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Role:
        """Move a user onto the role-ID model; legacy grants stop applying to them."""
        role = self.store.get_role_by_name(role_name)
        if role is None or not role.is_active:
            raise NotFoundError("role not found")
        if not self.store.set_user_role(user_id, role=role.name, role_id=role.id):
            raise NotFoundError("user not found")
        await self.auditor.record(
            "ROLE_ASSIGNED",
            "Role",
            user_id=user_id,
            details={"role": role.name, "assigned_by": assigned_by},
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )
        return role

    async def remove_role(
        self,
        user_id: str,
        *,
        removed_by: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        default = self.store.get_role_by_name(DEFAULT_ROLE)
        if not self.store.set_user_role(
            user_id, role=DEFAULT_ROLE, role_id=default.id if default else None
        ):
            raise NotFoundError("user not found")
        await self.auditor.record(
            "ROLE_REMOVED",
            "Role",
            user_id=user_id,
            details={"reset_to": DEFAULT_ROLE, "removed_by": removed_by},
            ip_address=ip_address,
            severity=Severity.MEDIUM,
        )

    # grants
    def _principal_id(self, kind: str, principal: str) -> str:
        if kind not in PRINCIPAL_KINDS:
            raise ValidationError(f"unknown principal kind: {kind}")
        if kind == "role":
            role = self.store.get_role_by_name(principal) or self.store.get_role(principal)
            if role is None:
                raise NotFoundError("role not found")
            return role.id
        if kind == "user" and self.store.get_user(principal) is None:
            raise NotFoundError("user not found")
        return principal

    async def _set_grant(
        self,
        kind: str,
        principal: str,
        permission: str,
        *,
        is_granted: bool,
        actor: Optional[str],
        expires_at: Optional[datetime],
        ip_address: Optional[str],
    ) -> bool:
        principal_id = self._principal_id(kind, principal)
        if self.store.get_permission(permission) is None:
            raise NotFoundError("permission not found")
        now = self.clock.now()
        if is_granted and expires_at is not None and expires_at <= now:
            raise ValidationError("grant expiry must be in the future")
        changed = self.store.upsert_grant(
            kind,
            principal_id,
            permission,
            is_granted=is_granted,
            at=now,
            actor=actor,
            expires_at=expires_at if is_granted else None,
        )
        if changed:
            await self.auditor.record(
                "PERMISSION_GRANTED" if is_granted else "PERMISSION_REVOKED",
                "Permission",
                user_id=principal_id if kind == "user" else None,
                details={
                    "principal_kind": kind,
                    "principal_id": principal_id,
                    "permission": permission,
                    "actor": actor,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
                ip_address=ip_address,
                severity=Severity.MEDIUM,
            )
        return changed

    async def grant(
        self,
        kind: str,
        principal: str,
        permission: str,
        *,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Grant ``permission`` to a user id, role name/id or department id.

        Returns False when the grant was already in place with the same expiry.
        """
        return await self._set_grant(
            kind,
            principal,
            permission,
            is_granted=True,
            actor=granted_by,
            expires_at=expires_at,
            ip_address=ip_address,
        )

    async def revoke(
        self,
        kind: str,
        principal: str,
        permission: str,
        *,
        revoked_by: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        return await self._set_grant(
            kind,
            principal,
            permission,
            is_granted=False,
            actor=revoked_by,
            expires_at=None,
            ip_address=ip_address,
        )

    async def grant_user_permission(self, user_id: str, permission: str, **kwargs) -> bool:
        return await self.grant("user", user_id, permission, **kwargs)

    async def revoke_user_permission(self, user_id: str, permission: str, **kwargs) -> bool:
        return await self.revoke("user", user_id, permission, **kwargs)

    async def grant_role_permission(self, role: str, permission: str, **kwargs) -> bool:
        return await self.grant("role", role, permission, **kwargs)

    async def revoke_role_permission(self, role: str, permission: str, **kwargs) -> bool:
        return await self.revoke("role", role, permission, **kwargs)

    async def grant_department_permission(self, department_id: str, permission: str, **kwargs) -> bool:
        return await self.grant("department", department_id, permission, **kwargs)

    async def revoke_department_permission(self, department_id: str, permission: str, **kwargs) -> bool:
        return await self.revoke("department", department_id, permission, **kwargs)

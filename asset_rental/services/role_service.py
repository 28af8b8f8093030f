"""Role catalog and the role-assignment write path.

Every change to who holds which role (or what a role grants) goes through
``RoleAssignmentService`` so the permission cache hears about it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from asset_rental.models.rbac_models import Permission, Role, RolePermission, UserRoleAssignment
from asset_rental.services.errors import NotFound, ValidationError
from asset_rental.services.permission_service import AssignmentEvents


RBAC_LOGGER = logging.getLogger("asset_rental.rbac")

PERMISSION_CODES = [
    "rental:read",
    "rental:create",
    "rental:approve",
    "rental:reject",
    "rental:dispatch",
    "rental:return",
    "rental:close",
    "timesheet:read",
    "timesheet:create",
    "timesheet:update",
    "timesheet:submit",
    "timesheet:verify",
    "timesheet:client_approve",
    "client:manage",
    "rbac:read",
    "rbac:manage",
]

DEFAULT_ROLES = [
    {"code": "super_admin", "name": "Super Admin", "level": 1, "permissions": list(PERMISSION_CODES)},
    {"code": "admin", "name": "Admin", "level": 2, "permissions": list(PERMISSION_CODES)},
    {
        "code": "manager",
        "name": "Manager",
        "level": 3,
        "permissions": [
            "rental:read",
            "rental:create",
            "rental:approve",
            "rental:reject",
            "rental:dispatch",
            "rental:return",
            "rental:close",
            "timesheet:read",
            "timesheet:verify",
            "client:manage",
            "rbac:read",
        ],
    },
    {
        "code": "supervisor",
        "name": "Supervisor",
        "level": 4,
        "permissions": [
            "rental:read",
            "rental:dispatch",
            "rental:return",
            "timesheet:read",
            "timesheet:verify",
        ],
    },
    {
        "code": "checker",
        "name": "Field Checker",
        "level": 5,
        "permissions": [
            "rental:read",
            "timesheet:read",
            "timesheet:create",
            "timesheet:update",
            "timesheet:submit",
        ],
    },
    {
        "code": "client_liaison",
        "name": "Client Liaison",
        "level": 5,
        "permissions": ["rental:read", "rental:create", "timesheet:read", "timesheet:client_approve"],
    },
    {"code": "viewer", "name": "Viewer", "level": 6, "permissions": ["rental:read", "timesheet:read"]},
]


def _split_code(code: str) -> tuple[str, str]:
    resource, sep, action = code.partition(":")
    if not sep or not resource or not action:
        raise ValidationError("permission_code", f"'{code}' is not in resource:action form")
    return resource, action


def get_role_by_code(db: Session, code: str) -> Role:
    role = db.execute(select(Role).where(Role.Code == code)).scalars().first()
    if not role:
        raise NotFound("Role", code)
    return role


def ensure_permission(db: Session, code: str) -> Permission:
    permission = db.execute(select(Permission).where(Permission.Code == code)).scalars().first()
    if permission:
        return permission
    resource, action = _split_code(code)
    permission = Permission(Code=code, Name=code, Resource=resource, Action=action, CreatedAt=datetime.now())
    db.add(permission)
    db.flush()
    return permission


def seed_default_rbac(db: Session, events: Optional[AssignmentEvents] = None) -> dict[str, Role]:
    """Create the built-in roles and their grants; existing rows are left alone."""
    permissions = {code: ensure_permission(db, code) for code in PERMISSION_CODES}
    roles: dict[str, Role] = {}
    for role_data in DEFAULT_ROLES:
        role = db.execute(select(Role).where(Role.Code == role_data["code"])).scalars().first()
        if not role:
            role = Role(
                Code=role_data["code"],
                Name=role_data["name"],
                RoleLevel=role_data["level"],
                IsSystem=True,
                CreatedAt=datetime.now(),
                UpdatedAt=datetime.now(),
            )
            db.add(role)
            db.flush()
        granted = {link.PermissionID for link in role.RolePermissions}
        for code in role_data["permissions"]:
            permission = permissions[code]
            if permission.PermissionID not in granted:
                role.RolePermissions.append(RolePermission(PermissionID=permission.PermissionID, CreatedAt=datetime.now()))
        roles[role.Code] = role
    db.commit()
    if events is not None:
        events.publish(None)
    return roles


class RoleAssignmentService:
    def __init__(self, db: Session, events: AssignmentEvents, now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.events = events
        self._now = now

    def list_assignments(self, user_id: int) -> list[UserRoleAssignment]:
        return self.db.execute(
            select(UserRoleAssignment)
            .where(UserRoleAssignment.UserID == user_id)
            .order_by(UserRoleAssignment.AssignmentID)
        ).scalars().all()

    def list_assignments_in_scope(self, user_id: int, organization_id: Optional[int]) -> list[UserRoleAssignment]:
        """Global assignments plus those of ``organization_id``; other organizations stay hidden."""
        scope = UserRoleAssignment.OrganizationID.is_(None)
        if organization_id is not None:
            scope = or_(scope, UserRoleAssignment.OrganizationID == organization_id)
        return self.db.execute(
            select(UserRoleAssignment)
            .where(UserRoleAssignment.UserID == user_id)
            .where(scope)
            .order_by(UserRoleAssignment.AssignmentID)
        ).scalars().all()

    def find_assignment(self, assignment_id: int) -> Optional[UserRoleAssignment]:
        return self.db.get(UserRoleAssignment, assignment_id)

    def assign_role(
        self,
        user_id: int,
        role_code: str,
        *,
        organization_id: Optional[int] = None,
        granted_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        if expires_at is not None and expires_at <= self._now():
            raise ValidationError("expires_at", "must be in the future")
        role = get_role_by_code(self.db, role_code)
        assignment = UserRoleAssignment(
            UserID=user_id,
            RoleID=role.RoleID,
            OrganizationID=organization_id,
            GrantedBy=granted_by,
            GrantedAt=self._now(),
            ExpiresAt=expires_at,
        )
        try:
            self.db.add(assignment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.events.publish(user_id)
        RBAC_LOGGER.info("Role assigned user_id=%s role=%s org=%s by=%s", user_id, role_code, organization_id, granted_by)
        return assignment

    def update_assignment_expiry(self, assignment_id: int, expires_at: Optional[datetime]) -> UserRoleAssignment:
        assignment = self.db.get(UserRoleAssignment, assignment_id)
        if not assignment:
            raise NotFound("UserRoleAssignment", assignment_id)
        try:
            assignment.ExpiresAt = expires_at
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.events.publish(assignment.UserID)
        RBAC_LOGGER.info("Role assignment updated assignment_id=%s expires_at=%s", assignment_id, expires_at)
        return assignment

    def revoke_role(self, user_id: int, role_code: str, organization_id: Optional[int] = None) -> int:
        role = get_role_by_code(self.db, role_code)
        stmt = (
            select(UserRoleAssignment)
            .where(UserRoleAssignment.UserID == user_id)
            .where(UserRoleAssignment.RoleID == role.RoleID)
        )
        if organization_id is None:
            stmt = stmt.where(UserRoleAssignment.OrganizationID.is_(None))
        else:
            stmt = stmt.where(UserRoleAssignment.OrganizationID == organization_id)
        assignments = self.db.execute(stmt).scalars().all()
        try:
            for assignment in assignments:
                self.db.delete(assignment)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.events.publish(user_id)
        RBAC_LOGGER.info("Role revoked user_id=%s role=%s org=%s removed=%s", user_id, role_code, organization_id, len(assignments))
        return len(assignments)

    def grant_permission(self, role_code: str, permission_code: str) -> bool:
        role = get_role_by_code(self.db, role_code)
        try:
            permission = ensure_permission(self.db, permission_code)
            if any(link.PermissionID == permission.PermissionID for link in role.RolePermissions):
                self.db.commit()
                return False
            role.RolePermissions.append(RolePermission(PermissionID=permission.PermissionID, CreatedAt=datetime.now()))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.events.publish(None)
        RBAC_LOGGER.info("Permission granted role=%s code=%s", role_code, permission_code)
        return True

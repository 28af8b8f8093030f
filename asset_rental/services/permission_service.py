"""Permission resolution for principals, optionally scoped to an organization.

The effective permission set is the union of the codes granted by every
active role assignment that is either global (no organization) or scoped to
the requested organization. The privilege level is the lowest ``RoleLevel``
among those assignments; lower means more privileged.

Resolved sets are cached per ``(user_id, organization_id)`` for a short TTL.
``RoleAssignmentService`` publishes on ``AssignmentEvents`` after every
assignment change and the cache drops the affected entries synchronously.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from asset_rental.models.rbac_models import Permission, Role, RolePermission, UserRoleAssignment
from asset_rental.services.errors import PermissionDenied


RBAC_LOGGER = logging.getLogger("asset_rental.rbac")

UNPRIVILEGED_LEVEL = 1000
MANAGER_LEVEL = 3
SUPERVISOR_LEVEL = 4
DEFAULT_CACHE_TTL_SECONDS = 30.0

# Actions that need a minimum privilege on top of the permission code.
LEVEL_THRESHOLDS = {
    "rental:approve": MANAGER_LEVEL,
    "rental:reject": MANAGER_LEVEL,
    "rental:close": MANAGER_LEVEL,
    "timesheet:verify": SUPERVISOR_LEVEL,
}


@dataclass(frozen=True)
class ResolvedAccess:
    permissions: frozenset
    privilege_level: int

    def allows(self, code: str) -> bool:
        return code in self.permissions


class AssignmentEvents:
    """Invalidation channel from the role-assignment write path to its readers.

    ``publish(user_id)`` invalidates one principal; ``publish(None)``
    invalidates everyone (a role's permission set changed).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[Optional[int]], None]] = []

    def subscribe(self, handler: Callable[[Optional[int]], None]) -> None:
        with self._lock:
            self._subscribers.append(handler)

    def publish(self, user_id: Optional[int]) -> None:
        with self._lock:
            handlers = list(self._subscribers)
        for handler in handlers:
            handler(user_id)


class PermissionCache:
    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[int, Optional[int]], tuple[float, ResolvedAccess]] = {}
        self._generations: dict[int, int] = {}
        self._global_generation = 0

    def attach(self, events: AssignmentEvents) -> "PermissionCache":
        events.subscribe(self.handle_event)
        return self

    def handle_event(self, user_id: Optional[int]) -> None:
        if user_id is None:
            self.clear()
        else:
            self.invalidate_user(user_id)

    def generation(self, user_id: int) -> tuple[int, int]:
        with self._lock:
            return self._global_generation, self._generations.get(user_id, 0)

    def get(self, user_id: int, organization_id: Optional[int]) -> Optional[ResolvedAccess]:
        key = (user_id, organization_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, access = entry
            if now >= expires_at:
                self._entries.pop(key, None)
                return None
            return access

    def put(self, user_id: int, organization_id: Optional[int], access: ResolvedAccess, generation: tuple[int, int]) -> bool:
        """Store unless the user was invalidated after ``generation`` was taken."""
        with self._lock:
            current = (self._global_generation, self._generations.get(user_id, 0))
            if current != generation:
                return False
            self._entries[(user_id, organization_id)] = (self._clock() + self.ttl_seconds, access)
            return True

    def invalidate_user(self, user_id: int) -> None:
        with self._lock:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
            for key in [key for key in self._entries if key[0] == user_id]:
                self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._global_generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def is_assignment_active(assignment: UserRoleAssignment, now: datetime) -> bool:
    return assignment.ExpiresAt is None or assignment.ExpiresAt > now


class PermissionResolver:
    def __init__(self, db: Session, cache: Optional[PermissionCache] = None, now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.cache = cache
        self._now = now

    def resolve(self, user_id: int, organization_id: Optional[int] = None) -> frozenset:
        return self.access_for(user_id, organization_id).permissions

    def max_privilege_level(self, user_id: int, organization_id: Optional[int] = None) -> int:
        return self.access_for(user_id, organization_id).privilege_level

    def access_for(self, user_id: int, organization_id: Optional[int] = None) -> ResolvedAccess:
        if self.cache is None:
            return self._load(user_id, organization_id)
        cached = self.cache.get(user_id, organization_id)
        if cached is not None:
            return cached
        generation = self.cache.generation(user_id)
        access = self._load(user_id, organization_id)
        self.cache.put(user_id, organization_id, access, generation)
        return access

    def _load(self, user_id: int, organization_id: Optional[int]) -> ResolvedAccess:
        now = self._now()
        rows = self.db.execute(
            select(UserRoleAssignment, Role.RoleLevel)
            .join(Role, Role.RoleID == UserRoleAssignment.RoleID)
            .where(UserRoleAssignment.UserID == user_id)
        ).all()

        role_ids: set[int] = set()
        level = UNPRIVILEGED_LEVEL
        for assignment, role_level in rows:
            if not is_assignment_active(assignment, now):
                continue
            if assignment.OrganizationID is not None and assignment.OrganizationID != organization_id:
                continue
            role_ids.add(assignment.RoleID)
            if role_level is not None and role_level < level:
                level = role_level

        if not role_ids:
            return ResolvedAccess(permissions=frozenset(), privilege_level=UNPRIVILEGED_LEVEL)

        codes = self.db.execute(
            select(Permission.Code)
            .join(RolePermission, RolePermission.PermissionID == Permission.PermissionID)
            .where(RolePermission.RoleID.in_(role_ids))
        ).scalars().all()
        return ResolvedAccess(permissions=frozenset(codes), privilege_level=level)


class Authorizer:
    """Gate every mutating call: permission code first, then the level threshold."""

    def __init__(self, resolver: PermissionResolver, thresholds: Optional[dict[str, int]] = None):
        self.resolver = resolver
        self.thresholds = LEVEL_THRESHOLDS if thresholds is None else thresholds

    def require(self, user_id: int, code: str, organization_id: Optional[int] = None) -> ResolvedAccess:
        access = self.resolver.access_for(user_id, organization_id)
        if not access.allows(code):
            RBAC_LOGGER.warning("Permission denied user_id=%s code=%s org=%s", user_id, code, organization_id)
            raise PermissionDenied(code)
        threshold = self.thresholds.get(code)
        if threshold is not None and access.privilege_level > threshold:
            RBAC_LOGGER.warning(
                "Permission denied user_id=%s code=%s org=%s level=%s threshold=%s",
                user_id,
                code,
                organization_id,
                access.privilege_level,
                threshold,
            )
            raise PermissionDenied(f"{code} (role level <= {threshold})")
        return access

"""
auth/permissions.py -- Effective-permission resolution and role grant administration.

PermissionService answers two request-time questions for the authorization
chain:
  get_user_permissions(user_id)          -> every (resource, action) the user holds
  has_permission(user_id, res, action)   -> membership test against the same truth

Both resolve the union of the user's primary role and all secondary roles,
deduplicated by permission id and ordered by (resource, action). An unknown
user or role yields an empty list (or False), never an error: absence of
permissions and absence of the grantee look the same here.

The remaining methods are role-administration operations and are not on the
request hot path.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.models import Permission
from auth.role_store import RoleStore

logger = logging.getLogger("crewgate.auth")


class UnknownPermissionError(ValueError):
    def __init__(self, invalid_ids: list[int]) -> None:
        super().__init__(f"Unknown permission ids: {invalid_ids!r}")
        self.invalid_ids = invalid_ids


def _dedupe(perms: list[Permission]) -> list[Permission]:
    seen: set[int | None] = set()
    result: list[Permission] = []
    for p in sorted(perms, key=lambda p: (p.resource, p.action)):
        if p.id in seen:
            continue
        seen.add(p.id)
        result.append(p)
    return result


class PermissionService:
    def __init__(self, roles: RoleStore) -> None:
        self.roles = roles

    def get_user_permissions(self, user_id: int) -> list[Permission]:
        return _dedupe(self.roles.user_permissions(user_id))

    def has_permission(self, user_id: int, resource: str, action: str) -> bool:
        return self.roles.user_has_permission(user_id, resource, action)

    def get_role_permissions(self, role_id: int) -> list[Permission]:
        return _dedupe(self.roles.get_role_permissions(role_id))

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------

    def grant(self, role_id: int, permission_id: int) -> bool:
        """Add a permission to a role. Granting twice is a no-op that returns False."""
        added = self.roles.add_role_permission(role_id, permission_id)
        if added:
            logger.info("Granted permission_id=%s to role_id=%s", permission_id, role_id)
        return added

    def revoke(self, role_id: int, permission_id: int) -> bool:
        removed = self.roles.remove_role_permission(role_id, permission_id)
        if removed:
            logger.info("Revoked permission_id=%s from role_id=%s", permission_id, role_id)
        return removed

    def replace_role_permissions(self, role_id: int, permission_ids: list[int]) -> list[Permission]:
        """Atomically replace the role's grant set and return the new set.

        Raises UnknownPermissionError (nothing written) if any id does not exist.
        """
        wanted = list(dict.fromkeys(permission_ids))
        existing = self.roles.existing_permission_ids(wanted)
        invalid = [pid for pid in wanted if pid not in existing]
        if invalid:
            raise UnknownPermissionError(invalid)
        self.roles.replace_role_permissions(role_id, wanted)
        logger.info("Replaced permissions of role_id=%s (%d grants)", role_id, len(wanted))
        return self.get_role_permissions(role_id)

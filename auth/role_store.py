"""
auth/role_store.py -- Persistence for roles, permissions and their assignments.

This is the source of truth the Permission Service consults. A user's
effective permission set is every permission granted to their primary role
(users.primary_role_id) or to any of their secondary roles (user_roles).

Both user-facing queries (user_permissions and user_has_permission) are
built from the same _user_role_ids() predicate, so the EXISTS check can never
disagree with membership in the full set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from auth.models import Permission, Role
from auth.schema import Database, now_iso, permissions, role_permissions, roles, user_roles, users


class RoleInUseError(Exception):
    """Raised when deleting a role that is still some user's primary role."""

    def __init__(self, role_id: int, user_count: int) -> None:
        super().__init__(f"Role {role_id} is the primary role of {user_count} user(s)")
        self.role_id = role_id
        self.user_count = user_count


def _user_role_ids(user_id: int):
    """Predicate matching role_permissions rows for any role the user holds."""
    primary = select(users.c.primary_role_id).where(users.c.id == user_id)
    secondary = select(user_roles.c.role_id).where(user_roles.c.user_id == user_id)
    return or_(role_permissions.c.role_id.in_(primary), role_permissions.c.role_id.in_(secondary))


class RoleStore:
    """Repository for Role, Permission and the role_permissions junction."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID. Raises IntegrityError on a duplicate name."""
        now = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(
                roles.insert().values(name=role.name, description=role.description, created_at=now, updated_at=now)
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role(self, role_id: int) -> Role | None:
        with self.db.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.db.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.db.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, role_id: int, **fields) -> bool:
        """Rename or re-describe a role. Accepted fields: name, description."""
        unknown = set(fields) - {"name", "description"}
        if unknown:
            raise ValueError(f"Unknown role fields: {sorted(unknown)!r}")
        fields["updated_at"] = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(roles.update().where(roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        """Delete a role and its assignments. Returns False if the role did not exist.

        Raises RoleInUseError when any user still has it as primary role. The
        check and the deletes share one transaction so a user cannot be moved
        onto the role between them.
        """
        with self.db.begin() as conn:
            in_use = conn.execute(
                select(func.count()).select_from(users).where(users.c.primary_role_id == role_id)
            ).scalar()
            if in_use:
                raise RoleInUseError(role_id, in_use)
            conn.execute(role_permissions.delete().where(role_permissions.c.role_id == role_id))
            conn.execute(user_roles.delete().where(user_roles.c.role_id == role_id))
            result = conn.execute(roles.delete().where(roles.c.id == role_id))
        return result.rowcount > 0

    def count_role_users(self, role_id: int) -> int:
        """Distinct users holding the role as primary or secondary."""
        holders = (
            select(users.c.id.label("user_id"))
            .where(users.c.primary_role_id == role_id)
            .union(select(user_roles.c.user_id).where(user_roles.c.role_id == role_id))
            .subquery()
        )
        with self.db.connect() as conn:
            result = conn.execute(select(func.count()).select_from(holders)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        """Insert a permission. Raises IntegrityError if (resource, action) or name already exists."""
        now = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(
                permissions.insert().values(
                    name=permission.name or permission.token,
                    description=permission.description,
                    resource=permission.resource,
                    action=permission.action,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_permission(self, permission_id: int) -> Permission | None:
        with self.db.connect() as conn:
            row = conn.execute(permissions.select().where(permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_pair(self, resource: str, action: str) -> Permission | None:
        with self.db.connect() as conn:
            row = conn.execute(
                permissions.select().where((permissions.c.resource == resource) & (permissions.c.action == action))
            ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self) -> list[Permission]:
        with self.db.connect() as conn:
            rows = conn.execute(permissions.select().order_by(permissions.c.resource, permissions.c.action)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def existing_permission_ids(self, permission_ids: list[int]) -> set[int]:
        if not permission_ids:
            return set()
        with self.db.connect() as conn:
            rows = conn.execute(select(permissions.c.id).where(permissions.c.id.in_(permission_ids))).fetchall()
        return {r.id for r in rows}

    def delete_permission(self, permission_id: int) -> bool:
        """Delete a permission everywhere it is assigned, in one transaction."""
        with self.db.begin() as conn:
            conn.execute(role_permissions.delete().where(role_permissions.c.permission_id == permission_id))
            result = conn.execute(permissions.delete().where(permissions.c.id == permission_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role <-> Permission
    # ------------------------------------------------------------------

    def get_role_permissions(self, role_id: int) -> list[Permission]:
        with self.db.connect() as conn:
            rows = conn.execute(
                select(permissions)
                .join(role_permissions, permissions.c.id == role_permissions.c.permission_id)
                .where(role_permissions.c.role_id == role_id)
                .order_by(permissions.c.resource, permissions.c.action)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def add_role_permission(self, role_id: int, permission_id: int) -> bool:
        """Grant a permission to a role. Returns False if the grant already existed."""
        with self.db.connect() as conn:
            exists = conn.execute(
                select(role_permissions.c.role_id).where(
                    (role_permissions.c.role_id == role_id) & (role_permissions.c.permission_id == permission_id)
                )
            ).fetchone()
        if exists is not None:
            return False
        try:
            with self.db.begin() as conn:
                conn.execute(
                    role_permissions.insert().values(role_id=role_id, permission_id=permission_id, created_at=now_iso())
                )
        except IntegrityError:
            # Lost a race with an identical grant; anything else is a real FK error.
            if permission_id in {p.id for p in self.get_role_permissions(role_id)}:
                return False
            raise
        return True

    def remove_role_permission(self, role_id: int, permission_id: int) -> bool:
        with self.db.connect() as conn:
            result = conn.execute(
                role_permissions.delete().where(
                    (role_permissions.c.role_id == role_id) & (role_permissions.c.permission_id == permission_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def replace_role_permissions(self, role_id: int, permission_ids: list[int]) -> None:
        """Delete the role's grant set and insert the new one as a single transaction."""
        now = now_iso()
        with self.db.begin() as conn:
            conn.execute(role_permissions.delete().where(role_permissions.c.role_id == role_id))
            for permission_id in sorted(set(permission_ids)):
                conn.execute(
                    role_permissions.insert().values(role_id=role_id, permission_id=permission_id, created_at=now)
                )

    # ------------------------------------------------------------------
    # Effective user permissions
    # ------------------------------------------------------------------

    def user_permissions(self, user_id: int) -> list[Permission]:
        """Union of primary-role and secondary-role grants, one row per permission."""
        granted = select(role_permissions.c.permission_id).where(_user_role_ids(user_id))
        with self.db.connect() as conn:
            rows = conn.execute(
                permissions.select()
                .where(permissions.c.id.in_(granted))
                .order_by(permissions.c.resource, permissions.c.action)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def user_has_permission(self, user_id: int, resource: str, action: str) -> bool:
        stmt = (
            select(permissions.c.id)
            .join(role_permissions, permissions.c.id == role_permissions.c.permission_id)
            .where(_user_role_ids(user_id))
            .where((permissions.c.resource == resource) & (permissions.c.action == action))
            .limit(1)
        )
        with self.db.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return row is not None


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        description=row.description,
        resource=row.resource,
        action=row.action,
    )

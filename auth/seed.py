"""
auth/seed.py -- Default roles and permissions, and the bootstrap administrator.

Called once from the api/main.py lifespan. Both steps are idempotent:
seed_roles() does nothing when any role exists, and bootstrap_admin() does
nothing when any user exists.

Default grants:
  <admin role>  every permission
  Manager       users:read, tasks:read/create/update, reports:read/create
  User          users:read, tasks:read/update
  Guest         tasks:read

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select

from auth.models import User
from auth.passwords import PasswordHasher, validate_strength
from auth.schema import Database, now_iso, permissions, role_permissions, roles
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("crewgate.auth")

DEFAULT_PERMISSIONS: list[tuple[str, str, str]] = [
    ("users", "read", "View user information"),
    ("users", "create", "Create new users"),
    ("users", "update", "Update user information"),
    ("users", "delete", "Delete users"),
    ("tasks", "read", "View tasks"),
    ("tasks", "create", "Create new tasks"),
    ("tasks", "update", "Update tasks"),
    ("tasks", "delete", "Delete tasks"),
    ("reports", "read", "View reports"),
    ("reports", "create", "Create reports"),
]

_ROLE_GRANTS: dict[str, list[str]] = {
    "Manager": ["users:read", "tasks:read", "tasks:create", "tasks:update", "reports:read", "reports:create"],
    "User": ["users:read", "tasks:read", "tasks:update"],
    "Guest": ["tasks:read"],
}

_ROLE_DESCRIPTIONS = {
    "Manager": "Department manager with elevated privileges",
    "User": "Standard user with basic access",
    "Guest": "Limited read-only access",
}


def seed_roles(db: Database, settings: Settings) -> bool:
    """Insert the default roles, permissions and grants in one transaction.

    Returns True if anything was written, False if roles already existed.
    """
    admin = settings.admin_role_name
    now = now_iso()
    with db.begin() as conn:
        if conn.execute(select(func.count()).select_from(roles)).scalar():
            logger.info("Roles already seeded, skipping")
            return False

        role_ids: dict[str, int] = {}
        role_rows = [(admin, "System administrator with full access"), *_ROLE_DESCRIPTIONS.items()]
        for name, description in role_rows:
            result = conn.execute(roles.insert().values(name=name, description=description, created_at=now, updated_at=now))
            role_ids[name] = result.inserted_primary_key[0]

        permission_ids: dict[str, int] = {}
        for resource, action, description in DEFAULT_PERMISSIONS:
            token = f"{resource}:{action}"
            result = conn.execute(
                permissions.insert().values(
                    name=token,
                    resource=resource,
                    action=action,
                    description=description,
                    created_at=now,
                    updated_at=now,
                )
            )
            permission_ids[token] = result.inserted_primary_key[0]

        grants = {admin: list(permission_ids), **_ROLE_GRANTS}
        for role_name, tokens in grants.items():
            conn.execute(
                role_permissions.insert(),
                [{"role_id": role_ids[role_name], "permission_id": permission_ids[t], "created_at": now} for t in tokens],
            )

    logger.info("Seeded %d roles and %d permissions", len(role_ids), len(permission_ids))
    return True


def bootstrap_admin(users: UserStore, db: Database, hasher: PasswordHasher, settings: Settings) -> int | None:
    """Create the first administrator from settings when the user table is empty.

    Returns the new user ID, or None when nothing was created. Raises
    ValueError if the configured password fails the strength policy.
    """
    email = settings.bootstrap_admin_email
    password = settings.bootstrap_admin_password
    if not email or not password or users.has_users():
        return None

    strength = validate_strength(password)
    if not strength.valid:
        raise ValueError(f"BOOTSTRAP_ADMIN_PASSWORD is too weak: {'; '.join(strength.feedback)}")

    with db.connect() as conn:
        admin_role_id = conn.execute(select(roles.c.id).where(roles.c.name == settings.admin_role_name)).scalar()
    if admin_role_id is None:
        raise ValueError(f"Role {settings.admin_role_name!r} does not exist; seed roles first")

    user_id = users.create_user(
        User(
            employee_id="ADMIN-0001",
            first_name="System",
            last_name="Administrator",
            email=email,
            primary_role_id=admin_role_id,
        ),
        password_hash=hasher.hash(password),
    )
    logger.info("Bootstrap administrator created (user_id=%s)", user_id)
    return user_id

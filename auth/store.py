"""
auth/store.py -- Persistence for users, credentials, password history and secondary roles.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user /
_row_to_credential are the mappers. Service and route code never touches SQL
directly.

Transactions:
  create_user, delete_user, replace_password and set_secondary_roles touch
  more than one table and run inside Database.begin() so a concurrent reader
  never sees a user without credentials, credentials without their history
  entry, or a half-replaced role set.

  replace_password also flips is_valid on every session of the user inside
  the same transaction: once the new hash is visible, no old session is.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from auth.models import Credential, User
from auth.schema import (
    Database,
    audit_logs,
    now_iso,
    password_history,
    roles,
    sessions,
    user_credentials,
    user_roles,
    users,
)

logger = logging.getLogger("crewgate.store")

# Columns callers may change through update_user(). Anything else raises.
_MUTABLE_USER_FIELDS = {
    "employee_id",
    "first_name",
    "last_name",
    "email",
    "organization_id",
    "department_id",
    "rank",
    "primary_role_id",
    "is_active",
}


def _user_select():
    # LEFT JOIN so a dangling primary_role_id still yields the user row;
    # the authorization chain substitutes the fallback label in that case.
    return select(users, roles.c.name.label("role_name")).select_from(
        users.outerjoin(roles, users.c.primary_role_id == roles.c.id)
    )


class UserStore:
    """Repository for User and Credential entities.

    Usage:
        store = UserStore(db)
        uid = store.create_user(User(...), password_hash=hasher.hash("secret"))
        user = store.get_by_email("ada@example.com")
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.db.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User, password_hash: str) -> int:
        """Insert a user and its credential row atomically; return the new user ID.

        Raises sqlalchemy.exc.IntegrityError on a duplicate email or
        employee_id, or an unknown primary_role_id. Nothing is written in
        that case.
        """
        now = now_iso()
        with self.db.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    employee_id=user.employee_id,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    email=user.email,
                    organization_id=user.organization_id,
                    department_id=user.department_id,
                    rank=user.rank,
                    primary_role_id=user.primary_role_id,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = result.inserted_primary_key[0]
            conn.execute(
                user_credentials.insert().values(
                    user_id=user_id,
                    password_hash=password_hash,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def get_by_id(self, user_id: int) -> User | None:
        with self.db.connect() as conn:
            row = conn.execute(_user_select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (case-sensitive). Returns None if not found."""
        with self.db.connect() as conn:
            row = conn.execute(_user_select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_employee_id(self, employee_id: str) -> User | None:
        with self.db.connect() as conn:
            row = conn.execute(_user_select().where(users.c.employee_id == employee_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by last name, then first name."""
        with self.db.connect() as conn:
            rows = conn.execute(_user_select().order_by(users.c.last_name, users.c.first_name)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns False if user_id was not found.

        is_active must be passed as bool; it is stored as 0/1. Unknown field
        names raise ValueError before any SQL runs.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        now = now_iso()
        with self.db.connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=now, updated_at=now))
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Administrative hard delete. Returns True if the user existed.

        Removes credentials, password history, secondary role assignments and
        sessions, detaches audit rows (user_id -> NULL), then the user row --
        all in one transaction. The explicit deletes mirror the schema's
        cascades so the behaviour does not depend on the backend enforcing
        foreign keys.
        """
        with self.db.begin() as conn:
            conn.execute(user_credentials.delete().where(user_credentials.c.user_id == user_id))
            conn.execute(password_history.delete().where(password_history.c.user_id == user_id))
            conn.execute(user_roles.delete().where(user_roles.c.user_id == user_id))
            conn.execute(sessions.delete().where(sessions.c.user_id == user_id))
            conn.execute(audit_logs.update().where(audit_logs.c.user_id == user_id).values(user_id=None))
            result = conn.execute(users.delete().where(users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credentials(self, user_id: int) -> Credential | None:
        with self.db.connect() as conn:
            row = conn.execute(user_credentials.select().where(user_credentials.c.user_id == user_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_password_history(self, user_id: int, limit: int) -> list[str]:
        """Return up to `limit` prior password hashes, newest first."""
        if limit <= 0:
            return []
        with self.db.connect() as conn:
            rows = conn.execute(
                select(password_history.c.password_hash)
                .where(password_history.c.user_id == user_id)
                .order_by(password_history.c.created_at.desc(), password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [r.password_hash for r in rows]

    def replace_password(self, user_id: int, new_hash: str, history_size: int) -> int:
        """Swap in a new password hash and revoke every session of the user.

        Within one transaction:
          1. push the outgoing hash onto password_history,
          2. trim history to the newest `history_size` entries,
          3. overwrite the credential hash and clear any reset token,
          4. mark all of the user's sessions invalid.

        Returns the number of sessions invalidated. Raises LookupError if
        the user has no credential row.
        """
        now = now_iso()
        with self.db.begin() as conn:
            current = conn.execute(
                select(user_credentials.c.password_hash).where(user_credentials.c.user_id == user_id)
            ).scalar()
            if current is None:
                raise LookupError(f"No credentials for user {user_id}")

            conn.execute(password_history.insert().values(user_id=user_id, password_hash=current, created_at=now))
            kept = conn.execute(
                select(password_history.c.id)
                .where(password_history.c.user_id == user_id)
                .order_by(password_history.c.created_at.desc(), password_history.c.id.desc())
            ).fetchall()
            stale = [r.id for r in kept[history_size:]]
            if stale:
                conn.execute(password_history.delete().where(password_history.c.id.in_(stale)))

            conn.execute(
                user_credentials.update()
                .where(user_credentials.c.user_id == user_id)
                .values(password_hash=new_hash, reset_token_hash=None, reset_expires_at=None, updated_at=now)
            )
            result = conn.execute(
                sessions.update()
                .where((sessions.c.user_id == user_id) & (sessions.c.is_valid == 1))
                .values(is_valid=0, updated_at=now)
            )
        return result.rowcount

    def save_reset_token(self, user_id: int, token_hash: str, expires_at: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                user_credentials.update()
                .where(user_credentials.c.user_id == user_id)
                .values(reset_token_hash=token_hash, reset_expires_at=expires_at, updated_at=now_iso())
            )
            conn.commit()

    def get_by_reset_token(self, token_hash: str) -> tuple[User, Credential] | None:
        """Resolve a reset-token digest to its user and credential. Expiry is the caller's check."""
        with self.db.connect() as conn:
            cred_row = conn.execute(
                user_credentials.select().where(user_credentials.c.reset_token_hash == token_hash)
            ).fetchone()
            if cred_row is None:
                return None
            user_row = conn.execute(_user_select().where(users.c.id == cred_row.user_id)).fetchone()
        if user_row is None:
            return None
        return _row_to_user(user_row), _row_to_credential(cred_row)

    # ------------------------------------------------------------------
    # Secondary roles
    # ------------------------------------------------------------------

    def get_secondary_role_ids(self, user_id: int) -> list[int]:
        with self.db.connect() as conn:
            rows = conn.execute(
                select(user_roles.c.role_id).where(user_roles.c.user_id == user_id).order_by(user_roles.c.role_id)
            ).fetchall()
        return [r.role_id for r in rows]

    def add_secondary_role(self, user_id: int, role_id: int) -> bool:
        """Assign an extra role. Returns False if the pair already existed."""
        try:
            with self.db.begin() as conn:
                conn.execute(user_roles.insert().values(user_id=user_id, role_id=role_id, created_at=now_iso()))
        except IntegrityError:
            exists = role_id in self.get_secondary_role_ids(user_id)
            if not exists:
                raise
            return False
        return True

    def remove_secondary_role(self, user_id: int, role_id: int) -> bool:
        with self.db.connect() as conn:
            result = conn.execute(
                user_roles.delete().where((user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id))
            )
            conn.commit()
        return result.rowcount > 0

    def set_secondary_roles(self, user_id: int, role_ids: list[int]) -> None:
        """Replace the user's secondary role set as one unit. Duplicate ids collapse."""
        now = now_iso()
        with self.db.begin() as conn:
            conn.execute(user_roles.delete().where(user_roles.c.user_id == user_id))
            for role_id in sorted(set(role_ids)):
                conn.execute(user_roles.insert().values(user_id=user_id, role_id=role_id, created_at=now))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        employee_id=row.employee_id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        organization_id=row.organization_id,
        department_id=row.department_id,
        rank=row.rank,
        primary_role_id=row.primary_role_id,
        is_active=bool(row.is_active),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
        role_name=row.role_name,
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        user_id=row.user_id,
        password_hash=row.password_hash,
        reset_token_hash=row.reset_token_hash,
        reset_expires_at=row.reset_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

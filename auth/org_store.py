"""
auth/org_store.py -- Persistence for organizations and their departments.

Users reference an organization and a department; the organization-membership
checkpoint compares the caller's organization_id against the one named in
the request. Nothing here makes an access decision.

Deletes are refused while anything still points at the row: an organization
with departments or users, a department with users. The count and the delete
share one transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import func, select

from auth.models import Department, Organization
from auth.schema import Database, departments, now_iso, organizations, users


class OrganizationInUseError(Exception):
    """Raised when deleting an organization that still has departments or users."""

    def __init__(self, organization_id: int, department_count: int, user_count: int) -> None:
        super().__init__(
            f"Organization {organization_id} has {department_count} department(s) and {user_count} user(s)"
        )
        self.organization_id = organization_id
        self.department_count = department_count
        self.user_count = user_count


class DepartmentInUseError(Exception):
    """Raised when deleting a department that users still belong to."""

    def __init__(self, department_id: int, user_count: int) -> None:
        super().__init__(f"Department {department_id} has {user_count} user(s)")
        self.department_id = department_id
        self.user_count = user_count


def _count(conn, table, predicate) -> int:
    return conn.execute(select(func.count()).select_from(table).where(predicate)).scalar() or 0


class OrganizationStore:
    """Repository for Organization and Department entities."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, organization: Organization) -> int:
        now = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(organizations.insert().values(name=organization.name, created_at=now, updated_at=now))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_organization(self, organization_id: int) -> Organization | None:
        with self.db.connect() as conn:
            row = conn.execute(organizations.select().where(organizations.c.id == organization_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def list_organizations(self) -> list[Organization]:
        with self.db.connect() as conn:
            rows = conn.execute(organizations.select().order_by(organizations.c.name)).fetchall()
        return [_row_to_organization(r) for r in rows]

    def update_organization(self, organization_id: int, name: str) -> bool:
        with self.db.connect() as conn:
            result = conn.execute(
                organizations.update()
                .where(organizations.c.id == organization_id)
                .values(name=name, updated_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def delete_organization(self, organization_id: int) -> bool:
        """Delete an empty organization. Returns False if it did not exist.

        Raises OrganizationInUseError while departments or users reference it.
        """
        with self.db.begin() as conn:
            department_count = _count(conn, departments, departments.c.organization_id == organization_id)
            user_count = _count(conn, users, users.c.organization_id == organization_id)
            if department_count or user_count:
                raise OrganizationInUseError(organization_id, department_count, user_count)
            result = conn.execute(organizations.delete().where(organizations.c.id == organization_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Departments
    # ------------------------------------------------------------------

    def create_department(self, department: Department) -> int:
        """Insert a department. Raises IntegrityError on a duplicate code within the organization."""
        now = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(
                departments.insert().values(
                    organization_id=department.organization_id,
                    name=department.name,
                    department_code=department.department_code,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_department(self, department_id: int) -> Department | None:
        with self.db.connect() as conn:
            row = conn.execute(departments.select().where(departments.c.id == department_id)).fetchone()
        return _row_to_department(row) if row is not None else None

    def list_departments(self, organization_id: int) -> list[Department]:
        with self.db.connect() as conn:
            rows = conn.execute(
                departments.select().where(departments.c.organization_id == organization_id).order_by(departments.c.name)
            ).fetchall()
        return [_row_to_department(r) for r in rows]

    def update_department(self, department_id: int, **fields) -> bool:
        """Rename or re-code a department. Accepted fields: name, department_code.

        Raises IntegrityError when the new code is already taken in the organization.
        """
        unknown = set(fields) - {"name", "department_code"}
        if unknown:
            raise ValueError(f"Unknown department fields: {sorted(unknown)!r}")
        fields["updated_at"] = now_iso()
        with self.db.connect() as conn:
            result = conn.execute(departments.update().where(departments.c.id == department_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_department(self, department_id: int) -> bool:
        """Delete a department no user belongs to. Returns False if it did not exist."""
        with self.db.begin() as conn:
            user_count = _count(conn, users, users.c.department_id == department_id)
            if user_count:
                raise DepartmentInUseError(department_id, user_count)
            result = conn.execute(departments.delete().where(departments.c.id == department_id))
        return result.rowcount > 0


def _row_to_organization(row) -> Organization:
    return Organization(id=row.id, name=row.name, created_at=row.created_at, updated_at=row.updated_at)


def _row_to_department(row) -> Department:
    return Department(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        department_code=row.department_code,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )

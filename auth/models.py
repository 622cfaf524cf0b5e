"""
auth/models.py -- Domain dataclasses for identity, access control, and sessions.

Pattern: Data class (pure data container, minimal logic). Stores map rows to
these types; services and the authorization chain pass them around. The one
exception is Identity, which is request-scoped and owns its permission
snapshot lookup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Organization:
    name: str
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Department:
    organization_id: int
    name: str
    department_code: str | None = None  # unique per organization
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Role:
    """A named bundle of permissions. Names are unique.

    A role that is any user's primary role cannot be deleted (the store
    refuses); renaming is always allowed.
    """

    name: str
    description: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Permission:
    """A (resource, action) capability. The pair is unique across the table.

    Frozen so snapshots can be shared and compared safely; name is the
    conventional "resource:action" label used by the seed data.
    """

    resource: str
    action: str
    name: str = ""
    description: str | None = None
    id: int | None = None

    @property
    def token(self) -> str:
        return f"{self.resource}:{self.action}"


@dataclass
class User:
    """An identity record.

    role_name is not a column: stores fill it from a LEFT JOIN on the
    primary role so callers never issue a second query for the label. It is
    None only if the join finds nothing, which the foreign key should make
    impossible.
    """

    employee_id: str
    first_name: str
    last_name: str
    email: str  # exact-match lookups; no case folding
    primary_role_id: int
    id: int | None = None
    organization_id: int | None = None
    department_id: int | None = None
    rank: str | None = None
    is_active: bool = True
    last_login: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    role_name: str | None = None


@dataclass
class Credential:
    """One-to-one with User. reset_token_hash is an HMAC digest, never the raw token."""

    user_id: int
    password_hash: str
    reset_token_hash: str | None = None
    reset_expires_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """Server-side session record.

    Invalidation flips is_valid; rows are kept for audit. ip_address and
    user_agent are recorded for review only and never compared on later
    requests.
    """

    id: str
    user_id: int
    expires_at: str  # ISO 8601 UTC
    is_valid: bool = True
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class AuditEntry:
    action: str  # "login", "logout", "password_change", "user_delete", ...
    user_id: int | None = None
    table_name: str | None = None
    record_id: int | None = None
    old_values: str | None = None  # JSON text
    new_values: str | None = None  # JSON text
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class Identity:
    """Request-scoped authenticated identity. Never persisted, never shared across requests.

    permissions is the snapshot taken when the session was validated. The
    authorization chain may replace it in place after a cache miss that the
    source of truth confirms, so later checks in the same request see the
    refreshed set.
    """

    user: User
    role: str
    session_id: str
    permissions: list[Permission] = field(default_factory=list)

    @property
    def user_id(self) -> int:
        return self.user.id  # type: ignore[return-value]

    @property
    def organization_id(self) -> int | None:
        return self.user.organization_id

    def holds(self, resource: str, action: str) -> bool:
        return any(p.resource == resource and p.action == action for p in self.permissions)

    def holds_token(self, token: str) -> bool:
        return any(p.token == token for p in self.permissions)


@dataclass
class ClientInfo:
    """Network metadata of the calling client, threaded explicitly into services."""

    ip_address: str | None = None
    user_agent: str | None = None

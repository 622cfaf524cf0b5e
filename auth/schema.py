"""
auth/schema.py -- SQLAlchemy Core schema and the injected database handle.

Every store in auth/ receives a Database instance at construction time. There
is no module-level engine: api/main.py builds one Database in lifespan and
tests build their own against shared-memory SQLite.

Referential rules live in the schema so SQLite (foreign_keys=ON) and Postgres
enforce them the same way:
  - role_permissions, user_roles, user_credentials, password_history and
    sessions cascade on delete of their owner.
  - users.primary_role_id is RESTRICT: a role that is someone's primary role
    cannot disappear underneath them.
  - audit_logs.user_id is SET NULL: audit rows outlive the user they mention.

Security:
  All queries in the stores use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger("crewgate.store")

metadata = MetaData()

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

departments = Table(
    "departments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("department_code", String(50)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("organization_id", "department_code"),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("resource", String(100), nullable=False),
    Column("action", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("resource", "action"),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_id"),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("employee_id", String(50), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("organization_id", Integer, ForeignKey("organizations.id")),
    Column("department_id", Integer, ForeignKey("departments.id")),
    Column("rank", String(50)),
    Column("primary_role_id", Integer, ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

user_credentials = Table(
    "user_credentials",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("password_hash", String(255), nullable=False),
    Column("reset_token_hash", String(64), unique=True),  # HMAC-SHA256 hex
    Column("reset_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "role_id"),
)

password_history = Table(
    "password_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("is_valid", Integer, nullable=False, server_default="1"),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("action", String(50), nullable=False),
    Column("table_name", String(100)),
    Column("record_id", Integer),
    Column("old_values", Text),  # JSON
    Column("new_values", Text),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Both are per-connection in SQLite, so they are applied on every new
    pooled connection. Without foreign_keys=ON none of the cascade or
    RESTRICT rules above fire.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class Database:
    """Explicitly constructed store handle shared by every auth store.

    Usage:
        db = Database("sqlite:///crewgate.db")
        users = UserStore(db)
        sessions = SessionStore(db)
        ...
        db.close()

    connect() is for single-statement work (the statement commits on
    conn.commit()); begin() opens a transaction that commits on exit and
    rolls back if the block raises, for mutations touching several tables.
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # FastAPI runs sync dependencies and routes in a threadpool, so a
            # pooled SQLite connection may be used from several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)
        logger.debug("Schema ready on %s", self.engine.url.render_as_string(hide_password=True))

    def connect(self) -> Connection:
        return self.engine.connect()

    def begin(self):
        return self.engine.begin()

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except Exception:
            logger.exception("Database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()

"""
tests/conftest.py -- Shared test fixtures for Crewgate unit and integration tests.

This module provides:
  - make_settings(): Settings with bcrypt at its minimum cost
  - db / user_store / role_store / ...: a fresh seeded in-memory database per test
  - make_user: factory that creates a user with a given role label
  - api_env: module-scoped TestClient wired to an isolated database, with a
    few seeded accounts and helpers to log in as any of them

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/ import so the module-level
get_settings() call auto-generates SECRET_KEY instead of raising ValueError.
"""

from __future__ import annotations

import itertools
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set DEBUG before any api/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_state
from auth.audit import AuditStore
from auth.models import Organization, User
from auth.org_store import OrganizationStore
from auth.passwords import PasswordHasher
from auth.role_store import RoleStore
from auth.schema import Database
from auth.seed import seed_roles
from auth.session_store import SessionStore
from auth.store import UserStore
from core.config import Settings

PASSWORD = "Str0ng!Passw0rd"
SECRET = "test-secret-key-" + "x" * 32

_counter = itertools.count(1)


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": SECRET, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


def _memory_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Unit-level fixtures (function scoped)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def db(settings: Settings) -> Generator[Database, None, None]:
    """A seeded database private to one test."""
    database = Database(_memory_url(f"test_unit_{uuid.uuid4().hex}"))
    seed_roles(database, settings)
    yield database
    database.close()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def user_store(db: Database) -> UserStore:
    return UserStore(db)


@pytest.fixture
def session_store(db: Database) -> SessionStore:
    return SessionStore(db)


@pytest.fixture
def role_store(db: Database) -> RoleStore:
    return RoleStore(db)


@pytest.fixture
def org_store(db: Database) -> OrganizationStore:
    return OrganizationStore(db)


@pytest.fixture
def audit_store(db: Database) -> AuditStore:
    return AuditStore(db)


def _create_user(
    users: UserStore,
    roles: RoleStore,
    hasher: PasswordHasher,
    role_name: str = "User",
    password: str = PASSWORD,
    organization_id: int | None = None,
    department_id: int | None = None,
    is_active: bool = True,
) -> User:
    n = next(_counter)
    role = roles.get_role_by_name(role_name)
    assert role is not None, f"role {role_name!r} not seeded"
    user_id = users.create_user(
        User(
            employee_id=f"EMP-{n:05d}",
            first_name="Test",
            last_name=f"User{n}",
            email=f"user{n}@example.com",
            primary_role_id=role.id,
            organization_id=organization_id,
            department_id=department_id,
            is_active=is_active,
        ),
        password_hash=hasher.hash(password),
    )
    created = users.get_by_id(user_id)
    assert created is not None
    return created


@pytest.fixture
def make_user(user_store: UserStore, role_store: RoleStore, hasher: PasswordHasher) -> Callable[..., User]:
    """Factory: make_user("Manager", organization_id=1) -> User with a unique email."""

    def factory(role_name: str = "User", **kwargs) -> User:
        return _create_user(user_store, role_store, hasher, role_name, **kwargs)

    return factory


# ---------------------------------------------------------------------------
# Rate limits are process-wide; start every test with empty counters.
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    limiter.reset()


# ---------------------------------------------------------------------------
# Integration fixture (module scoped)
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, db: Database):
    """Return an async context manager that replaces the real lifespan.

    Wires the test database and settings into app.state so TestClient routes
    see an isolated store rather than the configured one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings, db)
        yield

    return test_lifespan


@dataclass
class ApiEnv:
    """Everything an integration test needs: the client and handles on the same database."""

    client: TestClient
    db: Database
    settings: Settings
    users: UserStore
    roles: RoleStore
    hasher: PasswordHasher
    organizations: dict[str, int] = field(default_factory=dict)
    accounts: dict[str, User] = field(default_factory=dict)

    def create_user(self, role_name: str = "User", **kwargs) -> User:
        return _create_user(self.users, self.roles, self.hasher, role_name, **kwargs)

    def login(self, user: User, password: str = PASSWORD) -> str:
        """Log in and return the session id. The client's cookie jar is left empty."""
        resp = self.client.post("/api/v1/auth/login", json={"email": user.email, "password": password})
        assert resp.status_code == 200, resp.text
        session_id = resp.cookies.get(self.settings.session_cookie_name)
        assert session_id
        self.client.cookies.clear()
        return session_id

    def cookie(self, session_id: str) -> dict[str, str]:
        return {"Cookie": f"{self.settings.session_cookie_name}={session_id}"}

    def headers_for(self, account: str) -> dict[str, str]:
        """Fresh session headers for one of the seeded accounts."""
        return self.cookie(self.login(self.accounts[account]))


@pytest.fixture(scope="module")
def api_env(request: pytest.FixtureRequest) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv backed by a database private to the test module.

    Seeded accounts:
      admin    Administrator, no organization
      manager  Manager, organization "acme"
      member   User, organization "acme"
      guest    Guest, organization "globex"
    """
    settings = make_settings()
    db = Database(_memory_url(f"test_api_{request.module.__name__.replace('.', '_')}"))
    seed_roles(db, settings)
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    users = UserStore(db)
    roles = RoleStore(db)
    orgs = OrganizationStore(db)

    organizations = {
        "acme": orgs.create_organization(Organization(name="Acme")),
        "globex": orgs.create_organization(Organization(name="Globex")),
    }
    accounts = {
        "admin": _create_user(users, roles, hasher, "Administrator"),
        "manager": _create_user(users, roles, hasher, "Manager", organization_id=organizations["acme"]),
        "member": _create_user(users, roles, hasher, "User", organization_id=organizations["acme"]),
        "guest": _create_user(users, roles, hasher, "Guest", organization_id=organizations["globex"]),
    }

    app.router.lifespan_context = _patch_lifespan(settings, db)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiEnv(
            client=client,
            db=db,
            settings=settings,
            users=users,
            roles=roles,
            hasher=hasher,
            organizations=organizations,
            accounts=accounts,
        )

    db.close()

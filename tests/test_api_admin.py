"""
tests/test_api_admin.py -- Integration tests for the gated administration routes.

Covers:
  - users:* permission gates and their exact 403 body
  - grants made after login taking effect on the live session
  - organization membership, role-label and token gates
  - role / permission administration guards
  - audit trail access
  - 500 handling for store failures (debug detail)
"""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.main import app, init_state
from api.routes.v1.organizations import router as organizations_router
from auth.models import User
from auth.role_store import RoleStore
from auth.schema import Database
from auth.seed import seed_roles
from auth.store import UserStore
from conftest import PASSWORD, ApiEnv, make_settings

USERS = "/api/v1/users"
ME = "/api/v1/auth/me"


def _new_user_body(api_env: ApiEnv, role_name: str = "User", **overrides) -> dict:
    tag = uuid.uuid4().hex[:8]
    body = {
        "employee_id": f"NEW-{tag}",
        "first_name": "New",
        "last_name": "Hire",
        "email": f"new-{tag}@example.com",
        "primary_role_id": api_env.roles.get_role_by_name(role_name).id,
    }
    body.update(overrides)
    return body


def _role_with(api_env: ApiEnv, *tokens: str) -> str:
    """Create a role holding exactly the given permission tokens; return its name."""
    admin = api_env.headers_for("admin")
    name = f"Role-{uuid.uuid4().hex[:6]}"
    role_id = api_env.client.post("/api/v1/roles", json={"name": name}, headers=admin).json()["id"]
    ids = [api_env.roles.get_permission_by_pair(*t.split(":")).id for t in tokens]
    resp = api_env.client.put(f"/api/v1/roles/{role_id}/permissions", json={"permission_ids": ids}, headers=admin)
    assert resp.status_code == 200, resp.text
    return name


# ---------------------------------------------------------------------------
# Permission gates on /users
# ---------------------------------------------------------------------------


class TestUserPermissionGates:
    def test_guest_cannot_list_users(self, api_env: ApiEnv) -> None:
        """A role without users:read gets the Permission denied body."""
        resp = api_env.client.get(USERS, headers=api_env.headers_for("guest"))
        assert resp.status_code == 403
        assert resp.json() == {
            "message": "Permission denied",
            "required": {"resource": "users", "action": "read"},
        }

    def test_member_can_list_users(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get(USERS, headers=api_env.headers_for("member"))
        assert resp.status_code == 200
        emails = {u["email"] for u in resp.json()}
        assert api_env.accounts["guest"].email in emails

    def test_member_cannot_create_users(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(USERS, json=_new_user_body(api_env), headers=api_env.headers_for("member"))
        assert resp.status_code == 403
        assert resp.json()["required"] == {"resource": "users", "action": "create"}

    def test_unauthenticated(self, api_env: ApiEnv) -> None:
        api_env.client.cookies.clear()
        resp = api_env.client.get(USERS)
        assert resp.status_code == 401
        assert resp.json() == {"message": "Authentication required"}

    def test_grant_after_login_applies_to_live_session(self, api_env: ApiEnv) -> None:
        """A grant made while a session is live is honoured without logging in again."""
        role = _role_with(api_env)
        sid = api_env.login(api_env.create_user(role))
        assert api_env.client.get(USERS, headers=api_env.cookie(sid)).status_code == 403

        role_id = api_env.roles.get_role_by_name(role).id
        read = api_env.roles.get_permission_by_pair("users", "read").id
        resp = api_env.client.put(
            f"/api/v1/roles/{role_id}/permissions",
            json={"permission_ids": [read]},
            headers=api_env.headers_for("admin"),
        )
        assert resp.status_code == 200

        assert api_env.client.get(USERS, headers=api_env.cookie(sid)).status_code == 200


# ---------------------------------------------------------------------------
# User CRUD (administrator)
# ---------------------------------------------------------------------------


class TestUserAdministration:
    def test_create_with_generated_password(self, api_env: ApiEnv) -> None:
        """Without a password, one is generated, returned once, and works for login."""
        body = _new_user_body(api_env)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 201
        data = resp.json()
        assert data["user"]["email"] == body["email"]
        generated = data["generated_password"]
        assert generated

        login = api_env.client.post("/api/v1/auth/login", json={"email": body["email"], "password": generated})
        api_env.client.cookies.clear()
        assert login.status_code == 200

    def test_create_with_explicit_password(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, password=PASSWORD)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 201
        assert resp.json()["generated_password"] is None

    def test_weak_password_rejected(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, password="weak")
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "weak_password"

    def test_long_password_rejected(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, password="Str0ng!Pass" + "abcdefghij" * 7)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["feedback"] == ["Password must be at most 72 bytes long"]

    def test_duplicate_email(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, email=api_env.accounts["member"].email)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 409
        assert resp.json()["message"] == "User with this email already exists"

    def test_duplicate_employee_id(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, employee_id=api_env.accounts["member"].employee_id)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 409
        assert resp.json()["message"] == "User with this employee ID already exists"

    def test_unknown_role(self, api_env: ApiEnv) -> None:
        body = _new_user_body(api_env, primary_role_id=99999)
        resp = api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "unknown_role"

    def test_get_missing_user(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get(f"{USERS}/99999", headers=api_env.headers_for("admin"))
        assert resp.status_code == 404
        assert resp.json() == {"code": "not_found", "message": "User not found"}

    def test_deactivation_revokes_sessions(self, api_env: ApiEnv) -> None:
        """Deactivating a user ends their live sessions in the same request."""
        target = api_env.create_user()
        sid = api_env.login(target)

        resp = api_env.client.patch(f"{USERS}/{target.id}", json={"is_active": False}, headers=api_env.headers_for("admin"))
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        me = api_env.client.get(ME, headers=api_env.cookie(sid))
        assert me.status_code == 401
        assert me.json() == {"message": "Invalid or expired session"}

    def test_patch_without_fields(self, api_env: ApiEnv) -> None:
        target = api_env.create_user()
        resp = api_env.client.patch(f"{USERS}/{target.id}", json={}, headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "no_changes"

    def test_cannot_deactivate_self(self, api_env: ApiEnv) -> None:
        admin = api_env.accounts["admin"]
        resp = api_env.client.patch(f"{USERS}/{admin.id}", json={"is_active": False}, headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "self_deactivation"

    def test_delete_user_ends_sessions(self, api_env: ApiEnv) -> None:
        """A deleted user's session stops authenticating."""
        target = api_env.create_user()
        sid = api_env.login(target)

        resp = api_env.client.delete(f"{USERS}/{target.id}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 200
        assert api_env.client.get(ME, headers=api_env.cookie(sid)).status_code == 401
        assert api_env.users.get_by_id(target.id) is None

    def test_cannot_delete_self(self, api_env: ApiEnv) -> None:
        admin = api_env.accounts["admin"]
        resp = api_env.client.delete(f"{USERS}/{admin.id}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 400
        assert resp.json()["code"] == "self_delete"

    def test_secondary_roles_extend_permissions(self, api_env: ApiEnv) -> None:
        """Permissions from a secondary role show up in the next snapshot."""
        target = api_env.create_user("Guest")
        manager_role = api_env.roles.get_role_by_name("Manager").id
        resp = api_env.client.put(
            f"{USERS}/{target.id}/roles",
            json={"role_ids": [manager_role]},
            headers=api_env.headers_for("admin"),
        )
        assert resp.status_code == 200
        assert [r["name"] for r in resp.json()] == ["Manager"]

        me = api_env.client.get(ME, headers=api_env.cookie(api_env.login(target))).json()
        assert me["role"] == "Guest"
        assert "reports:read" in me["permissions"]

    def test_secondary_roles_unknown_id(self, api_env: ApiEnv) -> None:
        target = api_env.create_user()
        resp = api_env.client.put(
            f"{USERS}/{target.id}/roles", json={"role_ids": [99999]}, headers=api_env.headers_for("admin")
        )
        assert resp.status_code == 400
        assert resp.json()["invalid_ids"] == [99999]

    def test_forced_logout_requires_admin(self, api_env: ApiEnv) -> None:
        target = api_env.create_user()
        resp = api_env.client.post(f"{USERS}/{target.id}/logout-all", headers=api_env.headers_for("manager"))
        assert resp.status_code == 403
        assert resp.json() == {"message": "Administrator access required"}


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class TestOrganizations:
    def test_member_reads_own_organization(self, api_env: ApiEnv) -> None:
        acme = api_env.organizations["acme"]
        resp = api_env.client.get(f"/api/v1/organizations/{acme}", headers=api_env.headers_for("member"))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Acme"

    def test_member_refused_other_organization(self, api_env: ApiEnv) -> None:
        globex = api_env.organizations["globex"]
        resp = api_env.client.get(f"/api/v1/organizations/{globex}", headers=api_env.headers_for("member"))
        assert resp.status_code == 403
        assert resp.json() == {"message": "Access restricted to organization members"}

    def test_admin_reads_any_organization(self, api_env: ApiEnv) -> None:
        globex = api_env.organizations["globex"]
        resp = api_env.client.get(f"/api/v1/organizations/{globex}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 200

    def test_missing_organization(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get("/api/v1/organizations/99999", headers=api_env.headers_for("admin"))
        assert resp.status_code == 404

    def test_list_is_limited_to_staff_roles(self, api_env: ApiEnv) -> None:
        """GET /organizations admits the Administrator and Manager labels only."""
        assert api_env.client.get("/api/v1/organizations", headers=api_env.headers_for("manager")).status_code == 200
        resp = api_env.client.get("/api/v1/organizations", headers=api_env.headers_for("member"))
        assert resp.status_code == 403
        assert resp.json() == {"message": "Access denied", "required": {"roles": ["Administrator", "Manager"]}}

    def test_departments(self, api_env: ApiEnv) -> None:
        acme = api_env.organizations["acme"]
        url = f"/api/v1/organizations/{acme}/departments"
        code = f"D-{uuid.uuid4().hex[:6]}"
        admin = api_env.headers_for("admin")

        created = api_env.client.post(url, json={"name": "Operations", "department_code": code}, headers=admin)
        assert created.status_code == 201
        duplicate = api_env.client.post(url, json={"name": "Ops again", "department_code": code}, headers=admin)
        assert duplicate.status_code == 409

        listed = api_env.client.get(url, headers=api_env.headers_for("member"))
        assert listed.status_code == 200
        assert code in {d["department_code"] for d in listed.json()}

        outsider = api_env.client.get(url, headers=api_env.headers_for("guest"))
        assert outsider.status_code == 403

    def test_rename_organization(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        org = api_env.client.post("/api/v1/organizations", json={"name": "Initech"}, headers=admin)
        url = f"/api/v1/organizations/{org.json()['id']}"

        refused = api_env.client.patch(url, json={"name": "Initrode"}, headers=api_env.headers_for("manager"))
        assert refused.status_code == 403
        assert refused.json() == {"message": "Administrator access required"}

        renamed = api_env.client.patch(url, json={"name": "Initrode"}, headers=admin)
        assert renamed.status_code == 200
        assert renamed.json()["name"] == "Initrode"

    def test_delete_organization(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        org = api_env.client.post("/api/v1/organizations", json={"name": "Short-lived"}, headers=admin)
        url = f"/api/v1/organizations/{org.json()['id']}"

        assert api_env.client.delete(url, headers=admin).json() == {"message": "Organization deleted successfully"}
        assert api_env.client.get(url, headers=admin).status_code == 404
        assert api_env.client.delete(url, headers=admin).status_code == 404

    def test_organization_with_users_is_kept(self, api_env: ApiEnv) -> None:
        acme = api_env.organizations["acme"]
        resp = api_env.client.delete(f"/api/v1/organizations/{acme}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "organization_in_use"
        assert body["message"] == "Cannot delete organization with departments or users"
        assert body["user_count"] >= 2

    def test_manager_maintains_departments_of_own_organization(self, api_env: ApiEnv) -> None:
        acme = api_env.organizations["acme"]
        url = f"/api/v1/organizations/{acme}/departments"
        manager = api_env.headers_for("manager")

        created = api_env.client.post(url, json={"name": "Logistics"}, headers=manager)
        assert created.status_code == 201
        dept_url = f"{url}/{created.json()['id']}"

        renamed = api_env.client.patch(dept_url, json={"name": "Supply", "department_code": "SUP"}, headers=manager)
        assert renamed.status_code == 200
        assert (renamed.json()["name"], renamed.json()["department_code"]) == ("Supply", "SUP")

        deleted = api_env.client.delete(dept_url, headers=manager)
        assert deleted.json() == {"message": "Department deleted successfully"}
        assert api_env.client.delete(dept_url, headers=manager).status_code == 404

    def test_department_writes_need_staff_role_and_membership(self, api_env: ApiEnv) -> None:
        acme = api_env.organizations["acme"]
        globex = api_env.organizations["globex"]

        foreign = api_env.client.post(
            f"/api/v1/organizations/{globex}/departments",
            json={"name": "Sales"},
            headers=api_env.headers_for("manager"),
        )
        assert foreign.status_code == 403
        assert foreign.json() == {"message": "Access restricted to organization members"}

        plain_member = api_env.client.post(
            f"/api/v1/organizations/{acme}/departments", json={"name": "Sales"}, headers=api_env.headers_for("member")
        )
        assert plain_member.status_code == 403
        assert plain_member.json() == {"message": "Access denied", "required": {"roles": ["Administrator", "Manager"]}}

    def test_department_is_addressed_through_its_own_organization(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        globex = api_env.organizations["globex"]
        created = api_env.client.post(
            f"/api/v1/organizations/{globex}/departments", json={"name": "R&D"}, headers=admin
        )
        dept_id = created.json()["id"]

        acme = api_env.organizations["acme"]
        resp = api_env.client.patch(
            f"/api/v1/organizations/{acme}/departments/{dept_id}", json={"name": "Stolen"}, headers=admin
        )
        assert resp.status_code == 404
        assert resp.json()["message"] == "Department not found"

    def test_department_patch_needs_a_field(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        acme = api_env.organizations["acme"]
        created = api_env.client.post(
            f"/api/v1/organizations/{acme}/departments", json={"name": "Audit"}, headers=admin
        )
        resp = api_env.client.patch(
            f"/api/v1/organizations/{acme}/departments/{created.json()['id']}", json={}, headers=admin
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "no_changes"

    def test_department_with_users_is_kept(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        acme = api_env.organizations["acme"]
        created = api_env.client.post(
            f"/api/v1/organizations/{acme}/departments", json={"name": "Finance"}, headers=admin
        )
        dept_id = created.json()["id"]
        api_env.create_user(organization_id=acme, department_id=dept_id)

        resp = api_env.client.delete(f"/api/v1/organizations/{acme}/departments/{dept_id}", headers=admin)
        assert resp.status_code == 409
        assert resp.json()["code"] == "department_in_use"
        assert resp.json()["user_count"] == 1

    def test_user_creation_is_scoped_to_own_organization(self, api_env: ApiEnv) -> None:
        """A non-administrator holding users:create may only create users in their organization."""
        role = _role_with(api_env, "users:create")
        creator = api_env.create_user(role, organization_id=api_env.organizations["acme"])
        headers = api_env.cookie(api_env.login(creator))

        foreign = _new_user_body(api_env, organization_id=api_env.organizations["globex"], password=PASSWORD)
        resp = api_env.client.post(USERS, json=foreign, headers=headers)
        assert resp.status_code == 403
        assert resp.json() == {"message": "Access restricted to organization members"}

        own = _new_user_body(api_env, organization_id=api_env.organizations["acme"], password=PASSWORD)
        assert api_env.client.post(USERS, json=own, headers=headers).status_code == 201


def test_staff_gate_uses_the_app_admin_label(tmp_path: Path) -> None:
    """An app configured with another administrator label admits that label on staff routes."""
    settings = make_settings(admin_role_name="Root")
    db = Database(f"sqlite:///{tmp_path / 'labels.db'}")
    seed_roles(db, settings)
    standalone = FastAPI()
    init_state(standalone, settings, db)
    standalone.include_router(organizations_router, prefix="/api/v1")

    roles = RoleStore(db)
    users = UserStore(db)
    sessions: dict[str, str] = {}
    for label in ("Root", "Guest"):
        user_id = users.create_user(
            User(
                employee_id=f"EMP-{label}",
                first_name=label,
                last_name="Account",
                email=f"{label.lower()}@example.com",
                primary_role_id=roles.get_role_by_name(label).id,
            ),
            password_hash=standalone.state.hasher.hash(PASSWORD),
        )
        sessions[label] = standalone.state.auth_service.create_session(user_id).id

    def cookie(label: str) -> dict[str, str]:
        return {"Cookie": f"{settings.session_cookie_name}={sessions[label]}"}

    try:
        with TestClient(standalone) as client:
            admitted = client.get("/api/v1/organizations", headers=cookie("Root"))
            refused = client.get("/api/v1/organizations", headers=cookie("Guest"))
    finally:
        db.close()

    assert admitted.status_code == 200
    assert refused.status_code == 403
    assert refused.json()["detail"]["required"] == {"roles": ["Root", "Manager"]}


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class TestRoleAdministration:
    def test_reads_need_only_a_session(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get("/api/v1/roles", headers=api_env.headers_for("guest"))
        assert resp.status_code == 200
        assert "Administrator" in {r["name"] for r in resp.json()}

    def test_writes_need_admin(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/roles", json={"name": "Nope"}, headers=api_env.headers_for("manager"))
        assert resp.status_code == 403
        assert resp.json() == {"message": "Administrator access required"}

    def test_writes_without_session(self, api_env: ApiEnv) -> None:
        api_env.client.cookies.clear()
        assert api_env.client.post("/api/v1/roles", json={"name": "Nope"}).status_code == 401

    def test_duplicate_role_name(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/roles", json={"name": "Manager"}, headers=api_env.headers_for("admin"))
        assert resp.status_code == 409

    def test_admin_role_is_protected(self, api_env: ApiEnv) -> None:
        admin_role = api_env.roles.get_role_by_name("Administrator").id
        admin = api_env.headers_for("admin")
        rename = api_env.client.patch(f"/api/v1/roles/{admin_role}", json={"name": "Root"}, headers=admin)
        assert rename.status_code == 400
        assert rename.json()["code"] == "protected_role"
        assert api_env.client.delete(f"/api/v1/roles/{admin_role}", headers=admin).status_code == 400

    def test_role_in_use_cannot_be_deleted(self, api_env: ApiEnv) -> None:
        guest_role = api_env.roles.get_role_by_name("Guest").id
        resp = api_env.client.delete(f"/api/v1/roles/{guest_role}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 409
        body = resp.json()
        assert body["code"] == "role_in_use"
        assert body["user_count"] >= 1

    def test_unused_role_can_be_deleted(self, api_env: ApiEnv) -> None:
        role_id = api_env.roles.get_role_by_name(_role_with(api_env)).id
        resp = api_env.client.delete(f"/api/v1/roles/{role_id}", headers=api_env.headers_for("admin"))
        assert resp.status_code == 200
        assert api_env.roles.get_role(role_id) is None

    def test_replace_permissions_with_unknown_ids(self, api_env: ApiEnv) -> None:
        role_id = api_env.roles.get_role_by_name(_role_with(api_env, "tasks:read")).id
        resp = api_env.client.put(
            f"/api/v1/roles/{role_id}/permissions",
            json={"permission_ids": [99998, 99999]},
            headers=api_env.headers_for("admin"),
        )
        assert resp.status_code == 400
        assert resp.json()["invalid_ids"] == [99998, 99999]
        current = api_env.client.get(f"/api/v1/roles/{role_id}/permissions", headers=api_env.headers_for("guest"))
        assert [p["name"] for p in current.json()] == ["tasks:read"]

    def test_permission_lifecycle(self, api_env: ApiEnv) -> None:
        admin = api_env.headers_for("admin")
        resource = f"res_{uuid.uuid4().hex[:6]}"
        created = api_env.client.post("/api/v1/permissions", json={"resource": resource, "action": "read"}, headers=admin)
        assert created.status_code == 201
        assert created.json()["name"] == f"{resource}:read"

        again = api_env.client.post("/api/v1/permissions", json={"resource": resource, "action": "read"}, headers=admin)
        assert again.status_code == 409

        pid = created.json()["id"]
        assert api_env.client.delete(f"/api/v1/permissions/{pid}", headers=admin).status_code == 200
        assert api_env.client.delete(f"/api/v1/permissions/{pid}", headers=admin).status_code == 404

    def test_permission_name_segments_validated(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(
            "/api/v1/permissions", json={"resource": "Users", "action": "read"}, headers=api_env.headers_for("admin")
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditLogs:
    URL = "/api/v1/audit-logs"

    def test_token_gate_envelope(self, api_env: ApiEnv) -> None:
        """The token gate answers with the success:false envelope."""
        resp = api_env.client.get(self.URL, headers=api_env.headers_for("guest"))
        assert resp.status_code == 403
        assert resp.json() == {"success": False, "message": "Insufficient permissions"}

        api_env.client.cookies.clear()
        anonymous = api_env.client.get(self.URL)
        assert anonymous.status_code == 401
        assert anonymous.json() == {"success": False, "message": "Authentication required"}

    def test_mutations_are_recorded(self, api_env: ApiEnv) -> None:
        admin = api_env.accounts["admin"]
        body = _new_user_body(api_env, password=PASSWORD)
        api_env.client.post(USERS, json=body, headers=api_env.headers_for("admin"))

        resp = api_env.client.get(self.URL, params={"user_id": admin.id}, headers=api_env.headers_for("manager"))
        assert resp.status_code == 200
        actions = [e["action"] for e in resp.json()]
        assert "user_create" in actions
        assert "login" in actions
        assert all("password" not in (e["new_values"] or "") for e in resp.json())

    def test_limit_bounds(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get(self.URL, params={"limit": 0}, headers=api_env.headers_for("admin"))
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Server errors
# ---------------------------------------------------------------------------


class TestServerErrors:
    @pytest.fixture
    def raw_client(self, api_env: ApiEnv) -> TestClient:
        """A client that returns 500 responses instead of re-raising. app.state is already wired."""
        return TestClient(app, raise_server_exceptions=False)

    def test_unhandled_error_includes_detail_in_debug(
        self,
        api_env: ApiEnv,
        raw_client: TestClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def boom():
            raise RuntimeError("disk I/O error")

        headers = api_env.headers_for("admin")
        monkeypatch.setattr(app.state.user_store, "list_users", boom)

        resp = raw_client.get(USERS, headers=headers)
        assert resp.status_code == 500
        assert resp.json() == {"message": "Internal server error", "detail": "disk I/O error"}

    def test_permission_store_failure_is_500(
        self,
        api_env: ApiEnv,
        raw_client: TestClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """A store failure after authentication is a server error, not a denial."""
        def boom(*args):
            raise RuntimeError("database is locked")

        headers = api_env.headers_for("guest")
        monkeypatch.setattr(app.state.permission_service, "has_permission", boom)

        resp = raw_client.get(USERS, headers=headers)
        assert resp.status_code == 500
        assert resp.json()["message"] == "Internal server error"

    def test_authentication_store_failure_is_401(
        self,
        api_env: ApiEnv,
        raw_client: TestClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """At the authenticate checkpoint any failure is an authentication failure."""
        def boom(*args):
            raise RuntimeError("database is locked")

        headers = api_env.headers_for("member")
        monkeypatch.setattr(app.state.auth_service, "validate_session", boom)

        resp = raw_client.get(ME, headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"message": "Authentication failed", "detail": "database is locked"}

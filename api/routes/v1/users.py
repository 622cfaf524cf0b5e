"""
api/routes/v1/users.py -- User administration endpoints.

Routes:
  GET    /api/v1/users                   -- list users          (users:read)
  POST   /api/v1/users                   -- create a user       (users:create)
  GET    /api/v1/users/{user_id}         -- user detail         (users:read)
  PATCH  /api/v1/users/{user_id}         -- update profile      (users:update)
  DELETE /api/v1/users/{user_id}         -- hard delete         (users:delete)
  POST   /api/v1/users/{user_id}/logout-all -- revoke every session (admin)
  PUT    /api/v1/users/{user_id}/roles   -- replace secondary roles (admin)

Guards:
  A caller cannot deactivate or delete their own account.
  Deactivating a user revokes all of that user's sessions in the same request.
  Every mutation writes an audit entry with the old and new values
  (never credentials).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MessageResponse,
    RoleResponse,
    SecondaryRolesUpdate,
    UserCreate,
    UserCreatedResponse,
    UserPatch,
    UserResponse,
)
from auth.audit import AuditStore
from auth.dependencies import belongs_to_organization, client_info, require_admin, require_permission
from auth.models import ClientInfo, Identity, User
from auth.passwords import generate_random_password
from auth.role_store import RoleStore
from auth.store import UserStore

router = APIRouter()

_AUDITED_FIELDS = ("employee_id", "first_name", "last_name", "email", "organization_id",
                   "department_id", "rank", "primary_role_id", "is_active")


def _users(request: Request) -> UserStore:
    return request.app.state.user_store


def _audit(request: Request) -> AuditStore:
    return request.app.state.audit


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found"})


def _get_or_404(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise _not_found()
    return user


def _ensure_role_exists(roles: RoleStore, role_id: int) -> None:
    if roles.get_role(role_id) is None:
        raise HTTPException(status_code=400, detail={"code": "unknown_role", "message": f"Role {role_id} does not exist"})


def _check_unique(store: UserStore, email: str | None, employee_id: str | None, exclude_id: int | None = None) -> None:
    if email is not None:
        other = store.get_by_email(email)
        if other is not None and other.id != exclude_id:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "User with this email already exists"},
            )
    if employee_id is not None:
        other = store.get_by_employee_id(employee_id)
        if other is not None and other.id != exclude_id:
            raise HTTPException(
                status_code=409,
                detail={"code": "conflict", "message": "User with this employee ID already exists"},
            )


def _snapshot(user: User) -> dict:
    return {f: getattr(user, f) for f in _AUDITED_FIELDS}


# ---------------------------------------------------------------------------
# CRUD (permission gated)
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    identity: Identity = Depends(require_permission("users", "read")),
) -> list[UserResponse]:
    return [UserResponse.model_validate(u) for u in _users(request).list_users()]


@router.post("/users", response_model=UserCreatedResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    identity: Identity = Depends(require_permission("users", "create")),
    scoped: Identity = Depends(belongs_to_organization),
    client: ClientInfo = Depends(client_info),
) -> UserCreatedResponse:
    """Create a user and its credential.

    Non-administrators can only create users in their own organization.

    Without a password in the body, a random one is generated and returned
    exactly once in generated_password.
    """
    store = _users(request)
    hasher = request.app.state.hasher
    _ensure_role_exists(request.app.state.role_store, body.primary_role_id)
    _check_unique(store, body.email, body.employee_id)

    generated: str | None = None
    password = body.password
    if password is None:
        password = generated = generate_random_password()
    else:
        strength = hasher.validate_strength(password)
        if not strength.valid:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "weak_password",
                    "message": "Password does not meet complexity requirements",
                    "feedback": strength.feedback,
                    "score": strength.score,
                },
            )

    new_user = User(
        employee_id=body.employee_id,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
        primary_role_id=body.primary_role_id,
        organization_id=body.organization_id,
        department_id=body.department_id,
        rank=body.rank,
    )
    try:
        user_id = store.create_user(new_user, password_hash=hasher.hash(password))
    except IntegrityError as exc:
        # Lost a race with a concurrent insert, or a dangling organization/department id.
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "User could not be created due to conflicting data"},
        ) from exc

    created = _get_or_404(store, user_id)
    _audit(request).record(
        "user_create",
        user_id=identity.user_id,
        table_name="users",
        record_id=user_id,
        new_values=_snapshot(created),
        client=client,
    )
    return UserCreatedResponse(user=UserResponse.model_validate(created), generated_password=generated)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    identity: Identity = Depends(require_permission("users", "read")),
) -> UserResponse:
    return UserResponse.model_validate(_get_or_404(_users(request), user_id))


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    identity: Identity = Depends(require_permission("users", "update")),
    client: ClientInfo = Depends(client_info),
) -> UserResponse:
    """Update profile fields. Deactivation revokes the target's sessions."""
    store = _users(request)
    target = _get_or_404(store, user_id)

    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})
    if updates.get("is_active") is False and target.id == identity.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    if "primary_role_id" in updates:
        _ensure_role_exists(request.app.state.role_store, updates["primary_role_id"])
    _check_unique(store, updates.get("email"), updates.get("employee_id"), exclude_id=user_id)

    store.update_user(user_id, **updates)
    if updates.get("is_active") is False and target.is_active:
        request.app.state.auth_service.invalidate_all_sessions(user_id)

    updated = _get_or_404(store, user_id)
    _audit(request).record(
        "user_update",
        user_id=identity.user_id,
        table_name="users",
        record_id=user_id,
        old_values=_snapshot(target),
        new_values=_snapshot(updated),
        client=client,
    )
    return UserResponse.model_validate(updated)


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(
    request: Request,
    user_id: int,
    identity: Identity = Depends(require_permission("users", "delete")),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Hard-delete a user together with credentials, history, role links and sessions."""
    if user_id == identity.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_delete", "message": "You cannot delete your own account."},
        )
    store = _users(request)
    target = _get_or_404(store, user_id)
    if not store.delete_user(user_id):
        raise _not_found()
    _audit(request).record(
        "user_delete",
        user_id=identity.user_id,
        table_name="users",
        record_id=user_id,
        old_values=_snapshot(target),
        client=client,
    )
    return MessageResponse(message="User deleted successfully")


# ---------------------------------------------------------------------------
# Administrator-only
# ---------------------------------------------------------------------------


@router.post("/users/{user_id}/logout-all", response_model=MessageResponse)
def logout_all(
    request: Request,
    user_id: int,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Revoke every session of the user (forced logout)."""
    _get_or_404(_users(request), user_id)
    request.app.state.auth_service.invalidate_all_sessions(user_id)
    _audit(request).record("logout_all", user_id=identity.user_id, table_name="sessions", record_id=user_id, client=client)
    return MessageResponse(message="All sessions invalidated")


@router.put("/users/{user_id}/roles", response_model=list[RoleResponse])
def set_secondary_roles(
    request: Request,
    user_id: int,
    body: SecondaryRolesUpdate,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> list[RoleResponse]:
    """Replace the user's secondary roles. The primary role is changed via PATCH."""
    store = _users(request)
    roles: RoleStore = request.app.state.role_store
    _get_or_404(store, user_id)

    wanted = list(dict.fromkeys(body.role_ids))
    found = [roles.get_role(rid) for rid in wanted]
    missing = [rid for rid, role in zip(wanted, found) if role is None]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_role", "message": "Unknown role ids", "invalid_ids": missing},
        )

    old_ids = store.get_secondary_role_ids(user_id)
    store.set_secondary_roles(user_id, wanted)
    _audit(request).record(
        "user_roles_update",
        user_id=identity.user_id,
        table_name="user_roles",
        record_id=user_id,
        old_values={"role_ids": old_ids},
        new_values={"role_ids": wanted},
        client=client,
    )
    return [RoleResponse.model_validate(r) for r in found]

"""
api/routes/v1/roles.py -- Role, permission and grant administration.

Routes:
  GET    /api/v1/roles                          -- list roles            (authenticated)
  POST   /api/v1/roles                          -- create role           (admin)
  GET    /api/v1/roles/{role_id}                -- role detail           (authenticated)
  PATCH  /api/v1/roles/{role_id}                -- rename / describe     (admin)
  DELETE /api/v1/roles/{role_id}                -- delete unused role    (admin)
  GET    /api/v1/roles/{role_id}/permissions    -- role's grants         (authenticated)
  PUT    /api/v1/roles/{role_id}/permissions    -- replace grant set     (admin)
  GET    /api/v1/permissions                    -- list permissions      (authenticated)
  POST   /api/v1/permissions                    -- create permission     (admin)
  DELETE /api/v1/permissions/{permission_id}    -- delete permission     (admin)

Grant changes reach other users' live sessions on their next request, when
the authenticate checkpoint takes a fresh permission snapshot.

The administrator role itself cannot be renamed or deleted: its name is the
label the admin checkpoint compares against.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    MessageResponse,
    PermissionCreate,
    PermissionResponse,
    RoleCreate,
    RolePatch,
    RolePermissionsUpdate,
    RoleResponse,
)
from auth.audit import AuditStore
from auth.dependencies import authenticate, client_info, require_admin
from auth.models import ClientInfo, Identity, Permission, Role
from auth.permissions import PermissionService, UnknownPermissionError
from auth.role_store import RoleInUseError, RoleStore

router = APIRouter()


def _roles(request: Request) -> RoleStore:
    return request.app.state.role_store


def _permissions(request: Request) -> PermissionService:
    return request.app.state.permission_service


def _audit(request: Request) -> AuditStore:
    return request.app.state.audit


def _role_or_404(store: RoleStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found"})
    return role


def _guard_admin_role(request: Request, role: Role) -> None:
    if role.name == request.app.state.settings.admin_role_name:
        raise HTTPException(
            status_code=400,
            detail={"code": "protected_role", "message": "The administrator role cannot be renamed or deleted"},
        )


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, identity: Identity = Depends(authenticate)) -> list[RoleResponse]:
    return [RoleResponse.model_validate(r) for r in _roles(request).list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> RoleResponse:
    store = _roles(request)
    try:
        role_id = store.create_role(Role(name=body.name, description=body.description))
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Role with this name already exists"},
        ) from exc
    _audit(request).record(
        "role_create", user_id=identity.user_id, table_name="roles", record_id=role_id,
        new_values={"name": body.name, "description": body.description}, client=client,
    )
    return RoleResponse.model_validate(_role_or_404(store, role_id))


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(request: Request, role_id: int, identity: Identity = Depends(authenticate)) -> RoleResponse:
    return RoleResponse.model_validate(_role_or_404(_roles(request), role_id))


@router.patch("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RolePatch,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> RoleResponse:
    store = _roles(request)
    role = _role_or_404(store, role_id)
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})
    if "name" in updates and updates["name"] != role.name:
        _guard_admin_role(request, role)
    try:
        store.update_role(role_id, **updates)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Role with this name already exists"},
        ) from exc
    updated = _role_or_404(store, role_id)
    _audit(request).record(
        "role_update", user_id=identity.user_id, table_name="roles", record_id=role_id,
        old_values={"name": role.name, "description": role.description},
        new_values={"name": updated.name, "description": updated.description}, client=client,
    )
    return RoleResponse.model_validate(updated)


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(
    request: Request,
    role_id: int,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Delete a role. Refused while it is any user's primary role."""
    store = _roles(request)
    role = _role_or_404(store, role_id)
    _guard_admin_role(request, role)
    try:
        store.delete_role(role_id)
    except RoleInUseError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "role_in_use",
                "message": "Cannot delete role that is assigned to users",
                "user_count": exc.user_count,
            },
        ) from exc
    _audit(request).record(
        "role_delete", user_id=identity.user_id, table_name="roles", record_id=role_id,
        old_values={"name": role.name}, client=client,
    )
    return MessageResponse(message="Role deleted successfully")


# ---------------------------------------------------------------------------
# Role grants
# ---------------------------------------------------------------------------


@router.get("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
def get_role_permissions(
    request: Request,
    role_id: int,
    identity: Identity = Depends(authenticate),
) -> list[PermissionResponse]:
    _role_or_404(_roles(request), role_id)
    return [PermissionResponse.model_validate(p) for p in _permissions(request).get_role_permissions(role_id)]


@router.put("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
def replace_role_permissions(
    request: Request,
    role_id: int,
    body: RolePermissionsUpdate,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> list[PermissionResponse]:
    """Replace the role's whole grant set atomically. Unknown ids reject the request unchanged."""
    _role_or_404(_roles(request), role_id)
    service = _permissions(request)
    old = [p.id for p in service.get_role_permissions(role_id)]
    try:
        granted = service.replace_role_permissions(role_id, body.permission_ids)
    except UnknownPermissionError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_permission", "message": "Invalid permission ids", "invalid_ids": exc.invalid_ids},
        ) from exc
    _audit(request).record(
        "role_permissions_update", user_id=identity.user_id, table_name="role_permissions", record_id=role_id,
        old_values={"permission_ids": old}, new_values={"permission_ids": [p.id for p in granted]}, client=client,
    )
    return [PermissionResponse.model_validate(p) for p in granted]


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(request: Request, identity: Identity = Depends(authenticate)) -> list[PermissionResponse]:
    return [PermissionResponse.model_validate(p) for p in _roles(request).list_permissions()]


@router.post("/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(
    request: Request,
    body: PermissionCreate,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> PermissionResponse:
    store = _roles(request)
    if store.get_permission_by_pair(body.resource, body.action) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"Permission {body.resource}:{body.action} already exists"},
        )
    permission = Permission(
        resource=body.resource, action=body.action, name=body.name or "", description=body.description
    )
    try:
        permission_id = store.create_permission(permission)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Permission with this name already exists"},
        ) from exc
    _audit(request).record(
        "permission_create", user_id=identity.user_id, table_name="permissions", record_id=permission_id,
        new_values={"resource": body.resource, "action": body.action}, client=client,
    )
    return PermissionResponse.model_validate(store.get_permission(permission_id))


@router.delete("/permissions/{permission_id}", response_model=MessageResponse)
def delete_permission(
    request: Request,
    permission_id: int,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Delete a permission and every grant of it."""
    store = _roles(request)
    permission = store.get_permission(permission_id)
    if permission is None or not store.delete_permission(permission_id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Permission not found"})
    _audit(request).record(
        "permission_delete", user_id=identity.user_id, table_name="permissions", record_id=permission_id,
        old_values={"resource": permission.resource, "action": permission.action}, client=client,
    )
    return MessageResponse(message="Permission deleted successfully")

"""
api/routes/v1/organizations.py -- Organizations and their departments.

Routes:
  GET    /api/v1/organizations                                          -- list      (admin, Manager)
  POST   /api/v1/organizations                                          -- create    (admin)
  GET    /api/v1/organizations/{organization_id}                        -- detail    (members, admin)
  PATCH  /api/v1/organizations/{organization_id}                        -- rename    (admin)
  DELETE /api/v1/organizations/{organization_id}                        -- delete    (admin; must be empty)
  GET    /api/v1/organizations/{organization_id}/departments            -- list      (members, admin)
  POST   /api/v1/organizations/{organization_id}/departments            -- create    (admin, member Managers)
  PATCH  /api/v1/organizations/{organization_id}/departments/{id}       -- update    (admin, member Managers)
  DELETE /api/v1/organizations/{organization_id}/departments/{id}       -- delete    (admin, member Managers)

Membership is decided by belongs_to_organization(), which reads
organization_id from the path. Department writes need both the staff role
check and membership, so a Manager only edits their own organization.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    DepartmentCreate,
    DepartmentPatch,
    DepartmentResponse,
    MessageResponse,
    OrganizationCreate,
    OrganizationPatch,
    OrganizationResponse,
)
from auth.dependencies import belongs_to_organization, client_info, require_admin, require_roles
from auth.models import ClientInfo, Department, Identity, Organization
from auth.org_store import DepartmentInUseError, OrganizationInUseError, OrganizationStore

router = APIRouter()

_staff = require_roles("Manager", include_admin=True)


def _orgs(request: Request) -> OrganizationStore:
    return request.app.state.org_store


def _org_or_404(store: OrganizationStore, organization_id: int) -> Organization:
    organization = store.get_organization(organization_id)
    if organization is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Organization not found"})
    return organization


def _department_or_404(store: OrganizationStore, organization_id: int, department_id: int) -> Department:
    """The department, provided it belongs to the organization in the path."""
    department = store.get_department(department_id)
    if department is None or department.organization_id != organization_id:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Department not found"})
    return department


def _duplicate_code() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "conflict", "message": "Department code already exists in this organization"},
    )


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@router.get("/organizations", response_model=list[OrganizationResponse])
def list_organizations(request: Request, identity: Identity = Depends(_staff)) -> list[OrganizationResponse]:
    return [OrganizationResponse.model_validate(o) for o in _orgs(request).list_organizations()]


@router.post("/organizations", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> OrganizationResponse:
    store = _orgs(request)
    organization_id = store.create_organization(Organization(name=body.name))
    request.app.state.audit.record(
        "organization_create", user_id=identity.user_id, table_name="organizations",
        record_id=organization_id, new_values={"name": body.name}, client=client,
    )
    return OrganizationResponse.model_validate(_org_or_404(store, organization_id))


@router.get("/organizations/{organization_id}", response_model=OrganizationResponse)
def get_organization(
    request: Request,
    organization_id: int,
    identity: Identity = Depends(belongs_to_organization),
) -> OrganizationResponse:
    return OrganizationResponse.model_validate(_org_or_404(_orgs(request), organization_id))


@router.patch("/organizations/{organization_id}", response_model=OrganizationResponse)
def update_organization(
    request: Request,
    organization_id: int,
    body: OrganizationPatch,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> OrganizationResponse:
    store = _orgs(request)
    existing = _org_or_404(store, organization_id)
    store.update_organization(organization_id, body.name)
    request.app.state.audit.record(
        "organization_update", user_id=identity.user_id, table_name="organizations",
        record_id=organization_id, old_values={"name": existing.name}, new_values={"name": body.name},
        client=client,
    )
    return OrganizationResponse.model_validate(_org_or_404(store, organization_id))


@router.delete("/organizations/{organization_id}", response_model=MessageResponse)
def delete_organization(
    request: Request,
    organization_id: int,
    identity: Identity = Depends(require_admin),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Delete an organization. Refused while it still has departments or users."""
    store = _orgs(request)
    existing = _org_or_404(store, organization_id)
    try:
        store.delete_organization(organization_id)
    except OrganizationInUseError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "organization_in_use",
                "message": "Cannot delete organization with departments or users",
                "department_count": exc.department_count,
                "user_count": exc.user_count,
            },
        ) from exc
    request.app.state.audit.record(
        "organization_delete", user_id=identity.user_id, table_name="organizations",
        record_id=organization_id, old_values={"name": existing.name}, client=client,
    )
    return MessageResponse(message="Organization deleted successfully")


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------


@router.get("/organizations/{organization_id}/departments", response_model=list[DepartmentResponse])
def list_departments(
    request: Request,
    organization_id: int,
    identity: Identity = Depends(belongs_to_organization),
) -> list[DepartmentResponse]:
    store = _orgs(request)
    _org_or_404(store, organization_id)
    return [DepartmentResponse.model_validate(d) for d in store.list_departments(organization_id)]


@router.post(
    "/organizations/{organization_id}/departments",
    response_model=DepartmentResponse,
    status_code=201,
    dependencies=[Depends(belongs_to_organization)],
)
def create_department(
    request: Request,
    organization_id: int,
    body: DepartmentCreate,
    identity: Identity = Depends(_staff),
    client: ClientInfo = Depends(client_info),
) -> DepartmentResponse:
    store = _orgs(request)
    _org_or_404(store, organization_id)
    department = Department(organization_id=organization_id, name=body.name, department_code=body.department_code)
    try:
        department_id = store.create_department(department)
    except IntegrityError as exc:
        raise _duplicate_code() from exc
    request.app.state.audit.record(
        "department_create", user_id=identity.user_id, table_name="departments",
        record_id=department_id, new_values={"name": body.name, "department_code": body.department_code},
        client=client,
    )
    department.id = department_id
    return DepartmentResponse.model_validate(department)


@router.patch(
    "/organizations/{organization_id}/departments/{department_id}",
    response_model=DepartmentResponse,
    dependencies=[Depends(belongs_to_organization)],
)
def update_department(
    request: Request,
    organization_id: int,
    department_id: int,
    body: DepartmentPatch,
    identity: Identity = Depends(_staff),
    client: ClientInfo = Depends(client_info),
) -> DepartmentResponse:
    store = _orgs(request)
    existing = _department_or_404(store, organization_id, department_id)
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})
    try:
        store.update_department(department_id, **updates)
    except IntegrityError as exc:
        raise _duplicate_code() from exc
    updated = _department_or_404(store, organization_id, department_id)
    request.app.state.audit.record(
        "department_update", user_id=identity.user_id, table_name="departments", record_id=department_id,
        old_values={"name": existing.name, "department_code": existing.department_code},
        new_values={"name": updated.name, "department_code": updated.department_code}, client=client,
    )
    return DepartmentResponse.model_validate(updated)


@router.delete(
    "/organizations/{organization_id}/departments/{department_id}",
    response_model=MessageResponse,
    dependencies=[Depends(belongs_to_organization)],
)
def delete_department(
    request: Request,
    organization_id: int,
    department_id: int,
    identity: Identity = Depends(_staff),
    client: ClientInfo = Depends(client_info),
) -> MessageResponse:
    """Delete a department. Refused while users still belong to it."""
    store = _orgs(request)
    existing = _department_or_404(store, organization_id, department_id)
    try:
        store.delete_department(department_id)
    except DepartmentInUseError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "department_in_use",
                "message": "Cannot delete department with users",
                "user_count": exc.user_count,
            },
        ) from exc
    request.app.state.audit.record(
        "department_delete", user_id=identity.user_id, table_name="departments", record_id=department_id,
        old_values={"name": existing.name, "department_code": existing.department_code}, client=client,
    )
    return MessageResponse(message="Department deleted successfully")

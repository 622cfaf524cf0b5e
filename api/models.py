"""
API request and response models for the Crewgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Login and reset emails are NOT whitespace-stripped: email matching is exact,
so the value that reaches the Auth Service is the value the client sent.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
RESET_TOKEN_PATTERN = r"^[0-9a-f]{64}$"
NAME_PATTERN = r"^[a-z][a-z0-9_]*$"  # permission resource / action segments

# bcrypt only reads the first 72 bytes; cap input so hashing cost stays bounded.
PASSWORD_MAX = 128


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Body of 422 / 429 / 500 responses produced by the exception handlers."""

    model_config = ConfigDict(frozen=True)

    message: str
    detail: Optional[Any] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class UserResponse(BaseModel):
    """Public view of a user. Credentials are never part of it."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    employee_id: str
    first_name: str
    last_name: str
    email: str
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    rank: Optional[str] = None
    primary_role_id: int
    role_name: Optional[str] = None
    is_active: bool
    last_login: Optional[str] = None
    created_at: Optional[str] = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Login successful"
    user: UserResponse
    expires_at: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- the request's Identity."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    role: str
    permissions: list[str]


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: str
    current: bool = False


class InvalidatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    invalidated: int


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class PasswordResetRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)


class PasswordResetConfirm(BaseModel):
    token: str = Field(pattern=RESET_TOKEN_PATTERN)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class PasswordResetIssued(BaseModel):
    """Response for POST /auth/password-reset/request.

    reset_token is only populated in DEBUG mode; in production the token is
    delivered out of band and the response is identical for every email.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    reset_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users.

    When password is omitted a random one is generated and returned once in
    UserCreatedResponse.generated_password.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    employee_id: str = Field(min_length=1, max_length=50)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    primary_role_id: int
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    rank: Optional[str] = Field(default=None, max_length=50)
    password: Optional[str] = Field(default=None, min_length=1, max_length=PASSWORD_MAX)


class UserCreatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    generated_password: Optional[str] = None


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Only supplied fields change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    employee_id: Optional[str] = Field(default=None, min_length=1, max_length=50)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    primary_role_id: Optional[int] = None
    organization_id: Optional[int] = None
    department_id: Optional[int] = None
    rank: Optional[str] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class SecondaryRolesUpdate(BaseModel):
    role_ids: list[int] = Field(default_factory=list, max_length=50)


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)


class RolePatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=500)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None


class PermissionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    resource: str = Field(min_length=1, max_length=100, pattern=NAME_PATTERN)
    action: str = Field(min_length=1, max_length=50, pattern=NAME_PATTERN)
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    resource: str
    action: str
    description: Optional[str] = None


class RolePermissionsUpdate(BaseModel):
    permission_ids: list[int] = Field(max_length=500)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class OrganizationPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    created_at: Optional[str] = None


class DepartmentCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    department_code: Optional[str] = Field(default=None, max_length=50)


class DepartmentPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    department_code: Optional[str] = Field(default=None, max_length=50)


class DepartmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    organization_id: int
    name: str
    department_code: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    user_id: Optional[int] = None
    action: str
    table_name: Optional[str] = None
    record_id: Optional[int] = None
    old_values: Optional[str] = None
    new_values: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[str] = None

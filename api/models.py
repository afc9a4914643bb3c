"""
API request and response models for the wikiauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Credential fields never appear in a response model: UserResponse is built
from PublicUser (UserStore.to_safe), which has no password_hash or api_key.
The only response that carries an API key is ApiKeyResponse, returned once to
the key's owner.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import PublicUser, Role, UserSummary

# ---------------------------------------------------------------------------
# Error envelope / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component reports "ok", else "degraded".
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only shape is enforced here. Username, email and password rules live in
    auth/credentials.py so the CLI applies the same policy; the route turns
    their messages into 400 responses.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(max_length=64)
    email: str = Field(max_length=254)
    password: str = Field(max_length=1024)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=1024)


class PasswordChangeRequest(BaseModel):
    """Request body for PUT /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(max_length=1024)


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/users/{user_id}.

    Omitted fields are left unchanged.
    """

    role_id: Optional[str] = None
    is_active: Optional[bool] = None


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/admin/roles."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role_name: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_-]+$")
    permissions: list[str] = Field(default_factory=list, max_length=100)
    description: str = Field(default="", max_length=255)


class RoleUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/roles/{role_id}. Replaces the whole set."""

    permissions: list[str] = Field(max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. No credential fields."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    role_id: Optional[str]
    is_active: bool
    created_at: int
    updated_at: Optional[int] = None

    @classmethod
    def from_public(cls, user: PublicUser) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            role_id=user.role_id,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )

    @classmethod
    def from_summary(cls, user: UserSummary) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            username=user.username,
            email=user.email,
            role_id=user.role_id,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_id: str
    role_name: str
    permissions: list[str]
    description: str
    created_at: int
    builtin: bool = False

    @classmethod
    def from_role(cls, role: Role, builtin: bool = False) -> "RoleResponse":
        return cls(
            role_id=role.role_id,
            role_name=role.role_name,
            permissions=list(role.permissions),
            description=role.description,
            created_at=role.created_at,
            builtin=builtin,
        )


class AuthResponse(BaseModel):
    """Response for register and login: the signed-in user plus role name."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    role: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    role: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)
    is_admin: bool = False


class PermissionsResponse(BaseModel):
    """Response for GET /api/v1/auth/permissions. Anonymous callers get an empty set."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    role: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)
    is_admin: bool = False


class ApiKeyResponse(BaseModel):
    """Response for POST /api/v1/auth/api-key. The only place a key is ever returned."""

    model_config = ConfigDict(frozen=True)

    api_key: str


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    users: list[UserResponse]
    total: int


class RoleListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    roles: list[RoleResponse]


class InitResponse(BaseModel):
    """Response for POST /api/v1/admin/init."""

    model_config = ConfigDict(frozen=True)

    created: list[str]


class StatsResponse(BaseModel):
    """Response for GET /api/v1/admin/stats."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    total_roles: int


class ApiIdentityResponse(BaseModel):
    """Response for GET /openapi/me -- the identity behind an X-API-Key."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: Optional[str]
    role_id: Optional[str]

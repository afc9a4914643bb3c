"""
api/routes/v1/admin.py -- User and role administration (admin role only).

Routes:
  GET    /api/v1/admin/users                       -- list users (keyset-paged scan)
  GET    /api/v1/admin/users/{user_id}             -- user detail
  PUT    /api/v1/admin/users/{user_id}             -- change role_id / is_active
  DELETE /api/v1/admin/users/{user_id}             -- deactivate (users are never hard-deleted)
  POST   /api/v1/admin/users/{user_id}/reactivate  -- reactivate
  GET    /api/v1/admin/roles                       -- list roles
  POST   /api/v1/admin/roles                       -- create a custom role
  PUT    /api/v1/admin/roles/{role_id}             -- replace a custom role's permissions
  DELETE /api/v1/admin/roles/{role_id}             -- delete a custom role
  POST   /api/v1/admin/init                        -- create missing built-in roles
  GET    /api/v1/admin/stats                       -- user and role counts

Guards:
  Every handler is wrapped with RequireAdmin.
  An admin cannot change their own role or deactivate themselves, so the
  last admin cannot lock everyone out by accident.
  Built-in roles (admin, editor, viewer) cannot be updated or deleted.
  Deleting a role does not touch users that still reference it.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from api.models import (
    ErrorDetail,
    InitResponse,
    MessageResponse,
    RoleCreate,
    RoleListResponse,
    RoleResponse,
    RoleUpdate,
    StatsResponse,
    UserListResponse,
    UserResponse,
    UserUpdate,
)
from auth.gate import Gate, protect
from auth.models import Role, User
from auth.policies import RequireAdmin
from auth.roles import BUILTIN_ROLES, RoleStore
from auth.users import UserStore

logger = logging.getLogger("wikiauth.api")

router = APIRouter()


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail=ErrorDetail(code=code, message=message).model_dump())


def _get_user_or_404(users: UserStore, user_id: str) -> User:
    user = users.find_by_id(user_id)
    if user is None:
        raise _error(404, "not_found", "User not found")
    return user


def _get_role_or_404(roles: RoleStore, role_id: str) -> Role:
    role = roles.find_by_id(role_id)
    if role is None:
        raise _error(404, "not_found", "Role not found")
    return role


def _is_builtin(role: Role) -> bool:
    return role.role_name in BUILTIN_ROLES


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=UserListResponse)
@protect(RequireAdmin())
def list_users(request: Request, page_size: int = Query(default=100, ge=1, le=1000)) -> UserListResponse:
    users: UserStore = request.app.state.users
    rows = [UserResponse.from_summary(u) for u in users.list_all(limit=page_size)]
    return UserListResponse(users=rows, total=len(rows))


@router.get("/admin/users/{user_id}", response_model=UserResponse)
@protect(RequireAdmin())
def get_user(request: Request, user_id: str) -> UserResponse:
    users: UserStore = request.app.state.users
    return UserResponse.from_public(users.to_safe(_get_user_or_404(users, user_id)))


@router.put("/admin/users/{user_id}", response_model=UserResponse)
@protect(RequireAdmin())
def update_user(request: Request, user_id: str, body: UserUpdate) -> UserResponse:
    """Change a user's role and/or active flag. Omitted fields are left alone."""
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users
    roles: RoleStore = request.app.state.roles

    user = _get_user_or_404(users, user_id)
    fields = body.model_dump(exclude_none=True)
    if not fields:
        return UserResponse.from_public(users.to_safe(user))

    if user.user_id == gate.current_user_id(request):
        raise _error(400, "bad_request", "Cannot change your own role or status")
    if "role_id" in fields and roles.find_by_id(fields["role_id"]) is None:
        raise _error(400, "bad_request", "Unknown role_id")

    updated = users.update(user_id, **fields)
    if updated is None:
        raise _error(404, "not_found", "User not found")
    logger.info("Admin %s updated user %s: %s", gate.current_user_id(request), user_id, sorted(fields))
    return UserResponse.from_public(users.to_safe(updated))


@router.delete("/admin/users/{user_id}", response_model=MessageResponse)
@protect(RequireAdmin())
def deactivate_user(request: Request, user_id: str) -> MessageResponse:
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users

    _get_user_or_404(users, user_id)
    if user_id == gate.current_user_id(request):
        raise _error(400, "bad_request", "Cannot deactivate your own account")
    users.deactivate(user_id)
    logger.info("Admin %s deactivated user %s", gate.current_user_id(request), user_id)
    return MessageResponse(message="User deactivated")


@router.post("/admin/users/{user_id}/reactivate", response_model=MessageResponse)
@protect(RequireAdmin())
def reactivate_user(request: Request, user_id: str) -> MessageResponse:
    users: UserStore = request.app.state.users

    _get_user_or_404(users, user_id)
    users.reactivate(user_id)
    return MessageResponse(message="User reactivated")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/admin/roles", response_model=RoleListResponse)
@protect(RequireAdmin())
def list_roles(request: Request) -> RoleListResponse:
    roles: RoleStore = request.app.state.roles
    return RoleListResponse(roles=[RoleResponse.from_role(r, builtin=_is_builtin(r)) for r in roles.list_all()])


@router.post("/admin/roles", status_code=201, response_model=RoleResponse)
@protect(RequireAdmin())
def create_role(request: Request, body: RoleCreate) -> RoleResponse:
    """Create a custom role. An existing name is a 409 via DuplicateRole."""
    roles: RoleStore = request.app.state.roles
    role = roles.create(body.role_name, permissions=body.permissions, description=body.description)
    return RoleResponse.from_role(role)


@router.put("/admin/roles/{role_id}", response_model=RoleResponse)
@protect(RequireAdmin())
def update_role(request: Request, role_id: str, body: RoleUpdate) -> RoleResponse:
    roles: RoleStore = request.app.state.roles

    role = _get_role_or_404(roles, role_id)
    if _is_builtin(role):
        raise _error(400, "bad_request", "Cannot modify built-in roles")
    updated = roles.update_permissions(role_id, body.permissions)
    if updated is None:
        raise _error(404, "not_found", "Role not found")
    return RoleResponse.from_role(updated)


@router.delete("/admin/roles/{role_id}", response_model=MessageResponse)
@protect(RequireAdmin())
def delete_role(request: Request, role_id: str) -> MessageResponse:
    roles: RoleStore = request.app.state.roles

    role = _get_role_or_404(roles, role_id)
    if _is_builtin(role):
        raise _error(400, "bad_request", "Cannot delete built-in roles")
    roles.delete(role_id)
    return MessageResponse(message="Role deleted")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@router.post("/admin/init", response_model=InitResponse)
@protect(RequireAdmin())
def init_roles(request: Request) -> InitResponse:
    """Create any missing built-in role and refresh the cached well-known ids."""
    gate: Gate = request.app.state.gate
    roles: RoleStore = request.app.state.roles

    created = roles.init_defaults()
    gate.refresh_roles()
    return InitResponse(created=[r.role_name for r in created])


@router.get("/admin/stats", response_model=StatsResponse)
@protect(RequireAdmin())
def stats(request: Request) -> StatsResponse:
    users: UserStore = request.app.state.users
    roles: RoleStore = request.app.state.roles
    return StatsResponse(
        total_users=users.count(),
        active_users=users.count_active(),
        total_roles=len(roles.list_all()),
    )

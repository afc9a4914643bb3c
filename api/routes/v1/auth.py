"""
api/routes/v1/auth.py -- Account endpoints: register, login, logout, self-service.

Routes:
  POST /api/v1/auth/register     -- create account with the default role; signs in (201)
  POST /api/v1/auth/login        -- password login; sets session cookie
  POST /api/v1/auth/logout       -- clears session and cookie (requires auth)
  GET  /api/v1/auth/me           -- current user, role and permissions (requires auth)
  PUT  /api/v1/auth/password     -- change own password (requires auth)
  POST /api/v1/auth/api-key      -- rotate own API key, returns the new key (requires auth)
  GET  /api/v1/auth/permissions  -- caller's permission set, empty when anonymous

Security:
  UserStore.authenticate() runs one bcrypt check on every path. Do NOT inline
  find_by_username() + verify_password() -- that re-opens the timing side channel.
  Login always starts a fresh session so a pre-login session id is never promoted.
  Cache-Control: no-store on every response that sets a session cookie.

No `from __future__ import annotations` here: @protect wraps these handlers,
and FastAPI resolves string annotations against the wrapper's module, not
this one.
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import (
    ApiKeyResponse,
    AuthResponse,
    ErrorDetail,
    LoginRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PermissionsResponse,
    RegisterRequest,
    UserResponse,
)
from auth.credentials import validate_email, validate_password, validate_username, verify_password
from auth.gate import Gate, protect
from auth.policies import OptionalAuth, RequireAuth
from auth.roles import RoleStore
from auth.users import UserStore

router = APIRouter()


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail=ErrorDetail(code="bad_request", message=message).model_dump())


def _signed_in(request: Request, status_code: int, content: dict, session_id: str) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    request.app.state.gate.set_session_cookie(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201, response_model=AuthResponse)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account with the default role and sign it in.

    Duplicate username/email raise DirectoryError subclasses; the app-level
    handler renders them as 409.
    """
    for error in (
        validate_username(body.username),
        validate_email(body.email),
        validate_password(body.password),
    ):
        if error:
            raise _bad_request(error)

    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users
    roles: RoleStore = request.app.state.roles

    default_role_id = gate.well_known.default_role_id
    if default_role_id is None:
        default_role_id = gate.refresh_roles().default_role_id

    user = users.create(body.username, body.email, body.password, role_id=default_role_id)
    gate.clear_session(request)
    session_id = gate.set_session_user(request, user)
    role = roles.find_by_id(user.role_id)
    content = AuthResponse(
        user=UserResponse.from_public(users.to_safe(user)),
        role=role.role_name if role is not None else None,
    ).model_dump()
    return _signed_in(request, 201, content, session_id)


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Returns the same generic error for unknown user, inactive user and wrong
    password so the response does not reveal which one applied.
    """
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users

    user = users.authenticate(body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password"}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    gate.clear_session(request)
    session_id = gate.set_session_user(request, user)
    role_name = gate.get_session_value(request, "role")
    content = AuthResponse(user=UserResponse.from_public(users.to_safe(user)), role=role_name).model_dump()
    return _signed_in(request, 200, content, session_id)


@router.get("/auth/permissions", response_model=PermissionsResponse)
@protect(OptionalAuth())
async def permissions(request: Request) -> PermissionsResponse:
    """Return the caller's permission set. Anonymous callers get an empty one."""
    gate: Gate = request.app.state.gate
    session_user = gate.current_user(request)
    if session_user is None:
        return PermissionsResponse(authenticated=False)
    roles: RoleStore = request.app.state.roles
    return PermissionsResponse(
        authenticated=True,
        role=session_user.role,
        permissions=roles.get_permissions(session_user.role_id),
        is_admin=gate.well_known.is_admin(session_user.role_id),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
@protect(RequireAuth())
async def logout(request: Request) -> JSONResponse:
    """Delete the server-side session and clear the cookie."""
    gate: Gate = request.app.state.gate
    gate.clear_session(request)
    resp = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    gate.clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
@protect(RequireAuth())
async def me(request: Request) -> MeResponse:
    """Return the signed-in user with role name and permissions."""
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users
    roles: RoleStore = request.app.state.roles

    user = users.find_by_id(gate.current_user_id(request))
    if user is None:
        raise HTTPException(status_code=404, detail=ErrorDetail(code="not_found", message="User not found").model_dump())
    role = roles.find_by_id(user.role_id)
    return MeResponse(
        user=UserResponse.from_public(users.to_safe(user)),
        role=role.role_name if role is not None else None,
        permissions=list(role.permissions) if role is not None else [],
        is_admin=gate.well_known.is_admin(user.role_id),
    )


@router.put("/auth/password", response_model=MessageResponse)
@protect(RequireAuth())
def change_password(request: Request, body: PasswordChangeRequest) -> MessageResponse:
    """Change the signed-in user's password after re-checking the current one."""
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users

    user = users.find_by_id(gate.current_user_id(request))
    if user is None or not verify_password(body.current_password, user.password_hash):
        raise _bad_request("Current password is incorrect")
    error = validate_password(body.new_password)
    if error:
        raise _bad_request(error)
    users.change_password(user.user_id, body.new_password)
    return MessageResponse(message="Password updated")


@router.post("/auth/api-key", response_model=ApiKeyResponse)
@protect(RequireAuth())
async def rotate_api_key(request: Request) -> JSONResponse:
    """Replace the signed-in user's API key. The old key stops working immediately."""
    gate: Gate = request.app.state.gate
    users: UserStore = request.app.state.users

    api_key = users.regenerate_api_key(gate.current_user_id(request))
    if api_key is None:
        raise HTTPException(status_code=404, detail=ErrorDetail(code="not_found", message="User not found").model_dump())
    resp = JSONResponse(content=ApiKeyResponse(api_key=api_key).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp

"""
auth/gate.py -- Session-derived authorization for FastAPI handlers.

Gate.check(policy, request) is the decision function. It returns None when
the request may proceed, or a terminal JSONResponse (401/403) that ends the
request. Expected authorization failures are never raised as exceptions --
the response object is the result.

wrap(handler, policy) / @protect(policy) run exactly one policy before the
handler and hand back the terminal response verbatim if there is one,
otherwise whatever the handler returned. The protected handler must accept a
`request: Request` parameter; the Gate instance is read from
request.app.state.gate at call time so routers can be decorated at import.

Session keys:
  Cookie path:  user_id, username (cache flag), role_id, role
  API-key path: api_user_id, api_username, api_role_id

"Authenticated" means the cookie session carries a user_id. The gate only
creates a session itself on the API-key path; that session is attached to
request.state so the handler sees it in the same request. No cookie is
issued for it, and wrap() deletes it once the handler returns.

Layer rule: no imports from api/. SessionStore is imported for type checking
only -- the live instance is injected by the application lifespan.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from auth.models import SessionUser, User, WellKnownRoles
from auth.policies import (
    OptionalAuth,
    Policy,
    RequireAdmin,
    RequireApiKey,
    RequireAuth,
    RequirePermission,
    RequireRole,
)
from core.config import get_settings

if TYPE_CHECKING:
    from auth.roles import RoleStore
    from auth.users import UserStore
    from sessions.store import SessionStore

logger = logging.getLogger("wikiauth.gate")

API_KEY_HEADER = "X-API-Key"

AUTH_REQUIRED = "Authentication required"
SESSION_EXPIRED = "Session expired"
API_KEY_REQUIRED = "API key required"
INVALID_API_KEY = "Invalid API key"
ADMIN_REQUIRED = "Admin access required"


def _deny(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})


def unauthorized(message: str) -> JSONResponse:
    return _deny(401, "unauthorized", message)


def forbidden(message: str) -> JSONResponse:
    return _deny(403, "forbidden", message)


class Gate:
    """Authorization decisions over the session store and the directories."""

    def __init__(
        self,
        users: UserStore,
        roles: RoleStore,
        sessions: SessionStore,
        well_known: WellKnownRoles,
    ) -> None:
        settings = get_settings()
        self.users = users
        self.roles = roles
        self.sessions = sessions
        self.well_known = well_known
        self.cookie_name = settings.session_cookie_name
        self._cookie_max_age = settings.session_max_age
        self._cookie_samesite = settings.session_samesite
        self._cookie_secure = settings.secure_cookies

    def refresh_roles(self) -> WellKnownRoles:
        """Re-run the built-in role bootstrap and keep the new ids."""
        self.well_known = self.roles.bootstrap()
        return self.well_known

    # ------------------------------------------------------------------
    # Session access
    # ------------------------------------------------------------------

    def session(self, request: Request) -> tuple[str | None, dict]:
        """Return (session_id, data) for the request, or (None, {}) if there is none.

        A session attached earlier in this request (API-key path, login) wins
        over the cookie.
        """
        session_id = getattr(request.state, "session_id", None)
        if session_id is None:
            session_id = self.sessions.verify(request.cookies.get(self.cookie_name))
        data = self.sessions.load(session_id)
        if data is None:
            return None, {}
        request.state.session_id = session_id
        return session_id, data

    def get_or_create_session(self, request: Request) -> tuple[str, dict]:
        session_id, data = self.session(request)
        if session_id is None:
            session_id, data = self.sessions.create()
            request.state.session_id = session_id
        return session_id, data

    def get_session_value(self, request: Request, key: str) -> Any:
        return self.session(request)[1].get(key)

    def is_authenticated(self, request: Request) -> bool:
        session_id, data = self.session(request)
        return session_id is not None and data.get("user_id") is not None

    def set_session_user(self, request: Request, user: User) -> str:
        """Cache the user's identity in the request's session (login). Returns the session id."""
        role = self.roles.find_by_id(user.role_id)
        session_id, _ = self.get_or_create_session(request)
        self.sessions.update(
            session_id,
            {
                "user_id": user.user_id,
                "username": user.username,
                "role_id": user.role_id,
                "role": role.role_name if role is not None else None,
            },
        )
        return session_id

    def clear_session(self, request: Request) -> str | None:
        """Delete the request's session (logout). Returns the cleared id, if any."""
        session_id, _ = self.session(request)
        self.sessions.clear(session_id)
        request.state.session_id = None
        return session_id

    def set_session_cookie(self, response, session_id: str) -> None:
        """Write the signed session id as an httpOnly cookie on the response."""
        response.set_cookie(
            self.cookie_name,
            value=self.sessions.sign(session_id),
            path="/",
            max_age=self._cookie_max_age,
            httponly=True,
            samesite=self._cookie_samesite,
            secure=self._cookie_secure,
        )

    def clear_session_cookie(self, response) -> None:
        response.delete_cookie(self.cookie_name, path="/")

    def release_request_session(self, request: Request) -> None:
        """Delete the session the API-key path created for this request, if any."""
        if getattr(request.state, "request_scoped_session", False):
            self.clear_session(request)
            request.state.request_scoped_session = False

    # ------------------------------------------------------------------
    # Read-only accessors for handlers
    # ------------------------------------------------------------------

    def current_user(self, request: Request) -> SessionUser | None:
        """Identity cached in the cookie session, or None."""
        _, data = self.session(request)
        if data.get("user_id") is None:
            return None
        return SessionUser(
            user_id=data["user_id"],
            username=data.get("username"),
            role_id=data.get("role_id"),
            role=data.get("role"),
        )

    def current_user_id(self, request: Request) -> str | None:
        """Cookie-session user_id, falling back to the API-key identity."""
        _, data = self.session(request)
        user_id = data.get("user_id")
        if user_id is None:
            user_id = data.get("api_user_id")
        return user_id

    def current_role_id(self, request: Request) -> str | None:
        _, data = self.session(request)
        role_id = data.get("role_id")
        if role_id is None:
            role_id = data.get("api_role_id")
        return role_id

    def has_permission(self, request: Request, permission: str) -> bool:
        """True if the caller's role grants permission. The admin role grants everything."""
        role_id = self.current_role_id(request)
        if role_id is None:
            return False
        if self.well_known.is_admin(role_id):
            return True
        return self.roles.has_permission(role_id, permission)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def check(self, policy: Policy, request: Request) -> JSONResponse | None:
        """Run one policy. None means continue to the handler."""
        if isinstance(policy, RequireAuth):
            return self._require_auth(request)
        if isinstance(policy, OptionalAuth):
            if self.is_authenticated(request):
                self._load_session_user(request)
            return None
        if isinstance(policy, RequireAdmin):
            return self._require_admin(request)
        if isinstance(policy, RequireRole):
            return self._require_role(request, policy.name)
        if isinstance(policy, RequirePermission):
            return self._require_permission(request, policy.permission)
        if isinstance(policy, RequireApiKey):
            return self._require_api_key(request)
        raise TypeError(f"Unknown authorization policy: {policy!r}")

    def _load_session_user(self, request: Request) -> bool:
        """Fill an authenticated session that has no cached username.

        Returns False after clearing the session when its user_id no longer
        resolves to an active user.
        """
        session_id, data = self.session(request)
        if data.get("username"):
            return True
        user = self.users.find_by_id(data.get("user_id"))
        if user is None or not user.is_active:
            logger.info("Clearing session of missing or inactive user %s", data.get("user_id"))
            self.sessions.clear(session_id)
            request.state.session_id = None
            return False
        self.set_session_user(request, user)
        return True

    def _require_auth(self, request: Request) -> JSONResponse | None:
        if not self.is_authenticated(request):
            return unauthorized(AUTH_REQUIRED)
        if not self._load_session_user(request):
            return unauthorized(SESSION_EXPIRED)
        return None

    def _require_admin(self, request: Request) -> JSONResponse | None:
        denied = self._require_auth(request)
        if denied is not None:
            return denied
        if not self.well_known.is_admin(self.get_session_value(request, "role_id")):
            return forbidden(ADMIN_REQUIRED)
        return None

    def _require_role(self, request: Request, role_name: str) -> JSONResponse | None:
        denied = self._require_auth(request)
        if denied is not None:
            return denied
        role_id = self.get_session_value(request, "role_id")
        if self.well_known.is_admin(role_id):
            return None
        if role_id is None or self.roles.get_role_id(role_name) != role_id:
            return forbidden(f"Role '{role_name}' required")
        return None

    def _require_permission(self, request: Request, permission: str) -> JSONResponse | None:
        denied = self._require_auth(request)
        if denied is not None:
            return denied
        if not self.has_permission(request, permission):
            return forbidden(f"Permission '{permission}' required")
        return None

    def _require_api_key(self, request: Request) -> JSONResponse | None:
        api_key = request.headers.get(API_KEY_HEADER)
        if not api_key:
            return unauthorized(API_KEY_REQUIRED)
        user = self.users.find_by_api_key(api_key)
        if user is None or not user.is_active:
            return unauthorized(INVALID_API_KEY)
        session_id, _ = self.session(request)
        if session_id is None:
            # No cookie will ever point at this session: it lives for this request only.
            session_id, _ = self.sessions.create()
            request.state.session_id = session_id
            request.state.request_scoped_session = True
        self.sessions.update(
            session_id,
            {
                "api_user_id": user.user_id,
                "api_username": user.username,
                "api_role_id": user.role_id,
            },
        )
        return None


# ---------------------------------------------------------------------------
# Handler wrapping
# ---------------------------------------------------------------------------


def _find_request(args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for arg in args:
        if isinstance(arg, Request):
            return arg
    raise TypeError("Protected handler was called without a Request")


def wrap(handler: Callable, policy: Policy = RequireAuth()) -> Callable:
    """Return handler guarded by policy.

    The wrapper keeps the handler's signature (functools.wraps) so FastAPI
    still sees its parameters. The policy check does blocking store I/O, so
    it runs in the threadpool, as do sync handlers (the same way FastAPI runs
    an unwrapped `def` endpoint). A session created by the API-key path is
    deleted once the handler returns.
    """
    if "request" not in inspect.signature(handler).parameters:
        raise TypeError(f"{handler.__name__} must accept a 'request: Request' parameter to be protected")

    @functools.wraps(handler)
    async def protected(*args, **kwargs):
        request = _find_request(args, kwargs)
        gate: Gate = request.app.state.gate
        terminal = await run_in_threadpool(gate.check, policy, request)
        if terminal is not None:
            return terminal
        try:
            if inspect.iscoroutinefunction(handler):
                return await handler(*args, **kwargs)
            return await run_in_threadpool(handler, *args, **kwargs)
        finally:
            await run_in_threadpool(gate.release_request_session, request)

    protected.policy = policy  # type: ignore[attr-defined]
    return protected


def protect(policy: Policy = RequireAuth()) -> Callable[[Callable], Callable]:
    """Decorator form of wrap()."""

    def decorator(handler: Callable) -> Callable:
        return wrap(handler, policy)

    return decorator

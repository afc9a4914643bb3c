"""
auth/policies.py -- The closed set of authorization policies.

A policy is a small frozen value that says which check the gate runs before a
protected handler. Exactly one policy guards each handler; policies are never
stacked or merged. Gate.check() dispatches on the concrete type and raises
TypeError for anything outside this module, so an unknown policy fails loudly
instead of silently allowing the request.

    @router.get("/admin/users")
    @protect(RequireAdmin())
    async def list_users(request: Request): ...

    @protect(RequireRole("editor"))
    @protect(RequirePermission("page:write"))   # NOT supported -- one policy per handler
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class RequireAuth:
    """Cookie session must belong to an active user."""


@dataclass(frozen=True)
class OptionalAuth:
    """Load the session user if there is one. Never rejects."""


@dataclass(frozen=True)
class RequireAdmin:
    """RequireAuth, then the session role must be the admin role."""


@dataclass(frozen=True)
class RequireRole:
    """RequireAuth, then the session role must be the named role. Admins always pass."""

    name: str


@dataclass(frozen=True)
class RequirePermission:
    """RequireAuth, then the session role must grant the permission. Admins always pass."""

    permission: str


@dataclass(frozen=True)
class RequireApiKey:
    """X-API-Key header must resolve to an active user."""


Policy = Union[RequireAuth, OptionalAuth, RequireAdmin, RequireRole, RequirePermission, RequireApiKey]

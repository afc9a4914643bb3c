"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The directories in
auth/users.py and auth/roles.py own persistence; the gate and routes do the
work.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """A wiki account as stored in the primary users table.

    password_hash and api_key are credentials. Convert with UserStore.to_safe()
    before handing a record to anything that renders output.

    role_id may be None for accounts created before any role was assigned.
    Timestamps are milliseconds since the epoch.
    """

    user_id: str
    username: str
    email: str
    password_hash: str
    api_key: str
    role_id: str | None = None
    is_active: bool = True
    created_at: int = 0
    updated_at: int = 0


@dataclass
class PublicUser:
    """User record with credentials stripped (no password_hash, no api_key)."""

    user_id: str
    username: str
    email: str
    role_id: str | None
    is_active: bool
    created_at: int
    updated_at: int


@dataclass
class UserSummary:
    """Partial user row yielded by UserStore.list_all()."""

    user_id: str
    username: str
    email: str
    role_id: str | None
    is_active: bool
    created_at: int


@dataclass
class Role:
    """A named permission set. permissions holds "resource:action" strings."""

    role_id: str
    role_name: str
    permissions: list[str] = field(default_factory=list)
    description: str = ""
    created_at: int = 0


@dataclass(frozen=True)
class WellKnownRoles:
    """Built-in role ids resolved once at startup by RoleStore.bootstrap().

    Either id is None when the corresponding built-in role is missing
    (e.g. deleted directly in the database). Callers must check before use.
    """

    admin_role_id: str | None
    default_role_id: str | None

    def is_admin(self, role_id: str | None) -> bool:
        return self.admin_role_id is not None and role_id == self.admin_role_id


@dataclass
class SessionUser:
    """Identity cached in a cookie session after login."""

    user_id: str
    username: str | None = None
    role_id: str | None = None
    role: str | None = None

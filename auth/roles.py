"""
auth/roles.py -- Role directory: primary roles table plus a by-name index.

Pattern: Repository + Data Mapper, same shape as auth/users.py. The
roles_by_name index carries a denormalized copy of the permission set;
create(), update_permissions() and delete() write primary and index rows in
one unit of work.

Built-in roles:
  admin, editor and viewer are created by init_defaults() if absent. The
  admin role is special by identity: a role_id is admin iff it equals the
  admin role's id. Admin status is never inferred from the permission set.

Well-known role ids:
  bootstrap() runs init_defaults() once at startup and resolves the admin and
  default (editor) role ids into an immutable WellKnownRoles value that the
  app keeps on app.state. default_role_id() / admin_role_id() / is_admin()
  still exist for the CLI and for re-bootstrapping, but they query by name on
  every call.

Deleting a role is a hard delete and does not check whether users still
reference the role_id. That is the caller's responsibility.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateRole
from auth.models import Role, WellKnownRoles
from auth.schema import create_store_engine, roles, roles_by_name
from auth.unit_of_work import run_unit_of_work
from core.config import get_settings

logger = logging.getLogger("wikiauth.roles")

ADMIN_ROLE = "admin"
EDITOR_ROLE = "editor"
VIEWER_ROLE = "viewer"

BUILTIN_ROLES: dict[str, dict] = {
    ADMIN_ROLE: {
        "permissions": [
            "user:read",
            "user:write",
            "user:delete",
            "role:manage",
            "space:read",
            "space:write",
            "space:delete",
            "space:admin",
            "page:read",
            "page:write",
            "page:delete",
        ],
        "description": "Administrator with full system access",
    },
    EDITOR_ROLE: {
        "permissions": ["space:read", "space:write", "page:read", "page:write"],
        "description": "Can create spaces and edit pages",
    },
    VIEWER_ROLE: {
        "permissions": ["space:read", "page:read"],
        "description": "Read-only access to spaces and pages",
    },
}

# New users get this role when the caller does not pick one.
DEFAULT_ROLE = EDITOR_ROLE


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_permissions(permissions: Iterable[str] | str | None) -> list[str]:
    """Return permissions as a de-duplicated list, preserving first-seen order.

    A bare string is treated as a single permission, not as an iterable of
    characters.
    """
    if permissions is None:
        return []
    if isinstance(permissions, str):
        permissions = [permissions]
    return list(dict.fromkeys(p for p in permissions if p))


class RoleStore:
    """Repository for Role records and the roles_by_name index.

    Usage:
        store = RoleStore()
        well_known = store.bootstrap()
        if store.has_permission(role_id, "page:write"): ...
        store.close()
    """

    def __init__(self, db_url: str | None = None, write_retries: int | None = None) -> None:
        settings = get_settings()
        self.engine = create_store_engine(db_url or settings.database_url)
        self.write_retries = settings.store_write_retries if write_retries is None else write_retries

    def _run(self, work, label: str):
        return run_unit_of_work(self.engine, work, retries=self.write_retries, label=label)

    # ------------------------------------------------------------------
    # Create / lookups
    # ------------------------------------------------------------------

    def create(
        self,
        role_name: str,
        permissions: Iterable[str] | str | None = None,
        description: str = "",
    ) -> Role:
        """Create a role and its by-name index row. Raises DuplicateRole if the name is taken."""
        if self.exists(role_name):
            raise DuplicateRole(role_name)

        role = Role(
            role_id=str(uuid.uuid4()),
            role_name=role_name,
            permissions=_normalize_permissions(permissions),
            description=description or "",
            created_at=_now_ms(),
        )
        encoded = json.dumps(role.permissions)

        def work(conn: Connection) -> None:
            conn.execute(
                roles.insert().values(
                    role_id=role.role_id,
                    role_name=role.role_name,
                    permissions=encoded,
                    description=role.description,
                    created_at=role.created_at,
                )
            )
            conn.execute(roles_by_name.insert().values(role_name=role.role_name, role_id=role.role_id, permissions=encoded))

        try:
            self._run(work, "create role")
        except IntegrityError as exc:
            raise DuplicateRole(role_name) from exc

        logger.info("Created role %s (%s)", role.role_name, role.role_id)
        return role

    def find_by_id(self, role_id: str | None) -> Role | None:
        if not role_id:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.role_id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_by_name(self, role_name: str) -> Role | None:
        """Resolve role_name via roles_by_name, then fetch the primary row."""
        return self.find_by_id(self.get_role_id(role_name))

    def get_role_id(self, role_name: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(roles_by_name.c.role_id).where(roles_by_name.c.role_name == role_name)).scalar()

    def exists(self, role_name: str) -> bool:
        return self.get_role_id(role_name) is not None

    def list_all(self) -> list[Role]:
        """Return all roles ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.role_name)).fetchall()
        return [_row_to_role(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_permissions(self, role_id: str, permissions: Iterable[str] | str | None) -> Role | None:
        """Replace the role's permission set on both primary and index rows.

        The new set overwrites the old one; nothing is merged. Returns the
        updated role, or None if role_id was not found.
        """
        new_permissions = _normalize_permissions(permissions)
        encoded = json.dumps(new_permissions)

        def work(conn: Connection) -> Role | None:
            row = conn.execute(roles.select().where(roles.c.role_id == role_id)).fetchone()
            if row is None:
                return None
            conn.execute(roles.update().where(roles.c.role_id == role_id).values(permissions=encoded))
            conn.execute(
                roles_by_name.update().where(roles_by_name.c.role_name == row.role_name).values(permissions=encoded)
            )
            role = _row_to_role(row)
            role.permissions = new_permissions
            return role

        return self._run(work, "update role permissions")

    def delete(self, role_id: str) -> bool:
        """Hard-delete the role and its index row. Returns False if not found."""

        def work(conn: Connection) -> bool:
            row = conn.execute(roles.select().where(roles.c.role_id == role_id)).fetchone()
            if row is None:
                return False
            conn.execute(roles.delete().where(roles.c.role_id == role_id))
            conn.execute(roles_by_name.delete().where(roles_by_name.c.role_name == row.role_name))
            return True

        deleted = self._run(work, "delete role")
        if deleted:
            logger.info("Deleted role %s", role_id)
        return deleted

    # ------------------------------------------------------------------
    # Permission checks
    # ------------------------------------------------------------------

    def get_permissions(self, role_id: str | None) -> list[str]:
        role = self.find_by_id(role_id)
        return list(role.permissions) if role is not None else []

    def has_permission(self, role_id: str | None, permission: str) -> bool:
        """Set-membership test. A missing role has no permissions."""
        return permission in self.get_permissions(role_id)

    # ------------------------------------------------------------------
    # Built-in roles
    # ------------------------------------------------------------------

    def init_defaults(self) -> list[Role]:
        """Create any built-in role that does not exist yet. Returns the ones created.

        Safe to call on every startup. A concurrent bootstrap that creates the
        same role first is treated as success.
        """
        created: list[Role] = []
        for role_name, definition in BUILTIN_ROLES.items():
            if self.exists(role_name):
                continue
            try:
                created.append(
                    self.create(
                        role_name,
                        permissions=definition["permissions"],
                        description=definition["description"],
                    )
                )
            except DuplicateRole:
                logger.info("Built-in role %s created concurrently", role_name)
        return created

    def default_role_id(self) -> str | None:
        return self.get_role_id(DEFAULT_ROLE)

    def admin_role_id(self) -> str | None:
        return self.get_role_id(ADMIN_ROLE)

    def is_admin(self, role_id: str | None) -> bool:
        admin_id = self.admin_role_id()
        return admin_id is not None and role_id == admin_id

    def bootstrap(self) -> WellKnownRoles:
        """Ensure the built-in roles exist and resolve their ids once."""
        created = self.init_defaults()
        if created:
            logger.info("Created built-in roles: %s", ", ".join(r.role_name for r in created))
        well_known = WellKnownRoles(admin_role_id=self.admin_role_id(), default_role_id=self.default_role_id())
        if well_known.admin_role_id is None or well_known.default_role_id is None:
            logger.error("Built-in roles missing after bootstrap: %s", well_known)
        return well_known

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_role(row) -> Role:
    return Role(
        role_id=row.role_id,
        role_name=row.role_name,
        permissions=json.loads(row.permissions or "[]"),
        description=row.description or "",
        created_at=row.created_at,
    )

"""
auth/schema.py -- SQLAlchemy Core table definitions for users and roles.

Each entity has one primary table keyed by its opaque id plus one index table
per alternate lookup key. Index tables are keyed by the alternate attribute,
so their primary keys double as the uniqueness constraints for username,
email, API key and role name. The primary tables carry no UNIQUE constraints
of their own: uniqueness lives where the point lookups happen.

Denormalized columns (kept equal to the primary row by auth/users.py and
auth/roles.py):
  users_by_username: password_hash, role_id, is_active
  users_by_api_key:  is_active
  roles_by_name:     permissions

Timestamps are BigInteger milliseconds since the epoch. Permissions are a
JSON array serialized as text.
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import SingletonThreadPool

metadata = MetaData()

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("user_id", String(36), primary_key=True),
    Column("username", String(32), nullable=False),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role_id", String(36)),  # NULL until a role is assigned
    Column("api_key", String(128), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

users_by_username = Table(
    "users_by_username",
    metadata,
    Column("username", String(32), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("role_id", String(36)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

users_by_email = Table(
    "users_by_email",
    metadata,
    Column("email", String(255), primary_key=True),
    Column("user_id", String(36), nullable=False),
)

users_by_api_key = Table(
    "users_by_api_key",
    metadata,
    Column("api_key", String(128), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

roles = Table(
    "roles",
    metadata,
    Column("role_id", String(36), primary_key=True),
    Column("role_name", String(64), nullable=False),
    Column("permissions", Text, nullable=False, server_default="[]"),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", BigInteger, nullable=False),
)

roles_by_name = Table(
    "roles_by_name",
    metadata,
    Column("role_name", String(64), primary_key=True),
    Column("role_id", String(36), nullable=False),
    Column("permissions", Text, nullable=False, server_default="[]"),
)


# ---------------------------------------------------------------------------
# Engine factory
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure every table exists."""
    engine_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI may touch the same pooled connection from several threads.
        engine_args["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or "mode=memory" in db_url:
            # One connection per thread keeps an in-memory database alive.
            engine_args["poolclass"] = SingletonThreadPool
    engine = create_engine(db_url, **engine_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine

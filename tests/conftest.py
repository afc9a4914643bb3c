"""
tests/conftest.py -- Shared test fixtures for wikiauth.

This module provides:
  - memory_db_url(): a fresh named shared-memory SQLite URL
  - _make_test_stores(): UserStore + RoleStore on one in-memory DB, plus a SessionStore
  - _patch_lifespan(): wires test stores and a Gate into app.state, bypassing real startup
  - user_store / role_store / session_store: isolated per-test stores for unit tests
  - api_client: (client, admin) -- TestClient on the real app with an admin account

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
wherever TestClient is involved, because route handlers run in a thread pool
and plain :memory: DBs are per-connection. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import so
get_settings() auto-generates SECRET_KEY and hashes stay cheap.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import -- get_settings() is cached on first call.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.gate import Gate
from auth.roles import ADMIN_ROLE, RoleStore
from auth.users import UserStore
from core.config import get_settings
from sessions.store import SessionStore

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "wikiauth") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _make_test_stores(db_prefix: str) -> tuple[UserStore, RoleStore, SessionStore]:
    """Create isolated stores. Users and roles share one named in-memory DB."""
    db_url = memory_db_url(db_prefix)
    users = UserStore(db_url=db_url)
    roles = RoleStore(db_url=db_url)
    sessions = SessionStore(secret_key=get_settings().secret_key, db_path=":memory:")
    return users, roles, sessions


def _patch_lifespan(users: UserStore, roles: RoleStore, sessions: SessionStore):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.users = users
        app.state.roles = roles
        app.state.sessions = sessions
        app.state.gate = Gate(users, roles, sessions, roles.bootstrap())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url="sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def role_store() -> Generator[RoleStore, None, None]:
    store = RoleStore(db_url="sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def memory_stores() -> Generator[tuple[UserStore, RoleStore, SessionStore], None, None]:
    """Users, roles and sessions on stores that TestClient worker threads can share."""
    users, roles, sessions = _make_test_stores("unit")
    yield users, roles, sessions
    sessions.close()
    roles.close()
    users.close()


@pytest.fixture
def session_store() -> Generator[SessionStore, None, None]:
    store = SessionStore(secret_key="k" * 64, db_path=":memory:", ttl=60)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, dict], None, None]:
    """Yield (client, admin) for API integration tests.

    admin holds username, password, user_id and role_id of an account in the
    built-in admin role, created before the client starts. The client starts
    with no cookies; tests log in when they need a session.
    """
    users, roles, sessions = _make_test_stores("api")
    roles.init_defaults()
    admin_role = roles.find_by_name(ADMIN_ROLE)
    admin_user = users.create(ADMIN_USERNAME, "admin@example.com", ADMIN_PASSWORD, role_id=admin_role.role_id)
    admin = {
        "username": ADMIN_USERNAME,
        "password": ADMIN_PASSWORD,
        "user_id": admin_user.user_id,
        "role_id": admin_role.role_id,
    }

    app.router.lifespan_context = _patch_lifespan(users, roles, sessions)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, admin

    sessions.close()
    roles.close()
    users.close()


@pytest.fixture
def client(api_client: tuple[TestClient, dict]) -> TestClient:
    """The module's TestClient with an empty cookie jar."""
    test_client, _admin = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def admin(api_client: tuple[TestClient, dict]) -> dict:
    return api_client[1]

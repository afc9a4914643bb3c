"""
tests/test_gate.py -- Authorization gate behaviour on a minimal FastAPI app.

A throwaway app mounts one handler per policy so each check is exercised
through real request handling, with the same stores the production app uses.

Coverage:
  - RequireAuth: 401 without session, 401 "Session expired" for missing or
    inactive users (and the session is cleared), username cached on success
  - OptionalAuth: never rejects, clears stale sessions
  - RequireAdmin / RequireRole / RequirePermission: 403 messages, admin bypass
  - RequireApiKey: 401 messages, api_* identity visible to the handler,
    key-only sessions deleted after the request
  - wrap()/protect(): policy check off the event loop, handler never called
    on 401/403, terminal response returned verbatim, handler result
    unchanged otherwise, TypeError for handlers without a request parameter
    and for unknown policies
"""

import threading
from collections import Counter
from collections.abc import Generator
from dataclasses import dataclass, field

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from auth.gate import Gate, protect, wrap
from auth.policies import (
    OptionalAuth,
    RequireAdmin,
    RequireApiKey,
    RequireAuth,
    RequirePermission,
    RequireRole,
)
from auth.roles import ADMIN_ROLE, EDITOR_ROLE, VIEWER_ROLE, RoleStore
from auth.users import UserStore
from sessions.store import SessionStore


def _build_app(gate: Gate, calls: Counter) -> FastAPI:
    app = FastAPI()
    app.state.gate = gate

    @app.get("/loop-thread")
    async def loop_thread():
        return {"thread_id": threading.get_ident()}

    @app.get("/auth")
    @protect(RequireAuth())
    async def auth_only(request: Request):
        calls["auth"] += 1
        user = gate.current_user(request)
        return {"user_id": user.user_id, "username": user.username, "role": user.role}

    @app.get("/optional")
    @protect(OptionalAuth())
    async def optional(request: Request):
        return {"user_id": gate.current_user_id(request)}

    @app.get("/admin")
    @protect(RequireAdmin())
    async def admin_only(request: Request):
        calls["admin"] += 1
        return {"ok": True}

    @app.get("/editor")
    @protect(RequireRole(EDITOR_ROLE))
    async def editor_only(request: Request):
        calls["editor"] += 1
        return {"handler": "editor_only", "user_id": gate.current_user_id(request)}

    @app.get("/write")
    @protect(RequirePermission("page:write"))
    def page_write(request: Request):
        calls["write"] += 1
        return {"ok": True}

    @app.get("/key")
    @protect(RequireApiKey())
    async def key_only(request: Request):
        _, data = gate.session(request)
        return {
            "api_user_id": data.get("api_user_id"),
            "api_username": data.get("api_username"),
            "current_user_id": gate.current_user_id(request),
        }

    return app


@dataclass
class GateEnv:
    client: TestClient
    gate: Gate
    users: UserStore
    ids: dict
    calls: Counter = field(default_factory=Counter)

    def sign_in(self, user_id: str, **extra) -> str:
        """Put a signed session cookie for user_id on the client. Returns the session id."""
        sessions = self.gate.sessions
        session_id, _ = sessions.create()
        sessions.update(session_id, {"user_id": user_id, **extra})
        self.client.cookies.set(self.gate.cookie_name, sessions.sign(session_id))
        return session_id


@pytest.fixture
def env(memory_stores: tuple[UserStore, RoleStore, SessionStore]) -> Generator[GateEnv, None, None]:
    users, roles, sessions = memory_stores
    well_known = roles.bootstrap()
    gate = Gate(users, roles, sessions, well_known)

    admin = users.create("admin1", "admin1@example.com", "password123", role_id=well_known.admin_role_id)
    editor = users.create("editor1", "editor1@example.com", "password123", role_id=roles.get_role_id(EDITOR_ROLE))
    viewer = users.create("viewer1", "viewer1@example.com", "password123", role_id=roles.get_role_id(VIEWER_ROLE))
    ids = {
        "admin": admin.user_id,
        "editor": editor.user_id,
        "viewer": viewer.user_id,
        "admin_role": well_known.admin_role_id,
        "editor_role": roles.get_role_id(EDITOR_ROLE),
        "viewer_role": roles.get_role_id(VIEWER_ROLE),
        "editor_key": editor.api_key,
    }

    calls: Counter = Counter()
    with TestClient(_build_app(gate, calls)) as client:
        yield GateEnv(client=client, gate=gate, users=users, ids=ids, calls=calls)


def _error(resp) -> dict:
    return resp.json()["error"]


class TestRequireAuth:
    def test_no_session(self, env: GateEnv) -> None:
        resp = env.client.get("/auth")
        assert resp.status_code == 401
        assert _error(resp) == {"code": "unauthorized", "message": "Authentication required"}
        assert env.calls["auth"] == 0

    def test_forged_cookie_is_ignored(self, env: GateEnv) -> None:
        session_id = env.sign_in(env.ids["editor"])
        env.client.cookies.set(env.gate.cookie_name, f"{session_id}.0000000000000000")
        assert env.client.get("/auth").status_code == 401

    def test_loads_and_caches_user(self, env: GateEnv) -> None:
        session_id = env.sign_in(env.ids["editor"])
        resp = env.client.get("/auth")
        assert resp.status_code == 200
        assert resp.json() == {"user_id": env.ids["editor"], "username": "editor1", "role": EDITOR_ROLE}
        cached = env.gate.sessions.load(session_id)
        assert cached["username"] == "editor1"
        assert cached["role_id"] == env.ids["editor_role"]

    def test_missing_user_expires_session(self, env: GateEnv) -> None:
        session_id = env.sign_in("no-such-user")
        resp = env.client.get("/auth")
        assert resp.status_code == 401
        assert _error(resp)["message"] == "Session expired"
        assert env.gate.sessions.load(session_id) is None

    def test_inactive_user_expires_session(self, env: GateEnv) -> None:
        env.users.deactivate(env.ids["viewer"])
        session_id = env.sign_in(env.ids["viewer"])
        resp = env.client.get("/auth")
        assert resp.status_code == 401
        assert _error(resp)["message"] == "Session expired"
        assert env.gate.sessions.load(session_id) is None

    def test_cached_username_skips_reload(self, env: GateEnv) -> None:
        """Once the username is cached the session is trusted until it expires."""
        env.sign_in(env.ids["viewer"], username="viewer1", role_id=env.ids["viewer_role"], role=VIEWER_ROLE)
        env.users.deactivate(env.ids["viewer"])
        assert env.client.get("/auth").status_code == 200


class TestOptionalAuth:
    def test_anonymous_passes(self, env: GateEnv) -> None:
        resp = env.client.get("/optional")
        assert resp.status_code == 200
        assert resp.json() == {"user_id": None}

    def test_signed_in_user_is_loaded(self, env: GateEnv) -> None:
        session_id = env.sign_in(env.ids["editor"])
        assert env.client.get("/optional").json() == {"user_id": env.ids["editor"]}
        assert env.gate.sessions.load(session_id)["username"] == "editor1"

    def test_stale_session_cleared_but_request_continues(self, env: GateEnv) -> None:
        session_id = env.sign_in("no-such-user")
        resp = env.client.get("/optional")
        assert resp.status_code == 200
        assert resp.json() == {"user_id": None}
        assert env.gate.sessions.load(session_id) is None


class TestRoleChecks:
    def test_admin_required(self, env: GateEnv) -> None:
        assert env.client.get("/admin").status_code == 401
        env.sign_in(env.ids["editor"])
        resp = env.client.get("/admin")
        assert resp.status_code == 403
        assert _error(resp) == {"code": "forbidden", "message": "Admin access required"}
        assert env.calls["admin"] == 0

    def test_admin_allowed(self, env: GateEnv) -> None:
        env.sign_in(env.ids["admin"])
        assert env.client.get("/admin").status_code == 200

    def test_role_required(self, env: GateEnv) -> None:
        env.sign_in(env.ids["viewer"])
        resp = env.client.get("/editor")
        assert resp.status_code == 403
        assert _error(resp)["message"] == f"Role '{EDITOR_ROLE}' required"
        assert env.calls["editor"] == 0

    def test_role_matches_returns_handler_result(self, env: GateEnv) -> None:
        env.sign_in(env.ids["editor"])
        resp = env.client.get("/editor")
        assert resp.status_code == 200
        assert resp.json() == {"handler": "editor_only", "user_id": env.ids["editor"]}
        assert env.calls["editor"] == 1

    def test_admin_passes_role_check(self, env: GateEnv) -> None:
        env.sign_in(env.ids["admin"])
        assert env.client.get("/editor").status_code == 200

    def test_permission_required(self, env: GateEnv) -> None:
        env.sign_in(env.ids["viewer"])
        resp = env.client.get("/write")
        assert resp.status_code == 403
        assert _error(resp)["message"] == "Permission 'page:write' required"
        assert env.calls["write"] == 0

    def test_permission_granted_by_role(self, env: GateEnv) -> None:
        env.sign_in(env.ids["editor"])
        assert env.client.get("/write").status_code == 200

    def test_has_permission_admin_bypass(self, env: GateEnv) -> None:
        env.gate.roles.update_permissions(env.ids["admin_role"], [])
        env.sign_in(env.ids["admin"])
        assert env.client.get("/write").status_code == 200


class TestRequireApiKey:
    def test_missing_header(self, env: GateEnv) -> None:
        resp = env.client.get("/key")
        assert resp.status_code == 401
        assert _error(resp)["message"] == "API key required"

    def test_unknown_key(self, env: GateEnv) -> None:
        resp = env.client.get("/key", headers={"X-API-Key": "wk_unknown"})
        assert resp.status_code == 401
        assert _error(resp)["message"] == "Invalid API key"

    def test_valid_key_visible_to_handler(self, env: GateEnv) -> None:
        resp = env.client.get("/key", headers={"x-api-key": env.ids["editor_key"]})
        assert resp.status_code == 200
        assert resp.json() == {
            "api_user_id": env.ids["editor"],
            "api_username": "editor1",
            "current_user_id": env.ids["editor"],
        }
        assert env.gate.cookie_name not in resp.cookies

    def test_inactive_user_key_rejected(self, env: GateEnv) -> None:
        env.users.deactivate(env.ids["editor"])
        resp = env.client.get("/key", headers={"X-API-Key": env.ids["editor_key"]})
        assert resp.status_code == 401
        assert _error(resp)["message"] == "Invalid API key"

    def test_key_only_sessions_are_not_kept(self, env: GateEnv) -> None:
        for _ in range(5):
            resp = env.client.get("/key", headers={"X-API-Key": env.ids["editor_key"]})
            assert resp.status_code == 200
        assert _session_rows(env) == 0

    def test_cookie_session_survives_api_key_request(self, env: GateEnv) -> None:
        session_id = env.sign_in(env.ids["viewer"])
        resp = env.client.get("/key", headers={"X-API-Key": env.ids["editor_key"]})
        assert resp.status_code == 200
        data = env.gate.sessions.load(session_id)
        assert data["user_id"] == env.ids["viewer"]
        assert data["api_user_id"] == env.ids["editor"]


def _session_rows(env: GateEnv) -> int:
    return env.gate.sessions._conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]


class TestWrap:
    def test_policy_check_runs_off_event_loop(self, env: GateEnv, monkeypatch) -> None:
        check_threads: list[int] = []
        original_check = env.gate.check

        def recording_check(policy, request):
            check_threads.append(threading.get_ident())
            return original_check(policy, request)

        monkeypatch.setattr(env.gate, "check", recording_check)
        loop_thread = env.client.get("/loop-thread").json()["thread_id"]

        assert env.client.get("/write").status_code == 401
        assert env.client.get("/auth").status_code == 401
        assert len(check_threads) == 2
        assert loop_thread not in check_threads

    def test_handler_without_request_rejected(self) -> None:
        async def no_request():
            return {}

        with pytest.raises(TypeError):
            wrap(no_request, RequireAuth())

    def test_wrapper_keeps_name_and_policy(self) -> None:
        async def handler(request: Request):
            return {}

        wrapped = wrap(handler, RequireAdmin())
        assert wrapped.__name__ == "handler"
        assert wrapped.policy == RequireAdmin()

    def test_unknown_policy_raises(self, env: GateEnv) -> None:
        @dataclass(frozen=True)
        class AllowEveryone:
            pass

        with pytest.raises(TypeError):
            env.gate.check(AllowEveryone(), None)

    def test_policies_are_values(self) -> None:
        assert RequireRole("editor") == RequireRole("editor")
        assert RequireRole("editor") != RequireRole(ADMIN_ROLE)
        assert RequireAuth() == RequireAuth()

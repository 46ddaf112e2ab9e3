"""
tests/test_api_routes.py -- Integration tests for the auth, sources and admin routes.

These tests exercise the full stack: FastAPI routing -> cookie session
dependency -> UserStore / ConfigService -> response serialization and the
domain error handlers.

Coverage:
  - 401 on protected routes without a session, with a forged role, or for a
    user that no longer exists
  - login / register / logout / change-password happy paths and failures
  - registration conflict (409) and bounds (400)
  - banned users cannot log in and lose existing sessions
  - per-user source visibility through explicit grants
  - admin / owner permission rules for configuration and user edits
  - account deletion
  - single-tenant mode (shared deployment password)

Fixtures used (from conftest.py):
  - api_client:   module-scoped TestClient; owner1 / admin1 / alice exist
  - auth_headers: factory for signed Cookie headers
"""

from __future__ import annotations

import json
from urllib.parse import quote, unquote

import pytest
from fastapi.testclient import TestClient

from auth.tokens import AUTH_COOKIE, issue_single_tenant_session, verify_session
from core.config import get_settings
from core.reconcile import DEFAULT_CACHE_TIME


@pytest.fixture(autouse=True)
def _clear_cookie_jar(api_client: TestClient):
    """Each test starts without the cookie a previous login may have stored."""
    api_client.cookies.clear()
    yield
    api_client.cookies.clear()


def _register(client: TestClient, username: str, password: str = "password1"):
    resp = client.post("/api/v1/register", json={"username": username, "password": password})
    client.cookies.clear()
    return resp


def _login(client: TestClient, username: str, password: str):
    resp = client.post("/api/v1/login", json={"username": username, "password": password})
    client.cookies.clear()
    return resp


def _cookie_header(resp) -> dict[str, str]:
    return {"Cookie": f"{AUTH_COOKIE}={resp.cookies[AUTH_COOKIE]}"}


# ---------------------------------------------------------------------------
# Authentication failures
# ---------------------------------------------------------------------------


class TestUnauthenticated:
    @pytest.mark.parametrize("path", ["/api/v1/me", "/api/v1/sources", "/api/v1/admin/config"])
    def test_protected_routes_require_session(self, api_client: TestClient, path: str) -> None:
        resp = api_client.get(path)
        assert resp.status_code == 401, f"Expected 401, got {resp.status_code}"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_forged_role_rejected(self, api_client: TestClient, auth_headers) -> None:
        """Editing the role inside a valid cookie breaks the signature."""
        cookie = auth_headers("alice", "user")["Cookie"].split("=", 1)[1]
        payload = json.loads(unquote(cookie))
        payload["role"] = "owner"
        forged = quote(json.dumps(payload), safe="")
        resp = api_client.get("/api/v1/admin/config", headers={"Cookie": f"{AUTH_COOKIE}={forged}"})
        assert resp.status_code == 401

    def test_signed_cookie_for_unknown_user(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.get("/api/v1/me", headers=auth_headers("nobody", "user"))
        assert resp.status_code == 401

    def test_garbage_cookie(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/me", headers={"Cookie": f"{AUTH_COOKIE}=garbage"})
        assert resp.status_code == 401

    def test_deeply_nested_cookie(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/sources", headers={"Cookie": f"{AUTH_COOKIE}={'[' * 5000}"})
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_success_sets_signed_cookie(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/login", json={"username": "alice", "password": "alicepass1"})
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"ok": True, "username": "alice", "role": "user"}
        assert resp.headers["cache-control"] == "no-store"
        token = verify_session(resp.cookies[AUTH_COOKIE])
        assert token is not None
        assert token.username == "alice"

    def test_login_role_from_store(self, api_client: TestClient) -> None:
        resp = _login(api_client, "owner1", "ownerpass1")
        assert resp.status_code == 200
        assert resp.json()["role"] == "owner"

    def test_wrong_password_and_unknown_user_look_the_same(self, api_client: TestClient) -> None:
        wrong = _login(api_client, "alice", "not-her-password")
        unknown = _login(api_client, "nobody-here", "whatever1")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_missing_username(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/login", json={"password": "alicepass1"})
        assert resp.status_code == 400

    def test_missing_password_field(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/login", json={"username": "alice"})
        assert resp.status_code == 422

    def test_me_with_session(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.get("/api/v1/me", headers=auth_headers("alice", "user"))
        assert resp.status_code == 200
        assert resp.json() == {"username": "alice", "role": "user"}

    def test_logout_clears_cookie(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/logout")
        assert resp.status_code == 200
        assert f"{AUTH_COOKIE}=" in resp.headers["set-cookie"]
        assert "Max-Age=0" in resp.headers["set-cookie"]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_logs_in(self, api_client: TestClient) -> None:
        resp = _register(api_client, "newbie")
        assert resp.status_code == 200, resp.text
        assert resp.json()["username"] == "newbie"
        me = api_client.get("/api/v1/me", headers=_cookie_header(resp))
        assert me.status_code == 200

    def test_register_twice_conflicts(self, api_client: TestClient, auth_headers) -> None:
        assert _register(api_client, "eve").status_code == 200
        second = _register(api_client, "eve", "otherpass2")
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "conflict"

        users = api_client.get("/api/v1/admin/config", headers=auth_headers("owner1", "owner")).json()
        assert [u["username"] for u in users["UserConfig"]["Users"]].count("eve") == 1
        assert _login(api_client, "eve", "password1").status_code == 200

    @pytest.mark.parametrize(
        "username,password",
        [("ab", "password1"), ("x" * 21, "password1"), ("shortpw", "12345")],
    )
    def test_bounds(self, api_client: TestClient, username: str, password: str) -> None:
        resp = _register(api_client, username, password)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_new_user_appears_in_roster(self, api_client: TestClient, auth_headers) -> None:
        _register(api_client, "rosterme")
        config = api_client.get("/api/v1/admin/config", headers=auth_headers("admin1", "admin")).json()
        users = config["UserConfig"]["Users"]
        assert users[0]["username"] == "owner1"
        assert "rosterme" in [u["username"] for u in users]

    def test_password_kept_exactly_as_typed(self, api_client: TestClient) -> None:
        resp = _register(api_client, "  spacey ", "  pass1 ")
        assert resp.status_code == 200, resp.text
        assert resp.json()["username"] == "spacey"
        assert _login(api_client, "spacey", "  pass1 ").status_code == 200
        assert _login(api_client, "spacey", "pass1").status_code == 401

    def test_registration_disabled(self, api_client: TestClient, monkeypatch) -> None:
        monkeypatch.setenv("SELF_REGISTRATION_ENABLED", "false")
        get_settings.cache_clear()
        try:
            resp = _register(api_client, "blocked")
        finally:
            monkeypatch.undo()
            get_settings.cache_clear()
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "registration_disabled"

    def test_change_password(self, api_client: TestClient) -> None:
        session = _cookie_header(_register(api_client, "pwchange"))
        resp = api_client.post("/api/v1/change-password", json={"new_password": "brandnew1"}, headers=session)
        assert resp.status_code == 200
        assert _login(api_client, "pwchange", "password1").status_code == 401
        assert _login(api_client, "pwchange", "brandnew1").status_code == 200


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class TestSources:
    def test_all_enabled_sources_by_default(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.get("/api/v1/sources", headers=auth_headers("alice", "user"))
        assert resp.status_code == 200
        data = resp.json()
        assert [s["key"] for s in data] == ["alpha", "beta", "gamma"]
        assert data[2]["display_name"] == "Gamma HD"
        assert "from" not in data[0]

    def test_explicit_grants_limit_sources(self, api_client: TestClient, auth_headers) -> None:
        _register(api_client, "limited")
        patch = api_client.patch(
            "/api/v1/admin/users/limited",
            json={"enabled_apis": ["beta"]},
            headers=auth_headers("admin1", "admin"),
        )
        assert patch.status_code == 200, patch.text
        assert patch.json()["enabledApis"] == ["beta"]

        resp = api_client.get("/api/v1/sources", headers=auth_headers("limited", "user"))
        assert [s["key"] for s in resp.json()] == ["beta"]


# ---------------------------------------------------------------------------
# Admin: configuration
# ---------------------------------------------------------------------------


class TestAdminConfig:
    def test_plain_user_forbidden(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.get("/api/v1/admin/config", headers=auth_headers("alice", "user"))
        assert resp.status_code == 403

    def test_role_in_cookie_is_not_trusted(self, api_client: TestClient, auth_headers) -> None:
        """A validly signed cookie still gets its role checked against the roster."""
        resp = api_client.get("/api/v1/admin/config", headers=auth_headers("alice", "admin"))
        assert resp.status_code == 403

    def test_admin_reads_config(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.get("/api/v1/admin/config", headers=auth_headers("admin1", "admin"))
        assert resp.status_code == 200
        data = resp.json()
        assert {s["key"] for s in data["SourceConfig"]} == {"alpha", "beta", "gamma"}
        assert all(s["from"] == "config" for s in data["SourceConfig"])
        # Seeded by upload onto an empty store: site settings keep their
        # first-run defaults, an uploaded file only merges resources.
        assert data["SiteConfig"]["SiteInterfaceCacheTime"] == DEFAULT_CACHE_TIME

    def test_upload_is_owner_only(self, api_client: TestClient, auth_headers) -> None:
        body = {"config_file": "{}", "overwrite": True}
        resp = api_client.post("/api/v1/admin/config-file", json=body, headers=auth_headers("admin1", "admin"))
        assert resp.status_code == 403

    def test_owner_uploads_config_file(self, api_client: TestClient, auth_headers) -> None:
        owner = auth_headers("owner1", "owner")
        current = api_client.get("/api/v1/admin/config", headers=owner).json()
        document = json.loads(current["ConfigFile"])
        document["api_site"]["delta"] = {"name": "Delta", "api": "http://delta.example/api"}

        resp = api_client.post(
            "/api/v1/admin/config-file",
            json={"config_file": json.dumps(document), "overwrite": False},
            headers=owner,
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["sources"] == 4

        # Restore the previous file; delta is kept but becomes admin-owned.
        del document["api_site"]["delta"]
        api_client.post("/api/v1/admin/config-file", json={"config_file": json.dumps(document)}, headers=owner)
        sources = api_client.get("/api/v1/admin/config", headers=owner).json()["SourceConfig"]
        assert {s["key"]: s["from"] for s in sources}["delta"] == "custom"

    def test_refresh_without_subscription(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.post("/api/v1/admin/subscription/refresh", headers=auth_headers("owner1", "owner"))
        assert resp.status_code == 502


# ---------------------------------------------------------------------------
# Admin: users
# ---------------------------------------------------------------------------


class TestAdminUsers:
    def test_banned_user_cannot_log_in(self, api_client: TestClient, auth_headers) -> None:
        session = _cookie_header(_register(api_client, "bannedbob"))
        assert api_client.get("/api/v1/me", headers=session).status_code == 200

        resp = api_client.patch(
            "/api/v1/admin/users/bannedbob", json={"banned": True}, headers=auth_headers("admin1", "admin")
        )
        assert resp.status_code == 200
        assert resp.json()["banned"] is True

        login = _login(api_client, "bannedbob", "password1")
        assert login.status_code == 401
        assert login.json() == _login(api_client, "bannedbob", "wrongpass1").json()
        assert api_client.get("/api/v1/me", headers=session).status_code == 401

    def test_admin_cannot_change_roles(self, api_client: TestClient, auth_headers) -> None:
        _register(api_client, "climber")
        resp = api_client.patch(
            "/api/v1/admin/users/climber", json={"role": "admin"}, headers=auth_headers("admin1", "admin")
        )
        assert resp.status_code == 403

    def test_owner_promotes_user(self, api_client: TestClient, auth_headers) -> None:
        _register(api_client, "promoted")
        resp = api_client.patch(
            "/api/v1/admin/users/promoted", json={"role": "admin"}, headers=auth_headers("owner1", "owner")
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["role"] == "admin"
        assert _login(api_client, "promoted", "password1").json()["role"] == "admin"

    def test_owner_cannot_be_edited(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.patch(
            "/api/v1/admin/users/owner1", json={"banned": True}, headers=auth_headers("owner1", "owner")
        )
        assert resp.status_code == 403

    def test_admin_cannot_edit_other_admin(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.patch(
            "/api/v1/admin/users/admin1", json={"banned": True}, headers=auth_headers("admin1", "admin")
        )
        assert resp.status_code == 403

    def test_unknown_user_404(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.patch(
            "/api/v1/admin/users/ghost", json={"banned": True}, headers=auth_headers("admin1", "admin")
        )
        assert resp.status_code == 404

    def test_delete_user(self, api_client: TestClient, auth_headers) -> None:
        session = _cookie_header(_register(api_client, "doomed"))
        resp = api_client.delete("/api/v1/admin/users/doomed", headers=auth_headers("admin1", "admin"))
        assert resp.status_code == 204

        assert _login(api_client, "doomed", "password1").status_code == 401
        assert api_client.get("/api/v1/me", headers=session).status_code == 401
        config = api_client.get("/api/v1/admin/config", headers=auth_headers("admin1", "admin")).json()
        assert "doomed" not in [u["username"] for u in config["UserConfig"]["Users"]]

    def test_delete_owner_forbidden(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.delete("/api/v1/admin/users/owner1", headers=auth_headers("admin1", "admin"))
        assert resp.status_code == 403

    def test_plain_user_cannot_delete(self, api_client: TestClient, auth_headers) -> None:
        resp = api_client.delete("/api/v1/admin/users/admin1", headers=auth_headers("alice", "user"))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Single-tenant mode
# ---------------------------------------------------------------------------


@pytest.fixture
def single_tenant(monkeypatch):
    monkeypatch.setenv("STORAGE_TYPE", "localstorage")
    monkeypatch.setenv("PASSWORD", "sitepass1")
    get_settings.cache_clear()
    yield
    monkeypatch.undo()
    get_settings.cache_clear()


class TestSingleTenant:
    def test_login_with_site_password(self, api_client: TestClient, single_tenant) -> None:
        resp = _login(api_client, "", "sitepass1")
        assert resp.status_code == 200
        assert json.loads(unquote(resp.cookies[AUTH_COOKIE])) == {"role": "user", "password": "sitepass1"}

    def test_wrong_site_password(self, api_client: TestClient, single_tenant) -> None:
        resp = api_client.post("/api/v1/login", json={"password": "nope"})
        assert resp.status_code == 401

    def test_cookie_grants_access(self, api_client: TestClient, single_tenant) -> None:
        headers = {"Cookie": f"{AUTH_COOKIE}={issue_single_tenant_session('sitepass1')}"}
        resp = api_client.get("/api/v1/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"username": None, "role": "user"}
        assert len(api_client.get("/api/v1/sources", headers=headers).json()) >= 3

    def test_stale_password_rejected(self, api_client: TestClient, single_tenant) -> None:
        headers = {"Cookie": f"{AUTH_COOKIE}={issue_single_tenant_session('oldpass')}"}
        assert api_client.get("/api/v1/me", headers=headers).status_code == 401

    def test_registration_unavailable(self, api_client: TestClient, single_tenant) -> None:
        assert _register(api_client, "someone").status_code == 400

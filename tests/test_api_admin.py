"""
tests/test_api_admin.py -- Integration tests for /api/admin.

Coverage:
  - admin-only access: 401 without a session, 403 for regular users
  - user listing with status filter; email column for Google accounts
  - approve / reject are audited; self-reject refused
  - role change audited; the last admin cannot be demoted
  - delete removes identity, credentials and sessions; self-delete refused
  - audit query filters and limit validation
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from api.main import app
from auth.models import PROVIDER_GOOGLE, Identity
from auth.sessions import SESSION_COOKIE
from conftest import approved_user, login_admin, register


def _admin_id() -> int:
    return app.state.identities.get_by_username("admin").id


class TestAccess:
    def test_requires_session(self, client: TestClient) -> None:
        assert client.get("/api/admin/users").status_code == 401

    def test_regular_user_is_forbidden(self, client: TestClient) -> None:
        approved_user(client, "alice", "pw")
        resp = client.get("/api/admin/users")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert client.get("/api/admin/audit").status_code == 403


class TestListing:
    def test_status_filter(self, client: TestClient) -> None:
        approved_user(client, "alice", "pw")
        client.cookies.clear()
        register(client, "bob", "pw")
        client.cookies.clear()
        login_admin(client)

        pending = client.get("/api/admin/users", params={"status": "pending"}).json()
        assert [u["username"] for u in pending] == ["bob"]
        assert pending[0]["pending"] is True and pending[0]["rejected"] is False

        approved = client.get("/api/admin/users", params={"status": "approved"}).json()
        assert {u["username"] for u in approved} == {"admin", "alice"}

        everyone = client.get("/api/admin/users").json()
        assert [u["username"] for u in everyone] == ["bob", "alice", "admin"]

    def test_unknown_status_is_a_validation_error(self, client: TestClient) -> None:
        login_admin(client)
        resp = client.get("/api/admin/users", params={"status": "sideways"})
        assert resp.status_code == 422

    def test_google_rows_carry_email(self, client: TestClient) -> None:
        app.state.identities.create_user(
            Identity(username="g@example.com", password=None, provider=PROVIDER_GOOGLE, display_name="Gee")
        )
        login_admin(client)
        rows = {u["username"]: u for u in client.get("/api/admin/users").json()}
        assert rows["g@example.com"]["email"] == "g@example.com"
        assert rows["g@example.com"]["display_name"] == "Gee"
        assert rows["admin"]["email"] is None
        assert "password" not in rows["admin"]


class TestApproval:
    def test_approve_and_reject_are_audited(self, client: TestClient) -> None:
        register(client, "bob", "pw")
        bob = app.state.identities.get_by_username("bob").id
        client.cookies.clear()
        login_admin(client)

        assert client.post(f"/api/admin/users/{bob}/approve").json() == {"success": True}
        assert app.state.identities.get_by_id(bob).approved == 1
        assert client.post(f"/api/admin/users/{bob}/reject").json() == {"success": True}
        assert app.state.identities.get_by_id(bob).approved == -1

        actions = [e.action for e in app.state.audit.query(entity="user", username="admin")]
        assert actions == ["reject", "approve"]

    def test_missing_user(self, client: TestClient) -> None:
        login_admin(client)
        resp = client.post("/api/admin/users/9999/approve")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_cannot_reject_self(self, client: TestClient) -> None:
        login_admin(client)
        resp = client.post(f"/api/admin/users/{_admin_id()}/reject")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_reject"
        assert app.state.identities.get_by_id(_admin_id()).approved == 1


class TestRoles:
    def test_promote_and_demote(self, client: TestClient) -> None:
        alice = approved_user(client, "alice", "pw")
        client.cookies.clear()
        login_admin(client)
        resp = client.patch(f"/api/admin/users/{alice}", json={"role": "admin"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"

        # With two admins, demoting one is allowed.
        resp = client.patch(f"/api/admin/users/{_admin_id()}", json={"role": "user"})
        assert resp.status_code == 200

        [entry] = app.state.audit.query(entity="user", action="role", search="role=admin")
        assert entry.entity_id == alice

    def test_last_admin_cannot_be_demoted(self, client: TestClient) -> None:
        login_admin(client)
        resp = client.patch(f"/api/admin/users/{_admin_id()}", json={"role": "user"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "last_admin"
        assert app.state.identities.count_admins() == 1

    def test_invalid_role(self, client: TestClient) -> None:
        login_admin(client)
        assert client.patch(f"/api/admin/users/{_admin_id()}", json={"role": "root"}).status_code == 422


class TestDelete:
    def test_delete_removes_identity_and_sessions(self, client: TestClient, authenticator) -> None:
        alice = approved_user(client, "alice", "pw")
        options = client.post("/api/webauthn/register/start").json()
        client.post("/api/webauthn/register/finish", json=authenticator.register(options))
        alice_token = client.cookies.get(SESSION_COOKIE)

        client.cookies.clear()
        login_admin(client)
        assert client.delete(f"/api/admin/users/{alice}").json() == {"deleted": True}

        assert app.state.identities.get_by_id(alice) is None
        assert app.state.identities.list_credentials(alice) == []
        assert app.state.sessions.get(alice_token) is None

        [entry] = app.state.audit.query(entity="user", action="delete")
        assert entry.info == "username=alice"

    def test_cannot_delete_self(self, client: TestClient) -> None:
        login_admin(client)
        resp = client.delete(f"/api/admin/users/{_admin_id()}")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_delete"


class TestAuditQuery:
    def test_filters(self, client: TestClient) -> None:
        approved_user(client, "alice", "pw")
        client.cookies.clear()
        login_admin(client)

        logins = client.get("/api/admin/audit", params={"action": "login", "user": "ALICE"}).json()
        assert len(logins) == 1
        assert logins[0]["entity"] == "auth"

        registrations = client.get("/api/admin/audit", params={"entity": "user", "action": "register"}).json()
        assert [e["username"] for e in registrations] == ["alice"]

        assert len(client.get("/api/admin/audit", params={"limit": 1}).json()) == 1

    def test_limit_must_be_positive(self, client: TestClient) -> None:
        login_admin(client)
        assert client.get("/api/admin/audit", params={"limit": 0}).status_code == 422

"""Integration tests for admin operations.

Tests admin-only functionality including:
- User listing and details
- Promotion and demotion with session revocation
- Deactivation cascade and restore
- Activity log
"""

import pytest

from taskdesk.service.runtime import get_runtime


@pytest.fixture
def admin_user(make_user):
    return make_user("Root", role="admin")


@pytest.fixture
def regular_user(make_user):
    return make_user("Eve")


def _post(client, admin, user_id, action):
    return client.post(f"/v1/admin/users/{user_id}/{action}", headers=admin["headers"])


class TestAdminAccess:
    """Admin endpoints reject non-admins."""

    def test_regular_user_cannot_list_users(self, client, regular_user):
        response = client.get("/v1/admin/users", headers=regular_user["headers"])
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_lists_every_account(self, client, admin_user, regular_user):
        get_runtime().store.set_user_deleted(regular_user["id"], get_runtime().tokens.now())

        response = client.get("/v1/admin/users", headers=admin_user["headers"])

        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert {u["id"] for u in items} == {admin_user["id"], regular_user["id"]}
        assert {u["id"]: u["is_active"] for u in items}[regular_user["id"]] is False

    def test_user_details(self, client, admin_user, regular_user):
        client.post("/v1/todos", headers=regular_user["headers"], json={"title": "T"})

        response = client.get(f"/v1/admin/users/{regular_user['id']}", headers=admin_user["headers"])

        data = response.json()["data"]
        assert data["user"]["email"] == regular_user["email"]
        assert data["todo_count"] == 1
        assert "CREATE_TODO" in {e["action"] for e in data["recent_activity"]}

    def test_unknown_user_details(self, client, admin_user):
        response = client.get("/v1/admin/users/missing", headers=admin_user["headers"])
        assert response.status_code == 404


class TestRoleChanges:
    """Promotion, demotion and self-targeting."""

    def test_promotion_revokes_sessions_and_next_login_is_admin(
        self, client, admin_user, regular_user, sent_emails
    ):
        response = _post(client, admin_user, regular_user["id"], "promote")

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"
        assert sent_emails[-1][:2] == (regular_user["email"], "You are now an administrator")

        old = client.get("/v1/profile", headers=regular_user["headers"])
        assert old.status_code == 403
        assert old.json()["error"]["code"] == "session_revoked"
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": regular_user["refresh_token"]}
        )
        assert refresh.status_code == 403

        login = client.post(
            "/v1/auth/login",
            json={"email": regular_user["email"], "password": regular_user["password"]},
        )
        headers = {"Authorization": f"Bearer {login.json()['data']['access_token']}"}
        assert client.get("/v1/admin/users", headers=headers).status_code == 200

    def test_demotion(self, client, admin_user, make_user, sent_emails):
        other = make_user("Second", role="admin")

        response = _post(client, admin_user, other["id"], "demote")

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "user"
        assert sent_emails[-1][1] == "Administrator access removed"
        assert client.get("/v1/profile", headers=other["headers"]).status_code == 403

    def test_demoted_admin_cannot_use_pre_demotion_token_after_signing_in_again(
        self, client, admin_user, make_user
    ):
        other = make_user("Second", role="admin")
        _post(client, admin_user, other["id"], "demote")

        login = client.post(
            "/v1/auth/login", json={"email": other["email"], "password": other["password"]}
        )
        assert login.json()["data"]["user"]["role"] == "user"

        stale = client.get("/v1/admin/users", headers=other["headers"])
        assert stale.status_code == 403
        assert stale.json()["error"]["code"] == "session_revoked"
        fresh = {"Authorization": f"Bearer {login.json()['data']['access_token']}"}
        denied = client.get("/v1/admin/users", headers=fresh)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

    @pytest.mark.parametrize("action", ["promote", "demote", "deactivate"])
    def test_admin_cannot_target_self(self, client, admin_user, action):
        response = _post(client, admin_user, admin_user["id"], action)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert get_runtime().store.get_user(admin_user["id"]).role == "admin"
        assert client.get("/v1/profile", headers=admin_user["headers"]).status_code == 200

    def test_demoting_a_regular_user_is_invalid(self, client, admin_user, regular_user):
        assert _post(client, admin_user, regular_user["id"], "demote").status_code == 400

    def test_cannot_deactivate_another_admin(self, client, admin_user, make_user):
        other = make_user("Second", role="admin")
        assert _post(client, admin_user, other["id"], "deactivate").status_code == 403

    def test_role_changes_are_audited(self, client, admin_user, regular_user):
        _post(client, admin_user, regular_user["id"], "promote")

        entries = get_runtime().store.list_activity(user_id=admin_user["id"])

        assert entries[0].action == "PROMOTE_USER"
        assert regular_user["email"] in entries[0].details


class TestDeactivation:
    """Deactivation cascade and restore."""

    def test_deactivate_cascades_and_restore_reverts(self, client, admin_user, regular_user):
        runtime = get_runtime()
        kept = client.post("/v1/todos", headers=regular_user["headers"], json={"title": "Kept"})
        gone = client.post("/v1/todos", headers=regular_user["headers"], json={"title": "Gone"})
        client.delete(f"/v1/todos/{gone.json()['data']['id']}", headers=regular_user["headers"])

        response = _post(client, admin_user, regular_user["id"], "deactivate")

        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        assert runtime.store.count_todos(owner_id=regular_user["id"]) == 0
        assert runtime.store.count_activity(user_id=regular_user["id"]) == 0
        assert client.get("/v1/profile", headers=regular_user["headers"]).status_code == 403
        login = client.post(
            "/v1/auth/login",
            json={"email": regular_user["email"], "password": regular_user["password"]},
        )
        assert login.status_code == 403

        restored = _post(client, admin_user, regular_user["id"], "restore")

        assert restored.status_code == 200
        assert restored.json()["data"]["is_active"] is True
        todos = runtime.store.list_todos(owner_id=regular_user["id"])
        assert [t.id for t in todos] == [kept.json()["data"]["id"]]
        assert runtime.store.count_activity(user_id=regular_user["id"]) > 0

    def test_restored_user_signs_in_with_a_new_session_only(self, client, admin_user, regular_user):
        _post(client, admin_user, regular_user["id"], "deactivate")
        _post(client, admin_user, regular_user["id"], "restore")

        login = client.post(
            "/v1/auth/login",
            json={"email": regular_user["email"], "password": regular_user["password"]},
        )
        assert login.status_code == 200

        old = client.get("/v1/profile", headers=regular_user["headers"])
        assert old.status_code == 403
        assert old.json()["error"]["code"] == "session_revoked"
        fresh = {"Authorization": f"Bearer {login.json()['data']['access_token']}"}
        assert client.get("/v1/profile", headers=fresh).status_code == 200

    def test_restore_active_user_is_invalid(self, client, admin_user, regular_user):
        assert _post(client, admin_user, regular_user["id"], "restore").status_code == 400

    def test_deactivated_user_hidden_from_directory(self, client, admin_user, regular_user):
        _post(client, admin_user, regular_user["id"], "deactivate")

        listing = client.get("/v1/users", headers=admin_user["headers"]).json()["data"]

        assert [u["id"] for u in listing["items"]] == [admin_user["id"]]


class TestActivityLog:
    def test_admin_reads_full_log(self, client, admin_user, regular_user):
        response = client.get("/v1/admin/activity?limit=50", headers=admin_user["headers"])

        assert response.status_code == 200
        data = response.json()["data"]
        users = {e["user_id"] for e in data["items"]}
        assert {admin_user["id"], regular_user["id"]} <= users
        assert data["pagination"]["limit"] == 50

    def test_regular_user_cannot_read_full_log(self, client, regular_user):
        assert client.get("/v1/admin/activity", headers=regular_user["headers"]).status_code == 403

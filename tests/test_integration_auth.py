"""Integration tests for the account and session lifecycle.

Covers:
- Registration and duplicate handling
- Login, refresh and logout
- Session revocation of outstanding access tokens
- Password reset by emailed link
- Profile and directory
"""

import re
from urllib.parse import unquote

from taskdesk.service.runtime import get_runtime


def _register(client, name="Alice", email="a@x.com", password="secret1"):
    return client.post(
        "/v1/auth/register", json={"name": name, "email": email, "password": password}
    )


def _login(client, email="a@x.com", password="secret1"):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


class TestRegistration:
    """Sign-up and duplicate detection."""

    def test_register_returns_user(self, client, sent_emails):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "a@x.com"
        assert body["data"]["role"] == "user"
        assert body["data"]["id"]
        assert [subject for _, subject, _ in sent_emails] == ["Welcome to Taskdesk"]

    def test_duplicate_email_conflicts(self, client):
        assert _register(client).status_code == 201

        response = _register(client, name="Other", email="A@X.com ")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_deactivated_email_conflicts(self, client):
        user_id = _register(client).json()["data"]["id"]
        runtime = get_runtime()
        runtime.store.set_user_deleted(user_id, runtime.tokens.now())

        response = _register(client)

        assert response.status_code == 409
        assert "deactivated" in response.json()["error"]["message"]

    def test_short_password_rejected(self, client):
        response = _register(client, password="12345")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_invalid_email_rejected(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400

    def test_registration_logs_activity(self, client):
        user_id = _register(client).json()["data"]["id"]
        entries = get_runtime().store.list_activity(user_id=user_id)
        assert [e.action for e in entries] == ["USER_REGISTERED"]


class TestLogin:
    """Credential checks and issued tokens."""

    def test_login_issues_token_pair(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_token"]
        assert data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == "a@x.com"

    def test_wrong_password_is_unauthorized(self, client):
        _register(client)
        response = _login(client, password="wrong-password")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_email_looks_like_wrong_password(self, client):
        response = _login(client, email="nobody@x.com")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_deactivated_account_is_forbidden(self, client):
        user_id = _register(client).json()["data"]["id"]
        runtime = get_runtime()
        runtime.store.set_user_deleted(user_id, runtime.tokens.now())

        response = _login(client)

        assert response.status_code == 403

    def test_login_is_rate_limited(self, client):
        _register(client)
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            _login(client, password="wrong-password")

        response = _login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["details"]["retry_after_seconds"] >= 0


class TestProtectedAccess:
    """Bearer authentication on protected endpoints."""

    def test_missing_header_is_unauthorized(self, client):
        response = client.get("/v1/profile")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_bad_token_is_invalid(self, client):
        response = client.get("/v1/profile", headers={"Authorization": "Bearer a.b.c"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_forced_logout_revokes_outstanding_access_token(self, client):
        _register(client)
        tokens = _login(client).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}
        assert client.get("/v1/profile", headers=headers).status_code == 200

        # Drop the stored refresh row directly, as an operator would
        get_runtime().store.delete_refresh_token(tokens["refresh_token"])

        response = client.get("/v1/profile", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "session_revoked"

    def test_logout_ends_every_session(self, client):
        _register(client)
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]
        headers = {"Authorization": f"Bearer {first['access_token']}"}

        response = client.post("/v1/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 2
        other = {"Authorization": f"Bearer {second['access_token']}"}
        assert client.get("/v1/profile", headers=other).status_code == 403
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert refresh.status_code == 403
        assert refresh.json()["error"]["code"] == "session_revoked"

    def test_signing_in_again_does_not_revive_old_access_tokens(self, client):
        _register(client)
        old = _login(client).json()["data"]
        old_headers = {"Authorization": f"Bearer {old['access_token']}"}
        client.post("/v1/auth/logout", headers=old_headers)

        fresh = _login(client).json()["data"]

        response = client.get("/v1/profile", headers=old_headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "session_revoked"
        fresh_headers = {"Authorization": f"Bearer {fresh['access_token']}"}
        assert client.get("/v1/profile", headers=fresh_headers).status_code == 200

    def test_dropping_one_session_keeps_the_other(self, client):
        _register(client)
        laptop = _login(client).json()["data"]
        phone = _login(client).json()["data"]

        get_runtime().store.delete_refresh_token(laptop["refresh_token"])

        laptop_headers = {"Authorization": f"Bearer {laptop['access_token']}"}
        phone_headers = {"Authorization": f"Bearer {phone['access_token']}"}
        assert client.get("/v1/profile", headers=laptop_headers).status_code == 403
        assert client.get("/v1/profile", headers=phone_headers).status_code == 200


class TestRefresh:
    """Refresh-token rotation."""

    def test_refresh_returns_new_access_token(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["role"] == "user"
        headers = {"Authorization": f"Bearer {data['access_token']}"}
        assert client.get("/v1/profile", headers=headers).status_code == 200
        # The same refresh token keeps working
        again = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 200

    def test_unknown_refresh_token_is_revoked(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "x.y.z"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "session_revoked"

    def test_expired_refresh_token_is_deleted(self, client):
        _register(client)
        tokens = _login(client).json()["data"]
        store = get_runtime().store
        record = store.refresh_tokens[tokens["refresh_token"]]
        record.expires_at = record.expires_at.replace(year=2000)

        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_expired"
        assert store.get_refresh_token(tokens["refresh_token"]) is None


class TestPasswordReset:
    """Forgot-password flow."""

    def _reset_token(self, sent_emails):
        _, subject, body = sent_emails[-1]
        assert subject == "Reset your Taskdesk password"
        return unquote(re.search(r"token=(\S+)", body).group(1))

    def test_reset_flow(self, client, sent_emails):
        _register(client)
        session = _login(client).json()["data"]

        response = client.post("/v1/auth/password/forgot", json={"email": "a@x.com"})
        assert response.status_code == 200
        token = self._reset_token(sent_emails)

        reset = client.post(
            "/v1/auth/password/reset", json={"token": token, "password": "brand-new"}
        )
        assert reset.status_code == 200

        assert _login(client).status_code == 401
        assert _login(client, password="brand-new").status_code == 200
        # Existing sessions were ended by the reset
        headers = {"Authorization": f"Bearer {session['access_token']}"}
        assert client.get("/v1/profile", headers=headers).status_code == 403

    def test_reset_token_is_single_use(self, client, sent_emails):
        _register(client)
        client.post("/v1/auth/password/forgot", json={"email": "a@x.com"})
        token = self._reset_token(sent_emails)

        first = client.post("/v1/auth/password/reset", json={"token": token, "password": "first-pass"})
        second = client.post("/v1/auth/password/reset", json={"token": token, "password": "second-pass"})

        assert first.status_code == 200
        assert second.status_code == 400

    def test_unknown_email_gets_same_answer(self, client, sent_emails):
        response = client.post("/v1/auth/password/forgot", json={"email": "ghost@x.com"})
        assert response.status_code == 200
        assert sent_emails == []


class TestProfile:
    """Profile reads, updates and the user directory."""

    def test_update_profile(self, client, make_user):
        user = make_user("Alice")

        response = client.patch(
            "/v1/profile", headers=user["headers"], json={"name": "Alice B", "bio": "hi"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Alice B"
        assert response.json()["data"]["bio"] == "hi"

    def test_email_change_conflicts_with_existing_account(self, client, make_user):
        alice = make_user("Alice")
        bob = make_user("Bob")

        response = client.patch("/v1/profile", headers=alice["headers"], json={"email": bob["email"]})

        assert response.status_code == 409

    def test_empty_update_rejected(self, client, make_user):
        user = make_user("Alice")
        response = client.patch("/v1/profile", headers=user["headers"], json={})
        assert response.status_code == 400

    def test_directory_hides_emails_from_non_admins(self, client, make_user):
        make_user("Carol")
        bob = make_user("Bob")
        admin = make_user("Admin", role="admin")

        plain = client.get("/v1/users", headers=bob["headers"]).json()["data"]
        assert [u["name"] for u in plain["items"]] == ["Admin", "Bob", "Carol"]
        assert all(u["email"] is None for u in plain["items"])

        full = client.get("/v1/users", headers=admin["headers"]).json()["data"]
        assert all(u["email"] for u in full["items"])

    def test_own_activity_is_listed(self, client, make_user):
        user = make_user("Alice")

        response = client.get("/v1/activity", headers=user["headers"])

        actions = [e["action"] for e in response.json()["data"]["items"]]
        assert set(actions) == {"USER_REGISTERED", "USER_LOGGED_IN"}
        assert response.json()["data"]["pagination"]["total"] == 2


class TestOAuth:
    """Google sign-in entry point."""

    def test_start_without_configuration_is_rejected(self, client):
        response = client.post("/v1/auth/oauth/google/start")
        assert response.status_code == 400

    def test_callback_with_unknown_state_is_unauthorized(self, client):
        response = client.get("/v1/auth/oauth/google/callback", params={"code": "c", "state": "s"})
        assert response.status_code == 401

"""Authorization policy and session guard behaviour without the HTTP layer."""

from datetime import datetime, timezone

import pytest

from taskdesk.config import Settings
from taskdesk.service.errors import (
    ForbiddenActionError,
    InvalidTokenError,
    NotFoundError,
    SessionRevokedError,
    UnauthenticatedError,
    ValidationError,
)
from taskdesk.service.policy import Actor, AuthorizationPolicy
from taskdesk.service.session import SessionGuard
from taskdesk.service.tokens import TokenService
from taskdesk.storage.memory import MemoryStore
from taskdesk.storage.models import ROLE_ADMIN, Todo, User


@pytest.fixture
def policy():
    return AuthorizationPolicy()


def _user(user_id, role="user", deleted=False):
    return User(
        id=user_id,
        name=user_id.title(),
        email=f"{user_id}@example.com",
        role=role,
        deleted_at=datetime.now(timezone.utc) if deleted else None,
    )


def _actor(user_id, role="user"):
    return Actor(id=user_id, email=f"{user_id}@example.com", role=role)


class TestTodoVisibility:
    def test_owner_and_assignee_can_see(self, policy):
        todo = Todo(id="t1", user_id="alice", title="T", assignee_id="bob")
        assert policy.can_access_todo(_actor("alice"), todo)
        assert policy.can_access_todo(_actor("bob"), todo)

    def test_stranger_gets_not_found(self, policy):
        todo = Todo(id="t1", user_id="alice", title="T", assignee_id="bob")
        with pytest.raises(NotFoundError):
            policy.ensure_todo_access(_actor("carol"), todo)

    def test_admin_sees_everything(self, policy):
        todo = Todo(id="t1", user_id="alice", title="T")
        assert policy.ensure_todo_access(_actor("root", ROLE_ADMIN), todo) is todo

    def test_deleted_todo_is_not_found_even_for_owner(self, policy):
        todo = Todo(
            id="t1", user_id="alice", title="T", deleted_at=datetime.now(timezone.utc)
        )
        with pytest.raises(NotFoundError):
            policy.ensure_todo_access(_actor("alice"), todo)

    def test_missing_todo_is_not_found(self, policy):
        with pytest.raises(NotFoundError):
            policy.ensure_todo_access(_actor("alice"), None)


class TestAdminRules:
    def test_non_admin_is_forbidden(self, policy):
        with pytest.raises(ForbiddenActionError):
            policy.ensure_can_manage(_actor("alice"), _user("bob"), "deactivate")

    @pytest.mark.parametrize("action", ["deactivate", "promote", "demote", "restore"])
    def test_admin_cannot_target_self(self, policy, action):
        with pytest.raises(ForbiddenActionError):
            policy.ensure_can_manage(
                _actor("root", ROLE_ADMIN), _user("root", ROLE_ADMIN), action
            )

    def test_cannot_deactivate_another_admin(self, policy):
        with pytest.raises(ForbiddenActionError):
            policy.ensure_can_manage(
                _actor("root", ROLE_ADMIN), _user("other", ROLE_ADMIN), "deactivate"
            )

    def test_demote_requires_admin_target(self, policy):
        with pytest.raises(ValidationError):
            policy.ensure_can_manage(_actor("root", ROLE_ADMIN), _user("bob"), "demote")

    def test_restore_requires_deactivated_target(self, policy):
        admin = _actor("root", ROLE_ADMIN)
        with pytest.raises(ValidationError):
            policy.ensure_can_manage(admin, _user("bob"), "restore")
        target = _user("bob", deleted=True)
        assert policy.ensure_can_manage(admin, target, "restore") is target

    def test_deactivated_target_cannot_be_promoted(self, policy):
        with pytest.raises(ForbiddenActionError):
            policy.ensure_can_manage(
                _actor("root", ROLE_ADMIN), _user("bob", deleted=True), "promote"
            )

    def test_unknown_target(self, policy):
        with pytest.raises(NotFoundError):
            policy.ensure_can_manage(_actor("root", ROLE_ADMIN), None, "promote")

    def test_unknown_action(self, policy):
        with pytest.raises(ValidationError):
            policy.ensure_can_manage(_actor("root", ROLE_ADMIN), _user("bob"), "delete")


class TestSessionGuard:
    @pytest.fixture
    def store(self, tmp_path):
        return MemoryStore(fs_root=str(tmp_path))

    @pytest.fixture
    def tokens(self, store, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret="guard-test-access-secret-0123456789abcdef",
            jwt_refresh_secret="guard-test-refresh-secret-0123456789abcdef",
        )
        return TokenService(store, settings)

    @pytest.fixture
    def guard(self, tokens, store):
        return SessionGuard(tokens, store)

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer", "Bearer a b"])
    def test_missing_or_malformed_header(self, guard, header):
        with pytest.raises(UnauthenticatedError) as excinfo:
            guard.authenticate(header)
        assert excinfo.value.error_code == "unauthorized"

    def test_invalid_token(self, guard):
        with pytest.raises(InvalidTokenError):
            guard.authenticate("Bearer abc.def.ghi")

    def test_live_session_yields_actor(self, guard, tokens, store):
        user = store.create_user("Ada", "ada@example.com")
        session = tokens.issue_session(user)

        actor = guard.authenticate(f"Bearer {session.access_token}")

        assert actor == Actor(id=user.id, email="ada@example.com", role="user")

    def test_revoked_session_rejects_valid_access_token(self, guard, tokens, store):
        user = store.create_user("Ada", "ada@example.com")
        session = tokens.issue_session(user)
        tokens.revoke_all(user.id)

        with pytest.raises(SessionRevokedError) as excinfo:
            guard.authenticate(f"Bearer {session.access_token}")
        assert excinfo.value.status_code == 403

    def test_new_session_does_not_revive_revoked_one(self, guard, tokens, store):
        user = store.create_user("Ada", "ada@example.com", role="admin")
        stale = tokens.issue_session(user)
        tokens.revoke_all(user.id)
        store.update_user_role(user.id, "user")
        fresh = tokens.issue_session(store.get_user(user.id))

        with pytest.raises(SessionRevokedError):
            guard.authenticate(f"Bearer {stale.access_token}")
        assert guard.authenticate(f"Bearer {fresh.access_token}").role == "user"

    def test_session_of_another_user_is_rejected(self, guard, tokens, store):
        ada = store.create_user("Ada", "ada@example.com")
        bob = store.create_user("Bob", "bob@example.com")
        ada_session = tokens.issue_session(ada)
        bob_session = tokens.issue_session(bob)

        assert store.has_live_session(ada_session.session_id, ada.id) is True
        assert store.has_live_session(ada_session.session_id, bob.id) is False
        tokens.revoke(ada_session.refresh_token)
        assert store.has_live_session(bob_session.session_id, bob.id) is True
        with pytest.raises(SessionRevokedError):
            guard.authenticate(f"Bearer {ada_session.access_token}")

"""Tests for session lifecycle and refresh-token rotation."""

from datetime import datetime, timedelta, timezone

import pytest

from careauth.config import RefreshReusePolicy
from careauth.service.errors import RefreshTokenReusedError, TokenInvalidOrExpiredError
from careauth.service.sessions import SessionManager, hash_refresh_token
from careauth.storage.models import DeviceInfo


def _manager(stack, policy):
    return SessionManager(
        stack.store, stack.settings.model_copy(update={"refresh_reuse_policy": policy})
    )


class TestOpen:
    def test_open_stores_only_the_digest(self, stack, make_user):
        user = make_user()
        session, refresh = stack.sessions.open(
            user.id,
            DeviceInfo.from_request("dev-1", "Laptop", "web"),
            ip_address=" 192.168.0.10 ",
            user_agent="pytest",
        )
        stored = stack.store.get_session(session.id)
        assert stored.refresh_token_hash == hash_refresh_token(refresh)
        assert refresh not in stored.refresh_token_hash
        assert stored.ip_address == "192.168.0.10"
        assert stored.device.device_name == "Laptop"
        assert stored.is_active

    def test_device_defaults(self, stack, make_user):
        user = make_user()
        session, _ = stack.sessions.open(user.id)
        assert session.device == DeviceInfo("Unknown", "Unknown Device", "Unknown")

    def test_garbled_ip_is_dropped(self, stack, make_user):
        user = make_user()
        session, _ = stack.sessions.open(user.id, ip_address="not-an-ip")
        assert session.ip_address is None


class TestRefresh:
    def test_rotation_issues_new_token(self, stack, make_user):
        user = make_user()
        session, token_a = stack.sessions.open(user.id)
        rotated, token_b = stack.sessions.refresh(token_a)
        assert rotated.id == session.id
        assert token_b != token_a
        assert hash_refresh_token(token_a) in rotated.retired_refresh_token_hashes
        assert rotated.expires_at > session.expires_at

    def test_new_token_keeps_working(self, stack, make_user):
        user = make_user()
        _, token_a = stack.sessions.open(user.id)
        _, token_b = stack.sessions.refresh(token_a)
        _, token_c = stack.sessions.refresh(token_b)
        assert token_c not in (token_a, token_b)

    def test_replayed_token_revokes_session_family(self, stack, make_user):
        user = make_user()
        session, token_a = stack.sessions.open(user.id)
        _, token_b = stack.sessions.refresh(token_a)

        with pytest.raises(RefreshTokenReusedError) as excinfo:
            stack.sessions.refresh(token_a)
        assert [s.id for s in excinfo.value.detail["revoked_sessions"]] == [session.id]
        assert not stack.store.get_session(session.id).is_active
        with pytest.raises(TokenInvalidOrExpiredError):
            stack.sessions.refresh(token_b)

    def test_reject_policy_leaves_session_alive(self, stack, make_user):
        manager = _manager(stack, RefreshReusePolicy.REJECT)
        user = make_user()
        session, token_a = manager.open(user.id)
        _, token_b = manager.refresh(token_a)

        with pytest.raises(RefreshTokenReusedError):
            manager.refresh(token_a)
        assert stack.store.get_session(session.id).is_active
        manager.refresh(token_b)

    def test_revoke_all_policy_ends_every_session(self, stack, make_user):
        manager = _manager(stack, RefreshReusePolicy.REVOKE_ALL)
        user = make_user()
        _, token_a = manager.open(user.id)
        other, _ = manager.open(user.id)
        manager.refresh(token_a)

        with pytest.raises(RefreshTokenReusedError):
            manager.refresh(token_a)
        assert manager.list_active(user.id) == []
        assert not stack.store.get_session(other.id).is_active

    def test_unknown_token_is_invalid(self, stack):
        with pytest.raises(TokenInvalidOrExpiredError):
            stack.sessions.refresh("never-issued")
        with pytest.raises(TokenInvalidOrExpiredError):
            stack.sessions.refresh("")

    def test_expired_session_cannot_refresh(self, stack, make_user):
        user = make_user()
        session, token = stack.sessions.open(user.id)
        stack.store.sessions[session.id].expires_at = datetime.now(timezone.utc) - timedelta(
            minutes=1
        )
        with pytest.raises(TokenInvalidOrExpiredError):
            stack.sessions.refresh(token)
        stored = stack.store.get_session(session.id)
        assert not stored.is_active
        assert stored.revoked_reason == "expired"

    def test_losing_a_rotation_race_counts_as_reuse(self, stack, make_user, monkeypatch):
        user = make_user()
        session, token = stack.sessions.open(user.id)
        monkeypatch.setattr(stack.store, "rotate_refresh_token", lambda *a, **k: None)
        with pytest.raises(RefreshTokenReusedError):
            stack.sessions.refresh(token)
        assert not stack.store.get_session(session.id).is_active


class TestRevocation:
    def test_revoke_and_list(self, stack, make_user):
        user = make_user()
        first, _ = stack.sessions.open(user.id)
        second, _ = stack.sessions.open(user.id)
        revoked = stack.sessions.revoke(first.id, reason="logout")
        assert revoked.revoked_reason == "logout"
        assert [s.id for s in stack.sessions.list_active(user.id)] == [second.id]
        assert stack.sessions.revoke(first.id) is None

    def test_revoke_all_except_current(self, stack, make_user):
        user = make_user()
        keep, _ = stack.sessions.open(user.id)
        stack.sessions.open(user.id)
        stack.sessions.open(user.id)
        revoked = stack.sessions.revoke_all_for_user(user.id, except_session_id=keep.id)
        assert len(revoked) == 2
        assert [s.id for s in stack.sessions.list_active(user.id)] == [keep.id]

    def test_sweep_expired(self, stack, make_user):
        user = make_user()
        stale, _ = stack.sessions.open(user.id)
        fresh, _ = stack.sessions.open(user.id)
        stack.store.sessions[stale.id].expires_at = datetime.now(timezone.utc) - timedelta(
            seconds=1
        )
        assert stack.sessions.sweep_expired() == 1
        assert not stack.store.get_session(stale.id).is_active
        assert stack.store.get_session(fresh.id).is_active

    def test_find_by_refresh_token(self, stack, make_user):
        user = make_user()
        session, token = stack.sessions.open(user.id)
        assert stack.sessions.find_by_refresh_token(token).id == session.id
        assert stack.sessions.find_by_refresh_token("") is None

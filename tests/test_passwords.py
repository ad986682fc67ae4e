"""Tests for password hashing, policy and history."""

from datetime import datetime, timedelta, timezone

import pytest

from careauth.config import PasswordHashAlgorithm
from careauth.service.passwords import (
    ARGON2_TAG,
    PBKDF2_TAG,
    CredentialStore,
    password_policy_violations,
)


class TestPasswordPolicy:
    def test_strong_password_passes(self):
        assert password_policy_violations("Str0ng!Pass") == []
        assert CredentialStore.is_strong("Str0ng!Pass")

    @pytest.mark.parametrize(
        "password,fragment",
        [
            ("Sh0rt!", "at least 8"),
            ("alllower1!", "uppercase"),
            ("ALLUPPER1!", "lowercase"),
            ("NoDigits!!", "digit"),
            ("NoSpecial123", "special"),
        ],
    )
    def test_each_rule_is_reported(self, password, fragment):
        problems = password_policy_violations(password)
        assert any(fragment in p for p in problems)

    def test_overlong_password_rejected(self):
        problems = password_policy_violations("Aa1!" * 40)
        assert any("at most 128" in p for p in problems)

    def test_missing_password(self):
        assert password_policy_violations("") == ["Password is required"]
        assert password_policy_violations(None) == ["Password is required"]


class TestPasswordHashing:
    def test_pbkdf2_is_default(self, stack):
        hashed = stack.credentials.hash("Str0ng!Pass")
        assert hashed.algorithm == PBKDF2_TAG
        assert hashed.salt
        assert hashed.hash != "Str0ng!Pass"

    def test_same_password_produces_different_hashes(self, stack):
        first = stack.credentials.hash("Str0ng!Pass")
        second = stack.credentials.hash("Str0ng!Pass")
        assert first.hash != second.hash
        assert first.salt != second.salt

    def test_verify_round_trip(self, stack):
        hashed = stack.credentials.hash("Str0ng!Pass")
        assert stack.credentials.verify("Str0ng!Pass", hashed.hash, hashed.salt, hashed.algorithm)
        assert not stack.credentials.verify("wrong", hashed.hash, hashed.salt, hashed.algorithm)

    def test_verify_rejects_unknown_algorithm(self, stack):
        hashed = stack.credentials.hash("Str0ng!Pass")
        assert not stack.credentials.verify("Str0ng!Pass", hashed.hash, hashed.salt, "md5")

    def test_verify_rejects_missing_inputs(self, stack):
        assert not stack.credentials.verify("", "hash", "salt", PBKDF2_TAG)
        assert not stack.credentials.verify("pw", None, "salt", PBKDF2_TAG)

    def test_argon2id_when_configured(self, memory_store, settings):
        argon_settings = settings.model_copy(
            update={"password_hash_algorithm": PasswordHashAlgorithm.ARGON2ID}
        )
        credentials = CredentialStore(memory_store, argon_settings)
        hashed = credentials.hash("Str0ng!Pass")
        assert hashed.algorithm == ARGON2_TAG
        assert hashed.salt is None
        assert hashed.hash.startswith("$argon2id$")
        assert credentials.verify("Str0ng!Pass", hashed.hash, None, ARGON2_TAG)
        assert not credentials.verify("Wrong!Pass1", hashed.hash, None, ARGON2_TAG)

    def test_needs_rehash_when_algorithm_changes(self, memory_store, settings, make_user):
        user = make_user()
        assert not CredentialStore(memory_store, settings).needs_rehash(user)
        argon_settings = settings.model_copy(
            update={"password_hash_algorithm": PasswordHashAlgorithm.ARGON2ID}
        )
        assert CredentialStore(memory_store, argon_settings).needs_rehash(user)

    def test_dummy_verify_never_succeeds(self, stack):
        assert stack.credentials.dummy_verify("Str0ng!Pass") is False

    async def test_async_helpers(self, stack, make_user):
        user = make_user()
        assert await stack.credentials.verify_user_async(user, "Str0ng!Pass")
        assert not await stack.credentials.verify_user_async(user, "Other!Pass1")
        assert await stack.credentials.dummy_verify_async("x") is False


class TestPasswordHistory:
    def test_current_password_counts_as_reuse(self, stack, make_user):
        user = make_user()
        assert stack.credentials.matches_current(user, "Str0ng!Pass")
        assert stack.credentials.in_history(user.id, "Str0ng!Pass")
        assert not stack.credentials.matches_current(user, "Brand!New1")
        assert not stack.credentials.in_history(user.id, "Brand!New1")

    def test_recent_history_counts_as_reuse(self, stack, make_user):
        user = make_user()
        for value in ("Older!Pass1", "Older!Pass2"):
            stack.credentials.record_history(
                user.id, stack.credentials.hash(value), reason="password_change"
            )
        assert stack.credentials.in_history(user.id, "Older!Pass1")
        assert not stack.credentials.in_history(user.id, "Never!Used1")

    def test_history_beyond_depth_is_forgotten(self, stack, make_user):
        user = make_user(password="First!Pass1")
        depth = stack.settings.password_history_depth
        for i in range(depth):
            stack.credentials.record_history(
                user.id, stack.credentials.hash(f"Later!Pass{i}"), reason="password_change"
            )
        assert not stack.credentials.in_history(user.id, "First!Pass1")

    def test_record_history_appends_one_row(self, stack, make_user):
        user = make_user()
        before = len(stack.store.list_password_history(user.id, 100))
        entry = stack.credentials.record_history(
            user.id,
            stack.credentials.hash("Next!Pass1"),
            reason="password_change",
            actor=user.id,
            ip_address="10.0.0.1",
        )
        history = stack.store.list_password_history(user.id, 100)
        assert len(history) == before + 1
        assert history[0].id == entry.id
        assert history[0].change_reason == "password_change"

    def test_purge_history_removes_old_rows(self, stack, make_user):
        user = make_user()
        entries = stack.store.password_history[user.id]
        entries[0].created_at = datetime.now(timezone.utc) - timedelta(days=400)
        assert stack.credentials.purge_history(365) == 1
        assert stack.store.list_password_history(user.id, 10) == []

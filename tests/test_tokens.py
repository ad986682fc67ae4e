"""Tests for access token signing, checking and revocation."""

import base64
import json
from datetime import datetime, timedelta, timezone

from careauth.service.tokens import InMemoryRevocationStore, TokenIssuer
from careauth.storage.models import UserRole, new_id


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _role(user_id, name, section, section_id=None):
    return UserRole(
        id=new_id(),
        user_id=user_id,
        role_id=name.lower(),
        role_name=name,
        section=section,
        section_id=section_id,
    )


def test_issue_embeds_identity_and_role_claims(stack, make_user):
    user = make_user()
    roles = [
        _role(user.id, "Nurse", "Ward", "w-7"),
        _role(user.id, "Nurse", "Clinic"),
        _role(user.id, "Auditor", "General"),
    ]
    issued = stack.tokens.issue(
        user, roles, ["records:read", "records:read", "audit:view"], session_id="s-1"
    )
    claims = stack.tokens.decode(issued.token)

    assert claims.sub == user.id
    assert claims.email == "user@example.com"
    assert claims.name == "Test User"
    assert claims.sid == "s-1"
    assert claims.jti == issued.token_id
    assert claims.roles == ["Nurse", "Auditor"]
    assert claims.role_sections == ["Ward:Nurse", "Clinic:Nurse", "General:Auditor"]
    assert claims.role_section_ids == ["Ward:w-7:Nurse"]
    assert claims.permissions == ["records:read", "audit:view"]
    assert claims.iss == stack.settings.jwt_issuer
    assert claims.aud == stack.settings.jwt_audience
    assert claims.exp - claims.iat == stack.settings.access_token_ttl_minutes * 60


def test_tampered_signature_is_rejected(stack, make_user):
    issued = stack.tokens.issue(make_user(), [], [])
    header, payload, signature = issued.token.split(".")
    flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
    assert stack.tokens.decode(f"{header}.{payload}.{flipped}") is None


def test_tampered_payload_is_rejected(stack, make_user):
    issued = stack.tokens.issue(make_user(), [], [])
    header, _, signature = issued.token.split(".")
    forged = _b64({**issued.claims.to_payload(), "role": "admin"})
    assert stack.tokens.decode(f"{header}.{forged}.{signature}") is None


def test_alg_none_is_refused(stack, make_user):
    issued = stack.tokens.issue(make_user(), [], [])
    _, payload, _ = issued.token.split(".")
    unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
    assert stack.tokens.decode(unsigned) is None


def test_wrong_issuer_or_audience_is_rejected(stack, make_user):
    user = make_user()
    foreign = TokenIssuer(
        stack.settings.model_copy(update={"jwt_issuer": "SomeoneElse"}), stack.revocations
    )
    assert stack.tokens.decode(foreign.issue(user, [], []).token) is None

    other_aud = TokenIssuer(
        stack.settings.model_copy(update={"jwt_audience": "Other-Users"}), stack.revocations
    )
    assert stack.tokens.decode(other_aud.issue(user, [], []).token) is None


def test_garbage_tokens_decode_to_none(stack):
    for token in ("", "abc", "a.b", "a.b.c.d", "!!.??.**"):
        assert stack.tokens.decode(token) is None


async def test_non_ascii_signature_is_invalid_not_an_error(stack, make_user):
    issued = stack.tokens.issue(make_user(), [], [])
    head, body, _ = issued.token.split(".")
    for token in (f"{head}.{body}.ééé", f"{head}.{body}.\udcff", f"{head}.é.sig"):
        assert stack.tokens.decode(token) is None
        assert await stack.tokens.validate(token) is None


def test_expiry_follows_clock(settings, make_user):
    clock = FakeClock()
    issuer = TokenIssuer(settings, InMemoryRevocationStore(), clock=clock)
    issued = issuer.issue(make_user(), [], [])

    clock.now += settings.access_token_ttl_minutes * 60 - 1
    assert issuer.decode(issued.token) is not None
    clock.now += 1
    assert issuer.decode(issued.token) is None


def test_token_from_the_future_is_rejected(settings, make_user):
    clock = FakeClock()
    issuer = TokenIssuer(settings, InMemoryRevocationStore(), clock=clock)
    issued = issuer.issue(make_user(), [], [])
    clock.now -= 600
    assert issuer.decode(issued.token) is None


async def test_validate_honours_revocation(stack, make_user):
    issued = stack.tokens.issue(make_user(), [], [])
    assert await stack.tokens.validate(issued.token) is not None

    await stack.tokens.revoke(issued.token_id, issued.expires_at)
    assert await stack.tokens.validate(issued.token) is None
    # signature and lifetime checks alone still pass
    assert stack.tokens.decode(issued.token) is not None


async def test_revoke_without_expiry_uses_access_lifetime(stack):
    await stack.tokens.revoke("jti-1")
    assert await stack.revocations.is_revoked("jti-1")
    await stack.tokens.revoke("")
    assert len(stack.revocations) == 1


class TestInMemoryRevocationStore:
    async def test_entries_expire_with_their_token(self):
        now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
        store = InMemoryRevocationStore(clock=lambda: now[0])
        await store.revoke("a", now[0] + timedelta(minutes=5))
        assert await store.is_revoked("a")

        now[0] += timedelta(minutes=5)
        assert not await store.is_revoked("a")
        assert len(store) == 0

    async def test_already_expired_entries_are_not_kept(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store = InMemoryRevocationStore(clock=lambda: now)
        await store.revoke("old", now - timedelta(seconds=1))
        assert len(store) == 0
        assert not await store.is_revoked("old")

    async def test_revoke_prunes_stale_entries(self):
        now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
        store = InMemoryRevocationStore(clock=lambda: now[0])
        await store.revoke("a", now[0] + timedelta(minutes=1))
        await store.revoke("b", now[0] + timedelta(minutes=10))
        now[0] += timedelta(minutes=2)
        await store.revoke("c", now[0] + timedelta(minutes=10))
        assert len(store) == 2

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from careauth.service.email import EmailNotifier
from careauth.service.runtime import get_runtime
from careauth.storage.models import AccessPermission, AccountStatus, UserRole, new_id

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

import bootstrap_admin  # noqa: E402


async def test_bootstrap_creates_active_admin():
    result = await bootstrap_admin.bootstrap_admin("root@example.com", "Adm1n!Secret")
    assert result["status"] == "created"

    store = get_runtime().store
    user = store.get_user(result["user_id"])
    assert user.role == "admin"
    assert user.status == AccountStatus.ACTIVE
    assert user.email_verified
    assert [r.role_name for r in store.list_user_roles(user.id)] == ["admin"]

    again = await bootstrap_admin.bootstrap_admin("root@example.com", "Adm1n!Secret")
    assert again["status"] == "already_admin"


async def test_bootstrap_promotes_existing_user():
    runtime = get_runtime()
    registered = await runtime.auth.register("staff@example.com", "Str0ng!Pass")

    dry = await bootstrap_admin.bootstrap_admin("staff@example.com", "ignored", dry_run=True)
    assert dry["status"] == "dry_run"
    assert runtime.store.get_user(registered.data["user_id"]).role == "user"

    result = await bootstrap_admin.bootstrap_admin("staff@example.com", "ignored")
    assert result["status"] == "promoted"
    login = await runtime.auth.login("staff@example.com", "Str0ng!Pass")
    assert login.success
    assert login.data["user"]["role"] == "admin"


def test_role_resolver_skips_expired_assignments(stack, make_user):
    user = make_user()
    now = datetime.now(timezone.utc)
    stack.store.assign_user_role(
        UserRole(id=new_id(), user_id=user.id, role_id="nurse", role_name="Nurse", section="Ward")
    )
    stack.store.assign_user_role(
        UserRole(
            id=new_id(),
            user_id=user.id,
            role_id="locum",
            role_name="Locum",
            section="Ward",
            expires_at=now - timedelta(days=1),
        )
    )
    stack.store.add_access_permission(
        AccessPermission(id=new_id(), role_id="nurse", name="records:read")
    )
    stack.store.add_access_permission(
        AccessPermission(id=new_id(), role_id="locum", name="records:write")
    )

    resolved = stack.roles.resolve(user.id)
    assert [r.role_name for r in resolved.roles] == ["Nurse"]
    assert resolved.permissions == ["records:read"]


async def test_login_token_carries_roles(stack, make_user):
    user = make_user()
    stack.store.assign_user_role(
        UserRole(
            id=new_id(),
            user_id=user.id,
            role_id="nurse",
            role_name="Nurse",
            section="Ward",
            section_id="w-3",
        )
    )
    result = await stack.auth.login("user@example.com", "Str0ng!Pass")
    claims = await stack.auth.authenticate(result.data["tokens"]["access_token"])
    assert claims.roles == ["Nurse"]
    assert claims.role_section_ids == ["Ward:w-3:Nurse"]
    assert result.data["user"]["roles"][0]["section"] == "Ward"

    session = stack.store.get_session(result.data["tokens"]["session_id"])
    assert session.organization_id == "w-3"
    assert session.role_context == "Ward:Nurse"


async def test_session_without_roles_has_no_context(stack, make_user):
    make_user()
    result = await stack.auth.login("user@example.com", "Str0ng!Pass")
    session = stack.store.get_session(result.data["tokens"]["session_id"])
    assert session.organization_id is None
    assert session.role_context is None


def test_unconfigured_email_notifier_logs_instead_of_sending(settings):
    notifier = EmailNotifier.from_settings(settings)
    assert not notifier.is_configured
    assert notifier.send_password_reset("user@example.com", "tok<en>")

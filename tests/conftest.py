import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="careauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Revocations stay in-process unless a test opts into Redis
os.environ["REDIS_URL"] = ""
# Keep PBKDF2 cheap; the algorithm is unchanged
os.environ.setdefault("PBKDF2_ITERATIONS", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from careauth.config import Settings  # noqa: E402
from careauth.service.auth import AuthService  # noqa: E402
from careauth.service.passwords import CredentialStore  # noqa: E402
from careauth.service.roles import StoreRoleResolver  # noqa: E402
from careauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from careauth.service.sessions import SessionManager  # noqa: E402
from careauth.service.tokens import InMemoryRevocationStore, TokenIssuer  # noqa: E402
from careauth.service.two_factor import TwoFactorAuthenticator  # noqa: E402
from careauth.service.verification import VerificationTokenLedger  # noqa: E402
from careauth.storage.memory import MemoryStore  # noqa: E402
from careauth.storage.models import AccountStatus, User, new_id  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state directory per test so persisted users never leak across tests
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        pbkdf2_iterations=1000,
        test_mode=True,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def stack(memory_store, settings):
    """Wire the identity components over a private store and revocation set."""
    credentials = CredentialStore(memory_store, settings)
    ledger = VerificationTokenLedger(memory_store, settings)
    two_factor = TwoFactorAuthenticator(memory_store, ledger, credentials, settings)
    sessions = SessionManager(memory_store, settings)
    revocations = InMemoryRevocationStore()
    tokens = TokenIssuer(settings, revocations)
    roles = StoreRoleResolver(memory_store)
    auth = AuthService(
        memory_store, credentials, ledger, two_factor, sessions, tokens, roles, settings
    )
    return SimpleNamespace(
        store=memory_store,
        settings=settings,
        credentials=credentials,
        ledger=ledger,
        two_factor=two_factor,
        sessions=sessions,
        revocations=revocations,
        tokens=tokens,
        roles=roles,
        auth=auth,
    )


@pytest.fixture
def make_user(stack):
    """Create a user directly in the store with a hashed password."""

    def _make(
        email="user@example.com",
        password="Str0ng!Pass",
        *,
        status=AccountStatus.ACTIVE,
        email_verified=True,
    ):
        hashed = stack.credentials.hash(password)
        user = stack.store.create_user(
            User(
                id=new_id(),
                email=email,
                password_hash=hashed.hash,
                password_salt=hashed.salt,
                password_algorithm=hashed.algorithm,
                first_name="Test",
                last_name="User",
                status=status,
                email_verified=email_verified,
            )
        )
        stack.credentials.record_history(user.id, hashed, reason="registration")
        return user

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

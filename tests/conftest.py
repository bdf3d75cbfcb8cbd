import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hidauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SIGNING_SECRET", "test-signing-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("ROOT_URL", "http://testserver")
# Rate limits and pending authorizations use the in-process fallback
os.environ.setdefault("REDIS_URL", "")

# One RSA pair per test session; generating per test is slow
_private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
TEST_PRIVATE_PEM = _private_key.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode()
TEST_PUBLIC_PEM = (
    _private_key.public_key()
    .public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    .decode()
)
os.environ.setdefault("JWT_PRIVATE_KEY", TEST_PRIVATE_PEM)
os.environ.setdefault("JWT_PUBLIC_KEY", TEST_PUBLIC_PEM)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hidauth.config import Settings  # noqa: E402
from hidauth.service.credentials import CredentialVerifier  # noqa: E402
from hidauth.service.flood import FloodGuard  # noqa: E402
from hidauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from hidauth.service.tokens import SigningKeys  # noqa: E402
from hidauth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "Correct-Horse-Battery-9"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh shared root per test so the memory store snapshot starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path / "settings"),
        signing_secret="unit-test-signing-secret-0123456789abcdef",
        root_url="http://testserver",
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def store(tmp_path, settings):
    return MemoryStore(fs_root=str(tmp_path / "store"), encryption_key=settings.signing_secret)


@pytest.fixture
def signing_keys():
    return SigningKeys(private_pem=TEST_PRIVATE_PEM, public_pem=TEST_PUBLIC_PEM, kid="test-kid")


@pytest.fixture
def flood(store, settings):
    return FloodGuard(store, settings)


@pytest.fixture
def verifier(store, flood, settings):
    return CredentialVerifier(store, flood, settings)


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def make_account(store, verifier):
    """Factory for verified accounts with a known password."""

    def _make(email="user@example.org", *, password=TEST_PASSWORD, verified=True, **kwargs):
        account = store.create_account(email, email_verified=verified, **kwargs)
        verifier.set_password(account.id, password)
        return store.get_account(account.id)

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

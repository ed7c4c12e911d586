import asyncio
import base64
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenwarden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Rate limits fall back to the in-process bucket
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST", "1024")
os.environ.setdefault("HASH_PARALLELISM", "1")
os.environ.setdefault("HASH_WORKERS", "2")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("RECOVERY_RATE_LIMIT_PER_MINUTE", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenwarden.config import Settings  # noqa: E402
from tokenwarden.service.auth import AuthService  # noqa: E402
from tokenwarden.service.hashing import SecretHasher, normalize_secret  # noqa: E402
from tokenwarden.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenwarden.storage.memory import MemoryStore  # noqa: E402
from tokenwarden.storage.models import AccessLevel  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh state directory per test so persisted accounts do not leak
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    runtime = reset_runtime_for_tests()
    yield runtime
    runtime.hasher.shutdown(wait=True)


@pytest.fixture
def store(tmp_path) -> MemoryStore:
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def hasher():
    hasher = SecretHasher(workers=2, time_cost=1, memory_cost=1024, parallelism=1)
    yield hasher
    hasher.shutdown()


def create_account(
    store,
    hasher,
    username: str = "sam",
    password: str = "Secret Pass 1",
    recovery_key: str = "Lime Kite Orbit",
    *,
    code: str | None = None,
    access_level: AccessLevel = AccessLevel.VERIFIED,
    parent_id: str | None = None,
):
    return store.create_account(
        username,
        hasher.hash(password),
        hasher.hash(normalize_secret(recovery_key)),
        access_level=access_level,
        verification_code=normalize_secret(code) if code else None,
        parent_id=parent_id,
    )


@pytest.fixture
def account_factory(store, hasher):
    def _create(*args, **kwargs):
        return create_account(store, hasher, *args, **kwargs)

    return _create


@pytest.fixture
def settings() -> Settings:
    return Settings(hash_time_cost=1, hash_memory_cost=1024, hash_parallelism=1)


@pytest.fixture
def auth_service(store, hasher, settings) -> AuthService:
    return AuthService(store, hasher, settings)


def basic_auth(username: str, password: str) -> dict:
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


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

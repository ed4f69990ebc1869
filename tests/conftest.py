import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before any import that might build settings or the runtime
_test_key_dir = tempfile.mkdtemp(prefix="berthcare_test_keys_")
os.environ.setdefault("KEY_DIR", _test_key_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("OPEN_REGISTRATION", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Never talk to a real Redis from the suite; the runtime falls back to MemoryCache under TEST_MODE
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST_KIB", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from berthcare.config import get_settings  # noqa: E402
from berthcare.service.auth import AuthService  # noqa: E402
from berthcare.service.passwords import CredentialHasher  # noqa: E402
from berthcare.service.runtime import reset_runtime_for_tests  # noqa: E402
from berthcare.service.tokens import TokenCodec  # noqa: E402
from berthcare.storage.memory import MemoryCache, MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture
def hasher(settings):
    return CredentialHasher.from_settings(settings)


@pytest.fixture
def codec(settings):
    return TokenCodec.from_settings(settings)


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, hasher, codec):
    return AuthService(memory_store, memory_cache, settings, hasher=hasher, codec=codec)


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

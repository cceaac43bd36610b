import os
import sys
import tempfile
from pathlib import Path

# Pin the runtime to the memory backend before any usertokens import reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="usertokens_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("TOKEN_STORE_BACKEND", "memory")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from usertokens.config import Settings  # noqa: E402
from usertokens.service.runtime import reset_runtime_for_tests  # noqa: E402
from usertokens.service.tokens import TokenService  # noqa: E402
from usertokens.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(store_backend="memory", test_mode=True)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def token_service(memory_store, settings):
    return TokenService(memory_store, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user()

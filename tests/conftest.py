import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might initialize settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# No Redis and no model key: in-process rate limits and the stub completion backend
os.environ["REDIS_URL"] = ""
os.environ["OPENROUTER_API_KEY"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from freeme.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def session_factory():
    """Write sessions into the current runtime's store the way the identity provider would."""
    from freeme.service.runtime import get_runtime

    def _create(user_id: str = "user-1", ttl_minutes: int = 60, **meta):
        return get_runtime().store.create_session(user_id, ttl_minutes, meta=meta or None)

    return _create


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

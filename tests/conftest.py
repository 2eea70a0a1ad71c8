import asyncio
import inspect
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before eventauth reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from eventauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start=None):
        self._lock = threading.Lock()
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self):
        with self._lock:
            return self._now

    def advance(self, seconds=0, **kwargs):
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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

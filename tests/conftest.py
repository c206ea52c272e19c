import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SESSIONGUARD_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.clock import ManualClock  # noqa: E402
from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.credentials import (  # noqa: E402
    PasswordCredentialVerifier,
    StaticMFAVerifier,
)
from sessionguard.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from sessionguard.service.tokens import SessionMeta  # noqa: E402
from sessionguard.storage.models import Fingerprint  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
MOBILE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) Mobile/15E148 Safari/604.1"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings_overrides():
    """Override in a test module to tweak policy for every fixture below."""
    return {}


@pytest.fixture
def settings(settings_overrides):
    values = {
        "jwt_secret": TEST_SECRET,
        "use_memory_store": True,
        "test_mode": True,
    }
    values.update(settings_overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def credentials():
    return PasswordCredentialVerifier()


@pytest.fixture
def mfa():
    return StaticMFAVerifier()


@pytest.fixture
def runtime(settings, clock, credentials, mfa):
    return Runtime(settings, credentials=credentials, mfa=mfa, clock=clock)


@pytest.fixture
def open_session(runtime):
    """Issue a token pair and register its session, as a successful login would."""

    async def _open(subject_id="user-1", ip="203.0.113.10", user_agent=DESKTOP_UA):
        pair = await runtime.tokens.issue_token_pair(
            subject_id, SessionMeta(ip=ip, user_agent=user_agent)
        )
        await runtime.sessions.register_session(
            subject_id,
            Fingerprint(ip=ip, user_agent=user_agent),
            token_family=pair.token_family,
            session_id=pair.session_id,
        )
        return pair

    return _open


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

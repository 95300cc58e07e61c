import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

# Configure the environment before any sessionlife import reads it
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionlife_test_")
os.environ.setdefault("SESSION_STATE_DIR", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionlife.config import Settings, reset_settings_cache  # noqa: E402
from sessionlife.service.activity import LocalInputSurface  # noqa: E402
from sessionlife.service.clock import VirtualClock  # noqa: E402
from sessionlife.service.controller import SessionController  # noqa: E402
from sessionlife.storage.credentials import MemoryCredentialStore  # noqa: E402
from sessionlife.storage.models import (  # noqa: E402
    Credential,
    OnboardingStatus,
    OnboardingStep,
    SessionEndReason,
)


class FakeAuthBackend:
    """Scriptable Authentication/Onboarding service.

    ``renew_results`` and ``status_results`` are queues of return values or
    exceptions; when empty, renewal bumps the version by one and status
    reports nothing pending.
    """

    def __init__(self):
        self.renew_results: List[object] = []
        self.renew_calls: List[Credential] = []
        self.renew_gate: Optional[asyncio.Event] = None
        self.status_results: List[object] = []
        self.status_calls = 0
        self.completed: List[tuple] = []
        self.complete_error: Optional[Exception] = None
        self.invalidated: List[Credential] = []
        self.invalidate_error: Optional[Exception] = None
        self.invalidate_gate: Optional[asyncio.Event] = None
        self.validate_error: Optional[Exception] = None
        self.validated: List[Credential] = []
        self.acknowledged = 0

    async def validate_credential(self, credential):
        self.validated.append(credential)
        if self.validate_error is not None:
            raise self.validate_error

    async def renew_credential(self, credential):
        self.renew_calls.append(credential)
        if self.renew_gate is not None:
            await self.renew_gate.wait()
        if self.renew_results:
            result = self.renew_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return Credential(
            token=f"token-v{credential.version + 1}",
            version=credential.version + 1,
            subject=credential.subject,
        )

    async def invalidate_credential(self, credential):
        self.invalidated.append(credential)
        if self.invalidate_gate is not None:
            await self.invalidate_gate.wait()
        if self.invalidate_error is not None:
            raise self.invalidate_error

    async def get_onboarding_status(self, credential):
        self.status_calls += 1
        if self.status_results:
            result = self.status_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return OnboardingStatus()

    async def complete_step(self, credential, step, payload):
        if self.complete_error is not None:
            raise self.complete_error
        self.completed.append((step, payload))

    async def acknowledge_onboarding(self, credential):
        self.acknowledged += 1


class RecordingNavigator:
    def __init__(self):
        self.redirects: List[SessionEndReason] = []

    def redirect_to_login(self, reason):
        self.redirects.append(reason)


def pending(*steps: OnboardingStep, first_login: bool = False) -> OnboardingStatus:
    return OnboardingStatus(pending=frozenset(steps), is_first_login=first_login)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Short timings: warning at 240s, expiry at 300s, proactive refresh at 180s."""
    return Settings(
        inactivity_timeout=300,
        warning_window=60,
        poll_interval=1.0,
        keep_alive_interval=120,
        keep_alive_initial_delay=1.0,
        min_renewal_spacing=30,
        refresh_threshold_before_warning=60,
        activity_debounce=1.0,
        retry_backoff=10,
        logout_timeout=5,
    )


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def surface():
    return LocalInputSurface()


@pytest.fixture
def backend():
    return FakeAuthBackend()


@pytest.fixture
def navigator():
    return RecordingNavigator()


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def credential():
    return Credential(token="token-v0", version=0, subject="42")


@pytest.fixture
def controller(settings, backend, navigator, store, clock, surface):
    ctl = SessionController(
        settings,
        backend=backend,
        navigator=navigator,
        store=store,
        clock=clock,
        surface=surface,
    )
    yield ctl
    ctl.dispose()


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

import asyncio
import inspect
import os
import sys
from pathlib import Path

# Settings are read at import time; pin the test environment before anything loads
os.environ["TEST_MODE"] = "true"
os.environ["USE_MEMORY_STORE"] = "true"
os.environ["ALLOW_REDIS_FALLBACK_DEV"] = "true"
os.environ["JWT_SECRET"] = "test-secret-key-for-testing-only-do-not-use-in-production"
# Empty REDIS_URL selects the in-process credential store
os.environ["REDIS_URL"] = ""
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from edutenant.service.pipeline import RequestContext  # noqa: E402
from edutenant.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from edutenant.storage.models import Account, Role  # noqa: E402

DEFAULT_PASSWORD = "Senha1234"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def tenant(runtime):
    return runtime.store.create_tenant("Escola Alfa")


@pytest.fixture
def other_tenant(runtime):
    return runtime.store.create_tenant("Escola Beta")


@pytest.fixture
def make_account(runtime):
    """Create an account directly, bypassing invitations."""
    counter = {"n": 0}

    def _make(role: Role, tenant_id=None, *, email=None, name=None, password=DEFAULT_PASSWORD) -> Account:
        counter["n"] += 1
        return runtime.accounts.create_account(
            email=email or f"{Role(role).value.lower()}{counter['n']}@example.com",
            name=name or f"{Role(role).value.title()} {counter['n']}",
            role=role,
            secret=password,
            tenant_id=tenant_id,
        )

    return _make


def context_for(account: Account, client_ip: str = "127.0.0.1") -> RequestContext:
    return RequestContext(
        client_ip=client_ip,
        subject_id=account.id,
        tenant_id=account.tenant_id,
        role=account.role,
    )


@pytest.fixture
def ctx_for():
    return context_for


class RecordingNotifier:
    """Notification sender double that remembers what it was asked to send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, to, template_kind, params):
        if self.fail:
            raise ConnectionError("smtp unreachable")
        self.sent.append((to, template_kind, dict(params)))
        return True


@pytest.fixture
def notifier(runtime):
    recorder = RecordingNotifier()
    runtime.invitations.notifier = recorder
    runtime.accounts.notifier = recorder
    return recorder


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

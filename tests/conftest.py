import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only")
# cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
# in-memory rate limiting; no Redis in tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from apiguard.service.runtime import reset_runtime_for_tests  # noqa: E402


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


class RecordingSender:
    """Notification sender that keeps every message instead of mailing it."""

    def __init__(self):
        self.sent = []

    def _record(self, kind, to_email, **fields):
        self.sent.append({"kind": kind, "to": to_email, **fields})
        return True

    def send_email_verification(self, to_email, token):
        return self._record("verification", to_email, token=token)

    def send_password_reset(self, to_email, token):
        return self._record("reset", to_email, token=token)

    def send_password_changed(self, to_email):
        return self._record("password_changed", to_email)

    def send_workspace_invitation(self, to_email, token, *, workspace_name, inviter_name, role):
        return self._record(
            "invitation",
            to_email,
            token=token,
            workspace_name=workspace_name,
            inviter_name=inviter_name,
            role=role,
        )

    def last(self, kind, to_email=None):
        for message in reversed(self.sent):
            if message["kind"] == kind and (to_email is None or message["to"] == to_email):
                return message
        return None


@pytest.fixture
def outbox():
    return RecordingSender()

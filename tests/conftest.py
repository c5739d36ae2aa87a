import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Per-process rate limits keep the suite independent of a running Redis
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from warden.config import Settings  # noqa: E402
from warden.service.email import (  # noqa: E402
    EmailDeliveryError,
    EmailService,
    OutboundEmail,
)
from warden.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingEmailService(EmailService):
    """Email service whose transport appends to ``outbox`` instead of SMTP."""

    def __init__(self) -> None:
        super().__init__(
            smtp_host="smtp.test.invalid",
            from_email="noreply@warden.test",
            site_url="http://warden.test",
        )
        self.outbox: list[OutboundEmail] = []
        self.fail = False

    def _deliver(self, message: OutboundEmail) -> str:
        if self.fail:
            raise EmailDeliveryError("simulated SMTP outage")
        self.outbox.append(message)
        return f"<{len(self.outbox)}@warden.test>"

    def sent(self, template_name: str) -> list[OutboundEmail]:
        return [m for m in self.outbox if m.template_name == template_name]

    def last(self, template_name: str) -> OutboundEmail:
        matching = self.sent(template_name)
        assert matching, f"no {template_name} email was sent"
        return matching[-1]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Explicit settings for services built directly in unit tests."""
    return Settings(
        jwt_secret="unit-access-secret-for-automation-only-0123456789",
        jwt_refresh_secret="unit-refresh-secret-for-automation-only-9876543210",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        test_mode=True,
    )


@pytest.fixture
def mailer():
    """Recording email service, also installed on the live runtime."""
    service = RecordingEmailService()
    runtime = get_runtime()
    runtime.email = service
    runtime.accounts.email = service
    return service


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

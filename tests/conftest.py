"""Shared pytest fixtures for the test suite.

Provides a temporary SQLite timer store, a controllable clock and a stub
webhook client so scheduler tests never touch the network.
"""

import os

# Settings are read at import time; keep tests off Postgres/Sentry and stop
# the start-timer route from launching a background scheduler.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.pop("SENTRY_DSN", None)
os.environ["API_KEY"] = "test-api-key"

import pytest

from tripgate.database import create_engine, create_session_factory
from tripgate.models import Base
from tripgate.services.timer_scheduler import TimerScheduler
from tripgate.services.timer_service import TimerService
from tripgate.services.webhook_service import DeliverySuccess

START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, milliseconds: int):
        self.now += milliseconds


class StubWebhookClient:
    """Records deliveries and answers with whatever the responder returns."""

    def __init__(self, responder=None):
        self.calls = []
        self.responder = responder or (lambda url, payload: DeliverySuccess(200, {"ok": True}))

    async def deliver(self, url, payload):
        self.calls.append((url, payload))
        result = self.responder(url, payload)
        if hasattr(result, "__await__"):
            result = await result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path):
    """Provide a file-backed SQLite store with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'timers.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def timer_service(session_factory, clock):
    return TimerService(session_factory, clock=clock)


@pytest.fixture
def webhook_client():
    return StubWebhookClient()


@pytest.fixture
def make_webhook_client():
    return StubWebhookClient


@pytest.fixture
def scheduler(timer_service, webhook_client):
    return TimerScheduler(timer_service, webhook_client, interval_seconds=60)

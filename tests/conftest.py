"""Shared test fixtures for the field-service assistant."""
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from channels.base import ConsoleMessenger, Notifier
from config.settings import BusinessConfig, Settings
from context.session_store import SessionStore
from core.orchestrator import Orchestrator, create_orchestrator
from database.session import Database
from database.store_factory import Stores, create_stores

ADMIN = "5581900000001"
OPERATOR = "5581900000002"
SUPPORT_TEAM = "5581900000003"
USER = "5581988887777"

# Tuesday 20/10/2026 10:00 in São Paulo (UTC-3)
TUESDAY_10H = datetime(2026, 10, 20, 13, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock; always returns aware UTC datetimes."""

    def __init__(self, start: datetime = TUESDAY_10H):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set_local(self, year, month, day, hour, minute=0) -> datetime:
        """Set the clock to a São Paulo wall-clock time."""
        self.now = datetime(year, month, day, hour + 3, minute, tzinfo=timezone.utc)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    settings = Settings()
    settings.business = BusinessConfig(
        admin_number=ADMIN,
        operator_number=OPERATOR,
        team_numbers={"support": SUPPORT_TEAM},
    )
    return settings


@pytest.fixture
def messenger() -> ConsoleMessenger:
    return ConsoleMessenger()


@pytest.fixture
def stores() -> Stores:
    return create_stores("memory")


@pytest.fixture
def notifier(messenger, settings) -> Notifier:
    return Notifier(messenger, settings.business)


@pytest.fixture
def sessions(clock) -> SessionStore:
    return SessionStore(max_idle_seconds=7200, sweep_interval_seconds=1800, clock=clock)


@pytest.fixture
def orchestrator(settings, messenger, stores, clock) -> Orchestrator:
    """Fully wired orchestrator on in-memory stores; the dispatch loop is not started."""
    return create_orchestrator(settings, messenger=messenger, stores=stores, clock=clock)


@pytest_asyncio.fixture
async def database():
    """Fresh SQLite database file with all tables created."""
    d = tempfile.mkdtemp(prefix="assistant_test_")
    db = Database(f"sqlite:///{os.path.join(d, 'test.db')}")
    await db.init()
    yield db
    await db.close()


async def say(orchestrator: Orchestrator, text: str, user: str = USER) -> dict:
    """Send one inbound message as `user`."""
    return await orchestrator.handle_inbound_message(user, text)


def replies(messenger: ConsoleMessenger, user: str = USER) -> list[str]:
    return messenger.messages_for(user)


def last_reply(messenger: ConsoleMessenger, user: str = USER) -> str:
    return messenger.last_for(user)

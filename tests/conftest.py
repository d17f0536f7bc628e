"""Pytest configuration and shared fixtures.

Every test gets its own SQLite database file, built through the same engine
factory production uses. Factories commit what they create so that code
running in other sessions (sweeps, HTTP requests) sees it.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.ticketing-test.db")
os.environ.setdefault("BACKGROUND_JOBS_ENABLED", "0")

import httpx
import pytest

from ticketing.database import get_session, make_async_engine
from ticketing.models import Base, Event, TicketTier, User, UserRole
from ticketing.notifications import drain_notifications, get_notifier

from tests.factories import make_event, make_tier, make_user


class RecordingNotifier:
    """Stands in for the RabbitMQ publisher and remembers what was sent."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def publish(self, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.sent.append(payload)


@pytest.fixture
async def session_maker(tmp_path):
    engine, maker = make_async_engine(f"sqlite:///{tmp_path / 'ticketing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def notifier():
    recorder = RecordingNotifier()
    yield recorder
    await drain_notifications()


@pytest.fixture
async def organizer(session) -> User:
    return await make_user(session, role=UserRole.ORGANIZER, token="organizer-token")


@pytest.fixture
async def customer(session) -> User:
    return await make_user(session, points=50000, token="customer-token")


@pytest.fixture
async def event(session, organizer) -> Event:
    return await make_event(session, organizer)


@pytest.fixture
async def tier(session, event) -> TicketTier:
    return await make_tier(session, event)


@pytest.fixture
async def client(session_maker, notifier):
    from ticketing.main import app

    async def _get_session():
        async with session_maker() as s:
            yield s

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()

"""Shared fixtures: file-backed test database, fake provider and recording sinks."""

import os

# Settings are read at import time by several modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_SECRET"] = "test-encryption-secret"
os.environ.pop("ENVIRONMENT", None)
os.environ.pop("SENTRY_DSN", None)

from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import roomcast.models  # noqa: F401
from roomcast.database import get_engine_kwargs
from roomcast.models import Calendar, utc_now
from roomcast.providers.base import CalendarProvider, ExternalEvent, ProviderSyncResult
from roomcast.sse.sink import SinkClosedError


@pytest_asyncio.fixture
async def engine(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'roomcast.db'}"
    engine = create_async_engine(url, **get_engine_kwargs(url))
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


def make_calendar(**overrides) -> Calendar:
    values = {
        "name": "Board Room",
        "provider": "FAKE",
        "color": "#3366ff",
    }
    values.update(overrides)
    return Calendar(**values)


async def add_all(session_factory, *rows):
    async with session_factory() as session:
        for row in rows:
            session.add(row)
        await session.commit()
    return rows


async def load_calendar(session_factory, calendar_id: str) -> Optional[Calendar]:
    async with session_factory() as session:
        result = await session.execute(select(Calendar).where(Calendar.id == calendar_id))
        return result.scalar_one_or_none()


# Fixed per test session so repeated syncs see identical event times
EVENT_BASE = utc_now().replace(microsecond=0) + timedelta(hours=1)


def make_event(external_id: str, title: str = "Standup", offset: timedelta = timedelta(0), **overrides) -> ExternalEvent:
    start = EVENT_BASE + offset
    values = {
        "external_id": external_id,
        "title": title,
        "start_time": start,
        "end_time": start + timedelta(minutes=30),
    }
    values.update(overrides)
    return ExternalEvent(**values)


class FakeProvider(CalendarProvider):
    """Returns canned events, or raises the configured error."""

    KIND = "FAKE"

    def __init__(self, events=None, error: Optional[BaseException] = None, on_sync=None):
        self.events = list(events or [])
        self.error = error
        self.on_sync = on_sync
        self.calls = []
        self.closed = False

    async def sync(self, calendar_id, credentials, date_range):
        self.calls.append((calendar_id, credentials, date_range))
        if self.on_sync is not None:
            await self.on_sync(calendar_id)
        if self.error is not None:
            raise self.error
        return ProviderSyncResult(events=list(self.events))

    async def close(self):
        self.closed = True


class RecordingSink:
    """Sink double that keeps every frame and can be told to fail."""

    def __init__(self, fail: bool = False):
        self.frames = []
        self.fail = fail
        self.closed = False

    def write_frame(self, frame: str) -> None:
        if self.fail or self.closed:
            raise SinkClosedError("connection reset")
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True

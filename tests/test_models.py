"""Tests for table definitions and timestamp storage."""

from datetime import timedelta

import pytest
from sqlalchemy import DateTime, update

from conftest import add_all, load_calendar, make_calendar
from roomcast.models import Calendar, CalendarEvent, Display, SyncStatus, utc_now
from roomcast.sync.repository import CalendarSyncRepository


class TestTimestampColumns:
    """All timestamps are plain naive-UTC DateTime columns."""

    @pytest.mark.parametrize("model", [Calendar, CalendarEvent, Display])
    def test_datetime_columns_are_naive(self, model):
        columns = [c for c in model.__table__.columns if isinstance(c.type, DateTime)]
        assert columns
        for column in columns:
            assert type(column.type) is DateTime
            assert column.type.timezone is False

    def test_expected_indexes(self):
        assert Calendar.__table__.c.next_sync_at.index
        assert CalendarEvent.__table__.c.start_time.index
        assert not CalendarEvent.__table__.c.start_time.nullable


class TestCalendarWrites:
    """Insert and guarded updates round-trip naive UTC values."""

    @pytest.mark.asyncio
    async def test_insert_and_lock_update(self, session_factory):
        created = utc_now() - timedelta(minutes=10)
        (calendar,) = await add_all(
            session_factory,
            make_calendar(created_at=created, updated_at=created, next_sync_at=utc_now()),
        )

        async with session_factory() as session:
            assert await CalendarSyncRepository(session).try_acquire_lock(calendar.id)

        stored = await load_calendar(session_factory, calendar.id)
        assert stored.sync_status == SyncStatus.SYNCING.value
        assert stored.updated_at.tzinfo is None
        assert stored.next_sync_at.tzinfo is None
        assert stored.updated_at > created

    @pytest.mark.asyncio
    async def test_bulk_update_sets_timestamps(self, session_factory):
        (calendar,) = await add_all(session_factory, make_calendar())
        now = utc_now()

        async with session_factory() as session:
            await session.execute(
                update(Calendar).where(Calendar.id == calendar.id).values(last_sync_at=now, next_sync_at=now)
            )
            await session.commit()

        stored = await load_calendar(session_factory, calendar.id)
        assert stored.last_sync_at == now
        assert stored.next_sync_at == now

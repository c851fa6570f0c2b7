"""Tests for the sync dispatcher: recovery, selection, fan-out."""

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from conftest import FakeProvider, RecordingSink, add_all, load_calendar, make_calendar, make_event
from roomcast.models import Calendar, CalendarEvent, SyncStatus, utc_now
from roomcast.providers.base import ProviderError
from roomcast.sse.registry import ConnectionRegistry, SyncSubscription
from roomcast.sync.dispatcher import SyncDispatcher
from roomcast.sync.repository import STALE_LOCK_ERROR
from roomcast.sync.runner import SyncResult, SyncRunner


class StubRunner:
    """Records dispatched ids; raises for the configured ones."""

    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)

    async def run(self, calendar_id):
        self.calls.append(calendar_id)
        await asyncio.sleep(0)
        if calendar_id in self.failing:
            raise RuntimeError(f"connection refused for {calendar_id}")
        return SyncResult(calendar_id=calendar_id)


class BrokenSession:
    async def __aenter__(self):
        raise RuntimeError("database unavailable")

    async def __aexit__(self, *exc):
        return False


class TestStaleLockRecovery:
    """SYNCING rows abandoned by a crashed runner."""

    @pytest.mark.asyncio
    async def test_stale_calendar_recovered_and_reselected(self, session_factory):
        (stuck,) = await add_all(
            session_factory,
            make_calendar(
                name="Stuck",
                sync_status=SyncStatus.SYNCING.value,
                updated_at=utc_now() - timedelta(minutes=10),
            ),
        )
        runner = StubRunner()

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.recovered == 1
        assert runner.calls == [stuck.id]
        stored = await load_calendar(session_factory, stuck.id)
        assert stored.sync_status == SyncStatus.ERROR.value
        assert stored.last_sync_error == STALE_LOCK_ERROR
        assert stored.next_sync_at <= utc_now()

    @pytest.mark.asyncio
    async def test_recent_syncing_left_alone(self, session_factory):
        (busy,) = await add_all(
            session_factory,
            make_calendar(
                sync_status=SyncStatus.SYNCING.value,
                updated_at=utc_now() - timedelta(minutes=1),
            ),
        )
        runner = StubRunner()

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.recovered == 0
        assert runner.calls == []
        stored = await load_calendar(session_factory, busy.id)
        assert stored.sync_status == SyncStatus.SYNCING.value
        assert stored.last_sync_error is None

    @pytest.mark.asyncio
    async def test_custom_stale_threshold(self, session_factory):
        await add_all(
            session_factory,
            make_calendar(
                sync_status=SyncStatus.SYNCING.value,
                updated_at=utc_now() - timedelta(minutes=2),
            ),
        )

        report = await SyncDispatcher(
            session_factory, StubRunner(), stale_after=timedelta(minutes=1)
        ).dispatch()

        assert report.recovered == 1


class TestSelection:
    """Which calendars a cycle picks up."""

    @pytest.mark.asyncio
    async def test_due_rules(self, session_factory):
        now = utc_now()
        never_synced, overdue, future, disabled, disabled_overdue = await add_all(
            session_factory,
            make_calendar(name="never"),
            make_calendar(name="overdue", next_sync_at=now - timedelta(minutes=1)),
            make_calendar(name="future", next_sync_at=now + timedelta(minutes=5)),
            make_calendar(name="disabled", enabled=False),
            make_calendar(name="disabled-overdue", enabled=False, next_sync_at=now - timedelta(hours=1)),
        )
        runner = StubRunner()

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert set(runner.calls) == {never_synced.id, overdue.id}
        assert set(report.dispatched) == {never_synced.id, overdue.id}
        assert report.failed == []

    @pytest.mark.asyncio
    async def test_errored_calendar_retried_when_due(self, session_factory):
        (errored,) = await add_all(
            session_factory,
            make_calendar(
                sync_status=SyncStatus.ERROR.value,
                consecutive_errors=2,
                next_sync_at=utc_now() - timedelta(seconds=1),
            ),
        )
        runner = StubRunner()

        await SyncDispatcher(session_factory, runner).dispatch()

        assert runner.calls == [errored.id]

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory):
        runner = StubRunner()

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.dispatched == []
        assert report.recovered == 0
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_batch_capped_remainder_next_cycle(self, session_factory):
        calendars = await add_all(session_factory, *[make_calendar(name=f"cal-{i}") for i in range(15)])
        all_ids = {c.id for c in calendars}
        dispatcher = SyncDispatcher(session_factory, StubRunner())

        first = await dispatcher.dispatch()
        assert len(first.dispatched) == 10

        # A real run would have moved these forward
        async with session_factory() as session:
            await session.execute(
                update(Calendar)
                .where(Calendar.id.in_(first.dispatched))
                .values(next_sync_at=utc_now() + timedelta(minutes=5))
            )
            await session.commit()

        second = await dispatcher.dispatch()
        assert len(second.dispatched) == 5
        assert set(first.dispatched) | set(second.dispatched) == all_ids

    @pytest.mark.asyncio
    async def test_selection_failure_propagates(self):
        runner = StubRunner()

        with pytest.raises(RuntimeError, match="database unavailable"):
            await SyncDispatcher(BrokenSession, runner).dispatch()

        assert runner.calls == []


class TestFailureIsolation:
    """One failing calendar never affects the rest of the batch."""

    @pytest.mark.asyncio
    async def test_failure_reported_siblings_complete(self, session_factory):
        good_a, bad, good_b = await add_all(
            session_factory,
            make_calendar(name="A"),
            make_calendar(name="Bad"),
            make_calendar(name="B"),
        )
        runner = StubRunner(failing={bad.id})

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert set(runner.calls) == {good_a.id, bad.id, good_b.id}
        assert report.failed == [bad.id]
        assert len(report.dispatched) == 3


class TestEndToEnd:
    """Dispatcher driving the real runner."""

    @pytest.mark.asyncio
    async def test_enabled_synced_disabled_untouched(self, session_factory):
        room_a, room_b = await add_all(
            session_factory,
            make_calendar(name="A"),
            make_calendar(name="B", enabled=False),
        )
        seen_status = []

        async def observe(calendar_id):
            seen_status.append((await load_calendar(session_factory, calendar_id)).sync_status)

        registry = ConnectionRegistry()
        sink = RecordingSink()
        registry.register(
            SyncSubscription(id="kiosk", display_id="d1", calendar_ids=[room_a.id], sink=sink)
        )
        provider = FakeProvider(events=[make_event("e1"), make_event("e2", offset=timedelta(hours=1))], on_sync=observe)
        runner = SyncRunner(
            session_factory,
            registry=registry,
            provider_factory=lambda kind: provider,
            credential_decoder=lambda data: {},
        )

        before = utc_now()
        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.dispatched == [room_a.id]
        assert seen_status == [SyncStatus.SYNCING.value]

        stored_a = await load_calendar(session_factory, room_a.id)
        assert stored_a.sync_status == SyncStatus.IDLE.value
        assert stored_a.consecutive_errors == 0
        assert stored_a.last_sync_at >= before
        assert stored_a.next_sync_at >= before + timedelta(seconds=stored_a.sync_interval_seconds)

        stored_b = await load_calendar(session_factory, room_b.id)
        assert stored_b.sync_status == SyncStatus.IDLE.value
        assert stored_b.last_sync_at is None
        assert stored_b.next_sync_at is None

        assert len(sink.frames) == 1
        envelope = json.loads(sink.frames[0][len("data: "):])
        assert envelope["calendarId"] == room_a.id
        assert len(envelope["events"]) == 2

    @pytest.mark.asyncio
    async def test_stuck_calendar_recovered_then_synced(self, session_factory):
        (stuck,) = await add_all(
            session_factory,
            make_calendar(
                sync_status=SyncStatus.SYNCING.value,
                updated_at=utc_now() - timedelta(minutes=10),
                consecutive_errors=1,
            ),
        )
        runner = SyncRunner(
            session_factory,
            provider_factory=lambda kind: FakeProvider(events=[make_event("e1")]),
            credential_decoder=lambda data: {},
        )

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.recovered == 1
        assert report.dispatched == [stuck.id]
        stored = await load_calendar(session_factory, stuck.id)
        assert stored.sync_status == SyncStatus.IDLE.value
        assert stored.last_sync_error is None
        assert stored.consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_provider_failure_is_state_not_dispatch_failure(self, session_factory):
        (calendar,) = await add_all(session_factory, make_calendar())
        runner = SyncRunner(
            session_factory,
            provider_factory=lambda kind: FakeProvider(error=ProviderError("Unauthorized")),
            credential_decoder=lambda data: {},
        )

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert report.failed == []
        stored = await load_calendar(session_factory, calendar.id)
        assert stored.sync_status == SyncStatus.ERROR.value
        assert stored.last_sync_error == "Unauthorized"
        assert stored.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_concurrent_batch_keeps_each_calendar_apart(self, session_factory):
        calendars = await add_all(
            session_factory,
            *[make_calendar(name=f"Room {i}", provider=f"FAKE{i}") for i in range(6)],
        )

        def provider_factory(kind):
            index = int(kind[len("FAKE"):])

            async def stagger(calendar_id):
                await asyncio.sleep(0.001 * index)

            if index == 2:
                return FakeProvider(error=ProviderError("Unauthorized"), on_sync=stagger)
            events = [make_event(f"{index}-{n}", offset=timedelta(minutes=n)) for n in range(20)]
            return FakeProvider(events=events, on_sync=stagger)

        runner = SyncRunner(
            session_factory,
            provider_factory=provider_factory,
            credential_decoder=lambda data: {},
        )

        report = await SyncDispatcher(session_factory, runner).dispatch()

        assert sorted(report.dispatched) == sorted(c.id for c in calendars)
        assert report.failed == []
        for index, calendar in enumerate(calendars):
            stored = await load_calendar(session_factory, calendar.id)
            async with session_factory() as session:
                count = (
                    await session.execute(
                        select(func.count()).select_from(CalendarEvent).where(CalendarEvent.calendar_id == calendar.id)
                    )
                ).scalar_one()
            if index == 2:
                assert stored.sync_status == SyncStatus.ERROR.value
                assert stored.consecutive_errors == 1
                assert count == 0
            else:
                assert stored.sync_status == SyncStatus.IDLE.value
                assert stored.consecutive_errors == 0
                assert count == 20

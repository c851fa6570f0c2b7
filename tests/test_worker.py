"""Tests for the standalone sync worker loop."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from roomcast.sync.dispatcher import DispatchReport
from roomcast.sync.worker import DISPATCH_JOB_ID, SyncWorker, build_worker, run_dispatch


class TestRunDispatch:
    """A failed cycle never kills the loop."""

    @pytest.mark.asyncio
    async def test_success(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=DispatchReport())

        await run_dispatch(dispatcher)

        dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exception_logged_and_reported(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("database unavailable"))

        with patch("roomcast.sync.worker.capture_exception") as capture:
            await run_dispatch(dispatcher)

        capture.assert_called_once()
        assert capture.call_args.kwargs["job_id"] == DISPATCH_JOB_ID


class TestSyncWorker:
    """Scheduler wiring."""

    @pytest.mark.asyncio
    async def test_start_runs_immediately_then_schedules(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=DispatchReport())
        worker = SyncWorker(dispatcher, interval_seconds=30)

        await worker.start()
        try:
            dispatcher.dispatch.assert_awaited_once()
            job = worker.scheduler.get_job(DISPATCH_JOB_ID)
            assert job is not None
            assert job.max_instances == 1
            assert job.coalesce is True
            assert job.trigger.interval.total_seconds() == 30
        finally:
            worker.stop()

        assert worker.scheduler is None

    @pytest.mark.asyncio
    async def test_start_survives_failing_first_cycle(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("boom"))
        worker = SyncWorker(dispatcher, interval_seconds=30)

        await worker.start()
        try:
            assert worker.scheduler.running
        finally:
            worker.stop()

    @pytest.mark.asyncio
    async def test_double_start_ignored(self):
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=DispatchReport())
        worker = SyncWorker(dispatcher)

        await worker.start()
        try:
            await worker.start()
            dispatcher.dispatch.assert_awaited_once()
        finally:
            worker.stop()

    def test_stop_without_start(self):
        SyncWorker(MagicMock()).stop()


class TestBuildWorker:
    """Settings-driven construction."""

    def test_uses_settings(self):
        worker = build_worker(MagicMock())

        assert worker.interval_seconds == 30
        assert worker.dispatcher.batch_size == 10
        assert worker.dispatcher.stale_after.total_seconds() == 300
        assert worker.dispatcher.runner.registry is None

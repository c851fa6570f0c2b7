"""
Sync Dispatcher: decides which calendars to sync on each tick and runs them.

Design:
- Stale-lock recovery first: SYNCING rows untouched for 5 minutes belong to
  a crashed runner and go back to ERROR (bulk conditional UPDATE)
- Selection capped at a batch of 10 to bound provider and DB bursts; the
  rest is picked up on the next tick
- Jobs run concurrently and are joined with return_exceptions=True, so one
  calendar's failure never cancels or hides its siblings
- Safe to run from several processes at once: the SYNCING lock lives in the
  database, not in this process
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable

from roomcast.models import utc_now
from roomcast.sync.repository import CalendarSyncRepository
from roomcast.sync.runner import SyncRunner
from roomcast.telemetry.metrics import record_dispatch

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_STALE_AFTER = timedelta(minutes=5)


@dataclass
class DispatchReport:
    recovered: int = 0
    dispatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class SyncDispatcher:
    """Selects due calendars and fans out bounded-concurrency sync jobs.

    Usage:
        dispatcher = SyncDispatcher(AsyncSessionLocal, SyncRunner(AsyncSessionLocal, registry))
        await dispatcher.dispatch()
    """

    def __init__(
        self,
        session_factory: Callable,
        runner: SyncRunner,
        batch_size: int = DEFAULT_BATCH_SIZE,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self.session_factory = session_factory
        self.runner = runner
        self.batch_size = batch_size
        self.stale_after = stale_after

    async def dispatch(self) -> DispatchReport:
        """Run one dispatch cycle.

        Raises only on infrastructure failure (recovery update or selection
        query). Individual calendar failures are logged and reported.
        """
        start = time.time()
        report = DispatchReport()
        try:
            now = utc_now()
            async with self.session_factory() as session:
                repo = CalendarSyncRepository(session)

                report.recovered = await repo.recover_stale_locks(now, now - self.stale_after)
                if report.recovered > 0:
                    logger.warning(f"[DISPATCH] Recovered {report.recovered} stale SYNCING calendars")

                due = await repo.find_due_calendars(now, self.batch_size)
        except Exception:
            record_dispatch("error", (time.time() - start) * 1000)
            raise

        if not due:
            record_dispatch("ok", (time.time() - start) * 1000, recovered=report.recovered)
            return report

        logger.info(f"[DISPATCH] Dispatching sync for {len(due)} calendars")
        report.dispatched = [calendar_id for calendar_id, _ in due]

        results = await asyncio.gather(
            *(self.runner.run(calendar_id) for calendar_id, _ in due),
            return_exceptions=True,
        )

        for (calendar_id, name), result in zip(due, results):
            if isinstance(result, BaseException):
                report.failed.append(calendar_id)
                logger.error(
                    f"[DISPATCH] Sync dispatch failed for calendar: calendar={calendar_id} "
                    f"name={name!r} error={result}"
                )

        record_dispatch(
            "ok",
            (time.time() - start) * 1000,
            dispatched=len(due),
            recovered=report.recovered,
        )
        return report

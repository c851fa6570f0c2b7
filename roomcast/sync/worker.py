"""
Standalone sync worker.

Runs one dispatch immediately, then every SYNC_INTERVAL_SECONDS (30s). A
failed cycle is logged and reported; the loop keeps going. Only a startup
failure ends the process.

Usage:
    python -m roomcast.sync.worker
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from roomcast.config import get_settings
from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.dispatcher import SyncDispatcher
from roomcast.sync.runner import SyncRunner
from roomcast.telemetry.sentry import capture_exception, init_sentry, sentry_job_context

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "calendar_sync_dispatch"


async def run_dispatch(dispatcher: SyncDispatcher) -> None:
    """One dispatch cycle. Never raises."""
    with sentry_job_context(DISPATCH_JOB_ID):
        try:
            await dispatcher.dispatch()
        except Exception as e:
            logger.error(f"[WORKER] Dispatch error: {e}", exc_info=True)
            capture_exception(e, job_id=DISPATCH_JOB_ID)


class SyncWorker:
    """Drives SyncDispatcher.dispatch() on a fixed interval.

    Used both by the standalone process and, when SYNC_WORKER_ENABLED is
    set, inside the web app's lifespan.
    """

    def __init__(self, dispatcher: SyncDispatcher, interval_seconds: float = 30):
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def start(self) -> None:
        if self.scheduler is not None:
            logger.warning("[WORKER] Already started, skipping duplicate initialization")
            return

        logger.info(f"[WORKER] Dispatch interval: {self.interval_seconds}s")

        # Initial run
        await run_dispatch(self.dispatcher)

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            run_dispatch,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[self.dispatcher],
            id=DISPATCH_JOB_ID,
            name="Calendar Sync Dispatch",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("[WORKER] Scheduler started")

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[WORKER] Scheduler stopped")
        self.scheduler = None


def build_worker(session_factory, registry: Optional[ConnectionRegistry] = None) -> SyncWorker:
    settings = get_settings()
    runner = SyncRunner(session_factory, registry=registry)
    dispatcher = SyncDispatcher(
        session_factory,
        runner,
        batch_size=settings.SYNC_BATCH_SIZE,
        stale_after=timedelta(seconds=settings.SYNC_STALE_AFTER_SECONDS),
    )
    return SyncWorker(dispatcher, interval_seconds=settings.SYNC_INTERVAL_SECONDS)


async def main() -> None:
    from roomcast.database import close_db, get_session_with_retry, init_db

    logger.info("[WORKER] Starting RoomCast sync worker...")
    init_sentry()
    await init_db()

    # No displays connect to this process, so there is nothing to push to
    worker = build_worker(get_session_with_retry)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms (Windows)
            pass

    await worker.start()
    try:
        await stop_event.wait()
    finally:
        worker.stop()
        await close_db()
        logger.info("[WORKER] Shutdown complete")


def cli() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(main())
    except Exception as e:
        logger.critical(f"[WORKER] Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()

"""FastAPI application for the RoomCast sync service."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from roomcast.config import get_settings
from roomcast.database import AsyncSessionLocal, close_db, init_db
from roomcast.routes.core import router as core_router
from roomcast.routes.display import router as display_router
from roomcast.routes.sync import router as sync_router
from roomcast.security import limiter
from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.dispatcher import SyncDispatcher
from roomcast.sync.runner import SyncRunner
from roomcast.sync.worker import SyncWorker
from roomcast.telemetry.sentry import init_sentry

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize Sentry before FastAPI app creation (only if SENTRY_DSN is set)
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting RoomCast sync service...")
    await init_db()

    registry = ConnectionRegistry(heartbeat_interval=settings.SSE_HEARTBEAT_SECONDS)
    await registry.start()

    runner = SyncRunner(AsyncSessionLocal, registry=registry)
    dispatcher = SyncDispatcher(
        AsyncSessionLocal,
        runner,
        batch_size=settings.SYNC_BATCH_SIZE,
        stale_after=timedelta(seconds=settings.SYNC_STALE_AFTER_SECONDS),
    )
    app.state.registry = registry
    app.state.dispatcher = dispatcher

    worker = None
    if settings.SYNC_WORKER_ENABLED:
        worker = SyncWorker(dispatcher, interval_seconds=settings.SYNC_INTERVAL_SECONDS)
        await worker.start()
    else:
        logger.info("In-process sync worker disabled (SYNC_WORKER_ENABLED=false)")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if worker is not None:
        worker.stop()
    await registry.stop()
    await close_db()


app = FastAPI(
    title="RoomCast Sync",
    description="Calendar sync dispatcher and live display push",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(core_router)
app.include_router(sync_router)
app.include_router(display_router)

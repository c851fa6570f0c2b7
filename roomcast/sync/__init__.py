"""
Calendar sync: dispatcher, per-calendar runner and the worker loop.

Usage:
    from roomcast.sync import SyncDispatcher, SyncRunner

    runner = SyncRunner(AsyncSessionLocal, registry=registry)
    dispatcher = SyncDispatcher(AsyncSessionLocal, runner)
    await dispatcher.dispatch()
"""

from roomcast.sync.dispatcher import DispatchReport, SyncDispatcher
from roomcast.sync.repository import STALE_LOCK_ERROR, CalendarSyncRepository
from roomcast.sync.runner import (
    CalendarNotFoundError,
    SyncResult,
    SyncRunner,
    compute_next_sync_at,
    serialize_event,
)

__all__ = [
    "DispatchReport",
    "SyncDispatcher",
    "STALE_LOCK_ERROR",
    "CalendarSyncRepository",
    "CalendarNotFoundError",
    "SyncResult",
    "SyncRunner",
    "compute_next_sync_at",
    "serialize_event",
]

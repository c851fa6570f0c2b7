"""
Server-sent events fan-out to kiosk displays.

Usage:
    from roomcast.sse import ConnectionRegistry, QueueSink, SyncSubscription

    registry = ConnectionRegistry()
    await registry.start()
    registry.register(SyncSubscription(id=..., display_id=..., calendar_ids=[...], sink=QueueSink()))
    registry.notify_calendar_update("cal-1", events)
"""

from roomcast.sse.registry import (
    HEARTBEAT_FRAME,
    ConnectionRegistry,
    SyncSubscription,
    format_sse_data,
)
from roomcast.sse.sink import QueueSink, Sink, SinkClosedError

__all__ = [
    "HEARTBEAT_FRAME",
    "ConnectionRegistry",
    "SyncSubscription",
    "format_sse_data",
    "QueueSink",
    "Sink",
    "SinkClosedError",
]

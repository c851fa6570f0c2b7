"""
Connection Registry: live display subscriptions and push fan-out.

Design:
- One registry per process, created by the host (FastAPI lifespan or the
  sync worker) and handed to collaborators explicitly
- In-memory map subscription_id -> SyncSubscription, never persisted
- Delivery failures are isolated: the failing subscription is removed,
  every other subscription still receives the frame
- Heartbeat task writes a comment frame every 30s and reaps dead sinks

All map mutations happen on the event loop thread, so no lock is needed.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from roomcast.models import utc_now
from roomcast.sse.sink import Sink
from roomcast.telemetry.metrics import record_sse_frame, set_sse_active_connections

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"
DEFAULT_HEARTBEAT_SECONDS = 30.0


def format_sse_data(payload: Dict[str, Any]) -> str:
    """Serialize one JSON envelope as an SSE data frame."""
    return f"data: {json.dumps(payload, default=_json_default)}\n\n"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# ── Subscription ─────────────────────────────────────────────────────────────
@dataclass
class SyncSubscription:
    """One open push connection from a kiosk display."""

    id: str
    display_id: str
    calendar_ids: List[str]
    sink: Sink
    connected_at: datetime = field(default_factory=utc_now)
    last_heartbeat: datetime = field(default_factory=utc_now)


# ── Registry ─────────────────────────────────────────────────────────────────
class ConnectionRegistry:
    """
    Tracks live display subscriptions and multiplexes outbound events.

    Usage:
        registry = ConnectionRegistry()
        await registry.start()          # heartbeat loop
        registry.register(subscription)
        registry.notify_calendar_update(calendar_id, events)
        await registry.stop()
    """

    def __init__(self, heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS):
        self._clients: Dict[str, SyncSubscription] = {}
        self._heartbeat_interval = heartbeat_interval
        self._task: Optional[asyncio.Task] = None

    # -- membership -----------------------------------------------------------

    def register(self, subscription: SyncSubscription) -> None:
        """Add a subscription. Ids are caller-generated and assumed unique."""
        self._clients[subscription.id] = subscription
        set_sse_active_connections(len(self._clients))
        logger.info(
            f"[SSE] Registered {subscription.id} display={subscription.display_id} "
            f"calendars={len(subscription.calendar_ids)} (active={len(self._clients)})"
        )

    def unregister(self, subscription_id: str) -> None:
        """Remove a subscription and close its sink. Unknown ids are ignored."""
        subscription = self._clients.pop(subscription_id, None)
        if subscription is None:
            return
        try:
            subscription.sink.close()
        except Exception as e:
            logger.debug(f"[SSE] Error closing sink for {subscription_id}: {e}")
        set_sse_active_connections(len(self._clients))
        logger.info(f"[SSE] Unregistered {subscription_id} (active={len(self._clients)})")

    def get_active_count(self) -> int:
        return len(self._clients)

    def get_clients_by_calendar_id(self, calendar_id: str) -> List[SyncSubscription]:
        return [c for c in self._clients.values() if calendar_id in c.calendar_ids]

    def get_clients_by_display_id(self, display_id: str) -> List[SyncSubscription]:
        return [c for c in self._clients.values() if c.display_id == display_id]

    # -- fan-out --------------------------------------------------------------

    def notify_calendar_update(self, calendar_id: str, events: Sequence[Dict[str, Any]]) -> int:
        """Push a calendar_update envelope to every subscriber of calendar_id.

        Returns the number of subscriptions that accepted the frame.
        """
        clients = self.get_clients_by_calendar_id(calendar_id)
        if not clients:
            return 0
        frame = self._encode(
            {"type": "calendar_update", "calendarId": calendar_id, "events": list(events)}
        )
        if frame is None:
            return 0
        return self._broadcast(clients, frame, kind="calendar_update")

    def notify_display_config_update(self, display_id: str, config: Any) -> int:
        """Push a config_update envelope to every connection of display_id."""
        clients = self.get_clients_by_display_id(display_id)
        if not clients:
            return 0
        frame = self._encode({"type": "config_update", "config": config})
        if frame is None:
            return 0
        return self._broadcast(clients, frame, kind="config_update")

    def send_heartbeats(self) -> int:
        """Write a keep-alive frame to every subscription; reap the ones that fail."""
        now = utc_now()
        delivered = 0
        for subscription in list(self._clients.values()):
            if self._send(subscription, HEARTBEAT_FRAME, kind="heartbeat"):
                subscription.last_heartbeat = now
                delivered += 1
        return delivered

    def _encode(self, payload: Dict[str, Any]) -> Optional[str]:
        try:
            return format_sse_data(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"[SSE] Dropping {payload.get('type')} envelope, not serializable: {e}")
            return None

    def _broadcast(self, clients: List[SyncSubscription], frame: str, kind: str) -> int:
        delivered = 0
        for subscription in clients:
            if self._send(subscription, frame, kind=kind):
                delivered += 1
        return delivered

    def _send(self, subscription: SyncSubscription, frame: str, kind: str) -> bool:
        try:
            subscription.sink.write_frame(frame)
        except Exception as e:
            record_sse_frame(kind, ok=False)
            logger.info(f"[SSE] Delivery to {subscription.id} failed ({kind}): {e}; removing")
            self.unregister(subscription.id)
            return False
        record_sse_frame(kind, ok=True)
        return True

    # -- heartbeat loop -------------------------------------------------------

    async def start(self) -> None:
        """Start the background heartbeat task."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"[SSE] Heartbeat loop started (every {self._heartbeat_interval}s)")

    async def stop(self) -> None:
        """Stop heartbeats and close every remaining connection."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for subscription_id in list(self._clients):
            self.unregister(subscription_id)
        logger.info("[SSE] Registry stopped")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                self.send_heartbeats()
            except Exception as e:
                logger.error(f"[SSE] Heartbeat pass failed: {e}", exc_info=True)

    # -- diagnostics ----------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Aggregate view for the admin health endpoint."""
        clients = list(self._clients.values())
        return {
            "active_connections": len(clients),
            "displays": len({c.display_id for c in clients}),
            "clients": [
                {
                    "id": c.id,
                    "display_id": c.display_id,
                    "connected_at": c.connected_at.isoformat(),
                    "last_heartbeat": c.last_heartbeat.isoformat(),
                }
                for c in clients
            ],
        }

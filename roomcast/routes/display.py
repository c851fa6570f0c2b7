"""Display routes: SSE push stream, polling fallback and config updates.

Auth per-endpoint:
- /api/display/{token}/events[/poll]: display token + optional IP whitelist
- /api/displays/{id}/config: X-API-Key
"""

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.config import get_settings
from roomcast.database import get_async_session
from roomcast.dependencies import get_registry, get_session_factory
from roomcast.displays import (
    build_init_payload,
    get_display_by_token,
    get_display_calendar_ids,
    load_display_events,
    update_display_config,
)
from roomcast.security import get_client_ip, is_ip_in_whitelist, limiter, verify_api_key
from roomcast.sse.registry import ConnectionRegistry, SyncSubscription, format_sse_data
from roomcast.sse.sink import QueueSink
from roomcast.telemetry.metrics import record_sse_frame

logger = logging.getLogger(__name__)

router = APIRouter(tags=["display"])
settings = get_settings()

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class DisplayConfigUpdate(BaseModel):
    config: dict[str, Any]


@router.get("/api/display/{token}/events")
async def display_event_stream(
    token: str,
    request: Request,
    session_factory=Depends(get_session_factory),
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Open a push connection: init envelope first, then live updates."""
    # The stream outlives the request, so the session is closed before streaming
    async with session_factory() as session:
        display = await get_display_by_token(session, token)
        if display is None or not display.enabled:
            return PlainTextResponse("Display not found", status_code=404)

        if not is_ip_in_whitelist(get_client_ip(request), display.ip_whitelist):
            return PlainTextResponse("Forbidden", status_code=403)

        calendar_ids = await get_display_calendar_ids(session, display)
        events = await load_display_events(session, calendar_ids, days=settings.DISPLAY_EVENTS_DAYS)

    sink = QueueSink(max_pending=settings.SSE_MAX_PENDING_FRAMES)
    sink.write_frame(format_sse_data(build_init_payload(display, events)))
    record_sse_frame("init", ok=True)

    subscription = SyncSubscription(
        id=str(uuid4()),
        display_id=display.id,
        calendar_ids=calendar_ids,
        sink=sink,
    )
    registry.register(subscription)

    async def event_stream():
        try:
            async for frame in sink.frames():
                yield frame
        finally:
            registry.unregister(subscription.id)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/api/display/{token}/events/poll")
@limiter.limit(settings.DISPLAY_POLL_RATE_LIMIT)
async def display_event_poll(
    token: str,
    request: Request,
    session: AsyncSession = Depends(get_async_session),
):
    """Polling fallback for kiosks that cannot hold an SSE connection."""
    display = await get_display_by_token(session, token)
    if display is None or not display.enabled:
        return JSONResponse({"error": "Display not found"}, status_code=404)

    if not is_ip_in_whitelist(get_client_ip(request), display.ip_whitelist):
        return JSONResponse({"error": "Forbidden"}, status_code=403)

    calendar_ids = await get_display_calendar_ids(session, display)
    events = await load_display_events(session, calendar_ids, days=settings.DISPLAY_EVENTS_DAYS)
    return build_init_payload(display, events)


@router.put("/api/displays/{display_id}/config", dependencies=[Depends(verify_api_key)])
async def put_display_config(
    display_id: str,
    body: DisplayConfigUpdate,
    session: AsyncSession = Depends(get_async_session),
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Replace a display's config and push it to connected kiosks."""
    display = await update_display_config(session, registry, display_id, body.config)
    if display is None:
        raise HTTPException(status_code=404, detail="Display not found")
    return {"data": {"id": display.id, "config": display.config}}

"""Core routes: health, admin health view, metrics.

Auth per-endpoint:
- /health: public, rate limited
- /api/admin/health: X-API-Key
- /metrics: Bearer token (when METRICS_BEARER_TOKEN is set)
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.config import Settings, get_settings
from roomcast.database import get_async_session, get_pool_status
from roomcast.dependencies import get_registry
from roomcast.models import Calendar, CalendarEvent, Display
from roomcast.security import limiter, verify_api_key
from roomcast.sse.registry import ConnectionRegistry
from roomcast.telemetry.metrics import get_metrics_text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["core"])


@router.get("/health")
@limiter.limit("120/minute")
async def health_check(request: Request):
    """Liveness probe."""
    return {"status": "ok"}


@router.get("/api/admin/health", dependencies=[Depends(verify_api_key)])
async def admin_health(
    session: AsyncSession = Depends(get_async_session),
    registry: ConnectionRegistry = Depends(get_registry),
):
    """
    Operator view: counts, push connections and per-calendar sync state.

    Kiosks never see sync failures; this is where syncStatus, lastSyncError
    and consecutiveErrors surface.
    """
    try:
        calendar_count = (await session.execute(select(func.count()).select_from(Calendar))).scalar_one()
        event_count = (await session.execute(select(func.count()).select_from(CalendarEvent))).scalar_one()
        display_count = (await session.execute(select(func.count()).select_from(Display))).scalar_one()

        result = await session.execute(select(Calendar).order_by(Calendar.name))
        calendars = result.scalars().all()
    except Exception as e:
        logger.error(f"Admin health check failed: {e}", exc_info=True)
        return JSONResponse({"status": "unhealthy"}, status_code=500)

    return {
        "status": "healthy",
        "database": "connected",
        "pool": get_pool_status(),
        "calendars": calendar_count,
        "events": event_count,
        "displays": display_count,
        "sse": registry.get_status(),
        "calendar_sync": [
            {
                "id": c.id,
                "name": c.name,
                "provider": c.provider,
                "enabled": c.enabled,
                "syncStatus": c.sync_status,
                "lastSyncAt": c.last_sync_at.isoformat() if c.last_sync_at else None,
                "lastSyncError": c.last_sync_error,
                "consecutiveErrors": c.consecutive_errors,
                "nextSyncAt": c.next_sync_at.isoformat() if c.next_sync_at else None,
            }
            for c in calendars
        ],
    }


@router.get("/metrics")
async def prometheus_metrics(
    authorization: str = Header(None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
):
    """Prometheus metrics for dispatch cycles, sync runs and push connections."""
    expected_token = settings.METRICS_BEARER_TOKEN
    if expected_token:
        if not authorization:
            return PlainTextResponse(
                content="# Unauthorized: Missing Authorization header\n",
                status_code=401,
                media_type="text/plain",
            )
        parts = authorization.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer" or parts[1] != expected_token:
            return PlainTextResponse(
                content="# Unauthorized: Invalid token\n",
                status_code=401,
                media_type="text/plain",
            )

    payload, content_type = get_metrics_text()
    return Response(content=payload, media_type=content_type)

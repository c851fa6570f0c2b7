"""Sync routes: cron-triggered dispatch and admin "sync now".

Auth per-endpoint:
- /api/sync/cron: Authorization: Bearer <CRON_SECRET>
- /api/calendars/{id}/sync: X-API-Key
"""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.config import Settings, get_settings
from roomcast.database import get_async_session
from roomcast.dependencies import get_dispatcher
from roomcast.models import utc_now
from roomcast.security import is_valid_cron_secret, verify_api_key
from roomcast.sync.dispatcher import SyncDispatcher
from roomcast.sync.repository import CalendarSyncRepository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.api_route("/api/sync/cron", methods=["GET", "POST"])
async def cron_sync(
    authorization: str = Header(None, alias="Authorization"),
    dispatcher: SyncDispatcher = Depends(get_dispatcher),
    settings: Settings = Depends(get_settings),
):
    """
    Run one dispatch cycle for external cron tools.

    Equivalent to a worker tick; running both concurrently is safe because
    the per-calendar lock lives in the database. GET is accepted for simple
    cron services.
    """
    if not is_valid_cron_secret(authorization, settings.CRON_SECRET):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        report = await dispatcher.dispatch()
    except Exception as e:
        logger.error(f"[CRON] Sync dispatch error: {e}", exc_info=True)
        return JSONResponse({"error": "Sync dispatch failed"}, status_code=500)

    return {
        "success": True,
        "recovered": report.recovered,
        "dispatched": len(report.dispatched),
        "failed": len(report.failed),
    }


@router.post("/api/calendars/{calendar_id}/sync", dependencies=[Depends(verify_api_key)])
async def trigger_calendar_sync(
    calendar_id: str,
    session: AsyncSession = Depends(get_async_session),
):
    """Mark a calendar due now; the next dispatch tick picks it up."""
    found = await CalendarSyncRepository(session).request_sync_now(calendar_id, utc_now())
    if not found:
        raise HTTPException(status_code=404, detail="Calendar not found")
    logger.info(f"[SYNC] Manual sync requested for calendar {calendar_id}")
    return {"data": {"success": True}}

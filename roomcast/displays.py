"""Display lookups and payloads for the kiosk push/poll endpoints."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.models import Calendar, CalendarEvent, Display, DisplayCalendar, Room, utc_now
from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.runner import serialize_event

logger = logging.getLogger(__name__)


async def get_display_by_token(session: AsyncSession, token: str) -> Optional[Display]:
    result = await session.execute(select(Display).where(Display.token == token))
    return result.scalar_one_or_none()


async def get_display_calendar_ids(session: AsyncSession, display: Display) -> list[str]:
    """Room calendar first, then attached calendars; no duplicates."""
    calendar_ids: list[str] = []

    if display.room_id:
        room_calendar = await session.execute(
            select(Room.calendar_id).where(Room.id == display.room_id)
        )
        calendar_id = room_calendar.scalar_one_or_none()
        if calendar_id:
            calendar_ids.append(calendar_id)

    attached = await session.execute(
        select(DisplayCalendar.calendar_id)
        .where(DisplayCalendar.display_id == display.id)
        .order_by(DisplayCalendar.calendar_id)
    )
    for calendar_id in attached.scalars().all():
        if calendar_id not in calendar_ids:
            calendar_ids.append(calendar_id)

    return calendar_ids


async def load_display_events(
    session: AsyncSession,
    calendar_ids: list[str],
    days: int = 7,
    now: Optional[datetime] = None,
) -> list[dict]:
    """Events overlapping [start of today, +days], with calendar color and name."""
    if not calendar_ids:
        return []

    now = now or utc_now()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=days)

    result = await session.execute(
        select(CalendarEvent, Calendar)
        .join(Calendar, Calendar.id == CalendarEvent.calendar_id)
        .where(
            and_(
                CalendarEvent.calendar_id.in_(calendar_ids),
                CalendarEvent.end_time >= day_start,
                CalendarEvent.start_time <= day_end,
            )
        )
        .order_by(CalendarEvent.start_time)
    )
    return [serialize_event(event, calendar) for event, calendar in result.all()]


def build_init_payload(display: Display, events: list[dict]) -> dict[str, Any]:
    return {
        "type": "init",
        "displayId": display.id,
        "config": display.config,
        "events": events,
    }


async def update_display_config(
    session: AsyncSession,
    registry: ConnectionRegistry,
    display_id: str,
    config: dict[str, Any],
) -> Optional[Display]:
    """Persist a display's config and push it to its open connections."""
    display = await session.get(Display, display_id)
    if display is None:
        return None

    display.config = config
    await session.commit()

    delivered = registry.notify_display_config_update(display_id, config)
    logger.info(f"[SSE] Config update for display {display_id} pushed to {delivered} connections")
    return display

"""Calendar sync persistence.

Every write to the calendar's sync fields goes through a guarded UPDATE so
that several dispatchers (web process, standalone worker, cron trigger)
can share one database safely. The SYNCING status is the lock; it is never
taken with a read-then-write.

Usage:
    async with session_factory() as session:
        repo = CalendarSyncRepository(session)
        if await repo.try_acquire_lock(calendar_id):
            ...
"""

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomcast.models import Calendar, CalendarEvent, SyncStatus
from roomcast.providers.base import ExternalEvent

logger = logging.getLogger(__name__)

STALE_LOCK_ERROR = "Sync timed out"

# Only these states can be written by a finishing runner. A calendar that is
# already IDLE again was finished by a newer runner and keeps its result.
_TERMINAL_WRITABLE = (SyncStatus.SYNCING.value, SyncStatus.ERROR.value)


class CalendarSyncRepository:
    """Guarded reads and writes on calendars and their cached events."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Dispatcher side ──────────────────────────────────────────────────────

    async def recover_stale_locks(self, now: datetime, stale_before: datetime) -> int:
        """Flip abandoned SYNCING rows to ERROR in one bulk conditional update.

        Relies on the store evaluating the WHERE clause atomically per row: a
        runner that finished in the meantime no longer matches.

        Returns:
            Number of calendars recovered.
        """
        result = await self.session.execute(
            update(Calendar)
            .where(
                and_(
                    Calendar.sync_status == SyncStatus.SYNCING.value,
                    Calendar.updated_at <= stale_before,
                )
            )
            .values(
                sync_status=SyncStatus.ERROR.value,
                last_sync_error=STALE_LOCK_ERROR,
                next_sync_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount or 0

    async def find_due_calendars(self, now: datetime, limit: int) -> list[tuple[str, str]]:
        """Enabled, unlocked calendars whose next_sync_at is due (or unset).

        Returns:
            List of (id, name), at most `limit` entries.
        """
        result = await self.session.execute(
            select(Calendar.id, Calendar.name)
            .where(
                and_(
                    Calendar.enabled.is_(True),
                    Calendar.sync_status != SyncStatus.SYNCING.value,
                    or_(Calendar.next_sync_at <= now, Calendar.next_sync_at.is_(None)),
                )
            )
            .limit(limit)
        )
        return [(row.id, row.name) for row in result.all()]

    # ── Runner side ──────────────────────────────────────────────────────────

    async def get_calendar(self, calendar_id: str, refresh: bool = False) -> Optional[Calendar]:
        """Load a calendar. refresh=True overwrites an already loaded instance."""
        stmt = select(Calendar).where(Calendar.id == calendar_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_acquire_lock(self, calendar_id: str) -> bool:
        """Move the calendar to SYNCING unless another runner holds it."""
        result = await self.session.execute(
            update(Calendar)
            .where(
                and_(
                    Calendar.id == calendar_id,
                    Calendar.sync_status != SyncStatus.SYNCING.value,
                )
            )
            .values(sync_status=SyncStatus.SYNCING.value)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return (result.rowcount or 0) == 1

    async def mark_success(self, calendar_id: str, now: datetime, next_sync_at: datetime) -> bool:
        """Release the lock after a successful sync."""
        return await self._finish(
            calendar_id,
            sync_status=SyncStatus.IDLE.value,
            last_sync_at=now,
            last_sync_error=None,
            consecutive_errors=0,
            next_sync_at=next_sync_at,
        )

    async def mark_failure(
        self,
        calendar_id: str,
        error: str,
        consecutive_errors: int,
        next_sync_at: datetime,
    ) -> bool:
        """Release the lock after a failed sync, recording the error and backoff."""
        return await self._finish(
            calendar_id,
            sync_status=SyncStatus.ERROR.value,
            last_sync_error=error,
            consecutive_errors=consecutive_errors,
            next_sync_at=next_sync_at,
        )

    async def _finish(self, calendar_id: str, **values) -> bool:
        # Drop any half-done event work before writing the terminal status
        if self.session.in_transaction():
            await self.session.rollback()
        result = await self.session.execute(
            update(Calendar)
            .where(
                and_(
                    Calendar.id == calendar_id,
                    Calendar.sync_status.in_(_TERMINAL_WRITABLE),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        written = (result.rowcount or 0) == 1
        if not written:
            logger.warning(
                f"[SYNC] Terminal write for calendar {calendar_id} skipped: "
                f"a newer run already finished it"
            )
        return written

    async def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        """Cached events fully inside [start, end], ordered by start time."""
        result = await self.session.execute(
            select(CalendarEvent)
            .where(
                and_(
                    CalendarEvent.calendar_id == calendar_id,
                    CalendarEvent.start_time >= start,
                    CalendarEvent.end_time <= end,
                )
            )
            .order_by(CalendarEvent.start_time)
        )
        return list(result.scalars().all())

    async def apply_event_changes(
        self,
        calendar_id: str,
        to_create: Sequence[ExternalEvent],
        to_update: Sequence[tuple[CalendarEvent, ExternalEvent]],
        to_delete_ids: Sequence[str],
    ) -> None:
        """Write creates, updates and deletes in one transaction."""
        if not (to_create or to_update or to_delete_ids):
            return

        for external in to_create:
            self.session.add(CalendarEvent(calendar_id=calendar_id, **_event_values(external)))

        for cached, external in to_update:
            for key, value in _event_values(external).items():
                if key != "external_id":
                    setattr(cached, key, value)

        if to_delete_ids:
            await self.session.execute(
                delete(CalendarEvent)
                .where(CalendarEvent.id.in_(list(to_delete_ids)))
                .execution_options(synchronize_session=False)
            )

        await self.session.commit()

    # ── Admin side ───────────────────────────────────────────────────────────

    async def request_sync_now(self, calendar_id: str, now: datetime) -> bool:
        """Make a calendar due on the next dispatch tick."""
        result = await self.session.execute(
            update(Calendar)
            .where(Calendar.id == calendar_id)
            .values(next_sync_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return (result.rowcount or 0) == 1


def _event_values(event: ExternalEvent) -> dict:
    return {
        "external_id": event.external_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "organizer": event.organizer,
        "attendee_count": event.attendee_count,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "is_all_day": event.is_all_day,
        "is_recurring": event.is_recurring,
        "recurrence_id": event.recurrence_id,
        "raw_data": event.raw_data,
    }

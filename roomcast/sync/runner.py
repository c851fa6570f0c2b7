"""
Sync Runner: one calendar's sync under lock discipline.

Flow for run(calendar_id):
1. Take the lock (guarded UPDATE to SYNCING). Lock held elsewhere -> skip.
2. Decrypt credentials, call the provider for the cache window.
3. Diff provider events against cached events (create / update / delete).
4. Release the lock with IDLE + next interval, or ERROR + backoff.
5. If the event set changed, push the new window to subscribed displays.

Per-calendar failures become state on the calendar row and are never
raised to the dispatcher. Only an unknown calendar or a database failure
while releasing the lock propagates.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from roomcast.models import CalendarEvent, utc_now
from roomcast.providers.base import CalendarProvider, DateRange, ExternalEvent
from roomcast.providers.credentials import decrypt_credentials
from roomcast.providers.factory import get_provider
from roomcast.sse.registry import ConnectionRegistry
from roomcast.sync.repository import CalendarSyncRepository
from roomcast.telemetry.metrics import record_sync_run

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 30 * 60


class CalendarNotFoundError(Exception):
    """The calendar id does not exist."""


@dataclass
class SyncResult:
    calendar_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    error: Optional[str] = None
    skipped: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


@dataclass
class _CalendarSnapshot:
    """Plain copy of the fields a run needs, detached from the ORM session."""

    id: str
    name: str
    provider: str
    credentials_encrypted: Optional[bytes]
    sync_interval_seconds: int
    cache_past_days: int
    cache_future_days: int
    consecutive_errors: int


def compute_next_sync_at(
    now: datetime,
    sync_interval_seconds: int,
    consecutive_errors: int = 0,
    has_error: bool = False,
) -> datetime:
    """Next due time: the configured interval, or exponential backoff after errors.

    Backoff is 60s * 2^consecutive_errors capped at 30 minutes, so the first
    failure waits 2 minutes, then 4, 8, 16, 30, 30...
    """
    if not has_error:
        return now + timedelta(seconds=sync_interval_seconds)
    backoff = min(BACKOFF_BASE_SECONDS * (2 ** consecutive_errors), BACKOFF_MAX_SECONDS)
    return now + timedelta(seconds=backoff)


def serialize_event(event: CalendarEvent, calendar: Any = None) -> dict:
    """Wire shape of a cached event for display payloads."""
    payload = {
        "id": event.id,
        "calendarId": event.calendar_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "organizer": event.organizer,
        "attendeeCount": event.attendee_count,
        "startTime": event.start_time.isoformat(),
        "endTime": event.end_time.isoformat(),
        "isAllDay": event.is_all_day,
        "isRecurring": event.is_recurring,
    }
    if calendar is not None:
        payload["calendarColor"] = calendar.color
        payload["calendarName"] = calendar.name
    return payload


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _normalize(event: ExternalEvent) -> ExternalEvent:
    event.start_time = _naive_utc(event.start_time)
    event.end_time = _naive_utc(event.end_time)
    return event


def has_changed(cached: CalendarEvent, external: ExternalEvent) -> bool:
    return (
        cached.title != external.title
        or cached.start_time != external.start_time
        or cached.end_time != external.end_time
        or cached.location != external.location
        or cached.organizer != external.organizer
        or cached.is_all_day != external.is_all_day
    )


class SyncRunner:
    """Runs single-calendar syncs.

    Args:
        session_factory: callable returning an async session context manager
        registry: connection registry to notify on changes (None = no push)
        provider_factory: provider kind -> CalendarProvider
        credential_decoder: encrypted blob -> credentials dict
    """

    def __init__(
        self,
        session_factory: Callable,
        registry: Optional[ConnectionRegistry] = None,
        provider_factory: Callable[[str], CalendarProvider] = get_provider,
        credential_decoder: Callable[[Optional[bytes]], dict] = decrypt_credentials,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.provider_factory = provider_factory
        self.credential_decoder = credential_decoder

    async def run(self, calendar_id: str) -> SyncResult:
        start = time.time()
        async with self.session_factory() as session:
            repo = CalendarSyncRepository(session)

            calendar = await repo.get_calendar(calendar_id)
            if calendar is None:
                raise CalendarNotFoundError(f"Calendar {calendar_id} not found")

            if not await repo.try_acquire_lock(calendar_id):
                logger.info(f"[SYNC] Calendar {calendar_id} is already syncing, skipping")
                record_sync_run(calendar.provider, "skipped")
                return SyncResult(calendar_id=calendar_id, skipped=True)

            # Re-read under the lock; a runner that finished meanwhile may have changed the counters
            calendar = await repo.get_calendar(calendar_id, refresh=True)
            if calendar is None:
                raise CalendarNotFoundError(f"Calendar {calendar_id} not found")

            snapshot = _CalendarSnapshot(
                id=calendar.id,
                name=calendar.name,
                provider=calendar.provider,
                credentials_encrypted=calendar.credentials_encrypted,
                sync_interval_seconds=calendar.sync_interval_seconds,
                cache_past_days=calendar.cache_past_days,
                cache_future_days=calendar.cache_future_days,
                consecutive_errors=calendar.consecutive_errors,
            )
            # No transaction stays open across the provider call
            await session.commit()

            released = False
            try:
                try:
                    result, date_range = await self._sync_events(repo, snapshot)
                    await repo.mark_success(
                        calendar_id,
                        now=utc_now(),
                        next_sync_at=compute_next_sync_at(utc_now(), snapshot.sync_interval_seconds),
                    )
                    released = True
                except Exception as e:
                    error_message = str(e) or e.__class__.__name__
                    logger.error(
                        f"[SYNC] Calendar sync failed: calendar={calendar_id} "
                        f"name={snapshot.name!r} error={error_message}"
                    )
                    errors = snapshot.consecutive_errors + 1
                    await repo.mark_failure(
                        calendar_id,
                        error=error_message,
                        consecutive_errors=errors,
                        next_sync_at=compute_next_sync_at(
                            utc_now(), snapshot.sync_interval_seconds, errors, has_error=True
                        ),
                    )
                    released = True
                    record_sync_run(snapshot.provider, "error", (time.time() - start) * 1000)
                    return SyncResult(calendar_id=calendar_id, error=error_message)
            finally:
                if not released:
                    await self._release_after_abort(calendar_id, snapshot)

            record_sync_run(snapshot.provider, "ok", (time.time() - start) * 1000)

            if result.changed:
                await self._notify(repo, calendar_id, date_range)

            return result

    async def _sync_events(
        self,
        repo: CalendarSyncRepository,
        calendar: _CalendarSnapshot,
    ) -> tuple[SyncResult, DateRange]:
        credentials = self.credential_decoder(calendar.credentials_encrypted)
        provider = self.provider_factory(calendar.provider)

        now = utc_now()
        date_range = DateRange(
            start=now - timedelta(days=calendar.cache_past_days),
            end=now + timedelta(days=calendar.cache_future_days),
        )

        try:
            fetched = await provider.sync(calendar.id, credentials, date_range)
        finally:
            await provider.close()

        external_events = {e.external_id: _normalize(e) for e in fetched.events}
        cached_events = {
            e.external_id: e
            for e in await repo.list_events(calendar.id, date_range.start, date_range.end)
        }

        to_create = [e for ext_id, e in external_events.items() if ext_id not in cached_events]
        to_update = [
            (cached_events[ext_id], e)
            for ext_id, e in external_events.items()
            if ext_id in cached_events and has_changed(cached_events[ext_id], e)
        ]
        to_delete_ids = [
            cached.id for ext_id, cached in cached_events.items() if ext_id not in external_events
        ]

        await repo.apply_event_changes(calendar.id, to_create, to_update, to_delete_ids)

        logger.info(
            f"[SYNC] Calendar sync completed: calendar={calendar.id} name={calendar.name!r} "
            f"created={len(to_create)} updated={len(to_update)} deleted={len(to_delete_ids)} "
            f"total={len(external_events)}"
        )
        result = SyncResult(
            calendar_id=calendar.id,
            created=len(to_create),
            updated=len(to_update),
            deleted=len(to_delete_ids),
        )
        return result, date_range

    async def _notify(self, repo: CalendarSyncRepository, calendar_id: str, date_range: DateRange) -> None:
        if self.registry is None:
            return
        try:
            events = await repo.list_events(calendar_id, date_range.start, date_range.end)
            self.registry.notify_calendar_update(calendar_id, [serialize_event(e) for e in events])
        except Exception as e:
            # The sync itself is already committed; displays catch up on reconnect
            logger.warning(f"[SYNC] Live update for calendar {calendar_id} failed: {e}")

    async def _release_after_abort(self, calendar_id: str, calendar: _CalendarSnapshot) -> None:
        """Best-effort unlock when the run was interrupted (e.g. cancelled)."""
        logger.warning(f"[SYNC] Calendar {calendar_id} sync aborted, releasing lock")
        async with self.session_factory() as session:
            errors = calendar.consecutive_errors + 1
            await CalendarSyncRepository(session).mark_failure(
                calendar_id,
                error="Sync aborted",
                consecutive_errors=errors,
                next_sync_at=compute_next_sync_at(
                    utc_now(), calendar.sync_interval_seconds, errors, has_error=True
                ),
            )

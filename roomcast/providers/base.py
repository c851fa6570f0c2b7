"""Abstract calendar provider capability.

Every external calendar (Exchange, Google, CalDAV, ICS) is reached through
one CalendarProvider implementation. Wire protocols live entirely inside the
concrete adapters; the sync runner only sees ProviderSyncResult objects.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class ProviderError(Exception):
    """Provider-side failure (auth, network, malformed response).

    The message ends up in Calendar.last_sync_error, so keep it readable.
    """

    def __init__(self, message: str, error_type: str = "unknown"):
        super().__init__(message)
        self.error_type = error_type  # auth, network, certificate, unknown


@dataclass
class DateRange:
    start: datetime
    end: datetime


@dataclass
class ExternalEvent:
    """Provider-neutral event as returned by an adapter."""

    external_id: str
    title: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    is_recurring: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    organizer: Optional[str] = None
    attendee_count: Optional[int] = None
    recurrence_id: Optional[str] = None
    raw_data: Optional[dict] = None


@dataclass
class ProviderSyncResult:
    events: list[ExternalEvent] = field(default_factory=list)
    next_cursor: Optional[str] = None


class CalendarProvider(ABC):
    """Base class for calendar provider adapters."""

    # Must be set by subclasses (EXCHANGE, GOOGLE, CALDAV, ICS)
    KIND: str = ""

    @abstractmethod
    async def sync(
        self,
        calendar_id: str,
        credentials: dict[str, Any],
        date_range: DateRange,
    ) -> ProviderSyncResult:
        """Fetch every event of the calendar inside date_range.

        Raises:
            ProviderError: on any provider-side failure
        """
        pass

    async def close(self) -> None:
        """Release provider resources (HTTP clients etc.)."""
        return None

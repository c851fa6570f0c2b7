"""Database models using SQLModel."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (all columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid4().hex


def _naive_datetime(**kwargs) -> Column:
    """Timestamp column without timezone; values are naive UTC."""
    return Column(DateTime(timezone=False), **kwargs)


class SyncStatus(str, Enum):
    """Calendar sync state. SYNCING doubles as the per-calendar lock."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


class CalendarProviderKind(str, Enum):
    EXCHANGE = "EXCHANGE"
    GOOGLE = "GOOGLE"
    CALDAV = "CALDAV"
    ICS = "ICS"


class Calendar(SQLModel, table=True):
    """External calendar connected to the platform."""

    __tablename__ = "calendars"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    provider: str = Field(max_length=20, description="EXCHANGE, GOOGLE, CALDAV or ICS")
    color: Optional[str] = Field(default=None, max_length=20)
    credentials_encrypted: Optional[bytes] = Field(
        default=None, sa_column=Column(LargeBinary), description="iv || tag || ciphertext"
    )
    enabled: bool = Field(default=True, index=True)

    # Sync bookkeeping
    sync_status: str = Field(default=SyncStatus.IDLE.value, max_length=20, index=True)
    sync_interval_seconds: int = Field(default=300)
    cache_past_days: int = Field(default=7)
    cache_future_days: int = Field(default=30)
    last_sync_at: Optional[datetime] = Field(default=None, sa_column=_naive_datetime())
    last_sync_error: Optional[str] = Field(default=None)
    consecutive_errors: int = Field(default=0)
    next_sync_at: Optional[datetime] = Field(default=None, sa_column=_naive_datetime(index=True))

    created_at: datetime = Field(default_factory=utc_now, sa_column=_naive_datetime(nullable=False))
    # Refreshed on every UPDATE (bulk ones included); the stale-lock check reads it
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=_naive_datetime(nullable=False, onupdate=utc_now)
    )


class CalendarEvent(SQLModel, table=True):
    """Cached event from an external calendar."""

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_id", "external_id", name="uq_calendar_event_external"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    calendar_id: str = Field(foreign_key="calendars.id", index=True, max_length=64)
    external_id: str = Field(max_length=512, description="Provider event UID")
    title: str = Field(max_length=1024)
    description: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None, max_length=1024)
    organizer: Optional[str] = Field(default=None, max_length=512)
    attendee_count: Optional[int] = Field(default=None)
    start_time: datetime = Field(sa_column=_naive_datetime(nullable=False, index=True))
    end_time: datetime = Field(sa_column=_naive_datetime(nullable=False, index=True))
    is_all_day: bool = Field(default=False)
    is_recurring: bool = Field(default=False)
    recurrence_id: Optional[str] = Field(default=None, max_length=512)
    raw_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utc_now, sa_column=_naive_datetime(nullable=False))
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=_naive_datetime(nullable=False, onupdate=utc_now)
    )


class Room(SQLModel, table=True):
    """Meeting room, optionally backed by a calendar."""

    __tablename__ = "rooms"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    calendar_id: Optional[str] = Field(default=None, foreign_key="calendars.id", max_length=64)


class Display(SQLModel, table=True):
    """Kiosk display page, addressed by its secret token."""

    __tablename__ = "displays"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    token: str = Field(unique=True, index=True, max_length=128)
    enabled: bool = Field(default=True)
    room_id: Optional[str] = Field(default=None, foreign_key="rooms.id", max_length=64)
    config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    ip_whitelist: Optional[list] = Field(
        default=None, sa_column=Column(JSON), description="Exact IPs or CIDR ranges"
    )

    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=_naive_datetime(nullable=False, onupdate=utc_now)
    )


class DisplayCalendar(SQLModel, table=True):
    """Additional calendar attached to a display."""

    __tablename__ = "display_calendars"

    display_id: str = Field(foreign_key="displays.id", primary_key=True, max_length=64)
    calendar_id: str = Field(foreign_key="calendars.id", primary_key=True, max_length=64)

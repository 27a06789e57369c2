"""Data models for calendar synchronization."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

DEFAULT_CONTAINER = 'eac-meetings'
DEFAULT_DURATION_MINUTES = 60

EVENT_STATUSES = ('CONFIRMED', 'TENTATIVE', 'CANCELLED')

MEETING_CANCELLED = 'cancelled'
# Meetings in these states are candidates for recovery pushes
PUSHABLE_MEETING_STATUSES = ('scheduled', 'published')


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO 8601 timestamp as UTC, accepting a trailing Z."""
    if not value:
        return None
    if value.endswith(('Z', 'z')):
        value = value[:-1] + '+00:00'
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class Organizer:
    """Event organizer as a display name and mail address."""
    name: str
    email: str


@dataclass
class CalendarEvent:
    """Single event on the remote calendar."""
    summary: str
    start: datetime
    id: Optional[str] = None
    description: Optional[str] = None
    end: Optional[datetime] = None
    location: Optional[str] = None
    url: Optional[str] = None
    status: Optional[str] = None
    organizer: Optional[Organizer] = None
    attendees: List[str] = field(default_factory=list)
    recurrence: Optional[str] = None
    reminders: List[int] = field(default_factory=list)


@dataclass
class ResourceRef:
    """Identifier and URL of a remote event resource."""
    id: str
    url: str


@dataclass
class RemoteCredentials:
    """Per-call connection details for the remote calendar store."""
    base_url: str
    username: str
    password: str

    def __repr__(self) -> str:
        return (
            f"RemoteCredentials(base_url={self.base_url!r}, "
            f"username={self.username!r}, password='***')"
        )


@dataclass
class Meeting:
    """Local meeting record as seen by the sync engine."""
    id: str
    title: str
    scheduled_at: datetime
    org_id: Optional[str] = None
    description: Optional[str] = None
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    location: Optional[str] = None
    meeting_url: Optional[str] = None
    external_event_id: Optional[str] = None
    externally_synced: bool = False
    last_sync_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status: str = 'scheduled'

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def needs_sync(self) -> bool:
        """True when the remote copy is missing or older than the last local edit."""
        if not self.externally_synced or self.last_sync_at is None:
            return True
        if self.updated_at is None:
            return False
        return self.last_sync_at < self.updated_at


@dataclass
class SyncEvent:
    """Stored webhook notification about a remote change."""
    id: str
    event_type: str
    external_id: str
    resource_type: str = 'calendar_event'
    resource_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def action(self) -> str:
        """Trailing segment of the event type, e.g. 'updated' for 'calendar.event.updated'."""
        return self.event_type.rsplit('.', 1)[-1].lower()


@dataclass
class SyncStatus:
    """Sync bookkeeping summary for one meeting."""
    synced: bool
    last_sync: Optional[datetime]
    event_id: Optional[str]
    needs_sync: bool


@dataclass
class BatchSyncResult:
    """Result of a recovery push over an organization."""
    synced: int
    failed: List[str]


@dataclass
class CatchUpResult:
    """Result of draining unprocessed webhook events."""
    processed: int
    skipped: int
    failed: List[str]

"""Exceptions raised by the calendar sync engine."""
from typing import Optional


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""


class WireFormatError(CalendarSyncError):
    """Calendar text could not be decoded into a usable event."""


class MeetingNotFoundError(CalendarSyncError):
    """No local meeting exists for the requested id."""


class RemoteError(CalendarSyncError):
    """Base exception for failed requests against the remote calendar store."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteNotFound(RemoteError):
    """Remote resource or container does not exist (HTTP 404)."""


class RemoteTransportError(RemoteError):
    """Network failure, timeout or unexpected server response."""


class RemoteAuthError(RemoteError):
    """Remote store rejected the supplied credentials (HTTP 401/403)."""


class RemoteConflict(RemoteError):
    """Container creation refused because it already exists (HTTP 405/409)."""

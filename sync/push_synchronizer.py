"""Push local meetings to the remote calendar."""
import logging
import threading
import weakref
from typing import Optional

from remote.caldav_client import CalendarResourceClient
from storage.meeting_store import MeetingStore
from sync.errors import MeetingNotFoundError, RemoteAuthError, RemoteError
from sync.models import (
    DEFAULT_CONTAINER,
    CalendarEvent,
    Meeting,
    RemoteCredentials,
    ResourceRef,
    SyncStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class PushSynchronizer:
    """Creates or updates the remote event backing a meeting."""

    def __init__(self, client: CalendarResourceClient, meeting_store: MeetingStore):
        self.client = client
        self.meeting_store = meeting_store
        # Entries vanish once no push holds the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def push(
        self,
        meeting: Meeting,
        credentials: RemoteCredentials,
        container: Optional[str] = None
    ) -> Meeting:
        """
        Push a meeting to the remote calendar and record the sync.

        An existing remote event is updated in place. If that write fails
        with anything other than an authorization error, the event is
        recreated under the meeting's derived id instead.

        Args:
            meeting: Meeting to push
            credentials: Remote credentials of the calendar owner
            container: Calendar name (default: eac-meetings)

        Returns:
            The meeting with external_event_id, externally_synced and
            last_sync_at updated

        Raises:
            RemoteError: If the remote write fails after the recreate attempt
        """
        container = container or DEFAULT_CONTAINER

        with self._lock_for(meeting.id):
            self.client.ensure_container(credentials, container)

            ref = None
            if meeting.external_event_id and meeting.externally_synced:
                ref = self._update_in_place(meeting, credentials, container)

            if ref is None:
                event = self.build_event(meeting, self.derive_event_id(meeting))
                ref = self.client.put_event(credentials, container, event)
                logger.info(f"Created calendar event {ref.id} for meeting {meeting.id}")

            synced_at = utc_now()
            self.meeting_store.mark_pushed(meeting.id, ref.id, synced_at)

        meeting.external_event_id = ref.id
        meeting.externally_synced = True
        meeting.last_sync_at = synced_at
        return meeting

    def push_by_id(
        self,
        meeting_id: str,
        credentials: RemoteCredentials,
        container: Optional[str] = None
    ) -> Meeting:
        """Load a meeting and push it; raises MeetingNotFoundError if it is missing."""
        meeting = self.meeting_store.get(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: {meeting_id}")
        return self.push(meeting, credentials, container)

    def delete_remote(
        self,
        meeting_id: str,
        credentials: RemoteCredentials,
        container: Optional[str] = None
    ) -> bool:
        """
        Remove the remote event of a meeting that is being deleted locally.

        Remote failures are logged and swallowed; the local delete goes ahead
        regardless.

        Returns:
            True if a remote event was deleted
        """
        meeting = self.meeting_store.get(meeting_id)
        if meeting is None or not meeting.external_event_id:
            return False

        try:
            return self.client.delete_event(
                credentials,
                container or DEFAULT_CONTAINER,
                meeting.external_event_id
            )
        except RemoteError as e:
            logger.error(
                f"Failed to delete calendar event {meeting.external_event_id}: {e}",
                extra={'meeting_id': meeting_id}
            )
            return False

    def sync_status(self, meeting_id: str) -> SyncStatus:
        meeting = self.meeting_store.get(meeting_id)
        if meeting is None:
            raise MeetingNotFoundError(f"Meeting not found: {meeting_id}")
        return SyncStatus(
            synced=meeting.externally_synced,
            last_sync=meeting.last_sync_at,
            event_id=meeting.external_event_id,
            needs_sync=meeting.needs_sync(),
        )

    def build_event(self, meeting: Meeting, event_id: Optional[str] = None) -> CalendarEvent:
        return CalendarEvent(
            id=event_id,
            summary=meeting.title,
            description=meeting.description,
            start=meeting.scheduled_at,
            end=meeting.ends_at,
            location=meeting.location,
            url=meeting.meeting_url,
            status='CONFIRMED',
        )

    def derive_event_id(self, meeting: Meeting) -> str:
        # Stable per meeting, so an orphaned resource is overwritten by the next push
        return f"meeting-{meeting.id}"

    def _update_in_place(
        self,
        meeting: Meeting,
        credentials: RemoteCredentials,
        container: str
    ) -> Optional[ResourceRef]:
        event = self.build_event(meeting, meeting.external_event_id)
        try:
            ref = self.client.put_event(credentials, container, event)
        except RemoteAuthError:
            raise
        except RemoteError as e:
            logger.warning(
                f"Failed to update calendar event {meeting.external_event_id}, "
                f"recreating: {e}",
                extra={'meeting_id': meeting.id}
            )
            return None

        logger.info(f"Updated calendar event {ref.id} for meeting {meeting.id}")
        return ref

    def _lock_for(self, meeting_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(meeting_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[meeting_id] = lock
            return lock

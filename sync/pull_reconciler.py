"""Reconcile local meetings with the current state of remote calendar events."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from remote.caldav_client import CalendarResourceClient
from storage.meeting_store import MeetingStore
from sync.models import (
    DEFAULT_CONTAINER,
    MEETING_CANCELLED,
    CalendarEvent,
    Meeting,
    RemoteCredentials,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

SYNC_FROM_REMOTE_ACTION = 'calendar_sync_from_remote'
REMOTE_DELETE_ACTION = 'calendar_event_deleted_remotely'


@dataclass
class ReconcileOutcome:
    """What a reconciliation did to local state."""
    external_id: str
    meeting_ids: List[str] = field(default_factory=list)
    changed_fields: List[str] = field(default_factory=list)
    tombstoned: bool = False


class PullReconciler:
    """
    Applies remote calendar changes to local meetings.

    The remote event is always re-fetched; notification payloads are never
    trusted for content, so late or repeated webhooks are harmless.
    """

    def __init__(self, client: CalendarResourceClient, meeting_store: MeetingStore):
        self.client = client
        self.meeting_store = meeting_store

    def reconcile(
        self,
        external_id: str,
        credentials: RemoteCredentials,
        container: Optional[str] = None
    ) -> ReconcileOutcome:
        """
        Pull the current remote event into its local meeting.

        Args:
            external_id: Remote event identifier
            credentials: Remote credentials of the calendar owner
            container: Calendar name (default: eac-meetings)

        Returns:
            ReconcileOutcome describing the local changes
        """
        event = self.client.get_event(credentials, container or DEFAULT_CONTAINER, external_id)
        if event is None:
            return self.tombstone(external_id)

        outcome = ReconcileOutcome(external_id=external_id)
        meetings = self.meeting_store.find_by_external_event_id(external_id)
        if not meetings:
            logger.warning(f"No meeting found for calendar event: {external_id}")
            return outcome

        for meeting in meetings:
            changed = self._apply(meeting, event, external_id)
            outcome.meeting_ids.append(meeting.id)
            outcome.changed_fields.extend(f for f in changed if f not in outcome.changed_fields)
        return outcome

    def tombstone(self, external_id: str) -> ReconcileOutcome:
        """
        Cancel the meetings whose remote event no longer exists.

        Meetings already cancelled and unlinked are left as they are.
        """
        outcome = ReconcileOutcome(external_id=external_id, tombstoned=True)

        for meeting in self.meeting_store.find_by_external_event_id(external_id):
            outcome.meeting_ids.append(meeting.id)
            if meeting.status == MEETING_CANCELLED and not meeting.externally_synced:
                continue

            self.meeting_store.update_meeting(meeting.id, {
                'status': MEETING_CANCELLED,
                'externally_synced': False,
                'updated_at': utc_now(),
            })
            self.meeting_store.append_audit(
                action=REMOTE_DELETE_ACTION,
                resource_type='meeting',
                resource_id=meeting.id,
                metadata={'event_id': external_id, 'previous_status': meeting.status}
            )
            logger.info(f"Cancelled meeting {meeting.id}: remote event {external_id} is gone")

        return outcome

    def _apply(self, meeting: Meeting, event: CalendarEvent, external_id: str) -> List[str]:
        duration = meeting.duration_minutes
        if event.start and event.end:
            duration = round((event.end - event.start).total_seconds() / 60)

        remote = {
            'title': event.summary or meeting.title,
            'description': event.description or None,
            'scheduled_at': ensure_utc(event.start),
            'duration_minutes': duration,
            'location': event.location or None,
            'meeting_url': event.url or None,
        }
        local = {
            'title': meeting.title,
            'description': meeting.description or None,
            'scheduled_at': ensure_utc(meeting.scheduled_at),
            'duration_minutes': meeting.duration_minutes,
            'location': meeting.location or None,
            'meeting_url': meeting.meeting_url or None,
        }
        changed = [name for name in remote if remote[name] != local[name]]

        now = utc_now()
        if not changed:
            self.meeting_store.update_meeting(meeting.id, {'last_sync_at': now})
            logger.debug(f"Meeting {meeting.id} already matches event {external_id}")
            return []

        self.meeting_store.update_meeting(meeting.id, {
            **remote,
            'updated_at': now,
            'last_sync_at': now,
        })
        self.meeting_store.append_audit(
            action=SYNC_FROM_REMOTE_ACTION,
            resource_type='meeting',
            resource_id=meeting.id,
            metadata={'event_id': external_id, 'changes': changed}
        )
        logger.info(
            f"Updated meeting {meeting.id} from calendar event {external_id}",
            extra={'changes': changed}
        )
        return changed

"""Recovery push of every stale meeting in an organization."""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

from storage.meeting_store import MeetingStore
from sync.models import BatchSyncResult, RemoteCredentials
from sync.push_synchronizer import PushSynchronizer

logger = logging.getLogger(__name__)


class BatchSynchronizer:
    """Pushes all meetings that are unsynced or stale, isolating failures per meeting."""

    def __init__(
        self,
        push_synchronizer: PushSynchronizer,
        meeting_store: MeetingStore,
        max_workers: int = 4
    ):
        self.push_synchronizer = push_synchronizer
        self.meeting_store = meeting_store
        self.max_workers = max_workers

    def sync_organization(
        self,
        org_id: str,
        credentials: RemoteCredentials,
        container: Optional[str] = None
    ) -> BatchSyncResult:
        """
        Push every meeting of an organization that needs it.

        Args:
            org_id: Organization whose meetings are scanned
            credentials: Remote credentials of the calendar owner
            container: Calendar name (default: eac-meetings)

        Returns:
            BatchSyncResult with the success count and the failed meeting ids
        """
        meetings = {}
        for meeting in self.meeting_store.list_needing_sync(org_id):
            meetings.setdefault(meeting.id, meeting)

        logger.info(f"Starting batch sync of {len(meetings)} meetings for org {org_id}")
        synced = 0
        failed = []

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(self.push_synchronizer.push, meeting, credentials, container): meeting_id
                for meeting_id, meeting in meetings.items()
            }
            for future in as_completed(futures):
                meeting_id = futures[future]
                try:
                    future.result()
                    synced += 1
                except Exception as e:
                    logger.error(
                        f"Failed to sync meeting {meeting_id}: {e}",
                        extra={'error_type': type(e).__name__}
                    )
                    failed.append(meeting_id)

        # Keep scan order for stable reporting
        order = list(meetings)
        failed.sort(key=order.index)

        logger.info(f"Batch sync complete: {synced} synced, {len(failed)} failed")
        return BatchSyncResult(synced=synced, failed=failed)

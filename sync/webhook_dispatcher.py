"""Route stored webhook events to the pull reconciler."""
import logging
from typing import Any, Dict, Optional

from storage.sync_event_store import SyncEventStore
from sync.models import DEFAULT_CONTAINER, CatchUpResult, RemoteCredentials, SyncEvent
from sync.pull_reconciler import PullReconciler

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Dispatches unprocessed SyncEvents by action and marks them processed on success."""

    PULL_ACTIONS = ('created', 'updated')
    DELETE_ACTION = 'deleted'

    def __init__(
        self,
        event_store: SyncEventStore,
        reconciler: PullReconciler,
        container: str = DEFAULT_CONTAINER
    ):
        self.event_store = event_store
        self.reconciler = reconciler
        self.container = container

    def dispatch(self, event: SyncEvent, credentials: RemoteCredentials) -> bool:
        """
        Handle one stored webhook event.

        Unknown event types are logged and marked processed; they are not
        retryable. Handler errors propagate and leave the event unprocessed
        for the next catch-up pass.

        Args:
            event: Stored, unprocessed SyncEvent
            credentials: Remote credentials of the calendar owner

        Returns:
            True if this call marked the event processed, False if another
            pass got there first
        """
        action = event.action
        logger.info(
            f"Dispatching sync event {event.id}",
            extra={'event_type': event.event_type, 'external_id': event.external_id}
        )

        try:
            if action in self.PULL_ACTIONS:
                self.reconciler.reconcile(event.external_id, credentials, self.container)
            elif action == self.DELETE_ACTION:
                self.reconciler.tombstone(event.external_id)
            else:
                logger.warning(f"Unknown calendar event type: {event.event_type}")
        except Exception as e:
            logger.error(
                f"Failed to process sync event {event.id}: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            raise

        return self.event_store.mark_processed(event)

    def process_unprocessed(
        self,
        credentials: RemoteCredentials,
        limit: int = 100
    ) -> CatchUpResult:
        """
        Catch-up pass: drain the oldest unprocessed events.

        One event's failure does not stop the pass.

        Args:
            credentials: Remote credentials of the calendar owner
            limit: Maximum number of events to handle in this pass

        Returns:
            CatchUpResult with processed and skipped counts and failed event ids
        """
        events = self.event_store.list_unprocessed(limit)
        processed = 0
        skipped = 0
        failed = []

        for event in events:
            try:
                if self.dispatch(event, credentials):
                    processed += 1
                else:
                    skipped += 1
            except Exception:
                failed.append(event.id)
                continue

        logger.info(
            f"Catch-up complete: {processed} processed, {skipped} skipped, "
            f"{len(failed)} failed"
        )
        return CatchUpResult(processed=processed, skipped=skipped, failed=failed)

    def ingest(
        self,
        payload: Dict[str, Any],
        credentials: Optional[RemoteCredentials]
    ) -> SyncEvent:
        """
        Store a webhook payload forwarded by the front door and try to handle it now.

        A failed dispatch is left for the catch-up pass and is not raised.

        Args:
            payload: Notification body with at least event_type and event_id
            credentials: Remote credentials; when None the event is only stored

        Returns:
            The stored SyncEvent

        Raises:
            ValueError: If event_type or event_id is missing
        """
        event_type = payload.get('event_type')
        external_id = payload.get('event_id')
        if not event_type or not external_id:
            raise ValueError('Missing required fields: event_type, event_id')

        event = self.event_store.store(SyncEvent(
            id='',
            event_type=event_type,
            external_id=external_id,
            resource_id=payload.get('resource_id'),
            payload=payload,
        ))

        if credentials is None:
            return event

        try:
            self.dispatch(event, credentials)
        except Exception:
            logger.warning(f"Sync event {event.id} left for catch-up")
        return event

"""AWS Lambda handler for the meeting calendar sync engine."""
import json
import logging
import time
from typing import Any, Dict, Optional

from remote.caldav_client import CalendarResourceClient
from storage.meeting_store import MeetingStore
from storage.sync_event_store import SyncEventStore
from sync.batch_sync import BatchSynchronizer
from sync.config import SyncSettings
from sync.errors import MeetingNotFoundError
from sync.pull_reconciler import PullReconciler
from sync.push_synchronizer import PushSynchronizer
from sync.webhook_dispatcher import WebhookDispatcher

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler for calendar synchronization.

    Supported actions (``event['action']``):
        catch_up              drain unprocessed webhook events (default, and
                              for EventBridge scheduled events)
        webhook               store a forwarded webhook payload and handle it
        push_meeting          push one meeting after a local edit
        sync_org              recovery push of all stale meetings of an org
        sync_status           report a meeting's sync bookkeeping
        delete_meeting_event  remove the remote event of a deleted meeting

    Args:
        event: Invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    settings = SyncSettings.from_env()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    event = event or {}
    action = _resolve_action(event)
    logger.info(
        "Lambda execution started",
        extra={'action': action, 'calendar_name': settings.calendar_name}
    )

    try:
        client = CalendarResourceClient(timeout=settings.timeout_seconds)
        meeting_store = MeetingStore(settings.meetings_table, settings.audit_table)
        push_synchronizer = PushSynchronizer(client, meeting_store)
        credentials = settings.resolve_credentials(event.get('credentials'))

        if action == 'sync_status':
            meeting_id = event.get('meeting_id')
            if not meeting_id:
                return _response(400, {'message': 'Missing required field: meeting_id'}, start_time)
            status = push_synchronizer.sync_status(meeting_id)
            return _response(200, {
                'meeting_id': meeting_id,
                'synced': status.synced,
                'last_sync': status.last_sync.isoformat() if status.last_sync else None,
                'event_id': status.event_id,
                'needs_sync': status.needs_sync,
            }, start_time)

        if action in ('catch_up', 'webhook'):
            event_store = SyncEventStore(settings.sync_events_table)
            reconciler = PullReconciler(client, meeting_store)
            dispatcher = WebhookDispatcher(event_store, reconciler, settings.calendar_name)

            if action == 'webhook':
                payload = event.get('payload') or {}
                try:
                    sync_event = dispatcher.ingest(payload, credentials)
                except ValueError as e:
                    return _response(400, {'message': str(e)}, start_time)
                return _response(200, {
                    'message': 'Calendar event stored',
                    'sync_event_id': sync_event.id,
                    'processed': sync_event.processed,
                }, start_time)

        if credentials is None:
            logger.error("No remote calendar credentials configured")
            return _response(500, {'message': 'Remote calendar credentials not configured'}, start_time)

        if action == 'catch_up':
            result = dispatcher.process_unprocessed(credentials, limit=settings.catch_up_limit)
            logger.info(
                "Lambda execution completed successfully",
                extra={'events_processed': result.processed, 'events_failed': len(result.failed)}
            )
            return _response(200, {
                'message': 'Catch-up completed',
                'statistics': {
                    'events_processed': result.processed,
                    'events_skipped': result.skipped,
                    'events_failed': len(result.failed),
                },
                'failed': result.failed,
            }, start_time)

        if action == 'push_meeting':
            meeting_id = event.get('meeting_id')
            if not meeting_id:
                return _response(400, {'message': 'Missing required field: meeting_id'}, start_time)
            meeting = push_synchronizer.push_by_id(meeting_id, credentials, settings.calendar_name)
            return _response(200, {
                'message': 'Meeting pushed',
                'meeting_id': meeting.id,
                'event_id': meeting.external_event_id,
            }, start_time)

        if action == 'sync_org':
            org_id = event.get('org_id')
            if not org_id:
                return _response(400, {'message': 'Missing required field: org_id'}, start_time)
            batch = BatchSynchronizer(
                push_synchronizer,
                meeting_store,
                max_workers=settings.batch_max_workers
            )
            result = batch.sync_organization(org_id, credentials, settings.calendar_name)
            logger.info(
                "Lambda execution completed successfully",
                extra={'meetings_synced': result.synced, 'meetings_failed': len(result.failed)}
            )
            return _response(200, {
                'message': 'Organization sync completed',
                'statistics': {
                    'meetings_synced': result.synced,
                    'meetings_failed': len(result.failed),
                },
                'failed': result.failed,
            }, start_time)

        if action == 'delete_meeting_event':
            meeting_id = event.get('meeting_id')
            if not meeting_id:
                return _response(400, {'message': 'Missing required field: meeting_id'}, start_time)
            deleted = push_synchronizer.delete_remote(meeting_id, credentials, settings.calendar_name)
            return _response(200, {'meeting_id': meeting_id, 'deleted': deleted}, start_time)

        return _response(400, {'message': f'Unknown action: {action}'}, start_time)

    except MeetingNotFoundError as e:
        logger.warning(str(e))
        return _response(404, {'message': str(e)}, start_time)

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
        }, start_time)


def _resolve_action(event: Dict[str, Any]) -> str:
    action: Optional[str] = event.get('action')
    if action:
        return action
    # EventBridge schedules and empty invocations run the catch-up pass
    return 'catch_up'


def _response(status_code: int, body: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    body = dict(body)
    body['duration_seconds'] = round(time.time() - start_time, 2)
    return {
        'statusCode': status_code,
        'body': json.dumps(body)
    }

"""DynamoDB store for inbound calendar webhook events."""
import json
import logging
import uuid
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from sync.models import SyncEvent, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class SyncEventStore:
    """
    Append-only log of webhook notifications with a processed flag.

    Items are never deleted. Unprocessed items are found through the
    ``processing-state-index`` GSI (hash ``processing_state``, range
    ``created_at``), which returns them oldest first.
    """

    STATE_INDEX = 'processing-state-index'
    PENDING = 'pending'
    PROCESSED = 'processed'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region, taken from the environment when omitted
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized SyncEventStore for table: {table_name}")

    def store(self, event: SyncEvent) -> SyncEvent:
        """
        Append a webhook event as unprocessed.

        Duplicate notifications are stored as separate items; processing is
        idempotent, so both are simply worked off.

        Args:
            event: Event to store. An id is generated when event.id is empty.

        Returns:
            The stored SyncEvent with id and created_at set
        """
        event.id = event.id or uuid.uuid4().hex
        event.processed = False
        event.processed_at = None
        event.created_at = utc_now()

        self.table.put_item(Item=self._sync_event_to_item(event))
        logger.info(
            f"Stored sync event {event.id}",
            extra={'event_type': event.event_type, 'external_id': event.external_id}
        )
        return event

    def mark_processed(self, event: SyncEvent) -> bool:
        """
        Flag an event as processed, at most once.

        Uses a conditional update so two concurrent catch-up passes cannot
        both claim the same item.

        Args:
            event: Event whose handler completed successfully

        Returns:
            True if this call flipped the flag, False if it was already set
        """
        processed_at = utc_now()
        try:
            self.table.update_item(
                Key={'id': event.id},
                UpdateExpression=(
                    'SET processed = :true, processed_at = :now, '
                    'processing_state = :state'
                ),
                ConditionExpression=Attr('processed').eq(False),
                ExpressionAttributeValues={
                    ':true': True,
                    ':now': processed_at.isoformat(),
                    ':state': self.PROCESSED,
                }
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.info(f"Sync event {event.id} was already processed")
                return False
            logger.error(f"Error marking sync event {event.id} processed: {e}")
            raise

        event.processed = True
        event.processed_at = processed_at
        return True

    def list_unprocessed(self, limit: int = 100) -> List[SyncEvent]:
        """
        Return unprocessed events, oldest first.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of SyncEvent objects
        """
        response = self.table.query(
            IndexName=self.STATE_INDEX,
            KeyConditionExpression=Key('processing_state').eq(self.PENDING),
            ScanIndexForward=True,
            Limit=limit
        )
        events = [self._item_to_sync_event(item) for item in response.get('Items', [])]
        logger.info(f"Found {len(events)} unprocessed sync events")
        return events

    def get(self, event_id: str) -> Optional[SyncEvent]:
        response = self.table.get_item(Key={'id': event_id}, ConsistentRead=True)
        item = response.get('Item')
        return self._item_to_sync_event(item) if item else None

    def _sync_event_to_item(self, event: SyncEvent) -> dict:
        item = {
            'id': event.id,
            'event_type': event.event_type,
            'external_id': event.external_id,
            'resource_type': event.resource_type,
            # Stored as JSON text; DynamoDB rejects float values
            'payload': json.dumps(event.payload, default=str),
            'processed': event.processed,
            'processing_state': self.PROCESSED if event.processed else self.PENDING,
            'created_at': event.created_at.isoformat(),
        }
        if event.resource_id:
            item['resource_id'] = event.resource_id
        if event.processed_at:
            item['processed_at'] = event.processed_at.isoformat()
        return item

    def _item_to_sync_event(self, item: dict) -> SyncEvent:
        return SyncEvent(
            id=item['id'],
            event_type=item['event_type'],
            external_id=item['external_id'],
            resource_type=item.get('resource_type', 'calendar_event'),
            resource_id=item.get('resource_id'),
            payload=json.loads(item.get('payload') or '{}'),
            processed=bool(item.get('processed', False)),
            processed_at=parse_timestamp(item.get('processed_at')),
            created_at=parse_timestamp(item.get('created_at')),
        )

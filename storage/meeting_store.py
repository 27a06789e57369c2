"""DynamoDB access to meeting rows and their audit trail."""
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key

from sync.models import (
    DEFAULT_DURATION_MINUTES,
    PUSHABLE_MEETING_STATUSES,
    Meeting,
    ensure_utc,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)


class MeetingStore:
    """
    Narrow read/write contract over the meetings table.

    Only the fields the sync engine owns or reads are touched; partial
    updates never overwrite columns they do not name.
    """

    EXTERNAL_EVENT_INDEX = 'external-event-index'

    def __init__(
        self,
        table_name: str,
        audit_table_name: str,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB client and table references.

        Args:
            table_name: Name of the meetings table
            audit_table_name: Name of the audit/provenance table
            region_name: AWS region, taken from the environment when omitted
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        self.audit_table = self.dynamodb.Table(audit_table_name)
        logger.info(f"Initialized MeetingStore for table: {table_name}")

    def put(self, meeting: Meeting) -> None:
        self.table.put_item(Item=self._meeting_to_item(meeting))

    def get(self, meeting_id: str) -> Optional[Meeting]:
        response = self.table.get_item(Key={'id': meeting_id}, ConsistentRead=True)
        item = response.get('Item')
        return self._item_to_meeting(item) if item else None

    def find_by_external_event_id(self, external_event_id: str) -> List[Meeting]:
        """
        Find meetings linked to a remote event.

        Args:
            external_event_id: Remote calendar event identifier

        Returns:
            Matching meetings; empty when the event has no local counterpart
        """
        response = self.table.query(
            IndexName=self.EXTERNAL_EVENT_INDEX,
            KeyConditionExpression=Key('external_event_id').eq(external_event_id)
        )
        return [self._item_to_meeting(item) for item in response.get('Items', [])]

    def update_meeting(self, meeting_id: str, changes: Dict[str, Any]) -> None:
        """
        Apply a partial update to one meeting.

        Args:
            meeting_id: Meeting to update
            changes: Field name to new value; None removes the attribute
        """
        if not changes:
            return

        set_parts = []
        remove_parts = []
        names = {}
        values = {}

        for i, (field_name, value) in enumerate(sorted(changes.items())):
            names[f'#f{i}'] = field_name
            if value is None:
                remove_parts.append(f'#f{i}')
            else:
                values[f':v{i}'] = _to_dynamo(value)
                set_parts.append(f'#f{i} = :v{i}')

        expression = []
        if set_parts:
            expression.append('SET ' + ', '.join(set_parts))
        if remove_parts:
            expression.append('REMOVE ' + ', '.join(remove_parts))

        kwargs = {
            'Key': {'id': meeting_id},
            'UpdateExpression': ' '.join(expression),
            'ExpressionAttributeNames': names,
            'ConditionExpression': Attr('id').exists(),
        }
        if values:
            kwargs['ExpressionAttributeValues'] = values

        self.table.update_item(**kwargs)
        logger.debug(f"Updated meeting {meeting_id}: {sorted(changes)}")

    def mark_pushed(self, meeting_id: str, external_event_id: str, synced_at: datetime) -> None:
        """Record a confirmed push of a meeting to the remote calendar."""
        self.update_meeting(meeting_id, {
            'external_event_id': external_event_id,
            'externally_synced': True,
            'last_sync_at': synced_at,
        })

    def list_needing_sync(self, org_id: str) -> List[Meeting]:
        """
        List an organization's active meetings whose remote copy is missing or stale.

        Args:
            org_id: Organization to scan

        Returns:
            Meetings that are unsynced, never synced, or edited since the last sync
        """
        filter_expression = (
            Attr('org_id').eq(org_id) &
            Attr('status').is_in(list(PUSHABLE_MEETING_STATUSES))
        )
        response = self.table.scan(FilterExpression=filter_expression)
        items = response.get('Items', [])

        # Handle pagination
        while 'LastEvaluatedKey' in response:
            response = self.table.scan(
                FilterExpression=filter_expression,
                ExclusiveStartKey=response['LastEvaluatedKey']
            )
            items.extend(response.get('Items', []))

        meetings = [self._item_to_meeting(item) for item in items]
        stale = [meeting for meeting in meetings if meeting.needs_sync()]
        logger.info(
            f"Found {len(stale)} meetings needing sync out of {len(meetings)} "
            f"active meetings for org {org_id}"
        )
        return stale

    def append_audit(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Dict[str, Any]
    ) -> str:
        """
        Append a provenance record to the audit table.

        Returns:
            Id of the new audit record
        """
        record_id = uuid.uuid4().hex
        self.audit_table.put_item(Item={
            'id': record_id,
            'action': action,
            'resource_type': resource_type,
            'resource_id': resource_id,
            'metadata': json.dumps(metadata, default=str),
            'created_at': utc_now().isoformat(),
        })
        return record_id

    def _meeting_to_item(self, meeting: Meeting) -> dict:
        item = {
            'id': meeting.id,
            'title': meeting.title,
            'scheduled_at': _to_dynamo(meeting.scheduled_at),
            'duration_minutes': meeting.duration_minutes,
            'externally_synced': meeting.externally_synced,
            'status': meeting.status,
        }

        # Add optional fields if present; the GSI key must be absent, not null
        optional = {
            'org_id': meeting.org_id,
            'description': meeting.description,
            'location': meeting.location,
            'meeting_url': meeting.meeting_url,
            'external_event_id': meeting.external_event_id,
            'last_sync_at': meeting.last_sync_at,
            'updated_at': meeting.updated_at,
        }
        for key, value in optional.items():
            if value is not None:
                item[key] = _to_dynamo(value)
        return item

    def _item_to_meeting(self, item: dict) -> Meeting:
        return Meeting(
            id=item['id'],
            title=item['title'],
            scheduled_at=parse_timestamp(item['scheduled_at']),
            org_id=item.get('org_id'),
            description=item.get('description'),
            duration_minutes=int(item.get('duration_minutes', DEFAULT_DURATION_MINUTES)),
            location=item.get('location'),
            meeting_url=item.get('meeting_url'),
            external_event_id=item.get('external_event_id'),
            externally_synced=bool(item.get('externally_synced', False)),
            last_sync_at=parse_timestamp(item.get('last_sync_at')),
            updated_at=parse_timestamp(item.get('updated_at')),
            status=item.get('status', 'scheduled'),
        )


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, float):
        return Decimal(str(value))
    return value

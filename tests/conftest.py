"""Shared fixtures: mocked DynamoDB tables and a fake CalDAV server."""
import os
import re
from datetime import datetime, timezone
from urllib.parse import unquote

import boto3
import pytest
import responses
from moto import mock_aws

from remote.caldav_client import CalendarResourceClient
from storage.meeting_store import MeetingStore
from storage.sync_event_store import SyncEventStore
from sync.models import Meeting, RemoteCredentials

BASE_URL = 'https://cloud.example.com'
USERNAME = 'alice'
CALENDAR_ROOT = f'{BASE_URL}/remote.php/dav/calendars/{USERNAME}'


@pytest.fixture(autouse=True)
def aws_credentials():
    """Fake AWS credentials so boto3 never reaches a real account."""
    env = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SECURITY_TOKEN': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1',
    }
    saved = {key: os.environ.get(key) for key in env}
    os.environ.update(env)
    yield
    for key, value in saved.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture
def dynamodb_tables():
    """Create mock meetings, audit and sync event tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        meetings = dynamodb.create_table(
            TableName='test-meetings',
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[
                {'AttributeName': 'id', 'AttributeType': 'S'},
                {'AttributeName': 'external_event_id', 'AttributeType': 'S'}
            ],
            GlobalSecondaryIndexes=[
                {
                    'IndexName': 'external-event-index',
                    'KeySchema': [
                        {'AttributeName': 'external_event_id', 'KeyType': 'HASH'}
                    ],
                    'Projection': {'ProjectionType': 'ALL'}
                }
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        audit = dynamodb.create_table(
            TableName='test-meeting-audit',
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
            BillingMode='PAY_PER_REQUEST'
        )

        sync_events = dynamodb.create_table(
            TableName='test-sync-events',
            KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
            AttributeDefinitions=[
                {'AttributeName': 'id', 'AttributeType': 'S'},
                {'AttributeName': 'processing_state', 'AttributeType': 'S'},
                {'AttributeName': 'created_at', 'AttributeType': 'S'}
            ],
            GlobalSecondaryIndexes=[
                {
                    'IndexName': 'processing-state-index',
                    'KeySchema': [
                        {'AttributeName': 'processing_state', 'KeyType': 'HASH'},
                        {'AttributeName': 'created_at', 'KeyType': 'RANGE'}
                    ],
                    'Projection': {'ProjectionType': 'ALL'}
                }
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield {'meetings': meetings, 'audit': audit, 'sync_events': sync_events}


@pytest.fixture
def meeting_store(dynamodb_tables):
    return MeetingStore('test-meetings', 'test-meeting-audit')


@pytest.fixture
def event_store(dynamodb_tables):
    return SyncEventStore('test-sync-events')


@pytest.fixture
def audit_records(dynamodb_tables):
    """Callable returning all audit records currently stored."""
    def _records():
        return dynamodb_tables['audit'].scan().get('Items', [])
    return _records


@pytest.fixture
def credentials():
    return RemoteCredentials(base_url=BASE_URL, username=USERNAME, password='app-password')


@pytest.fixture
def client():
    return CalendarResourceClient(timeout=5)


@pytest.fixture
def sample_meeting():
    return Meeting(
        id='m1',
        org_id='org-1',
        title='Weekly Sync',
        scheduled_at=datetime(2024, 1, 8, 15, 0, tzinfo=timezone.utc),
        duration_minutes=30,
        description='Agenda:\n- updates\n- blockers',
        location='Studio A',
        meeting_url='https://talk.example.com/call/abc',
        updated_at=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
    )


class FakeCalDAVServer:
    """In-memory CalDAV calendar home answering through responses callbacks."""

    def __init__(self, rsps: responses.RequestsMock):
        self.containers = set()
        self.events = {}
        self.failing_puts = {}
        self.mkcalendar_calls = 0

        container_url = re.compile(re.escape(CALENDAR_ROOT) + r'/([^/]+)/?$')
        event_url = re.compile(re.escape(CALENDAR_ROOT) + r'/([^/]+)/([^/]+)\.ics$')

        rsps.add_callback('PROPFIND', container_url, callback=self._propfind)
        rsps.add_callback('MKCALENDAR', container_url, callback=self._mkcalendar)
        rsps.add_callback('PUT', event_url, callback=self._put)
        rsps.add_callback('GET', event_url, callback=self._get)
        rsps.add_callback('DELETE', event_url, callback=self._delete)

    def event_text(self, container: str, event_id: str) -> str:
        return self.events[(container, event_id)]

    def set_event_text(self, container: str, event_id: str, text: str) -> None:
        self.events[(container, event_id)] = text

    def remove_event(self, container: str, event_id: str) -> None:
        del self.events[(container, event_id)]

    def _parts(self, request):
        path = unquote(request.url[len(CALENDAR_ROOT) + 1:])
        return path.rstrip('/').split('/')

    def _propfind(self, request):
        container = self._parts(request)[0]
        if container in self.containers:
            return (207, {'Content-Type': 'application/xml'}, '<d:multistatus xmlns:d="DAV:"/>')
        return (404, {}, '')

    def _mkcalendar(self, request):
        self.mkcalendar_calls += 1
        container = self._parts(request)[0]
        if container in self.containers:
            return (405, {}, 'The resource you tried to create already exists')
        self.containers.add(container)
        return (201, {}, '')

    def _put(self, request):
        container, name = self._parts(request)
        event_id = name[:-len('.ics')]
        if event_id in self.failing_puts:
            return (self.failing_puts[event_id], {}, 'Internal Server Error')
        if container not in self.containers:
            return (409, {}, 'Parent collection does not exist')
        body = request.body.decode('utf-8') if isinstance(request.body, bytes) else request.body
        created = (container, event_id) not in self.events
        self.events[(container, event_id)] = body
        return (201 if created else 204, {'ETag': f'"{len(body)}"'}, '')

    def _get(self, request):
        container, name = self._parts(request)
        text = self.events.get((container, name[:-len('.ics')]))
        if text is None:
            return (404, {}, '')
        return (200, {'Content-Type': 'text/calendar; charset=utf-8'}, text)

    def _delete(self, request):
        container, name = self._parts(request)
        if self.events.pop((container, name[:-len('.ics')]), None) is None:
            return (404, {}, '')
        return (204, {}, '')


@pytest.fixture
def fake_caldav(dynamodb_tables):
    """
    Stateful fake CalDAV server for the duration of one test.

    Depends on the DynamoDB mock so its request patch is installed on top of
    the one moto starts.
    """
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield FakeCalDAVServer(rsps)

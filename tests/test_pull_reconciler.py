"""Unit tests for PullReconciler."""
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from remote.caldav_client import CalendarResourceClient
from sync.models import CalendarEvent
from sync.pull_reconciler import (
    REMOTE_DELETE_ACTION,
    SYNC_FROM_REMOTE_ACTION,
    PullReconciler,
)

SYNCED_AT = datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_client():
    return Mock(spec=CalendarResourceClient)


@pytest.fixture
def reconciler(mock_client, meeting_store):
    return PullReconciler(mock_client, meeting_store)


@pytest.fixture
def linked_meeting(meeting_store, sample_meeting):
    sample_meeting.external_event_id = 'meeting-m1'
    sample_meeting.externally_synced = True
    sample_meeting.last_sync_at = SYNCED_AT
    meeting_store.put(sample_meeting)
    return sample_meeting


def _remote_copy(meeting, **overrides):
    fields = {
        'id': meeting.external_event_id,
        'summary': meeting.title,
        'description': meeting.description,
        'start': meeting.scheduled_at,
        'end': meeting.ends_at,
        'location': meeting.location,
        'url': meeting.meeting_url,
        'status': 'CONFIRMED',
    }
    fields.update(overrides)
    return CalendarEvent(**fields)


class TestReconcile:
    """Test cases for PullReconciler.reconcile."""

    def test_fetches_from_given_container(self, reconciler, mock_client, linked_meeting, credentials):
        mock_client.get_event.return_value = _remote_copy(linked_meeting)

        reconciler.reconcile('meeting-m1', credentials, 'board')

        mock_client.get_event.assert_called_once_with(credentials, 'board', 'meeting-m1')

    def test_unchanged_event_only_bumps_last_sync(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials, audit_records
    ):
        mock_client.get_event.return_value = _remote_copy(linked_meeting)

        outcome = reconciler.reconcile('meeting-m1', credentials)

        assert outcome.meeting_ids == ['m1']
        assert outcome.changed_fields == []
        fetched = meeting_store.get('m1')
        assert fetched.last_sync_at > SYNCED_AT
        assert fetched.updated_at == linked_meeting.updated_at
        assert fetched.title == 'Weekly Sync'
        assert audit_records() == []

    def test_remote_edit_is_applied(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials, audit_records
    ):
        mock_client.get_event.return_value = _remote_copy(
            linked_meeting,
            summary='Weekly Sync (moved)',
            start=datetime(2024, 1, 9, 16, 0, tzinfo=timezone.utc),
            end=datetime(2024, 1, 9, 17, 30, tzinfo=timezone.utc),
            location=None,
        )

        outcome = reconciler.reconcile('meeting-m1', credentials)

        assert outcome.changed_fields == ['title', 'scheduled_at', 'duration_minutes', 'location']
        fetched = meeting_store.get('m1')
        assert fetched.title == 'Weekly Sync (moved)'
        assert fetched.scheduled_at == datetime(2024, 1, 9, 16, 0, tzinfo=timezone.utc)
        assert fetched.duration_minutes == 90
        assert fetched.location is None
        assert fetched.description == linked_meeting.description
        assert fetched.updated_at == fetched.last_sync_at
        assert fetched.updated_at > linked_meeting.updated_at

        records = audit_records()
        assert len(records) == 1
        assert records[0]['action'] == SYNC_FROM_REMOTE_ACTION
        assert records[0]['resource_id'] == 'm1'
        metadata = json.loads(records[0]['metadata'])
        assert metadata['event_id'] == 'meeting-m1'
        assert metadata['changes'] == outcome.changed_fields

    def test_repeated_reconcile_is_idempotent(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials, audit_records
    ):
        mock_client.get_event.return_value = _remote_copy(linked_meeting, summary='Renamed')

        reconciler.reconcile('meeting-m1', credentials)
        first = meeting_store.get('m1')
        outcome = reconciler.reconcile('meeting-m1', credentials)
        second = meeting_store.get('m1')

        assert outcome.changed_fields == []
        assert second.title == first.title == 'Renamed'
        assert second.updated_at == first.updated_at
        assert len(audit_records()) == 1

    def test_missing_summary_keeps_local_title(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials
    ):
        mock_client.get_event.return_value = _remote_copy(linked_meeting, summary='')

        outcome = reconciler.reconcile('meeting-m1', credentials)

        assert outcome.changed_fields == []
        assert meeting_store.get('m1').title == 'Weekly Sync'

    def test_empty_strings_match_missing_values(
        self, reconciler, mock_client, meeting_store, sample_meeting, credentials
    ):
        sample_meeting.external_event_id = 'meeting-m1'
        sample_meeting.externally_synced = True
        sample_meeting.location = None
        meeting_store.put(sample_meeting)
        mock_client.get_event.return_value = _remote_copy(sample_meeting, location='')

        assert reconciler.reconcile('meeting-m1', credentials).changed_fields == []

    def test_event_without_end_keeps_duration(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials
    ):
        mock_client.get_event.return_value = _remote_copy(linked_meeting, end=None)

        assert reconciler.reconcile('meeting-m1', credentials).changed_fields == []
        assert meeting_store.get('m1').duration_minutes == 30

    def test_unknown_event_changes_nothing(self, reconciler, mock_client, meeting_store, credentials, audit_records):
        mock_client.get_event.return_value = CalendarEvent(
            id='stranger',
            summary='Not ours',
            start=datetime(2024, 1, 8, tzinfo=timezone.utc),
        )

        outcome = reconciler.reconcile('stranger', credentials)

        assert outcome.meeting_ids == []
        assert outcome.tombstoned is False
        assert audit_records() == []

    def test_missing_remote_event_tombstones(
        self, reconciler, mock_client, meeting_store, linked_meeting, credentials
    ):
        mock_client.get_event.return_value = None

        outcome = reconciler.reconcile('meeting-m1', credentials)

        assert outcome.tombstoned is True
        assert meeting_store.get('m1').status == 'cancelled'


class TestTombstone:
    """Test cases for PullReconciler.tombstone."""

    def test_tombstone_cancels_and_unlinks(self, reconciler, meeting_store, linked_meeting, audit_records):
        outcome = reconciler.tombstone('meeting-m1')

        assert outcome.meeting_ids == ['m1']
        fetched = meeting_store.get('m1')
        assert fetched.status == 'cancelled'
        assert fetched.externally_synced is False
        assert fetched.external_event_id == 'meeting-m1'
        assert fetched.updated_at > linked_meeting.updated_at

        records = audit_records()
        assert len(records) == 1
        assert records[0]['action'] == REMOTE_DELETE_ACTION
        assert json.loads(records[0]['metadata'])['previous_status'] == 'scheduled'

    def test_tombstone_twice_writes_once(self, reconciler, meeting_store, linked_meeting, audit_records):
        reconciler.tombstone('meeting-m1')
        first = meeting_store.get('m1')
        reconciler.tombstone('meeting-m1')

        assert meeting_store.get('m1') == first
        assert len(audit_records()) == 1

    def test_tombstone_unknown_event(self, reconciler, audit_records):
        outcome = reconciler.tombstone('nobody')

        assert outcome.meeting_ids == []
        assert audit_records() == []

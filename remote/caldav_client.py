"""CalDAV resource client for the remote calendar store."""
import logging
from dataclasses import replace
from typing import Optional
from xml.sax.saxutils import escape

import requests

from sync.errors import (
    RemoteAuthError,
    RemoteConflict,
    RemoteNotFound,
    RemoteTransportError,
)
from sync.ical_codec import ICalendarCodec
from sync.models import CalendarEvent, RemoteCredentials, ResourceRef

logger = logging.getLogger(__name__)


MKCALENDAR_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<C:mkcalendar xmlns:D="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">
  <D:set>
    <D:prop>
      <D:displayname>{display_name}</D:displayname>
      <C:calendar-description>{description}</C:calendar-description>
      <C:supported-calendar-component-set>
        <C:comp name="VEVENT"/>
      </C:supported-calendar-component-set>
    </D:prop>
  </D:set>
</C:mkcalendar>"""


class CalendarResourceClient:
    """
    Per-event CRUD against a CalDAV calendar collection.

    The client keeps no credential state; every call receives the
    credentials of the user whose calendar is addressed.
    """

    CALENDAR_ROOT = 'remote.php/dav/calendars'
    EVENT_EXTENSION = 'ics'

    def __init__(self, timeout: int = 30, codec: Optional[ICalendarCodec] = None):
        """
        Initialize the resource client.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            codec: iCalendar codec, a default ICalendarCodec when omitted
        """
        self.timeout = timeout
        self.codec = codec or ICalendarCodec()

    def container_url(self, credentials: RemoteCredentials, name: str) -> str:
        base_url = credentials.base_url.rstrip('/')
        return f"{base_url}/{self.CALENDAR_ROOT}/{credentials.username}/{name}"

    def event_url(self, credentials: RemoteCredentials, container: str, event_id: str) -> str:
        return f"{self.container_url(credentials, container)}/{event_id}.{self.EVENT_EXTENSION}"

    def container_exists(self, credentials: RemoteCredentials, name: str) -> bool:
        """
        Probe a calendar collection with a Depth 0 PROPFIND.

        Args:
            credentials: Remote credentials for the calendar owner
            name: Calendar (container) name

        Returns:
            True if the calendar exists, False on 404

        Raises:
            RemoteError: For any other unsuccessful response
        """
        url = self.container_url(credentials, name)
        logger.debug(f"Checking if calendar exists: {url}")

        try:
            self._request('PROPFIND', url, credentials, headers={'Depth': '0'})
        except RemoteNotFound:
            logger.info(f"Calendar does not exist: {name}")
            return False
        return True

    def create_container(
        self,
        credentials: RemoteCredentials,
        name: str,
        display_name: str = 'EAC Meetings',
        description: str = 'Meetings and gatherings from Elkdonis Arts Collective'
    ) -> None:
        """
        Create a calendar collection with MKCALENDAR.

        A 405 or 409 answer means the calendar is already there and is not
        treated as an error, so repeated or concurrent calls are safe.
        """
        url = self.container_url(credentials, name)
        body = MKCALENDAR_BODY.format(
            display_name=escape(display_name),
            description=escape(description)
        )
        logger.info(f"Creating calendar: {name} at {url}")

        try:
            self._request(
                'MKCALENDAR',
                url,
                credentials,
                headers={'Content-Type': 'application/xml; charset=utf-8'},
                data=body.encode('utf-8')
            )
        except RemoteConflict as e:
            logger.info(
                f"Calendar may already exist (status {e.status_code}), ignoring"
            )

    def ensure_container(self, credentials: RemoteCredentials, name: str) -> None:
        """Create the calendar if it does not exist yet."""
        if not self.container_exists(credentials, name):
            self.create_container(credentials, name)

    def put_event(
        self,
        credentials: RemoteCredentials,
        container: str,
        event: CalendarEvent
    ) -> ResourceRef:
        """
        Write an event to its resource URL, creating or replacing it.

        Args:
            credentials: Remote credentials for the calendar owner
            container: Calendar name
            event: Event to store; a UID is generated when event.id is unset

        Returns:
            ResourceRef with the event id and resource URL used
        """
        event_id = event.id or self.codec.generate_uid()
        if event.id != event_id:
            event = _with_id(event, event_id)

        url = self.event_url(credentials, container, event_id)
        logger.info(f"Writing event '{event.summary}' to {url}")

        self._request(
            'PUT',
            url,
            credentials,
            headers={'Content-Type': 'text/calendar; charset=utf-8'},
            data=self.codec.encode(event).encode('utf-8')
        )
        return ResourceRef(id=event_id, url=url)

    def get_event(
        self,
        credentials: RemoteCredentials,
        container: str,
        event_id: str
    ) -> Optional[CalendarEvent]:
        """
        Fetch and decode a single event.

        Returns:
            The decoded event with its resource id, or None if it does not exist

        Raises:
            RemoteError: For unsuccessful responses other than 404
            WireFormatError: If the stored data has no start time
        """
        url = self.event_url(credentials, container, event_id)

        try:
            response = self._request('GET', url, credentials)
        except RemoteNotFound:
            logger.info(f"Remote event not found: {event_id}")
            return None

        event = self.codec.decode(response.content.decode('utf-8', errors='replace'))
        return _with_id(event, event_id)

    def delete_event(
        self,
        credentials: RemoteCredentials,
        container: str,
        event_id: str
    ) -> bool:
        """
        Delete an event resource.

        Returns:
            True if the event was deleted, False if it was already gone
        """
        url = self.event_url(credentials, container, event_id)

        try:
            self._request('DELETE', url, credentials)
        except RemoteNotFound:
            logger.info(f"Remote event already deleted: {event_id}")
            return False
        return True

    def _request(
        self,
        method: str,
        url: str,
        credentials: RemoteCredentials,
        headers: Optional[dict] = None,
        data: Optional[bytes] = None
    ) -> requests.Response:
        """
        Issue an authenticated request and map failures to RemoteError types.

        Raises:
            RemoteNotFound: On 404
            RemoteAuthError: On 401 or 403
            RemoteConflict: On 405 or 409
            RemoteTransportError: On network errors, timeouts and other failures
        """
        try:
            response = requests.request(
                method,
                url,
                auth=(credentials.username, credentials.password),
                headers=headers,
                data=data,
                timeout=self.timeout
            )
        except requests.Timeout as e:
            logger.error(f"{method} {url} timed out after {self.timeout} seconds")
            raise RemoteTransportError(f"{method} {url} timed out") from e
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise RemoteTransportError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        logger.debug(f"{method} {url} -> {status}")
        if response.ok:
            return response

        message = f"{method} {url} returned {status}"
        if status == 404:
            raise RemoteNotFound(message, status)
        if status in (401, 403):
            raise RemoteAuthError(message, status)
        if status in (405, 409):
            raise RemoteConflict(message, status)

        logger.error(f"{message}: {response.text[:500]}")
        raise RemoteTransportError(message, status)


def _with_id(event: CalendarEvent, event_id: str) -> CalendarEvent:
    return replace(event, id=event_id)

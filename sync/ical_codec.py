"""iCalendar (RFC 5545) encoding and decoding for single calendar events."""
import logging
import random
import string
import time
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Alarm, Calendar, Event, vCalAddress, vRecur
from icalendar.prop import vInline

from sync.errors import WireFormatError
from sync.models import EVENT_STATUSES, CalendarEvent, Organizer, ensure_utc, utc_now

logger = logging.getLogger(__name__)


class ICalendarCodec:
    """
    Codec between CalendarEvent objects and VCALENDAR text.

    Content lines, escaping and folding are handled by the icalendar
    library; this class maps its components onto CalendarEvent.
    """

    PRODID = '-//Elkdonis Arts Collective//EAC Meetings//EN'
    UID_DOMAIN = 'eac'
    DEFAULT_DURATION = timedelta(hours=1)

    def encode(self, event: CalendarEvent) -> str:
        """
        Encode an event as a self-contained VCALENDAR document.

        Args:
            event: Event to encode. A UID is generated when event.id is unset.

        Returns:
            iCalendar text with CRLF line endings, folded at 75 octets
        """
        start = ensure_utc(event.start)
        end = ensure_utc(event.end) or start + self.DEFAULT_DURATION

        cal = Calendar()
        cal.add('prodid', self.PRODID)
        cal.add('version', '2.0')

        vevent = Event()
        vevent.add('uid', event.id or self.generate_uid())
        vevent.add('dtstamp', utc_now())
        vevent.add('dtstart', start)
        vevent.add('dtend', end)
        vevent.add('summary', event.summary)

        if event.description:
            vevent.add('description', event.description)
        if event.location:
            vevent.add('location', event.location)
        if event.status:
            vevent.add('status', event.status)
        if event.url:
            vevent.add('url', event.url)
        if event.organizer:
            organizer = vCalAddress(f'mailto:{event.organizer.email}')
            organizer.params['CN'] = event.organizer.name
            vevent.add('organizer', organizer, encode=False)
        for attendee in event.attendees:
            vevent.add('attendee', vCalAddress(f'mailto:{attendee}'), encode=False)
        if event.recurrence:
            vevent.add('rrule', vRecur.from_ical(event.recurrence))

        for minutes in event.reminders:
            alarm = Alarm()
            alarm.add('action', 'DISPLAY')
            alarm.add('description', event.summary or 'Reminder')
            # Minutes-only form, e.g. -PT60M rather than -PT1H
            alarm.add('trigger', vInline(f'-PT{minutes}M'), encode=False)
            vevent.add_component(alarm)

        cal.add_component(vevent)
        return cal.to_ical().decode('utf-8')

    def decode(self, text: str) -> CalendarEvent:
        """
        Decode VCALENDAR text into a CalendarEvent.

        Only properties of the first VEVENT are read; nested VALARM blocks
        contribute their triggers as reminders. Unknown properties and
        unparseable lines are ignored so newer server output still decodes.

        Args:
            text: iCalendar document or bare VEVENT block

        Returns:
            Decoded CalendarEvent

        Raises:
            WireFormatError: If no start time can be recovered
        """
        try:
            parsed = Calendar.from_ical(text)
        except ValueError as e:
            raise WireFormatError(f'Unreadable calendar data: {e}') from e

        vevents = parsed.walk('VEVENT')
        if not vevents:
            raise WireFormatError('Calendar data has no VEVENT')
        vevent = vevents[0]

        start = self._to_utc(vevent.get('dtstart'))
        if start is None:
            raise WireFormatError('Calendar data has no recoverable DTSTART')

        status = None
        if vevent.get('status') is not None:
            status = str(vevent.get('status')).strip().upper()
            if status not in EVENT_STATUSES:
                logger.debug(f"Ignoring unknown event status: {status}")
                status = None

        recurrence = None
        if vevent.get('rrule') is not None:
            recurrence = vevent.get('rrule').to_ical().decode('utf-8')

        reminders = []
        for alarm in vevent.walk('VALARM'):
            minutes = self._reminder_minutes(alarm.get('trigger'))
            if minutes is not None:
                reminders.append(minutes)

        return CalendarEvent(
            summary=self._text(vevent.get('summary')) or '',
            start=start,
            id=self._text(vevent.get('uid')),
            description=self._text(vevent.get('description')),
            end=self._to_utc(vevent.get('dtend')),
            location=self._text(vevent.get('location')),
            url=self._text(vevent.get('url')),
            status=status,
            organizer=self._organizer(vevent.get('organizer')),
            attendees=[self._strip_mailto(str(a)) for a in self._as_list(vevent.get('attendee'))],
            recurrence=recurrence,
            reminders=reminders,
        )

    def generate_uid(self) -> str:
        suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
        return f"{int(time.time() * 1000)}-{suffix}@{self.UID_DOMAIN}"

    def _to_utc(self, prop) -> Optional[datetime]:
        """
        Convert a DTSTART/DTEND property to an aware UTC datetime.

        Date-only values mean midnight UTC. A TZID the parser could not
        resolve is looked up through zoneinfo and falls back to UTC.
        """
        value = getattr(prop, 'dt', None)
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=self._zone(prop.params.get('TZID')))
            return value.astimezone(timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        return None

    def _zone(self, tzid: Optional[str]):
        if not tzid:
            return timezone.utc
        try:
            return ZoneInfo(tzid)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown TZID '{tzid}', assuming UTC")
            return timezone.utc

    def _reminder_minutes(self, trigger) -> Optional[int]:
        # Only relative triggers before the start become reminders
        offset = getattr(trigger, 'dt', None)
        if not isinstance(offset, timedelta) or offset > timedelta(0):
            return None
        return int(-offset.total_seconds() // 60)

    def _organizer(self, prop) -> Optional[Organizer]:
        if prop is None:
            return None
        email = self._strip_mailto(str(prop))
        name = prop.params.get('CN') if hasattr(prop, 'params') else None
        return Organizer(name=str(name) if name else email, email=email)

    def _text(self, prop) -> Optional[str]:
        return str(prop) if prop is not None else None

    def _as_list(self, prop) -> List:
        if prop is None:
            return []
        return prop if isinstance(prop, list) else [prop]

    def _strip_mailto(self, value: str) -> str:
        if value.lower().startswith('mailto:'):
            return value[len('mailto:'):]
        return value

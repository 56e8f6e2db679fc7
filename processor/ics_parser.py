"""iCalendar parsing adapter producing normalized remote events."""
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar

from processor.models import RemoteEvent

logger = logging.getLogger(__name__)


class IcsParseError(ValueError):
    """Raised when a payload is not a valid iCalendar document."""


class IcsParser:
    """Adapter from raw ICS text to RemoteEvent records."""

    PLACEHOLDER_TITLE = 'unavailable'

    def __init__(self, default_timezone: str = 'UTC'):
        """
        Initialize the parser.

        Args:
            default_timezone: IANA zone used for floating times when the
                calendar does not declare X-WR-TIMEZONE (default: UTC)
        """
        self.default_timezone = _load_zone(default_timezone) or timezone.utc

    def parse(self, ics_text: str) -> List[RemoteEvent]:
        """
        Parse ICS text into remote events, one per UID.

        Args:
            ics_text: Raw iCalendar document

        Returns:
            List of RemoteEvent objects in document order

        Raises:
            IcsParseError: If the text is not a VCALENDAR document
        """
        if not ics_text or not ics_text.strip():
            raise IcsParseError('The URL does not contain a valid iCalendar file')

        try:
            calendar = Calendar.from_ical(ics_text)
        except ValueError as e:
            raise IcsParseError(
                f'The URL does not contain a valid iCalendar file: {e}'
            ) from e

        if calendar.name != 'VCALENDAR':
            raise IcsParseError('The URL does not contain a valid iCalendar file')

        floating_zone = self._calendar_zone(calendar)
        events: Dict[str, RemoteEvent] = {}
        masters = set()
        skipped = 0

        for component in calendar.walk('VEVENT'):
            try:
                event = self._parse_component(component, floating_zone)
            except Exception as e:
                logger.warning(
                    f"Failed to parse VEVENT {_text(component.get('UID'))!r}: {e}"
                )
                event = None
            if event is None:
                skipped += 1
                continue

            is_override = 'RECURRENCE-ID' in component
            if event.external_id in events:
                # Keep the master over any recurrence override sharing its UID
                if is_override or event.external_id in masters:
                    continue
            events[event.external_id] = event
            if not is_override:
                masters.add(event.external_id)

        logger.info(
            f"Parsed {len(events)} events from ICS payload "
            f"({skipped} components skipped)"
        )
        return list(events.values())

    def _parse_component(self, component, floating_zone: tzinfo) -> Optional[RemoteEvent]:
        """
        Convert one VEVENT into a RemoteEvent.

        Returns:
            RemoteEvent, or None if the component is incomplete or a placeholder
        """
        uid = _text(component.get('UID'))
        summary = _text(component.get('SUMMARY'))
        start = _value(component.get('DTSTART'))

        if not uid or not summary or start is None:
            logger.warning(
                f"Skipping VEVENT missing uid, summary or start (uid={uid!r})"
            )
            return None

        description = _text(component.get('DESCRIPTION'))
        if description is not None and not description.strip():
            description = None

        if self.is_placeholder(summary, description):
            logger.debug(f"Skipping placeholder event {uid}")
            return None

        is_all_day = not isinstance(start, datetime)
        start_utc = self._to_utc(start, floating_zone)

        end = _value(component.get('DTEND'))
        if end is not None:
            end_utc = self._to_utc(end, floating_zone)
        else:
            duration = _value(component.get('DURATION'))
            end_utc = start_utc + duration if isinstance(duration, timedelta) else None

        return RemoteEvent(
            external_id=uid,
            title=summary,
            description=description,
            start_utc=start_utc,
            end_utc=end_utc,
            is_all_day=is_all_day
        )

    def is_placeholder(self, summary: str, description: Optional[str]) -> bool:
        """
        Check whether an event only blocks time rather than describing work.

        A summary of "unavailable" (any case, surrounding whitespace ignored)
        with no description is a scheduling placeholder.
        """
        return (
            summary.strip().lower() == self.PLACEHOLDER_TITLE
            and not (description and description.strip())
        )

    def _calendar_zone(self, calendar: Calendar) -> tzinfo:
        name = _text(calendar.get('X-WR-TIMEZONE'))
        if name:
            zone = _load_zone(name)
            if zone is not None:
                return zone
            logger.warning(f"Unknown X-WR-TIMEZONE {name!r}, using default")
        return self.default_timezone

    def _to_utc(self, value, floating_zone: tzinfo) -> datetime:
        if not isinstance(value, datetime):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        if value.tzinfo is None:
            value = value.replace(tzinfo=floating_zone)
        return value.astimezone(timezone.utc)


def _load_zone(name: str) -> Optional[tzinfo]:
    if name.upper() in ('UTC', 'Z', 'GMT'):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def _text(prop) -> Optional[str]:
    if prop is None:
        return None
    return str(prop)


def _value(prop):
    # Malformed date values come back as broken properties that raise on .dt
    try:
        value = getattr(prop, 'dt', None)
    except ValueError as e:
        logger.warning(f"Ignoring malformed property value {str(prop)!r}: {e}")
        return None
    if isinstance(value, (date, timedelta)):
        return value
    return None

"""Parser turning an ICS document into classified VEVENT records."""
import logging
import re
from datetime import date, datetime, timedelta, tzinfo
from typing import Dict, List, Optional

from icalendar import Calendar
from icalendar.parser import Contentlines

from processor.datetime_utils import localize, occurrence_key
from processor.models import (
    CalendarEvent,
    ExceptionEvent,
    Instant,
    MasterEvent,
    ParsedCalendar,
    SingleEvent,
)

logger = logging.getLogger(__name__)

_BR_TAG = re.compile(r'<br\s*/?>', re.IGNORECASE)

# Properties whose undecodable values are kept as raw text
RAW_FALLBACK_PROPERTIES = ('DTSTART', 'DTEND', 'RECURRENCE-ID', 'RRULE')


def clean_text(value) -> str:
    """Plain text of a decoded TEXT property; HTML line breaks become newlines."""
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return ''
    return _BR_TAG.sub('\n', str(value))


def rule_parts(recur) -> Dict[str, str]:
    """
    Flatten a decoded RRULE into its rule parts.

    Args:
        recur: icalendar vRecur value

    Returns:
        Mapping of part name to value, e.g. {'FREQ': 'WEEKLY', 'BYDAY': 'MO,WE'}
    """
    text = recur.to_ical()
    if isinstance(text, bytes):
        text = text.decode('utf-8')

    rule = {}
    for pair in text.split(';'):
        name, _, value = pair.partition('=')
        if name.strip():
            rule[name.strip().upper()] = value.strip()
    return rule


class IcsParser:
    """Parser for iCalendar documents."""

    def __init__(self, default_tz: tzinfo):
        """
        Initialize the parser.

        Args:
            default_tz: Site time zone for floating values and for output
        """
        self.default_tz = default_tz

    def parse(self, document: str, now: datetime) -> ParsedCalendar:
        """
        Parse an ICS document into masters, exceptions and single events.

        Master events keep DTSTART and DTEND in their own TZID so that
        expansion follows that zone. Everything else is expressed in the
        site zone.

        Args:
            document: Raw ICS text
            now: Reference instant; single events ending before it are dropped

        Returns:
            ParsedCalendar with the classified events
        """
        result = ParsedCalendar()
        # icalendar splits content lines on LF and CRLF only
        text = document.replace('\r\n', '\n').replace('\r', '\n')

        try:
            components = Calendar.from_ical(text, multiple=True)
        except ValueError as e:
            logger.error(f"Failed to parse ICS document: {e}")
            return result

        events = [event for component in components for event in component.walk('VEVENT')]
        raw_values = self.raw_values(text)

        for index, event in enumerate(events):
            raw = raw_values[index] if index < len(raw_values) else {}
            try:
                self._classify(event, raw, now, result)
            except Exception as e:
                logger.warning(f"Failed to parse VEVENT block: {e}")
                continue

        exception_count = sum(len(series) for series in result.exceptions.values())
        logger.info(
            f"Parsed {len(events)} VEVENT blocks: {len(result.masters)} recurring, "
            f"{exception_count} exceptions, {len(result.singles)} single events"
        )
        return result

    @staticmethod
    def raw_values(text: str) -> List[Dict[str, str]]:
        """
        Raw text of the date and rule properties of each VEVENT, in document order.

        icalendar leaves out property values it cannot decode. These let an
        event keep a malformed DTSTART as text instead of losing it.
        """
        blocks = []
        current = None
        depth = 0

        for line in Contentlines.from_ical(text):
            if not line:
                continue
            try:
                name, _, value = line.parts()
            except ValueError:
                continue
            name = name.upper()

            if name == 'BEGIN':
                if current is None and value.strip().upper() == 'VEVENT':
                    current = {}
                    blocks.append(current)
                    depth = 0
                elif current is not None:
                    depth += 1
            elif name == 'END':
                if current is not None:
                    if depth:
                        depth -= 1
                    else:
                        current = None
            elif current is not None and not depth and name in RAW_FALLBACK_PROPERTIES:
                current.setdefault(name, value.strip())

        return blocks

    def _instant(self, event, raw: Dict[str, str], name: str) -> Optional[Instant]:
        """Decoded value in its own zone, the raw text if undecodable, or None."""
        prop = event.get(name)
        if isinstance(prop, list):
            prop = prop[0] if prop else None

        value = getattr(prop, 'dt', None)
        if isinstance(value, date):
            return localize(value, prop.params.get('TZID'), self.default_tz)

        if name in raw:
            logger.warning(f"Failed to parse {name} token: {raw[name]}")
            return raw[name]
        return None

    def _in_site_zone(self, value: Optional[Instant]) -> Optional[Instant]:
        if isinstance(value, datetime):
            return value.astimezone(self.default_tz)
        return value

    def _classify(self, event, raw: Dict[str, str], now: datetime, result: ParsedCalendar) -> None:
        uid = str(event.get('UID', '')).strip()
        if not uid:
            summary = clean_text(event.get('SUMMARY'))
            logger.warning(f"Dropping VEVENT without UID: {summary!r}")
            return

        start = self._instant(event, raw, 'DTSTART')
        end = self._resolve_end(event, raw, start)

        last_modified = self._instant(event, raw, 'LAST-MODIFIED')
        if last_modified is None:
            last_modified = self._instant(event, raw, 'DTSTAMP')

        fields = dict(
            uid=uid,
            summary=clean_text(event.get('SUMMARY')),
            location=clean_text(event.get('LOCATION')),
            description=clean_text(event.get('DESCRIPTION')),
            start=start,
            end=end,
            last_modified=self._in_site_zone(last_modified),
        )

        if 'RECURRENCE-ID' in event or 'RECURRENCE-ID' in raw:
            key = occurrence_key(self._instant(event, raw, 'RECURRENCE-ID'))
            if not key:
                logger.warning(f"Dropping exception of '{uid}' with unparsable RECURRENCE-ID")
                return

            fields.update(start=self._in_site_zone(start), end=self._in_site_zone(end))
            exception = ExceptionEvent(
                recurrence_key=key,
                status=str(event.get('STATUS', '')).strip().upper(),
                **fields
            )
            series = result.exceptions.setdefault(uid, {})
            if supersedes(exception, series.get(key)):
                series[key] = exception

        elif 'RRULE' in event or 'RRULE' in raw:
            master = MasterEvent(
                rrule=self._rule(event, uid),
                exdate_keys=self._exdate_keys(event, uid),
                **fields
            )
            if supersedes(master, result.masters.get(uid)):
                result.masters[uid] = master

        else:
            fields.update(start=self._in_site_zone(start), end=self._in_site_zone(end))
            single = SingleEvent(**fields)
            if not isinstance(single.end, datetime):
                logger.warning(f"Skipping event '{uid}' without a usable end time")
            elif single.end > now:
                result.singles.append(single)
            else:
                logger.debug(f"Skipping past event '{uid}'")

    def _resolve_end(self, event, raw: Dict[str, str], start: Optional[Instant]) -> Optional[Instant]:
        """DTEND, else DTSTART + DURATION, else the RFC 5545 default length."""
        end = self._instant(event, raw, 'DTEND')
        if end is not None:
            return end
        if not isinstance(start, datetime):
            return start

        duration = getattr(event.get('DURATION'), 'dt', None)
        if isinstance(duration, timedelta):
            return start + duration

        decoded_start = getattr(event.get('DTSTART'), 'dt', None)
        if isinstance(decoded_start, date) and not isinstance(decoded_start, datetime):
            return start + timedelta(days=1)
        return start

    @staticmethod
    def _rule(event, uid: str) -> Dict[str, str]:
        recur = event.get('RRULE')
        if isinstance(recur, list):
            recur = recur[0] if recur else None
        # A decoded RRULE is a vRecur mapping
        if not isinstance(recur, dict):
            logger.warning(f"Ignoring unparsable RRULE of '{uid}'")
            return {}
        return rule_parts(recur)

    def _exdate_keys(self, event, uid: str) -> set:
        exdates = event.get('EXDATE', [])
        if not isinstance(exdates, list):
            exdates = [exdates]

        keys = set()
        for exdate in exdates:
            tzid = exdate.params.get('TZID')
            for item in exdate.dts:
                if isinstance(item.dt, date):
                    keys.add(occurrence_key(localize(item.dt, tzid, self.default_tz)))

        for name, message in getattr(event, 'errors', []):
            if name.upper() == 'EXDATE':
                logger.warning(f"Ignoring unparsable EXDATE of '{uid}': {message}")
        return keys


def supersedes(candidate: CalendarEvent, existing: Optional[CalendarEvent]) -> bool:
    """Latest LAST-MODIFIED wins; ties go to the later block."""
    if existing is None:
        return True

    new = candidate.last_modified if isinstance(candidate.last_modified, datetime) else None
    old = existing.last_modified if isinstance(existing.last_modified, datetime) else None

    if new is None:
        return old is None
    if old is None:
        return True
    return new >= old

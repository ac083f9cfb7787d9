"""Normalization of iCalendar DATE and DATE-TIME values."""
import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import vDDDTypes

from processor.models import Instant

logger = logging.getLogger(__name__)

OCCURRENCE_KEY_FORMAT = '%Y%m%dT%H%M%SZ'


def resolve_timezone(name: str) -> Optional[tzinfo]:
    """
    Look up an IANA time zone by name.

    Args:
        name: Zone name such as 'Europe/Berlin'

    Returns:
        The zone, or None if the name is unknown
    """
    if not name or not name.strip():
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def localize(value: date, tzid: Optional[str], default_tz: tzinfo) -> datetime:
    """
    Attach the zone a decoded DATE or DATE-TIME value belongs to.

    The wall-clock time is kept. TZID values get that zone, UTC values stay
    in UTC, and floating values and plain dates are placed in default_tz.
    An unknown TZID falls back to default_tz.
    """
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)

    if tzid:
        zone = resolve_timezone(tzid) or value.tzinfo
        if zone is None:
            logger.warning(f"Unknown time zone '{tzid}', using site time zone")
            zone = default_tz
        return value.replace(tzinfo=zone)

    if value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value.replace(tzinfo=default_tz)


def parse_datetime(
    value: Optional[str],
    default_tz: tzinfo,
    tzid: Optional[str] = None
) -> Optional[Instant]:
    """
    Convert an iCalendar date-time token into an aware datetime.

    Accepted forms are '20250106T180000Z' (UTC), floating '20250106T180000'
    and date-only '20250106', optionally qualified by a TZID. Results are
    expressed in default_tz. A token that cannot be decoded is returned
    unchanged so a single corrupt value does not abort the import.

    Args:
        value: Date-time token
        default_tz: Site time zone used for floating values and for output
        tzid: TZID parameter of the property, if any

    Returns:
        Aware datetime in default_tz, the raw token on failure, or None if empty
    """
    if value is None or not value.strip():
        return None

    try:
        decoded = vDDDTypes.from_ical(value.strip())
    except ValueError:
        decoded = None

    if not isinstance(decoded, date):
        logger.warning(f"Failed to parse date-time token: {value}")
        return value

    result = localize(decoded, tzid, default_tz).astimezone(default_tz)
    logger.debug(f"Date conversion: {value} -> {result.isoformat()}")
    return result


def occurrence_key(instant: Optional[Instant]) -> str:
    """
    Render an instant as a canonical UTC key (YYYYMMDDTHHMMSSZ).

    Two datetimes denoting the same moment produce the same key whatever
    zone they are expressed in. Naive datetimes are taken as UTC. Anything
    that is not a datetime yields an empty key.
    """
    if not isinstance(instant, datetime):
        return ''
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).strftime(OCCURRENCE_KEY_FORMAT)


def is_date_only(value: Optional[str]) -> bool:
    """Return True if the token carries a date without a time of day."""
    if not value:
        return False
    value = value.strip()
    return len(value) == 8 and value.isdigit()

"""
Recurrence expansion for master events.

Only a bounded near-future window is materialized: occurrences ending after
'now' and starting before min(now + lookahead, UNTIL), capped per series.
Rules are expanded by dateutil in the zone of DTSTART, so wall-clock times
follow that zone's DST transitions.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr

from processor.datetime_utils import is_date_only, occurrence_key, parse_datetime
from processor.models import MasterEvent, OccurrenceInstance

logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')

# Parts rewritten before the rule is handed to dateutil
_BOUND_PARTS = ('INTERVAL', 'COUNT', 'UNTIL')


def serialize_rrule(rule: Dict[str, str]) -> Optional[str]:
    """Serialize rule parts for storage alongside each instance."""
    return json.dumps(rule) if rule else None


class RecurrenceExpander:
    """Generates concrete occurrences of a master event."""

    DEFAULT_MAX_INSTANCES = 100

    def __init__(self, max_instances: int = DEFAULT_MAX_INSTANCES):
        """
        Initialize the expander.

        Args:
            max_instances: Upper bound on occurrences generated per series
        """
        self.max_instances = max_instances

    def expand(
        self,
        master: MasterEvent,
        lookahead_months: int,
        now: datetime
    ) -> List[OccurrenceInstance]:
        """
        Expand a master event into occurrence instances.

        Args:
            master: Recurring event with parsed RRULE parts
            lookahead_months: Size of the window after now (clamped to 1-12)
            now: Aware reference instant captured at the start of the run

        Returns:
            Instances in start order expressed in the zone of now, tagged
            with their occurrence key but without a composite uid
        """
        start = master.start
        if not isinstance(start, datetime):
            logger.warning(f"Cannot expand '{master.uid}': invalid DTSTART {start!r}")
            return []

        rule = master.rrule
        freq = rule.get('FREQ', '').upper()
        if freq not in SUPPORTED_FREQUENCIES:
            logger.warning(f"Unsupported recurrence frequency '{freq}' for '{master.uid}'")
            return []

        interval = max(1, self._int_part(rule, 'INTERVAL') or 1)
        limit = self.max_instances
        count = self._int_part(rule, 'COUNT')
        if count is not None:
            limit = min(limit, count)
        if limit <= 0:
            return []

        try:
            recurrence = rrulestr(self._rule_text(rule, interval, count), dtstart=start)
        except ValueError as e:
            logger.warning(f"Invalid recurrence rule for '{master.uid}': {e}")
            return []

        duration = timedelta(0)
        if isinstance(master.end, datetime) and master.end > start:
            duration = master.end - start

        horizon = self.horizon(master, lookahead_months, now)
        site_tz = now.tzinfo
        rrule_raw = serialize_rrule(rule)

        instances = []
        # Anything starting after now - duration ends after now
        for occurrence_start in recurrence.xafter(now - duration):
            if occurrence_start > horizon or len(instances) >= limit:
                break
            instances.append(OccurrenceInstance(
                uid='',
                summary=master.summary,
                location=master.location,
                description=master.description,
                start=occurrence_start.astimezone(site_tz),
                end=(occurrence_start + duration).astimezone(site_tz),
                last_modified=master.last_modified,
                rrule_raw=rrule_raw,
                recurrence_key=occurrence_key(occurrence_start)
            ))

        logger.debug(
            f"Expanded '{master.uid}' ({freq}, interval {interval}) "
            f"into {len(instances)} instances"
        )
        return instances

    def horizon(self, master: MasterEvent, lookahead_months: int, now: datetime) -> datetime:
        """End of the generation window: now + lookahead, or UNTIL if earlier."""
        months = max(1, min(12, int(lookahead_months)))
        horizon = now + relativedelta(months=months)

        until_raw = master.rrule.get('UNTIL')
        if not until_raw:
            return horizon

        zone = master.start.tzinfo if isinstance(master.start, datetime) else now.tzinfo
        until = parse_datetime(until_raw, zone)
        if not isinstance(until, datetime):
            logger.warning(f"Ignoring unparsable UNTIL '{until_raw}' of '{master.uid}'")
            return horizon

        # A date-only UNTIL includes the whole day
        if is_date_only(until_raw):
            until = until + timedelta(days=1) - timedelta(seconds=1)
        return min(horizon, until)

    @staticmethod
    def _rule_text(rule: Dict[str, str], interval: int, count: Optional[int]) -> str:
        """
        RRULE text for dateutil.

        UNTIL is left out and applied through the horizon instead, since a
        floating or date-only UNTIL cannot be combined with an aware DTSTART.
        """
        parts = [
            f"{name}={value}"
            for name, value in rule.items()
            if name not in _BOUND_PARTS
        ]
        parts.append(f"INTERVAL={interval}")
        if count is not None:
            parts.append(f"COUNT={count}")
        return ';'.join(parts).upper()

    @staticmethod
    def _int_part(rule: Dict[str, str], name: str) -> Optional[int]:
        value = rule.get(name)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {name}={value!r}")
            return None

"""Event processor turning an ICS document into storable occurrences."""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from processor.exceptions import EmptyDocumentError, NoEventsFoundError
from processor.datetime_utils import resolve_timezone
from processor.ics_parser import IcsParser, supersedes
from processor.models import (
    ImportBatch,
    ImportConfig,
    OccurrenceInstance,
    ParsedCalendar,
    SingleEvent,
)
from processor.reconciler import SERIES_SEPARATOR, reconcile
from processor.recurrence import RecurrenceExpander

logger = logging.getLogger(__name__)


class EventProcessor:
    """Runs parsing, recurrence expansion and reconciliation for one import."""

    def __init__(self, config: Optional[ImportConfig] = None):
        """
        Initialize the processor.

        Args:
            config: Import settings (defaults apply when omitted)
        """
        self.config = config or ImportConfig()

        site_tz = resolve_timezone(self.config.site_timezone)
        if site_tz is None:
            logger.warning(
                f"Unknown site time zone '{self.config.site_timezone}', using UTC"
            )
            site_tz = timezone.utc
        self.timezone = site_tz

        self.parser = IcsParser(self.timezone)
        self.expander = RecurrenceExpander(max_instances=self.config.max_instances)

    def current_time(self) -> datetime:
        """Current instant in the site time zone."""
        return datetime.now(self.timezone)

    def process_document(self, document: str, now: Optional[datetime] = None) -> ImportBatch:
        """
        Turn an ICS document into the flattened list of occurrences.

        Args:
            document: Raw ICS text
            now: Reference instant for the whole run (defaults to current time)

        Returns:
            ImportBatch with one instance per concrete occurrence

        Raises:
            EmptyDocumentError: If the document has no content
            NoEventsFoundError: If no usable events remain after processing
        """
        if not document or not document.strip():
            raise EmptyDocumentError('Empty ICS content received')

        now = (now or self.current_time()).astimezone(self.timezone)
        parsed = self.parser.parse(document, now)

        singles = self._single_instances(parsed.singles)
        recurring = self._series_instances(parsed, now)
        instances = singles + recurring

        orphaned = set(parsed.exceptions) - set(parsed.masters)
        if orphaned:
            logger.info(f"Ignoring exceptions of {len(orphaned)} series without a master event")

        if not instances:
            raise NoEventsFoundError('No events found in the ICS document')

        logger.info(
            f"Processed {len(instances)} events "
            f"({len(singles)} single, {len(recurring)} recurring instances)"
        )
        return ImportBatch(instances=instances, series_uids=set(parsed.masters))

    def _series_instances(self, parsed: ParsedCalendar, now: datetime) -> List[OccurrenceInstance]:
        instances = []
        for uid, master in parsed.masters.items():
            try:
                lookahead = self.config.lookahead_months
                generated = self.expander.expand(master, lookahead, now)
                instances.extend(reconcile(
                    master,
                    generated,
                    parsed.exceptions.get(uid, {}),
                    master.exdate_keys,
                    now,
                    self.expander.horizon(master, lookahead, now)
                ))
            except Exception as e:
                logger.warning(f"Failed to expand recurring event '{uid}': {e}")
                continue
        return instances

    def _single_instances(self, singles: List[SingleEvent]) -> List[OccurrenceInstance]:
        """Single events keyed by their raw UID, one per UID."""
        latest: Dict[str, SingleEvent] = {}
        for event in singles:
            if SERIES_SEPARATOR in event.uid:
                logger.warning(f"Skipping event with reserved character in UID: '{event.uid}'")
                continue
            if supersedes(event, latest.get(event.uid)):
                latest[event.uid] = event

        return [
            OccurrenceInstance(
                uid=event.uid,
                summary=event.summary,
                location=event.location,
                description=event.description,
                start=event.start,
                end=event.end,
                last_modified=event.last_modified
            )
            for event in latest.values()
        ]

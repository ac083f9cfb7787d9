"""Unit tests for EventProcessor."""
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from processor.event_processor import EventProcessor
from processor.exceptions import EmptyDocumentError, NoEventsFoundError
from processor.models import ImportConfig

UTC = timezone.utc

WEEKLY_MASTER = """
    UID:evt1
    SUMMARY:Weekly sync
    DTSTART:20250106T180000
    DTEND:20250106T190000
    LAST-MODIFIED:20241201T000000Z
    RRULE:FREQ=WEEKLY;BYDAY=MO
    EXDATE:20250113T180000
"""

NEW_YORK_MASTER = """
    UID:ny
    SUMMARY:Weekly sync
    DTSTART;TZID=America/New_York:20250106T180000
    DTEND;TZID=America/New_York:20250106T190000
    LAST-MODIFIED:20241201T000000Z
    RRULE:FREQ=WEEKLY;BYDAY=MO
    EXDATE;TZID=America/New_York:20250317T180000
"""


@pytest.fixture
def processor():
    return EventProcessor(ImportConfig(lookahead_months=1, site_timezone='UTC'))


class TestEventProcessor:
    """Test cases for EventProcessor class."""

    def test_weekly_series_with_exdate(self, processor, build_calendar, now):
        """Mondays in January except the excluded one."""
        batch = processor.process_document(build_calendar(WEEKLY_MASTER), now)

        assert sorted(instance.uid for instance in batch.instances) == [
            'evt1|20250106T180000Z',
            'evt1|20250120T180000Z',
            'evt1|20250127T180000Z',
        ]
        assert batch.series_uids == {'evt1'}

    def test_singles_and_series_are_flattened(self, processor, build_calendar, now):
        document = build_calendar(
            WEEKLY_MASTER,
            """
            UID:party
            SUMMARY:New year party
            DTSTART:20250110T200000Z
            DTEND:20250110T235900Z
            """,
            """
            UID:evt1
            RECURRENCE-ID:20250120T180000Z
            SUMMARY:Weekly sync (guests)
            DTSTART:20250120T180000Z
            DTEND:20250120T190000Z
            """,
            """
            UID:evt1
            RECURRENCE-ID:20250127T180000Z
            STATUS:CANCELLED
            DTSTART:20250127T180000Z
            DTEND:20250127T190000Z
            """
        )

        batch = processor.process_document(document, now)
        instances = {instance.uid: instance for instance in batch.instances}

        assert sorted(instances) == [
            'evt1|20250106T180000Z',
            'evt1|20250120T180000Z',
            'party',
        ]
        assert instances['evt1|20250120T180000Z'].summary == 'Weekly sync (guests)'
        assert instances['evt1|20250106T180000Z'].summary == 'Weekly sync'
        assert instances['party'].rrule_raw is None

    def test_same_document_gives_same_identities(self, processor, build_calendar, now):
        document = build_calendar(WEEKLY_MASTER)

        first = processor.process_document(document, now)
        second = processor.process_document(document, now)

        assert [i.uid for i in first.instances] == [i.uid for i in second.instances]
        assert [i.last_modified for i in first.instances] == [
            i.last_modified for i in second.instances
        ]

    def test_site_timezone_applies_to_floating_times(self, build_calendar, now):
        processor = EventProcessor(
            ImportConfig(lookahead_months=1, site_timezone='Europe/Berlin')
        )

        batch = processor.process_document(build_calendar(WEEKLY_MASTER), now)

        assert 'evt1|20250106T170000Z' in {instance.uid for instance in batch.instances}
        assert all(
            instance.start.tzinfo == ZoneInfo('Europe/Berlin') for instance in batch.instances
        )

    def test_series_in_other_zone_keeps_its_wall_clock_across_dst(
        self, processor, build_calendar
    ):
        """A New York series on a UTC site moves by one hour in UTC after March 9."""
        document = build_calendar(NEW_YORK_MASTER)

        batch = processor.process_document(document, datetime(2025, 3, 1, tzinfo=UTC))
        instances = {instance.uid: instance for instance in batch.instances}

        assert sorted(instances) == [
            'ny|20250303T230000Z',
            'ny|20250310T220000Z',
            'ny|20250324T220000Z',
            'ny|20250331T220000Z',
        ]
        assert instances['ny|20250310T220000Z'].start == datetime(2025, 3, 10, 22, 0, tzinfo=UTC)
        assert instances['ny|20250310T220000Z'].end == datetime(2025, 3, 10, 23, 0, tzinfo=UTC)

    def test_override_in_other_zone_matches_after_dst(self, processor, build_calendar):
        document = build_calendar(
            NEW_YORK_MASTER,
            """
            UID:ny
            RECURRENCE-ID;TZID=America/New_York:20250324T180000
            SUMMARY:Sync with guests
            LAST-MODIFIED:20250201T000000Z
            DTSTART;TZID=America/New_York:20250324T190000
            DTEND;TZID=America/New_York:20250324T210000
            """
        )

        batch = processor.process_document(document, datetime(2025, 3, 1, tzinfo=UTC))
        instances = {instance.uid: instance for instance in batch.instances}

        assert len(instances) == 4
        moved = instances['ny|20250324T220000Z']
        assert moved.summary == 'Sync with guests'
        assert moved.start == datetime(2025, 3, 24, 23, 0, tzinfo=UTC)
        assert instances['ny|20250331T220000Z'].summary == 'Weekly sync'

    def test_series_in_other_zone_on_berlin_site(self, build_calendar):
        processor = EventProcessor(
            ImportConfig(lookahead_months=1, site_timezone='Europe/Berlin')
        )

        batch = processor.process_document(
            build_calendar(NEW_YORK_MASTER), datetime(2025, 3, 1, tzinfo=UTC)
        )
        starts = {instance.uid: instance.start for instance in batch.instances}

        # Berlin moves to summer time on March 30, New York on March 9
        assert starts['ny|20250303T230000Z'].hour == 0
        assert starts['ny|20250310T220000Z'].hour == 23
        assert starts['ny|20250331T220000Z'].hour == 0
        assert all(start.tzinfo == ZoneInfo('Europe/Berlin') for start in starts.values())

    def test_unknown_site_timezone_falls_back_to_utc(self):
        processor = EventProcessor(ImportConfig(site_timezone='Nowhere/City'))
        assert processor.timezone == UTC

    def test_malformed_date_does_not_abort_import(self, processor, build_calendar, now):
        document = build_calendar(
            """
            UID:broken-series
            DTSTART:2025-13-45
            DTEND:20250106T190000Z
            RRULE:FREQ=DAILY
            """,
            """
            UID:broken-single
            DTSTART:xx
            DTEND:20250110T150000Z
            """,
            """
            UID:fine
            DTSTART:20250110T140000Z
            DTEND:20250110T150000Z
            """
        )

        batch = processor.process_document(document, now)
        instances = {instance.uid: instance for instance in batch.instances}

        assert set(instances) == {'broken-single', 'fine'}
        assert instances['broken-single'].start == 'xx'
        assert batch.series_uids == {'broken-series'}

    def test_duplicate_single_uid_keeps_latest(self, processor, build_calendar, now):
        document = build_calendar(
            """
            UID:dup
            SUMMARY:Later edit
            LAST-MODIFIED:20241220T000000Z
            DTSTART:20250110T140000Z
            DTEND:20250110T150000Z
            """,
            """
            UID:dup
            SUMMARY:Earlier edit
            LAST-MODIFIED:20241210T000000Z
            DTSTART:20250110T140000Z
            DTEND:20250110T150000Z
            """
        )

        batch = processor.process_document(document, now)

        assert len(batch.instances) == 1
        assert batch.instances[0].summary == 'Later edit'

    def test_exceptions_without_master_are_ignored(self, processor, build_calendar, now):
        document = build_calendar(
            """
            UID:orphan
            RECURRENCE-ID:20250120T180000Z
            DTSTART:20250120T180000Z
            DTEND:20250120T190000Z
            """,
            """
            UID:fine
            DTSTART:20250110T140000Z
            DTEND:20250110T150000Z
            """
        )

        batch = processor.process_document(document, now)

        assert [instance.uid for instance in batch.instances] == ['fine']

    def test_series_with_every_occurrence_cancelled_is_still_reported(
        self, processor, build_calendar, now
    ):
        document = build_calendar(
            """
            UID:once
            DTSTART:20250106T180000Z
            DTEND:20250106T190000Z
            RRULE:FREQ=WEEKLY;COUNT=1
            """,
            """
            UID:once
            RECURRENCE-ID:20250106T180000Z
            STATUS:CANCELLED
            """,
            """
            UID:fine
            DTSTART:20250110T140000Z
            DTEND:20250110T150000Z
            """
        )

        batch = processor.process_document(document, now)

        assert [instance.uid for instance in batch.instances] == ['fine']
        assert batch.series_uids == {'once'}

    @pytest.mark.parametrize('document', ['', '   \r\n  '])
    def test_empty_document(self, processor, document, now):
        with pytest.raises(EmptyDocumentError):
            processor.process_document(document, now)

    def test_document_without_events(self, processor, build_calendar, now):
        document = build_calendar("""
            UID:past
            DTSTART:20241201T100000Z
            DTEND:20241201T110000Z
        """)

        with pytest.raises(NoEventsFoundError) as exc_info:
            processor.process_document(document, now)

        assert exc_info.value.reason == 'No events found in the ICS document'

    def test_current_time_is_in_site_timezone(self):
        processor = EventProcessor(ImportConfig(site_timezone='America/New_York'))

        current = processor.current_time()

        assert current.tzinfo == ZoneInfo('America/New_York')
        assert abs((datetime.now(UTC) - current).total_seconds()) < 60


class TestImportConfig:
    """Test cases for ImportConfig validation."""

    def test_defaults(self):
        config = ImportConfig()

        assert config.lookahead_months == 3
        assert config.site_timezone == 'UTC'
        assert config.retention_days == 30
        assert config.max_instances == 100

    @pytest.mark.parametrize('value, expected', [(0, 1), (-5, 1), (6, 6), (13, 12), ('4', 4)])
    def test_lookahead_is_clamped(self, value, expected):
        assert ImportConfig(lookahead_months=value).lookahead_months == expected

    def test_negative_retention_becomes_zero(self):
        assert ImportConfig(retention_days=-1).retention_days == 0

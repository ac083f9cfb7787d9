"""Data models for calendar import and storage."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Union

# A parsed instant, or the raw token when it could not be parsed
Instant = Union[datetime, str]


@dataclass
class ImportConfig:
    """Settings for one import run."""
    lookahead_months: int = 3
    site_timezone: str = 'UTC'
    retention_days: int = 30
    max_instances: int = 100

    def __post_init__(self):
        self.lookahead_months = max(1, min(12, int(self.lookahead_months)))
        self.retention_days = max(0, int(self.retention_days))
        self.max_instances = max(1, int(self.max_instances))


@dataclass
class CalendarEvent:
    """Fields shared by every VEVENT variant."""
    uid: str
    summary: str = ''
    location: str = ''
    description: str = ''
    start: Optional[Instant] = None
    end: Optional[Instant] = None
    last_modified: Optional[Instant] = None


@dataclass
class MasterEvent(CalendarEvent):
    """Recurring event template carrying an RRULE."""
    rrule: Dict[str, str] = field(default_factory=dict)
    exdate_keys: Set[str] = field(default_factory=set)


@dataclass
class ExceptionEvent(CalendarEvent):
    """Override of a single occurrence, identified by RECURRENCE-ID."""
    recurrence_key: str = ''
    status: str = ''

    @property
    def is_cancelled(self) -> bool:
        return self.status == 'CANCELLED'


@dataclass
class SingleEvent(CalendarEvent):
    """Non-recurring event."""


@dataclass
class ParsedCalendar:
    """Classified VEVENT blocks of one document."""
    masters: Dict[str, MasterEvent] = field(default_factory=dict)
    exceptions: Dict[str, Dict[str, ExceptionEvent]] = field(default_factory=dict)
    singles: List[SingleEvent] = field(default_factory=list)


@dataclass
class OccurrenceInstance:
    """One concrete event handed to the store."""
    uid: str
    summary: str
    location: str
    description: str
    start: Instant
    end: Instant
    last_modified: Optional[Instant]
    rrule_raw: Optional[str] = None
    recurrence_key: Optional[str] = None


@dataclass
class ImportBatch:
    """Flattened instances of one import plus the series seen in it."""
    instances: List[OccurrenceInstance]
    series_uids: Set[str]


@dataclass
class StoredEvent:
    """Event row as persisted in DynamoDB."""
    event_id: str
    uid: str
    summary: str
    location: str
    description: str
    start: Instant
    end: Instant
    last_modified: Optional[Instant]
    rrule: Optional[str]


@dataclass
class SyncResult:
    """Result of sync operation."""
    added: int
    updated: int
    deleted: int
    errors: list[str]

    @property
    def imported(self) -> int:
        return self.added + self.updated

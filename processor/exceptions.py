"""Errors that abort a calendar import run."""


class CalendarImportError(Exception):
    """Base class for failures that leave stored events untouched."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class FetchFailure(CalendarImportError):
    """The ICS document could not be retrieved."""


class EmptyDocumentError(CalendarImportError):
    """The ICS document was retrieved but has no content."""


class NoEventsFoundError(CalendarImportError):
    """The ICS document parsed but produced no usable events."""

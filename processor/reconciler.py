"""Merging of EXDATE exclusions and RECURRENCE-ID overrides into a series."""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Set

from processor.models import ExceptionEvent, MasterEvent, OccurrenceInstance
from processor.recurrence import serialize_rrule

logger = logging.getLogger(__name__)

SERIES_SEPARATOR = '|'


def composite_uid(base_uid: str, recurrence_key: str) -> str:
    """Identity of one occurrence of a recurring series."""
    return f"{base_uid}{SERIES_SEPARATOR}{recurrence_key}"


def reconcile(
    master: MasterEvent,
    generated: List[OccurrenceInstance],
    exceptions: Dict[str, ExceptionEvent],
    exdate_keys: Set[str],
    now: Optional[datetime] = None,
    horizon: Optional[datetime] = None
) -> List[OccurrenceInstance]:
    """
    Build the final occurrence list of one series.

    Generated occurrences listed in exdate_keys are dropped. Exceptions then
    replace the occurrence sharing their key, or remove it when cancelled.
    An exception whose slot was not generated is added when it ends after
    now and starts no later than horizon, so an occurrence moved into the
    window still appears.

    Args:
        master: Series master
        generated: Output of the recurrence expander for this master
        exceptions: Exceptions of this series keyed by occurrence key
        exdate_keys: Occurrence keys excluded by EXDATE
        now: Reference instant of the run
        horizon: End of the generation window

    Returns:
        Instances carrying their composite uid, in no particular order
    """
    by_key = {
        instance.recurrence_key: instance
        for instance in generated
        if instance.recurrence_key not in exdate_keys
    }
    excluded = len(generated) - len(by_key)

    rrule_raw = serialize_rrule(master.rrule)
    for key, exception in exceptions.items():
        if exception.is_cancelled:
            if by_key.pop(key, None) is not None:
                logger.debug(f"Cancelled occurrence {key} of '{master.uid}'")
            continue

        if key not in by_key and not _in_window(exception, now, horizon):
            continue

        by_key[key] = OccurrenceInstance(
            uid='',
            summary=exception.summary,
            location=exception.location,
            description=exception.description,
            start=exception.start,
            end=exception.end,
            last_modified=exception.last_modified,
            rrule_raw=rrule_raw,
            recurrence_key=key
        )

    instances = [
        replace(instance, uid=composite_uid(master.uid, key))
        for key, instance in by_key.items()
    ]

    if excluded:
        logger.debug(f"Excluded {excluded} occurrences of '{master.uid}' via EXDATE")
    return instances


def _in_window(
    exception: ExceptionEvent,
    now: Optional[datetime],
    horizon: Optional[datetime]
) -> bool:
    if now is not None and not (isinstance(exception.end, datetime) and exception.end > now):
        return False
    if horizon is not None and not (
        isinstance(exception.start, datetime) and exception.start <= horizon
    ):
        return False
    return True

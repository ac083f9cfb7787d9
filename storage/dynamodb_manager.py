"""DynamoDB manager for event storage operations."""
import hashlib
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

import boto3
from botocore.exceptions import ClientError

from processor.models import Instant, OccurrenceInstance, StoredEvent, SyncResult
from processor.reconciler import SERIES_SEPARATOR

logger = logging.getLogger(__name__)


def format_instant(value: Optional[Instant]) -> Optional[str]:
    """Serialize an instant for storage; unparsed tokens are kept verbatim."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def parse_instant(value: Optional[str]) -> Optional[Instant]:
    """Inverse of format_instant."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return value


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table (hash key 'uid')
            region_name: AWS region, defaults to the environment's
        """
        self.table_name = table_name
        if region_name:
            self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        else:
            self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def get_all_events(self) -> Dict[str, StoredEvent]:
        """
        Retrieve all events from DynamoDB using Scan operation.

        Returns:
            Dictionary mapping composite uid to StoredEvent objects
        """
        logger.info("Scanning DynamoDB table for all events")
        events = {}

        try:
            response = self.table.scan()
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))

            for item in items:
                event = self._item_to_stored_event(item)
                if event:
                    events[event.uid] = event

            logger.info(f"Retrieved {len(events)} events from DynamoDB")
            return events

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

    def get_upcoming_events(self, now: datetime, limit: int = 0) -> List[StoredEvent]:
        """
        Events that have not ended yet, sorted by start time ascending.

        Args:
            now: Reference instant
            limit: Maximum number of events to return (0 for no limit)

        Returns:
            List of StoredEvent objects
        """
        upcoming = [
            event for event in self.get_all_events().values()
            if isinstance(event.end, datetime) and event.end >= now
        ]
        upcoming.sort(
            key=lambda event: event.start if isinstance(event.start, datetime) else event.end
        )
        return upcoming[:limit] if limit > 0 else upcoming

    def sync_events(
        self,
        instances: List[OccurrenceInstance],
        retention_cutoff: datetime,
        series_uids: Optional[Set[str]] = None
    ) -> SyncResult:
        """
        Synchronize occurrence instances with DynamoDB.

        New uids are inserted and known uids are rewritten when the incoming
        last_modified is strictly newer. Stored occurrences of a series that
        were not regenerated are removed, as are rows that ended before the
        retention cutoff. When series_uids is given, occurrences of series
        that no longer exist in the feed are removed as well.

        Args:
            instances: Flattened occurrences of the current import
            retention_cutoff: Rows ending before this instant are deleted
            series_uids: Base UIDs of all recurring events in the import

        Returns:
            SyncResult with counts of added, updated, deleted events
        """
        logger.info(f"Starting sync process with {len(instances)} events")
        errors = []

        try:
            existing_events = self.get_all_events()
            incoming = {instance.uid: instance for instance in instances}

            events_to_add = [
                instance for uid, instance in incoming.items()
                if uid not in existing_events
            ]

            events_to_update = [
                instance for uid, instance in incoming.items()
                if uid in existing_events and
                self._is_newer(instance.last_modified, existing_events[uid].last_modified)
            ]

            uids_to_delete = (
                self._stale_series_uids(existing_events, incoming, series_uids) |
                self._expired_uids(existing_events, retention_cutoff)
            ) - incoming.keys()

            logger.info(
                f"Sync plan: {len(events_to_add)} to add, "
                f"{len(events_to_update)} to update, "
                f"{len(uids_to_delete)} to delete"
            )

            added_count = self.write_events(events_to_add, errors)
            updated_count = self.write_events(events_to_update, errors)
            deleted_count = self.batch_delete_events(sorted(uids_to_delete))

            logger.info(
                f"Sync complete: {added_count} added, {updated_count} updated, "
                f"{deleted_count} deleted"
            )

            return SyncResult(
                added=added_count,
                updated=updated_count,
                deleted=deleted_count,
                errors=errors
            )

        except Exception as e:
            error_msg = f"Error during sync operation: {e}"
            logger.error(error_msg)
            errors.append(error_msg)
            return SyncResult(added=0, updated=0, deleted=0, errors=errors)

    def write_events(self, instances: Iterable[OccurrenceInstance], errors: List[str]) -> int:
        """
        Write events one item at a time so a rejected row does not stop the rest.

        Args:
            instances: Occurrences to insert or replace
            errors: Receives a message for every failed write

        Returns:
            Count of successfully written events
        """
        success_count = 0

        for instance in instances:
            try:
                self.table.put_item(Item=self._instance_to_item(instance))
                success_count += 1
            except ClientError as e:
                error_msg = f"Error writing event '{instance.uid}': {e}"
                logger.error(error_msg)
                errors.append(error_msg)
                continue

        return success_count

    def batch_delete_events(self, uids: List[str]) -> int:
        """
        Delete events from DynamoDB in batches of 25 items.

        Args:
            uids: List of composite uids to delete

        Returns:
            Count of successfully deleted events
        """
        if not uids:
            return 0

        logger.info(f"Deleting {len(uids)} events from DynamoDB")
        success_count = 0

        for i in range(0, len(uids), self.BATCH_SIZE):
            batch = uids[i:i + self.BATCH_SIZE]

            try:
                with self.table.batch_writer() as writer:
                    for uid in batch:
                        writer.delete_item(Key={'uid': uid})
                success_count += len(batch)

            except ClientError as e:
                logger.error(
                    f"Error deleting batch {i // self.BATCH_SIZE + 1}: {e}"
                )
                continue

        logger.info(f"Successfully deleted {success_count} events")
        return success_count

    @staticmethod
    def generate_event_id(uid: str) -> str:
        """
        Surrogate identifier for a stored event (SHA256 of its composite uid).

        Args:
            uid: Composite uid of the event

        Returns:
            64 character hex digest
        """
        return hashlib.sha256(uid.encode('utf-8')).hexdigest()

    @staticmethod
    def _is_newer(incoming: Optional[Instant], stored: Optional[Instant]) -> bool:
        """True if the incoming last_modified is strictly later than the stored one."""
        if not isinstance(incoming, datetime):
            return False
        if not isinstance(stored, datetime):
            return True
        return stored < incoming

    @staticmethod
    def _stale_series_uids(
        existing_events: Dict[str, StoredEvent],
        incoming: Dict[str, OccurrenceInstance],
        series_uids: Optional[Set[str]]
    ) -> Set[str]:
        """Stored series occurrences that the current import no longer produces."""
        prune_removed_series = series_uids is not None
        if series_uids is None:
            series_uids = {
                uid.split(SERIES_SEPARATOR, 1)[0]
                for uid in incoming if SERIES_SEPARATOR in uid
            }

        stale = set()
        for uid in existing_events:
            if SERIES_SEPARATOR not in uid or uid in incoming:
                continue
            base_uid = uid.split(SERIES_SEPARATOR, 1)[0]
            if base_uid in series_uids or prune_removed_series:
                stale.add(uid)
        return stale

    @staticmethod
    def _expired_uids(existing_events: Dict[str, StoredEvent], cutoff: datetime) -> Set[str]:
        return {
            uid for uid, event in existing_events.items()
            if isinstance(event.end, datetime) and event.end < cutoff
        }

    def _item_to_stored_event(self, item: dict) -> Optional[StoredEvent]:
        """
        Convert DynamoDB item to StoredEvent object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            StoredEvent object or None if conversion fails
        """
        try:
            return StoredEvent(
                event_id=item.get('event_id') or self.generate_event_id(item['uid']),
                uid=item['uid'],
                summary=item.get('summary', ''),
                location=item.get('location', ''),
                description=item.get('description', ''),
                start=parse_instant(item['start_time']),
                end=parse_instant(item['end_time']),
                last_modified=parse_instant(item.get('last_modified')),
                rrule=item.get('rrule')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to StoredEvent: missing {e}")
            return None

    def _instance_to_item(self, instance: OccurrenceInstance) -> dict:
        """
        Convert OccurrenceInstance to DynamoDB item.

        Args:
            instance: OccurrenceInstance object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'uid': instance.uid,
            'event_id': self.generate_event_id(instance.uid),
            'summary': instance.summary,
            'location': instance.location,
            'description': instance.description,
            'start_time': format_instant(instance.start) or '',
            'end_time': format_instant(instance.end) or ''
        }

        # Add optional fields if present
        if instance.last_modified is not None:
            item['last_modified'] = format_instant(instance.last_modified)
        if instance.rrule_raw:
            item['rrule'] = instance.rrule_raw

        return item

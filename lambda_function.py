"""AWS Lambda handler for ICS Calendar Sync."""
import json
import logging
import os
import time
from datetime import timedelta
from typing import Dict, Any

from fetcher.ics_feed import IcsFeedFetcher
from processor.event_processor import EventProcessor
from processor.exceptions import CalendarImportError
from processor.models import ImportConfig
from storage.dynamodb_manager import DynamoDBManager, format_instant

# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_config() -> ImportConfig:
    """Build the import settings from environment variables."""
    return ImportConfig(
        lookahead_months=int(os.environ.get('LOOKAHEAD_MONTHS', '3')),
        site_timezone=os.environ.get('SITE_TIMEZONE', 'UTC'),
        retention_days=int(os.environ.get('RETENTION_DAYS', '30')),
        max_instances=int(os.environ.get('MAX_INSTANCES', '100'))
    )


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def export_events(dynamodb_manager: DynamoDBManager, now, limit: int = 0) -> Dict[str, Any]:
    """
    Build the response listing stored events that have not ended.

    Args:
        dynamodb_manager: Store to read from
        now: Reference instant
        limit: Maximum number of events (0 for all)

    Returns:
        Response dict with the events sorted by start time
    """
    events = dynamodb_manager.get_upcoming_events(now, limit=limit)
    return _response(200, {
        'status': 'success',
        'generated': now.isoformat(),
        'count': len(events),
        'events': [
            {
                'id': event.event_id,
                'title': event.summary,
                'start': format_instant(event.start),
                'end': format_instant(event.end),
                'location': event.location,
                'description': event.description,
                'uid': event.uid
            }
            for event in events
        ]
    })


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for ICS Calendar Sync.

    The default action imports the configured feed; {"action": "export"}
    returns the upcoming stored events instead.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    # Read configuration from environment variables
    ics_url = os.environ.get('ICS_URL', '')
    table_name = os.environ.get('TABLE_NAME', 'calendar-events')
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    timeout_seconds = int(os.environ.get('TIMEOUT_SECONDS', '30'))
    action = (event or {}).get('action', 'sync')

    # Initialize logging
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()

    try:
        config = load_config()
        logger.info(
            f"Lambda execution started",
            extra={
                'action': action,
                'table_name': table_name,
                'lookahead_months': config.lookahead_months,
                'site_timezone': config.site_timezone,
                'retention_days': config.retention_days
            }
        )

        # Instantiate components
        processor = EventProcessor(config)
        dynamodb_manager = DynamoDBManager(table_name=table_name)

        # Single reference instant for the whole run
        now = processor.current_time()

        if action == 'export':
            return export_events(dynamodb_manager, now, int((event or {}).get('limit', 0)))

        fetcher = IcsFeedFetcher(ics_url, timeout=timeout_seconds)

        # Fetch and process; failures here leave stored events untouched
        try:
            logger.info("Fetching ICS feed")
            document = fetcher.fetch_document()

            logger.info("Processing calendar events")
            batch = processor.process_document(document, now)
        except CalendarImportError as e:
            logger.error(
                f"Import aborted: {e.reason}",
                extra={'error_type': type(e).__name__}
            )
            duration = time.time() - start_time
            return _response(500, {
                'message': 'Import aborted',
                'error': e.reason,
                'error_type': type(e).__name__,
                'note': 'Previous events remain in DynamoDB',
                'duration_seconds': round(duration, 2)
            })

        # Synchronize with DynamoDB with error handling
        try:
            logger.info("Synchronizing events with DynamoDB")
            sync_result = dynamodb_manager.sync_events(
                batch.instances,
                retention_cutoff=now - timedelta(days=config.retention_days),
                series_uids=batch.series_uids
            )
        except Exception as e:
            logger.error(
                f"Error during DynamoDB sync operation: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            duration = time.time() - start_time
            return _response(500, {
                'message': 'Failed to sync events with DynamoDB',
                'error': str(e),
                'error_type': type(e).__name__,
                'note': 'Previous events remain in DynamoDB',
                'duration_seconds': round(duration, 2)
            })

        duration = time.time() - start_time

        logger.info(
            f"Lambda execution completed successfully",
            extra={
                'duration_seconds': round(duration, 2),
                'imported_count': sync_result.imported,
                'deleted_count': sync_result.deleted,
                'errors': sync_result.errors
            }
        )

        return _response(200, {
            'message': 'Sync completed successfully',
            'statistics': {
                'events_processed': len(batch.instances),
                'recurring_series': len(batch.series_uids),
                'imported_count': sync_result.imported,
                'deleted_count': sync_result.deleted,
                'events_added': sync_result.added,
                'events_updated': sync_result.updated,
                'events_deleted': sync_result.deleted,
                'duration_seconds': round(duration, 2)
            },
            'errors': sync_result.errors
        })

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

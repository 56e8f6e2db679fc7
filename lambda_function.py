"""AWS Lambda handler for external calendar feed sync."""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Tuple

from config import ConfigError, Settings
from fetcher.feed_fetcher import FeedFetcher
from processor.feed_url import InvalidFeedUrl
from processor.ics_parser import IcsParser
from processor.models import SyncErrorKind, SyncResult
from processor.reconciler import get_strategy
from storage.dynamodb_manager import DynamoDBManager, StorageError
from sync.deduplicator import SyncDeduplicator
from sync.orchestrator import SyncOrchestrator

ACTIONS = ('sync', 'check_and_sync', 'subscribe', 'unsubscribe', 'list_feeds')

STATUS_BY_ERROR_KIND = {
    SyncErrorKind.INPUT: 400,
    SyncErrorKind.FETCH: 400,
    SyncErrorKind.APPLY: 500,
    SyncErrorKind.INTERNAL: 500,
}

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_LOG_ATTRS = set(
    logging.LogRecord('', 0, '', 0, '', None, None).__dict__
) | {'message', 'asctime'}


class BadRequest(ValueError):
    """Raised for malformed invocation payloads."""


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

        for key, value in record.__dict__.items():
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

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def build_orchestrator(settings: Settings) -> SyncOrchestrator:
    """Wire the sync collaborators for one invocation."""
    return SyncOrchestrator(
        fetcher=FeedFetcher(
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries
        ),
        parser=IcsParser(default_timezone=settings.default_timezone),
        store=DynamoDBManager(
            events_table_name=settings.events_table_name,
            metadata_table_name=settings.metadata_table_name,
            region_name=settings.region_name
        ),
        deduplicator=SyncDeduplicator(),
        strategy=get_strategy(settings.reconcile_strategy),
        default_interval_minutes=settings.default_sync_interval_minutes
    )


def parse_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract the request payload from a direct or API Gateway invocation.

    Raises:
        BadRequest: If the body is not a JSON object or the action is unknown
    """
    payload = event
    body = event.get('body') if isinstance(event, dict) else None
    if body is not None:
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except json.JSONDecodeError as e:
                raise BadRequest(f'Request body is not valid JSON: {e}') from e
        payload = body

    if not isinstance(payload, dict):
        raise BadRequest('Request payload must be a JSON object')

    action = payload.get('action')
    if action not in ACTIONS:
        raise BadRequest(f"Unknown action {action!r}; expected one of {list(ACTIONS)}")
    return payload


def _result_response(result: SyncResult) -> Tuple[int, Dict[str, Any]]:
    if result.success:
        return 200, result.to_dict()
    return STATUS_BY_ERROR_KIND.get(result.error_kind, 500), result.to_dict()


async def dispatch(
    orchestrator: SyncOrchestrator,
    payload: Dict[str, Any]
) -> Tuple[int, Dict[str, Any]]:
    """
    Run the requested action.

    Returns:
        Tuple of (HTTP status code, response body dict)
    """
    action = payload['action']
    calendar_id = payload.get('calendar_id')

    if action == 'sync':
        result = await orchestrator.sync_feed(
            calendar_id,
            payload.get('url'),
            etag=payload.get('etag'),
            last_modified=payload.get('last_modified')
        )
        return _result_response(result)

    if action == 'subscribe':
        result = await orchestrator.subscribe(
            calendar_id,
            payload.get('url'),
            sync_interval_minutes=payload.get('sync_interval_minutes')
        )
        if result.success:
            result.message = (
                f"Successfully imported {result.imported} events from external calendar"
            )
        return _result_response(result)

    if not calendar_id:
        return 400, {'success': False, 'message': 'Calendar ID is required'}

    if action == 'check_and_sync':
        statuses = await orchestrator.check_and_sync(
            calendar_id, force_sync=bool(payload.get('force_sync', False))
        )
        return 200, {
            'success': True,
            'results': [status.to_dict() for status in statuses]
        }

    try:
        if action == 'unsubscribe':
            deleted = await orchestrator.unsubscribe(calendar_id, payload.get('url'))
            return 200, {
                'success': True,
                'message': f'Removed external calendar and {deleted} events',
                'deleted': deleted
            }

        feeds = await orchestrator.list_feeds(calendar_id)
        return 200, {
            'success': True,
            'calendars': [feed.to_dict() for feed in feeds]
        }
    except InvalidFeedUrl as e:
        return 400, {'success': False, 'message': str(e)}
    except StorageError as e:
        logging.getLogger(__name__).error(f"Storage error during {action}: {e}")
        return 500, {'success': False, 'message': f'Failed to {action.replace("_", " ")}'}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for external calendar sync.

    Args:
        event: Direct invocation payload or API Gateway proxy event
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    start_time = time.time()
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Invalid configuration',
                'error': str(e),
                'error_type': type(e).__name__
            })
        }

    # Initialize logging
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    try:
        payload = parse_payload(event)
    except BadRequest as e:
        logger.warning(f"Rejected invocation: {e}")
        return {
            'statusCode': 400,
            'body': json.dumps({'success': False, 'message': str(e)})
        }

    logger.info(
        "Lambda execution started",
        extra={
            'action': payload['action'],
            'calendar_id': payload.get('calendar_id'),
            'events_table': settings.events_table_name
        }
    )

    try:
        orchestrator = build_orchestrator(settings)
        status_code, body = asyncio.run(dispatch(orchestrator, payload))

        duration = time.time() - start_time
        body['duration_seconds'] = round(duration, 2)
        logger.info(
            "Lambda execution completed",
            extra={
                'action': payload['action'],
                'status_code': status_code,
                'duration_seconds': round(duration, 2)
            }
        )
        return {'statusCode': status_code, 'body': json.dumps(body)}

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

        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Sync failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }

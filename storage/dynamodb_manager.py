"""DynamoDB manager for synced events and per-feed sync metadata."""
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from processor.feed_url import feed_display_name
from processor.models import (
    DEFAULT_SYNC_INTERVAL_MINUTES,
    ExternalFeedRef,
    FeedSummary,
    StoredEvent,
    SyncMetadata,
    WriteSet,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation fails without touching event rows."""


class PartialApplyError(StorageError):
    """Raised when a write set failed after some of its rows were written."""

    def __init__(
        self,
        feed_url: str,
        attempted_deletes: int,
        attempted_inserts: int,
        applied_deletes: int,
        applied_inserts: int,
        reason: str
    ):
        self.feed_url = feed_url
        self.attempted_deletes = attempted_deletes
        self.attempted_inserts = attempted_inserts
        self.applied_deletes = applied_deletes
        self.applied_inserts = applied_inserts
        super().__init__(
            f"Partial apply for {feed_url}: {applied_deletes}/{attempted_deletes} "
            f"deletes and {applied_inserts}/{attempted_inserts} inserts confirmed "
            f"before failure: {reason}"
        )


class DynamoDBManager:
    """Manager for DynamoDB operations."""

    BATCH_SIZE = 25  # DynamoDB batch operation limit
    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems limit
    CALENDAR_INDEX = 'calendar-index'

    def __init__(
        self,
        events_table_name: str,
        metadata_table_name: str,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB clients and table references.

        Args:
            events_table_name: Table holding synced events
                (feed_key HASH, event_id RANGE, calendar-index GSI)
            metadata_table_name: Table holding sync metadata
                (calendar_id HASH, feed_url RANGE)
            region_name: AWS region, or None for the boto3 default chain
        """
        self.events_table_name = events_table_name
        self.metadata_table_name = metadata_table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.client = boto3.client('dynamodb', region_name=region_name)
        self.events_table = self.dynamodb.Table(events_table_name)
        self.metadata_table = self.dynamodb.Table(metadata_table_name)
        self.serializer = TypeSerializer()
        logger.info(
            f"Initialized DynamoDBManager for tables: "
            f"{events_table_name}, {metadata_table_name}"
        )

    # Sync metadata

    def get_sync_metadata(self, ref: ExternalFeedRef) -> Optional[SyncMetadata]:
        """
        Retrieve the sync metadata row for a feed.

        Returns:
            SyncMetadata, or None if the feed has never been checked
        """
        try:
            response = self.metadata_table.get_item(
                Key={'calendar_id': ref.calendar_id, 'feed_url': ref.feed_url}
            )
        except ClientError as e:
            logger.error(f"Error reading sync metadata for {ref.feed_url}: {e}")
            raise StorageError(f"Failed to read sync metadata: {e}") from e

        item = response.get('Item')
        return self._item_to_metadata(item) if item else None

    def put_sync_metadata(self, metadata: SyncMetadata) -> None:
        """Write a sync metadata row, replacing any existing one."""
        try:
            self.metadata_table.put_item(Item=self._metadata_to_item(metadata))
        except ClientError as e:
            logger.error(f"Error writing sync metadata for {metadata.feed_url}: {e}")
            raise StorageError(f"Failed to write sync metadata: {e}") from e

    def get_or_create_sync_metadata(
        self,
        ref: ExternalFeedRef,
        default_interval: int = DEFAULT_SYNC_INTERVAL_MINUTES
    ) -> SyncMetadata:
        """
        Retrieve the sync metadata for a feed, creating it if missing.

        Args:
            ref: Feed to look up
            default_interval: Sync interval for a newly created row

        Returns:
            Existing or newly created SyncMetadata
        """
        existing = self.get_sync_metadata(ref)
        if existing:
            return existing

        metadata = SyncMetadata(
            calendar_id=ref.calendar_id,
            feed_url=ref.feed_url,
            sync_interval_minutes=default_interval
        )
        try:
            self.metadata_table.put_item(
                Item=self._metadata_to_item(metadata),
                ConditionExpression='attribute_not_exists(feed_url)'
            )
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                # Created concurrently
                return self.get_sync_metadata(ref)
            logger.error(f"Error creating sync metadata for {ref.feed_url}: {e}")
            raise StorageError(f"Failed to create sync metadata: {e}") from e

        logger.info(f"Created sync metadata for {ref.feed_url}")
        return metadata

    def delete_sync_metadata(self, ref: ExternalFeedRef) -> None:
        try:
            self.metadata_table.delete_item(
                Key={'calendar_id': ref.calendar_id, 'feed_url': ref.feed_url}
            )
        except ClientError as e:
            logger.error(f"Error deleting sync metadata for {ref.feed_url}: {e}")
            raise StorageError(f"Failed to delete sync metadata: {e}") from e

    # Events

    def get_feed_events(self, ref: ExternalFeedRef) -> List[StoredEvent]:
        """
        Retrieve all stored events owned by a feed.

        Returns:
            List of StoredEvent objects
        """
        items = self._query_all(
            self.events_table,
            KeyConditionExpression=Key('feed_key').eq(ref.key)
        )
        events = [self._item_to_stored_event(item) for item in items]

        logger.info(f"Retrieved {len(events)} stored events for {ref.feed_url}")
        return events

    def apply_write_set(self, ref: ExternalFeedRef, write_set: WriteSet) -> None:
        """
        Apply deletes and puts for one feed as a single unit.

        Write sets within the transaction limit run as one TransactWriteItems
        call. Larger ones run as batches, puts before deletes, so a failure
        part-way leaves the old rows in place alongside the new ones.

        Raises:
            StorageError: If nothing was written
            PartialApplyError: If the failure left the feed partially written
        """
        if not len(write_set):
            return

        logger.info(
            f"Applying write set for {ref.feed_url}: "
            f"{len(write_set.delete_ids)} deletes, {len(write_set.puts)} puts"
        )
        if len(write_set) <= self.TRANSACTION_LIMIT:
            self._apply_transaction(ref, write_set)
        else:
            self._apply_batches(ref, write_set)

    def delete_feed(self, ref: ExternalFeedRef) -> int:
        """
        Remove every event of a feed and its sync metadata.

        Returns:
            Count of deleted events
        """
        event_ids = [event.id for event in self.get_feed_events(ref)]
        deleted = 0
        try:
            for i in range(0, len(event_ids), self.BATCH_SIZE):
                batch = event_ids[i:i + self.BATCH_SIZE]
                with self.events_table.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(
                            Key={'feed_key': ref.key, 'event_id': event_id}
                        )
                deleted += len(batch)
        except ClientError as e:
            logger.error(f"Error deleting events for {ref.feed_url}: {e}")
            raise PartialApplyError(
                ref.feed_url, len(event_ids), 0, deleted, 0, str(e)
            ) from e

        self.delete_sync_metadata(ref)
        logger.info(f"Deleted {deleted} events for {ref.feed_url}")
        return deleted

    def list_feed_urls(self, calendar_id: str) -> List[FeedSummary]:
        """
        List the external feeds subscribed into a calendar.

        Feeds are discovered from stored events and from metadata rows of
        feeds that currently have no events.

        Returns:
            FeedSummary per feed, in discovery order
        """
        items = self._query_all(
            self.events_table,
            IndexName=self.CALENDAR_INDEX,
            KeyConditionExpression=Key('calendar_id').eq(calendar_id)
        )
        counts = Counter(
            item['external_feed_url'] for item in items
            if item.get('external_feed_url')
        )

        metadata_items = self._query_all(
            self.metadata_table,
            KeyConditionExpression=Key('calendar_id').eq(calendar_id)
        )
        last_synced = {}
        for item in metadata_items:
            counts.setdefault(item['feed_url'], 0)
            last_synced[item['feed_url']] = self._item_to_metadata(item).last_synced_at

        return [
            FeedSummary(
                feed_url=url,
                event_count=count,
                name=feed_display_name(url),
                last_synced_at=last_synced.get(url)
            )
            for url, count in counts.items()
        ]

    # Internals

    def _query_all(self, table, **kwargs) -> List[dict]:
        try:
            response = table.query(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = table.query(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error querying table {table.name}: {e}")
            raise StorageError(f"Failed to query {table.name}: {e}") from e
        return items

    def _apply_transaction(self, ref: ExternalFeedRef, write_set: WriteSet) -> None:
        transact_items = [
            {
                'Delete': {
                    'TableName': self.events_table_name,
                    'Key': self._serialize(
                        {'feed_key': ref.key, 'event_id': event_id}
                    )
                }
            }
            for event_id in write_set.delete_ids
        ]
        transact_items.extend(
            {
                'Put': {
                    'TableName': self.events_table_name,
                    'Item': self._serialize(self._stored_event_to_item(ref, event))
                }
            }
            for event in write_set.puts
        )

        try:
            self.client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            logger.error(f"Transaction for {ref.feed_url} was rolled back: {e}")
            raise StorageError(f"Failed to sync events: {e}") from e

    def _apply_batches(self, ref: ExternalFeedRef, write_set: WriteSet) -> None:
        applied_deletes = 0
        applied_puts = 0
        delete_ids = write_set.delete_ids
        puts = write_set.puts

        try:
            for i in range(0, len(puts), self.BATCH_SIZE):
                batch = puts[i:i + self.BATCH_SIZE]
                with self.events_table.batch_writer() as writer:
                    for event in batch:
                        writer.put_item(Item=self._stored_event_to_item(ref, event))
                applied_puts += len(batch)

            for i in range(0, len(delete_ids), self.BATCH_SIZE):
                batch = delete_ids[i:i + self.BATCH_SIZE]
                with self.events_table.batch_writer() as writer:
                    for event_id in batch:
                        writer.delete_item(
                            Key={'feed_key': ref.key, 'event_id': event_id}
                        )
                applied_deletes += len(batch)

        except ClientError as e:
            # Batch writes are not atomic, so any failure may leave rows behind
            logger.error(
                f"Batch apply for {ref.feed_url} failed after "
                f"{applied_deletes} deletes and {applied_puts} puts: {e}"
            )
            raise PartialApplyError(
                ref.feed_url,
                len(delete_ids),
                len(puts),
                applied_deletes,
                applied_puts,
                str(e)
            ) from e

    def _serialize(self, item: dict) -> Dict[str, dict]:
        return {key: self.serializer.serialize(value) for key, value in item.items()}

    def _stored_event_to_item(self, ref: ExternalFeedRef, event: StoredEvent) -> dict:
        """
        Convert StoredEvent object to DynamoDB item.

        Args:
            ref: Feed owning the event
            event: StoredEvent object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'feed_key': ref.key,
            'event_id': event.id,
            'calendar_id': event.calendar_id,
            'title': event.title,
            'start_utc': event.start_utc.isoformat(),
            'is_all_day': event.is_all_day,
            'external_id': event.external_id,
            'external_feed_url': ref.feed_url
        }

        # Add optional fields if present
        if event.description:
            item['description'] = event.description
        if event.end_utc:
            item['end_utc'] = event.end_utc.isoformat()

        return item

    def _item_to_stored_event(self, item: dict) -> StoredEvent:
        """
        Convert DynamoDB item to StoredEvent object.

        Rows that cannot be decoded keep only their id and no external_id,
        so reconciliation deletes them instead of leaving them behind.
        """
        try:
            return StoredEvent(
                id=item['event_id'],
                calendar_id=item['calendar_id'],
                title=item['title'],
                description=item.get('description'),
                start_utc=datetime.fromisoformat(item['start_utc']),
                end_utc=(
                    datetime.fromisoformat(item['end_utc'])
                    if item.get('end_utc') else None
                ),
                is_all_day=bool(item['is_all_day']),
                external_id=item.get('external_id'),
                external_feed_url=item.get('external_feed_url')
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"Failed to convert item {item['event_id']} to StoredEvent: {e}"
            )
            return StoredEvent(
                id=item['event_id'],
                calendar_id=item.get('calendar_id', ''),
                title='',
                description=None,
                start_utc=datetime.min.replace(tzinfo=timezone.utc),
                end_utc=None,
                is_all_day=False,
                external_feed_url=item.get('external_feed_url')
            )

    def _metadata_to_item(self, metadata: SyncMetadata) -> dict:
        item = {
            'calendar_id': metadata.calendar_id,
            'feed_url': metadata.feed_url,
            'sync_interval_minutes': metadata.sync_interval_minutes
        }
        if metadata.etag:
            item['etag'] = metadata.etag
        if metadata.last_modified:
            item['last_modified'] = metadata.last_modified
        if metadata.last_synced_at:
            item['last_synced_at'] = metadata.last_synced_at.isoformat()
        return item

    def _item_to_metadata(self, item: dict) -> SyncMetadata:
        last_synced = item.get('last_synced_at')
        return SyncMetadata(
            calendar_id=item['calendar_id'],
            feed_url=item['feed_url'],
            etag=item.get('etag'),
            last_modified=item.get('last_modified'),
            last_synced_at=datetime.fromisoformat(last_synced) if last_synced else None,
            sync_interval_minutes=int(
                item.get('sync_interval_minutes', DEFAULT_SYNC_INTERVAL_MINUTES)
            )
        )

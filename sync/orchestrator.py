"""Sync orchestrator reconciling external iCalendar feeds into local calendars."""
import asyncio
import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from processor.feed_url import InvalidFeedUrl, normalize_feed_url
from processor.ics_parser import IcsParseError, IcsParser
from processor.models import (
    DEFAULT_SYNC_INTERVAL_MINUTES,
    ExternalFeedRef,
    FeedSummary,
    FeedSyncStatus,
    SyncErrorKind,
    SyncMetadata,
    SyncResult,
)
from processor.reconciler import ReconcileStrategy, ReplaceAllStrategy, reconcile
from storage.dynamodb_manager import PartialApplyError, StorageError
from sync.deduplicator import SyncDeduplicator

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncOrchestrator:
    """
    Entry point for syncing external feeds.

    Owns the due policy and the per-feed sync metadata, and applies the
    reconciler's write set. Every public coroutine reports failures in the
    returned result rather than raising.
    """

    def __init__(
        self,
        fetcher,
        parser: IcsParser,
        store,
        deduplicator: Optional[SyncDeduplicator] = None,
        strategy: Optional[ReconcileStrategy] = None,
        default_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            fetcher: Conditional fetcher (``fetch(url, etag, last_modified)``)
            parser: ICS parser adapter
            store: Storage collaborator (see DynamoDBManager)
            deduplicator: In-flight sync registry shared by callers
            strategy: Reconciliation strategy (default: replace all)
            default_interval_minutes: Interval for newly tracked feeds
            clock: Callable returning the current aware UTC time
        """
        self.fetcher = fetcher
        self.parser = parser
        self.store = store
        self.deduplicator = deduplicator or SyncDeduplicator()
        self.strategy = strategy or ReplaceAllStrategy()
        self.default_interval_minutes = default_interval_minutes
        self.clock = clock or utc_now

    @staticmethod
    def is_due(metadata: SyncMetadata, now: datetime, force_sync: bool = False) -> bool:
        """
        Decide whether a feed should be synced now.

        A feed is due when forced, when it has never been synced, or when
        its interval has fully elapsed since the last sync.
        """
        if force_sync or metadata.last_synced_at is None:
            return True
        interval = timedelta(minutes=metadata.sync_interval_minutes)
        return now - metadata.last_synced_at >= interval

    async def sync_feed(
        self,
        calendar_id: str,
        feed_url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        use_stored_validators: bool = True
    ) -> SyncResult:
        """
        Sync one feed into a calendar.

        Concurrent calls for the same calendar and feed share one run.

        Args:
            calendar_id: Calendar owning the subscription
            feed_url: Feed URL (normalized here)
            etag: ETag validator overriding the stored one
            last_modified: Last-Modified validator overriding the stored one
            use_stored_validators: Fall back to stored validators when
                none are given

        Returns:
            SyncResult describing the outcome
        """
        try:
            url = normalize_feed_url(feed_url)
        except InvalidFeedUrl as e:
            logger.warning(f"Rejected sync request: {e}")
            return SyncResult.failure(str(feed_url or ''), SyncErrorKind.INPUT, str(e))
        if not calendar_id:
            return SyncResult.failure(url, SyncErrorKind.INPUT, 'Calendar ID is required')

        ref = ExternalFeedRef(calendar_id, url)
        operation = functools.partial(
            self._guarded_sync, ref, etag, last_modified, use_stored_validators
        )
        return await self.deduplicator.run_exclusive(ref.key, operation)

    async def check_and_sync(
        self,
        calendar_id: str,
        force_sync: bool = False
    ) -> List[FeedSyncStatus]:
        """
        Sync every subscribed feed of a calendar that is due.

        Args:
            calendar_id: Calendar whose feeds are checked
            force_sync: Sync all feeds regardless of their intervals

        Returns:
            One FeedSyncStatus per feed that was synced
        """
        try:
            feeds = await self._run_blocking(self.store.list_feed_urls, calendar_id)
        except Exception as e:
            logger.error(
                f"Failed to list external feeds for calendar {calendar_id}: {e}",
                exc_info=True
            )
            return []

        now = self.clock()
        due_urls = []
        for feed in feeds:
            ref = ExternalFeedRef(calendar_id, feed.feed_url)
            try:
                metadata = await self._run_blocking(
                    self.store.get_or_create_sync_metadata,
                    ref,
                    self.default_interval_minutes
                )
            except Exception as e:
                logger.error(f"Error fetching sync metadata for {feed.feed_url}: {e}")
                continue

            if self.is_due(metadata, now, force_sync):
                due_urls.append(feed.feed_url)

        logger.info(
            f"{len(due_urls)} of {len(feeds)} external feeds due for calendar "
            f"{calendar_id}",
            extra={'calendar_id': calendar_id, 'force_sync': force_sync}
        )
        if not due_urls:
            return []

        results = await asyncio.gather(
            *(self.sync_feed(calendar_id, url) for url in due_urls)
        )
        return [FeedSyncStatus.from_result(result) for result in results]

    async def subscribe(
        self,
        calendar_id: str,
        url: str,
        sync_interval_minutes: Optional[int] = None
    ) -> SyncResult:
        """
        Subscribe a calendar to a feed and import its events.

        The first import ignores stored validators so the feed is always
        downloaded in full.
        """
        try:
            feed_url = normalize_feed_url(url)
        except InvalidFeedUrl as e:
            return SyncResult.failure(str(url or ''), SyncErrorKind.INPUT, str(e))
        if not calendar_id:
            return SyncResult.failure(feed_url, SyncErrorKind.INPUT, 'Calendar ID is required')

        interval = (
            self.default_interval_minutes
            if sync_interval_minutes is None else sync_interval_minutes
        )
        if not isinstance(interval, int) or isinstance(interval, bool) or interval <= 0:
            return SyncResult.failure(
                feed_url,
                SyncErrorKind.INPUT,
                'Sync interval must be a positive number of minutes'
            )

        ref = ExternalFeedRef(calendar_id, feed_url)
        try:
            metadata = await self._run_blocking(
                self.store.get_or_create_sync_metadata, ref, interval
            )
            if sync_interval_minutes is not None and metadata.sync_interval_minutes != interval:
                metadata.sync_interval_minutes = interval
                await self._run_blocking(self.store.put_sync_metadata, metadata)
        except Exception as e:
            logger.error(f"Failed to register feed {feed_url}: {e}", exc_info=True)
            return SyncResult.failure(
                feed_url, SyncErrorKind.INTERNAL, 'Failed to import calendar'
            )

        return await self.sync_feed(calendar_id, feed_url, use_stored_validators=False)

    async def unsubscribe(self, calendar_id: str, url: str) -> int:
        """
        Remove a feed and every event it owns from a calendar.

        Returns:
            Count of removed events

        Raises:
            InvalidFeedUrl: If the URL is missing or malformed
            StorageError: If the removal fails
        """
        feed_url = normalize_feed_url(url)
        ref = ExternalFeedRef(calendar_id, feed_url)
        deleted = await self._run_blocking(self.store.delete_feed, ref)
        logger.info(f"Unsubscribed calendar {calendar_id} from {feed_url}")
        return deleted

    async def list_feeds(self, calendar_id: str) -> List[FeedSummary]:
        return await self._run_blocking(self.store.list_feed_urls, calendar_id)

    async def _guarded_sync(
        self,
        ref: ExternalFeedRef,
        etag: Optional[str],
        last_modified: Optional[str],
        use_stored_validators: bool
    ) -> SyncResult:
        try:
            return await self._perform_sync(
                ref, etag, last_modified, use_stored_validators
            )
        except Exception as e:
            logger.error(
                f"Unexpected error syncing {ref.feed_url}: {e}",
                extra={'feed_url': ref.feed_url, 'error_type': type(e).__name__},
                exc_info=True
            )
            return SyncResult.failure(
                ref.feed_url, SyncErrorKind.INTERNAL, 'Failed to sync calendar'
            )

    async def _perform_sync(
        self,
        ref: ExternalFeedRef,
        etag: Optional[str],
        last_modified: Optional[str],
        use_stored_validators: bool
    ) -> SyncResult:
        try:
            metadata = await self._run_blocking(
                self.store.get_or_create_sync_metadata,
                ref,
                self.default_interval_minutes
            )
        except StorageError as e:
            logger.error(f"Failed to load sync metadata for {ref.feed_url}: {e}")
            return SyncResult.failure(
                ref.feed_url, SyncErrorKind.INTERNAL, 'Failed to load sync metadata'
            )

        if use_stored_validators:
            etag = etag or metadata.etag
            last_modified = last_modified or metadata.last_modified

        logger.info(f"Syncing {ref.feed_url}", extra={'feed_url': ref.feed_url})
        fetch_result = await self._run_blocking(
            self.fetcher.fetch, ref.feed_url, etag, last_modified
        )

        if fetch_result.not_modified:
            metadata.last_synced_at = self.clock()
            await self._save_metadata(metadata)
            return SyncResult.unchanged(ref.feed_url, metadata.etag, metadata.last_modified)

        if fetch_result.failed:
            logger.warning(
                f"Fetch failed for {ref.feed_url}: {fetch_result.error}",
                extra={'feed_url': ref.feed_url, 'status': fetch_result.status}
            )
            return SyncResult.failure(
                ref.feed_url,
                SyncErrorKind.FETCH,
                fetch_result.error or 'Could not fetch calendar from the provided URL'
            )

        try:
            remote_events = self.parser.parse(fetch_result.body)
        except IcsParseError as e:
            logger.warning(f"Invalid ICS payload from {ref.feed_url}: {e}")
            return SyncResult.failure(ref.feed_url, SyncErrorKind.FETCH, str(e))

        try:
            local_events = await self._run_blocking(self.store.get_feed_events, ref)
        except StorageError as e:
            logger.error(f"Failed to load stored events for {ref.feed_url}: {e}")
            return SyncResult.failure(
                ref.feed_url, SyncErrorKind.INTERNAL, 'Failed to fetch existing events'
            )

        plan = reconcile(remote_events, local_events, self.strategy)
        write_set = self.strategy.materialize(ref, plan, local_events)

        try:
            await self._run_blocking(self.store.apply_write_set, ref, write_set)
        except PartialApplyError as e:
            logger.error(
                f"Sync of {ref.feed_url} left stored events inconsistent: {e}",
                extra={
                    'feed_url': ref.feed_url,
                    'applied_deletes': e.applied_deletes,
                    'applied_inserts': e.applied_inserts
                }
            )
            return SyncResult.failure(
                ref.feed_url,
                SyncErrorKind.APPLY,
                str(e),
                attempted_deletes=e.attempted_deletes,
                attempted_inserts=e.attempted_inserts
            )
        except StorageError as e:
            logger.error(f"Failed to apply sync for {ref.feed_url}: {e}")
            return SyncResult.failure(
                ref.feed_url, SyncErrorKind.INTERNAL, 'Failed to sync events'
            )

        metadata.etag = fetch_result.etag
        metadata.last_modified = fetch_result.last_modified
        metadata.last_synced_at = self.clock()
        await self._save_metadata(metadata)

        logger.info(
            f"Sync completed for {ref.feed_url}: {plan.imported} new, "
            f"{plan.updated} updated, {plan.deleted} deleted",
            extra={'feed_url': ref.feed_url}
        )
        return SyncResult(
            feed_url=ref.feed_url,
            success=True,
            message=(
                f"Sync completed: {plan.imported} new, {plan.updated} updated, "
                f"{plan.deleted} deleted"
            ),
            has_changes=plan.has_changes,
            imported=plan.imported,
            updated=plan.updated,
            deleted=plan.deleted,
            etag=fetch_result.etag,
            last_modified=fetch_result.last_modified
        )

    async def _save_metadata(self, metadata: SyncMetadata) -> None:
        # Events are already consistent; a stale row only causes an extra fetch
        try:
            await self._run_blocking(self.store.put_sync_metadata, metadata)
        except StorageError as e:
            logger.error(f"Failed to record sync metadata for {metadata.feed_url}: {e}")

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

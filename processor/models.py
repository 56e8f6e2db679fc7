"""Data models for external calendar synchronization."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


DEFAULT_SYNC_INTERVAL_MINUTES = 60


@dataclass(frozen=True)
class ExternalFeedRef:
    """A subscribed external calendar: one feed URL inside one calendar."""
    calendar_id: str
    feed_url: str

    @property
    def key(self) -> str:
        return f"{self.calendar_id}|{self.feed_url}"


@dataclass
class SyncMetadata:
    """Conditional-request validators and schedule for one feed."""
    calendar_id: str
    feed_url: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES

    @property
    def ref(self) -> ExternalFeedRef:
        return ExternalFeedRef(self.calendar_id, self.feed_url)


@dataclass(frozen=True)
class RemoteEvent:
    """Event parsed from an ICS payload."""
    external_id: str
    title: str
    description: Optional[str]
    start_utc: datetime
    end_utc: Optional[datetime]
    is_all_day: bool


@dataclass
class StoredEvent:
    """Event persisted in a local calendar."""
    id: str
    calendar_id: str
    title: str
    description: Optional[str]
    start_utc: datetime
    end_utc: Optional[datetime]
    is_all_day: bool
    external_id: Optional[str] = None
    external_feed_url: Optional[str] = None

    @classmethod
    def from_remote(
        cls,
        remote: RemoteEvent,
        ref: ExternalFeedRef,
        event_id: Optional[str] = None
    ) -> 'StoredEvent':
        """
        Build the stored form of a remote event owned by a feed.

        Args:
            remote: Parsed remote event
            ref: Feed the event belongs to
            event_id: Existing id to keep, or None to mint a new one

        Returns:
            StoredEvent linked to the feed
        """
        return cls(
            id=event_id or str(uuid.uuid4()),
            calendar_id=ref.calendar_id,
            title=remote.title,
            description=remote.description,
            start_utc=remote.start_utc,
            end_utc=remote.end_utc,
            is_all_day=remote.is_all_day,
            external_id=remote.external_id,
            external_feed_url=ref.feed_url
        )


@dataclass
class FetchResult:
    """Outcome of a conditional GET against a feed URL."""
    status: Optional[int]
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    body: Optional[str] = None
    error: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        return self.error is None and self.status == 304

    @property
    def ok(self) -> bool:
        return self.error is None and self.status == 200 and bool(self.body)

    @property
    def failed(self) -> bool:
        return not (self.ok or self.not_modified)


@dataclass
class ReconcilePlan:
    """Insert/update/delete plan for one feed."""
    to_insert: List[RemoteEvent]
    to_update: List[Tuple[RemoteEvent, StoredEvent]]
    to_delete: List[StoredEvent]
    unchanged: int = 0
    strategy: str = 'replace_all'

    @property
    def imported(self) -> int:
        return len(self.to_insert)

    @property
    def updated(self) -> int:
        return len(self.to_update)

    @property
    def deleted(self) -> int:
        return len(self.to_delete)

    @property
    def has_changes(self) -> bool:
        return self.imported > 0 or self.updated > 0 or self.deleted > 0


@dataclass
class WriteSet:
    """Storage mutations that must be applied as one unit."""
    delete_ids: List[str] = field(default_factory=list)
    puts: List[StoredEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.delete_ids) + len(self.puts)


class SyncErrorKind(str, Enum):
    """Failure categories reported by a sync attempt."""
    INPUT = 'input_error'
    FETCH = 'fetch_error'
    APPLY = 'reconcile_apply_error'
    INTERNAL = 'internal_error'


@dataclass
class SyncResult:
    """Result of syncing one feed."""
    feed_url: str
    success: bool
    message: str
    has_changes: bool = False
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[SyncErrorKind] = None
    attempted_deletes: int = 0
    attempted_inserts: int = 0

    @classmethod
    def failure(
        cls,
        feed_url: str,
        kind: SyncErrorKind,
        error: str,
        **kwargs
    ) -> 'SyncResult':
        return cls(
            feed_url=feed_url,
            success=False,
            message=error,
            error=error,
            error_kind=kind,
            **kwargs
        )

    @classmethod
    def unchanged(
        cls,
        feed_url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None
    ) -> 'SyncResult':
        return cls(
            feed_url=feed_url,
            success=True,
            message='Calendar is up to date',
            etag=etag,
            last_modified=last_modified
        )

    def to_dict(self) -> dict:
        """Render the result as a JSON-serializable dict."""
        data = {
            'feed_url': self.feed_url,
            'success': self.success,
            'message': self.message,
            'has_changes': self.has_changes,
            'imported': self.imported,
            'updated': self.updated,
            'deleted': self.deleted,
            'etag': self.etag,
            'last_modified': self.last_modified
        }
        if not self.success:
            data['error'] = self.error
            data['error_kind'] = self.error_kind.value if self.error_kind else None
        if self.error_kind is SyncErrorKind.APPLY:
            data['attempted_deletes'] = self.attempted_deletes
            data['attempted_inserts'] = self.attempted_inserts
        return data


@dataclass
class FeedSyncStatus:
    """Per-feed entry returned by a status check."""
    feed_url: str
    success: bool
    has_changes: bool
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: SyncResult) -> 'FeedSyncStatus':
        return cls(
            feed_url=result.feed_url,
            success=result.success,
            has_changes=result.has_changes,
            error=result.error
        )

    def to_dict(self) -> dict:
        data = {
            'feed_url': self.feed_url,
            'success': self.success,
            'has_changes': self.has_changes
        }
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class FeedSummary:
    """Subscribed feed with its stored event count and last import time."""
    feed_url: str
    event_count: int
    name: str
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'url': self.feed_url,
            'event_count': self.event_count,
            'name': self.name,
            'last_synced_at': (
                self.last_synced_at.isoformat() if self.last_synced_at else None
            )
        }

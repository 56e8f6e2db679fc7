"""Reconciliation of remote feed events against stored events."""
import logging
from typing import Dict, Iterable, List, Optional

from processor.models import (
    ExternalFeedRef,
    ReconcilePlan,
    RemoteEvent,
    StoredEvent,
    WriteSet,
)

logger = logging.getLogger(__name__)


class ReconcileStrategy:
    """Base class for reconciliation strategies."""

    name = ''

    def plan(
        self,
        remote_events: Iterable[RemoteEvent],
        local_events: Iterable[StoredEvent]
    ) -> ReconcilePlan:
        """
        Compute the insert/update/delete plan by joining on external_id.

        Args:
            remote_events: Events parsed from the feed
            local_events: Events currently stored for the feed

        Returns:
            ReconcilePlan for this strategy
        """
        local_events = list(local_events)
        remote_by_id = {event.external_id: event for event in remote_events}
        local_by_id = _index_local(local_events)

        to_delete = [
            event for event in local_events
            if event.external_id not in remote_by_id
        ]
        to_insert = [
            event for external_id, event in remote_by_id.items()
            if external_id not in local_by_id
        ]

        to_update = []
        unchanged = 0
        for external_id, remote in remote_by_id.items():
            local = local_by_id.get(external_id)
            if local is None:
                continue
            if self.needs_write(remote, local):
                to_update.append((remote, local))
            else:
                unchanged += 1

        return ReconcilePlan(
            to_insert=to_insert,
            to_update=to_update,
            to_delete=to_delete,
            unchanged=unchanged,
            strategy=self.name
        )

    def needs_write(self, remote: RemoteEvent, local: StoredEvent) -> bool:
        raise NotImplementedError

    def materialize(
        self,
        ref: ExternalFeedRef,
        plan: ReconcilePlan,
        local_events: List[StoredEvent]
    ) -> WriteSet:
        raise NotImplementedError


class ReplaceAllStrategy(ReconcileStrategy):
    """
    Replace the feed's whole event set on every changed sync.

    Every matched UID counts as updated. The write set deletes all stored
    rows of the feed and inserts all remote events under fresh ids, so
    StoredEvent ids are not stable across syncs.
    """

    name = 'replace_all'

    def needs_write(self, remote: RemoteEvent, local: StoredEvent) -> bool:
        return True

    def materialize(
        self,
        ref: ExternalFeedRef,
        plan: ReconcilePlan,
        local_events: List[StoredEvent]
    ) -> WriteSet:
        remote_events = plan.to_insert + [remote for remote, _ in plan.to_update]
        return WriteSet(
            delete_ids=[event.id for event in local_events],
            puts=[StoredEvent.from_remote(remote, ref) for remote in remote_events]
        )


class FieldDiffStrategy(ReconcileStrategy):
    """Update matched events in place, skipping those whose fields are equal."""

    name = 'field_diff'

    def needs_write(self, remote: RemoteEvent, local: StoredEvent) -> bool:
        return (
            remote.title != local.title or
            remote.description != local.description or
            remote.start_utc != local.start_utc or
            remote.end_utc != local.end_utc or
            remote.is_all_day != local.is_all_day
        )

    def materialize(
        self,
        ref: ExternalFeedRef,
        plan: ReconcilePlan,
        local_events: List[StoredEvent]
    ) -> WriteSet:
        kept = _index_local(local_events)
        removed = {event.id for event in plan.to_delete}
        # Stored duplicates of a kept UID are dropped; each id is deleted once
        duplicates = [
            event.id for event in local_events
            if event.id not in removed
            and event.external_id in kept
            and kept[event.external_id].id != event.id
        ]

        puts = [StoredEvent.from_remote(remote, ref) for remote in plan.to_insert]
        puts.extend(
            StoredEvent.from_remote(remote, ref, event_id=local.id)
            for remote, local in plan.to_update
        )
        return WriteSet(
            delete_ids=[event.id for event in plan.to_delete] + duplicates,
            puts=puts
        )


STRATEGIES = {
    ReplaceAllStrategy.name: ReplaceAllStrategy,
    FieldDiffStrategy.name: FieldDiffStrategy,
}


def get_strategy(name: str) -> ReconcileStrategy:
    """
    Look up a reconciliation strategy by name.

    Raises:
        ValueError: If no strategy has that name
    """
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown reconcile strategy {name!r}; "
            f"expected one of {sorted(STRATEGIES)}"
        ) from None


def reconcile(
    remote_events: Iterable[RemoteEvent],
    local_events: Iterable[StoredEvent],
    strategy: Optional[ReconcileStrategy] = None
) -> ReconcilePlan:
    """
    Compute the plan that converges stored events to the remote set.

    Args:
        remote_events: Events parsed from the feed
        local_events: Events currently stored for the feed
        strategy: Strategy to use (default: ReplaceAllStrategy)

    Returns:
        ReconcilePlan with to_insert, to_update and to_delete
    """
    strategy = strategy or ReplaceAllStrategy()
    plan = strategy.plan(list(remote_events), list(local_events))
    logger.info(
        f"Reconcile plan ({plan.strategy}): {plan.imported} to insert, "
        f"{plan.updated} to update, {plan.deleted} to delete, "
        f"{plan.unchanged} unchanged"
    )
    return plan


def _index_local(local_events: Iterable[StoredEvent]) -> Dict[str, StoredEvent]:
    index = {}
    for event in local_events:
        if event.external_id is not None:
            index.setdefault(event.external_id, event)
    return index

"""Unit tests for the event reconciler."""
from datetime import datetime, timedelta, timezone

import pytest

from processor.models import ExternalFeedRef, RemoteEvent, StoredEvent
from processor.reconciler import (
    FieldDiffStrategy,
    ReplaceAllStrategy,
    get_strategy,
    reconcile,
)

REF = ExternalFeedRef('cal-1', 'https://example.com/feed.ics')
START = datetime(2025, 3, 15, 9, 0, tzinfo=timezone.utc)


def remote(uid, title=None):
    return RemoteEvent(
        external_id=uid,
        title=title or f'Event {uid}',
        description=None,
        start_utc=START,
        end_utc=START + timedelta(hours=1),
        is_all_day=False
    )


def stored(uid, title=None, event_id=None):
    return StoredEvent.from_remote(remote(uid, title), REF, event_id=event_id or f'id-{uid}')


class TestReconcile:
    """Test cases for reconcile()."""

    def test_scenario_insert_update_delete(self):
        """Test remote {A,B,C} against local {A,B,D}."""
        plan = reconcile(
            [remote('A'), remote('B'), remote('C')],
            [stored('A'), stored('B'), stored('D')]
        )

        assert [e.external_id for e in plan.to_insert] == ['C']
        assert sorted(r.external_id for r, _ in plan.to_update) == ['A', 'B']
        assert [e.external_id for e in plan.to_delete] == ['D']
        assert (plan.imported, plan.updated, plan.deleted) == (1, 2, 1)
        assert plan.has_changes is True

    def test_empty_on_both_sides_has_no_changes(self):
        plan = reconcile([], [])

        assert plan.has_changes is False
        assert (plan.imported, plan.updated, plan.deleted) == (0, 0, 0)

    def test_replace_all_counts_every_match_as_update(self):
        """Test that replace_all treats unchanged matches as updates."""
        plan = reconcile([remote('A')], [stored('A')], ReplaceAllStrategy())

        assert plan.updated == 1
        assert plan.unchanged == 0
        assert plan.has_changes is True

    def test_replace_all_materializes_full_replace(self):
        """Test that every stored row is deleted and every remote row inserted."""
        local = [stored('A'), stored('B'), stored('D')]
        strategy = ReplaceAllStrategy()
        plan = strategy.plan([remote('A'), remote('B'), remote('C')], local)

        write_set = strategy.materialize(REF, plan, local)

        assert sorted(write_set.delete_ids) == ['id-A', 'id-B', 'id-D']
        assert sorted(e.external_id for e in write_set.puts) == ['A', 'B', 'C']
        # Fresh ids for every inserted row
        assert not {e.id for e in write_set.puts} & {'id-A', 'id-B', 'id-D'}
        assert all(e.external_feed_url == REF.feed_url for e in write_set.puts)

    def test_field_diff_skips_unchanged_and_keeps_ids(self):
        """Test that field_diff only rewrites changed events, in place."""
        local = [stored('A'), stored('B', title='Old title'), stored('D')]
        strategy = FieldDiffStrategy()
        plan = strategy.plan([remote('A'), remote('B', title='New title'), remote('C')], local)

        assert plan.unchanged == 1
        assert [r.external_id for r, _ in plan.to_update] == ['B']

        write_set = strategy.materialize(REF, plan, local)

        assert write_set.delete_ids == ['id-D']
        puts = {e.external_id: e for e in write_set.puts}
        assert set(puts) == {'B', 'C'}
        assert puts['B'].id == 'id-B'
        assert puts['B'].title == 'New title'

    def test_field_diff_no_changes(self):
        plan = reconcile([remote('A')], [stored('A')], FieldDiffStrategy())

        assert plan.has_changes is False

    def test_field_diff_removes_duplicate_local_rows(self):
        """Test that duplicate stored rows of one UID collapse to one."""
        local = [stored('A', event_id='first'), stored('A', event_id='second')]
        strategy = FieldDiffStrategy()
        plan = strategy.plan([remote('A')], local)

        write_set = strategy.materialize(REF, plan, local)

        assert write_set.delete_ids == ['second']
        assert write_set.puts == []

    def test_field_diff_deletes_each_duplicate_row_once(self):
        """Test duplicate stored rows of a UID that left the feed."""
        local = [stored('A', event_id='first'), stored('A', event_id='second')]
        strategy = FieldDiffStrategy()
        plan = strategy.plan([], local)

        write_set = strategy.materialize(REF, plan, local)

        assert write_set.delete_ids == ['first', 'second']
        assert len(write_set) == 2

    def test_get_strategy(self):
        assert isinstance(get_strategy('replace_all'), ReplaceAllStrategy)
        assert isinstance(get_strategy('field_diff'), FieldDiffStrategy)

        with pytest.raises(ValueError):
            get_strategy('upsert')

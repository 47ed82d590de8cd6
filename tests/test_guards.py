"""Tests for the dispatch safety guards."""

from unittest.mock import MagicMock

import pytest

from convoy.exceptions import StoreUnavailableError
from convoy.guards import (
    FailOpenTracker,
    is_dispatchable_type,
    is_in_flight,
    is_item_blocked,
    is_ready_item,
)
from convoy.models import WorkItem


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def failing_store():
    store = MagicMock()
    store.dependencies_with_status.side_effect = StoreUnavailableError("database is locked")
    return store


class TestDispatchableType:
    @pytest.mark.parametrize("item_type", ["task", "bug", "feature", "chore", "", None])
    def test_leaf_types(self, item_type):
        assert is_dispatchable_type(item_type)

    @pytest.mark.parametrize("item_type", ["epic", "sub-epic", "convoy", "decision", "message"])
    def test_non_leaf_types(self, item_type):
        assert not is_dispatchable_type(item_type)


class TestIsItemBlocked:
    def test_open_blocker_blocks(self, stores, add_item):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        assert is_item_blocked(stores["gastown"], "gt-b")

    def test_closed_blocker_does_not_block(self, stores, add_item):
        add_item("gt-a", status="closed")
        add_item("gt-b", blocked_by=["gt-a"])
        assert not is_item_blocked(stores["gastown"], "gt-b")

    def test_parent_child_never_blocks(self, stores, add_item):
        add_item("gt-epic", type="epic")
        add_item("gt-a", parent="gt-epic")
        assert not is_item_blocked(stores["gastown"], "gt-a")

    def test_related_edge_never_blocks(self, stores, add_item):
        add_item("gt-a")
        add_item("gt-b")
        stores["gastown"].add_dependency("gt-b", "gt-a", "related")
        assert not is_item_blocked(stores["gastown"], "gt-b")

    def test_waits_for_blocks(self, stores, add_item):
        add_item("gt-a")
        add_item("gt-b")
        stores["gastown"].add_dependency("gt-b", "gt-a", "waits-for")
        assert is_item_blocked(stores["gastown"], "gt-b")

    def test_cross_store_blocker_resolved_through_lookup(self, stores, add_item):
        add_item("bd-x")  # lives in hq
        add_item("gt-b", blocked_by=["bd-x"])
        lookup = {"bd-x": "open"}.get
        assert is_item_blocked(stores["gastown"], "gt-b", lookup)
        assert not is_item_blocked(stores["gastown"], "gt-b", {"bd-x": "closed"}.get)

    def test_unknown_blocker_ignored(self, stores, add_item):
        add_item("gt-b", blocked_by=["gt-nowhere"])
        assert not is_item_blocked(stores["gastown"], "gt-b", lambda _id: None)

    def test_nonexistent_item_is_not_blocked(self, stores):
        assert not is_item_blocked(stores["gastown"], "gt-missing")

    def test_no_store_is_not_blocked(self):
        assert not is_item_blocked(None, "gt-a")

    def test_store_failure_fails_open(self):
        assert not is_item_blocked(failing_store(), "gt-a")


class TestFailOpenTracker:
    def test_fails_open_within_ceiling(self):
        clock = FakeClock()
        tracker = FailOpenTracker(ceiling=60, clock=clock)
        store = failing_store()

        assert not is_item_blocked(store, "gt-a", tracker=tracker)
        clock.now += 59
        assert not is_item_blocked(store, "gt-a", tracker=tracker)

    def test_fails_closed_past_ceiling(self):
        clock = FakeClock()
        tracker = FailOpenTracker(ceiling=60, clock=clock)
        store = failing_store()

        assert not is_item_blocked(store, "gt-a", tracker=tracker)
        clock.now += 61
        assert is_item_blocked(store, "gt-a", tracker=tracker)

    def test_success_resets_ceiling(self):
        clock = FakeClock()
        tracker = FailOpenTracker(ceiling=60, clock=clock)
        tracker.record_failure()
        clock.now += 61
        assert not tracker.should_fail_open()

        healthy = MagicMock()
        healthy.dependencies_with_status.return_value = []
        assert not is_item_blocked(healthy, "gt-a", tracker=tracker)
        assert tracker.should_fail_open()

    def test_zero_ceiling_always_fails_open(self):
        clock = FakeClock()
        tracker = FailOpenTracker(ceiling=0, clock=clock)
        tracker.record_failure()
        clock.now += 10_000
        assert tracker.should_fail_open()


class TestReadiness:
    def test_in_flight(self):
        assert is_in_flight(WorkItem(id="gt-a", status="in_progress", assignee="polecat-1"))
        assert is_in_flight(WorkItem(id="gt-a", status="open", assignee="polecat-1"))
        assert not is_in_flight(WorkItem(id="gt-a", status="closed", assignee="polecat-1"))
        assert not is_in_flight(WorkItem(id="gt-a", status="open"))

    def test_ready_item(self):
        assert is_ready_item(WorkItem(id="gt-a"), blocked=False)

    def test_blocked_not_ready(self):
        assert not is_ready_item(WorkItem(id="gt-a"), blocked=True)

    def test_assigned_not_ready(self):
        assert not is_ready_item(WorkItem(id="gt-a", assignee="polecat-1"), blocked=False)

    def test_closed_not_ready(self):
        assert not is_ready_item(WorkItem(id="gt-a", status="closed"), blocked=False)

    def test_container_not_ready(self):
        assert not is_ready_item(WorkItem(id="gt-a", type="epic"), blocked=False)

    def test_orphaned_in_progress_is_ready(self):
        # Agent died: still in_progress but nobody assigned
        assert is_ready_item(WorkItem(id="gt-a", status="in_progress"), blocked=False)

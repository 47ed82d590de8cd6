"""Tests for the event-driven feeder."""

from unittest.mock import MagicMock

import pytest

from convoy.config import STATUS_CLOSED, STATUS_STAGED_READY
from convoy.convoys import create_convoy, get_convoy
from convoy.exceptions import StoreUnavailableError
from convoy.feeder import EventFeeder, feed_next_ready
from convoy.models import Event
from fakes import FakeDispatcher


@pytest.fixture
def feeder(config, dispatcher):
    return EventFeeder(dispatcher, config)


def close(stores, item_id):
    owner = "gastown" if item_id.startswith("gt-") else "hq"
    stores[owner].close_item(item_id)


class TestFeedNextReady:
    def test_feeds_first_ready_in_id_order(self, stores, config, add_item, dispatcher):
        add_item("gt-b")
        add_item("gt-a")
        convoy = create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)

        assert feed_next_ready(stores, convoy.id, dispatcher, config) == "gt-a"
        assert dispatcher.dispatched == [("gt-a", "gastown")]

    def test_skips_blocked_and_assigned(self, stores, config, add_item, dispatcher):
        add_item("gt-a", assignee="polecat-1", status="hooked")
        add_item("gt-b", blocked_by=["gt-a"])
        add_item("gt-c")
        convoy = create_convoy(stores, "Batch", ["gt-a", "gt-b", "gt-c"], config)

        assert feed_next_ready(stores, convoy.id, dispatcher, config) == "gt-c"

    def test_skips_paused_target(self, stores, config, add_item, dispatcher):
        config["targets"]["gastown"] = {"paused": True}
        add_item("gt-a")
        add_item("bd-b")
        convoy = create_convoy(stores, "Batch", ["gt-a", "bd-b"], config)

        assert feed_next_ready(stores, convoy.id, dispatcher, config) == "bd-b"

    def test_skips_failed_dispatch(self, stores, config, add_item):
        dispatcher = FakeDispatcher(fail_ids={"gt-a"})
        add_item("gt-a")
        add_item("gt-b")
        convoy = create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)

        assert feed_next_ready(stores, convoy.id, dispatcher, config) == "gt-b"
        assert dispatcher.dispatched_ids == ["gt-a", "gt-b"]

    def test_never_dispatches_containers(self, stores, config, add_item, dispatcher):
        add_item("gt-epic", type="epic")
        convoy = create_convoy(stores, "Batch", ["gt-epic"], config)

        assert feed_next_ready(stores, convoy.id, dispatcher, config) is None
        assert dispatcher.dispatched == []


class TestEventFeederPoll:
    def test_first_cycle_is_warm_up(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a", status="closed")
        add_item("gt-b", blocked_by=["gt-a"])
        create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)

        cycle = feeder.poll(stores)

        assert cycle.warm_up
        assert cycle.events > 0
        assert cycle.closes == []
        assert dispatcher.dispatched == []
        assert feeder.high_water("gastown") > 0
        assert feeder.high_water("hq") > 0

    def test_close_feeds_next_item(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)
        feeder.poll(stores)

        close(stores, "gt-a")
        cycle = feeder.poll(stores)

        assert cycle.closes == ["gt-a"]
        assert cycle.dispatched == ["gt-b"]
        assert dispatcher.dispatched == [("gt-b", "gastown")]

    def test_last_close_auto_closes_convoy(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        convoy = create_convoy(stores, "Batch", ["gt-a"], config)
        feeder.poll(stores)

        close(stores, "gt-a")
        cycle = feeder.poll(stores)

        assert get_convoy(stores["hq"], convoy.id).status == STATUS_CLOSED
        assert cycle.dispatched == []
        assert dispatcher.dispatched == []

    def test_same_close_from_two_stores_dispatches_once(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        add_item("gt-c", blocked_by=["gt-a"])
        # A mirror record of gt-a also lives in hq
        stores["hq"].create_item("gt-a", title="Item gt-a (mirror)")
        create_convoy(stores, "Batch", ["gt-a", "gt-b", "gt-c"], config)
        feeder.poll(stores)

        stores["gastown"].close_item("gt-a")
        stores["hq"].close_item("gt-a")

        cycle = feeder.poll(stores)

        assert cycle.closes == ["gt-a"]
        assert len(dispatcher.dispatched) == 1

    def test_close_not_reprocessed_in_later_cycles(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        add_item("gt-c", blocked_by=["gt-a"])
        create_convoy(stores, "Batch", ["gt-a", "gt-b", "gt-c"], config)
        feeder.poll(stores)

        close(stores, "gt-a")
        feeder.poll(stores)
        # A reopen and second close of the same item is not fed again
        stores["gastown"].update_item("gt-a", status="open")
        close(stores, "gt-a")
        cycle = feeder.poll(stores)

        assert feeder.already_processed("gt-a")
        assert cycle.closes == []
        assert len(dispatcher.dispatched) == 1

    def test_staged_convoy_is_inert(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        create_convoy(stores, "Staged", ["gt-a", "gt-b"], config, status=STATUS_STAGED_READY)
        feeder.poll(stores)

        close(stores, "gt-a")
        cycle = feeder.poll(stores)

        assert cycle.closes == ["gt-a"]
        assert dispatcher.dispatched == []

    def test_paused_store_not_polled(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)
        feeder.poll(stores)
        mark = feeder.high_water("gastown")

        config["targets"]["gastown"] = {"paused": True}
        close(stores, "gt-a")
        cycle = feeder.poll(stores)

        assert cycle.closes == []
        assert feeder.high_water("gastown") == mark

    def test_store_error_recorded_and_others_polled(self, stores, config, add_item, feeder):
        feeder.poll(stores)
        broken = MagicMock()
        broken.events_since.side_effect = StoreUnavailableError("database is locked")

        cycle = feeder.poll({"hq": stores["hq"], "gastown": broken})

        assert not cycle.ok
        assert "gastown" in cycle.errors
        assert feeder.high_water("hq") is not None

    def test_late_store_is_warmed_not_replayed(self, stores, config, add_item, feeder, dispatcher):
        add_item("gt-a")
        add_item("gt-b", blocked_by=["gt-a"])
        create_convoy(stores, "Batch", ["gt-a", "gt-b"], config)
        close(stores, "gt-a")

        feeder.poll({"hq": stores["hq"]})
        cycle = feeder.poll(stores)

        assert cycle.closes == []
        assert dispatcher.dispatched == []
        assert feeder.high_water("gastown") > 0

    def test_marks_advance_past_non_close_events(self, feeder):
        hq = MagicMock()
        hq.events_since.return_value = [
            Event(ordinal=7, event_type="updated", item_id="bd-a"),
            Event(ordinal=9, event_type="created", item_id="bd-b"),
        ]

        feeder.poll({"hq": hq})

        assert feeder.high_water("hq") == 9
        hq.events_since.assert_called_once_with(0)

"""Tests for the SQLite work-item store and store map helpers."""

import pytest

from convoy.exceptions import StoreError, StoreUnavailableError
from convoy.models import Dependency
from convoy.store import Store, find_item, open_stores, store_for


@pytest.fixture
def store(temp_dir):
    s = Store(temp_dir / "test.db", name="test")
    s.init_schema()
    return s


class TestItems:
    def test_create_and_get(self, store):
        created = store.create_item("gt-a", title="Schema", type="bug")
        assert created.id == "gt-a"
        assert store.get_item("gt-a").type == "bug"

    def test_get_missing(self, store):
        assert store.get_item("gt-missing") is None

    def test_duplicate_id(self, store):
        store.create_item("gt-a")
        with pytest.raises(StoreError):
            store.create_item("gt-a")

    def test_update_unknown_field(self, store):
        store.create_item("gt-a")
        with pytest.raises(StoreError, match="unknown field"):
            store.update_item("gt-a", priority="P1")

    def test_update_missing_item(self, store):
        assert store.update_item("gt-missing", status="closed") is None

    def test_list_items_filters(self, store):
        store.create_item("hq-cv-1", type="convoy", status="open")
        store.create_item("hq-cv-2", type="convoy", status="closed")
        store.create_item("gt-a")

        assert [i.id for i in store.list_items(type="convoy")] == ["hq-cv-1", "hq-cv-2"]
        assert [i.id for i in store.list_items(type="convoy", statuses=["open"])] == ["hq-cv-1"]

    def test_init_schema_idempotent(self, store):
        store.init_schema()
        store.create_item("gt-a")
        store.init_schema()
        assert store.get_item("gt-a") is not None

    def test_closed_store_unavailable(self, store):
        store.close()
        with pytest.raises(StoreUnavailableError):
            store.get_item("gt-a")


class TestDependencies:
    def test_add_is_idempotent(self, store):
        assert store.add_dependency("gt-b", "gt-a", "blocks")
        assert not store.add_dependency("gt-b", "gt-a", "blocks")
        assert store.list_dependencies("gt-b") == [Dependency("gt-b", "gt-a", "blocks")]

    def test_directions(self, store):
        store.add_dependency("hq-cv-1", "gt-a", "tracks")
        store.add_dependency("gt-b", "gt-a", "blocks")

        assert [d.item_id for d in store.list_dependencies("gt-a", direction="up")] == ["gt-b", "hq-cv-1"]
        assert store.list_dependencies("gt-a", direction="up", dep_type="tracks") == [
            Dependency("hq-cv-1", "gt-a", "tracks"),
        ]

    def test_remove(self, store):
        store.add_dependency("hq-cv-1", "gt-a", "tracks")
        assert store.remove_dependency("hq-cv-1", "gt-a", "tracks")
        assert not store.remove_dependency("hq-cv-1", "gt-a", "tracks")
        assert store.list_dependencies("hq-cv-1") == []

    def test_external_references_unwrapped(self, store):
        store.add_dependency("hq-cv-1", "external:gt:gt-a", "tracks")
        assert store.list_dependencies("hq-cv-1")[0].depends_on_id == "gt-a"

    def test_dependencies_with_status(self, store):
        store.create_item("gt-a", status="closed")
        store.create_item("gt-b")
        store.add_dependency("gt-b", "gt-a", "blocks")
        store.add_dependency("gt-b", "bd-x", "blocks")

        result = store.dependencies_with_status("gt-b")

        assert [(d.depends_on_id, status) for d, status in result] == [("bd-x", None), ("gt-a", "closed")]

    def test_list_children(self, store):
        store.create_item("gt-epic", type="epic")
        store.create_item("gt-b")
        store.create_item("gt-a")
        store.add_dependency("gt-a", "gt-epic", "parent-child")
        store.add_dependency("gt-b", "gt-epic", "parent-child")

        assert [c.id for c in store.list_children("gt-epic")] == ["gt-a", "gt-b"]


class TestEvents:
    def test_event_log(self, store):
        store.create_item("gt-a")
        store.update_item("gt-a", status="in_progress", assignee="polecat-1")
        store.close_item("gt-a", reason="done")

        events = store.events_since(0)

        assert [e.event_type for e in events] == ["created", "status_changed", "updated", "closed"]
        assert [e.is_close for e in events] == [False, False, False, True]
        assert events == sorted(events, key=lambda e: e.ordinal)

    def test_status_change_to_closed_is_a_close(self, store):
        store.create_item("gt-a")
        store.update_item("gt-a", status="closed")
        assert store.events_since(0)[-1].is_close

    def test_events_since_mark(self, store):
        store.create_item("gt-a")
        mark = store.events_since(0)[-1].ordinal
        store.create_item("gt-b")

        assert [e.item_id for e in store.events_since(mark)] == ["gt-b"]


class TestStoreMap:
    def test_open_stores_from_config(self, config, convoy_dir):
        stores = open_stores(config)
        assert sorted(stores) == ["gastown", "hq"]
        assert (convoy_dir / "hq.db").exists()

    def test_store_for_routes_by_prefix(self, stores, config):
        assert store_for(stores, "gt-a", config) is stores["gastown"]
        assert store_for(stores, "bd-a", config) is stores["hq"]
        assert store_for(stores, "zz-a", config) is stores["hq"]

    def test_find_item_falls_back_to_other_stores(self, stores, config):
        stores["hq"].create_item("gt-stray")
        assert find_item(stores, "gt-stray", config).id == "gt-stray"
        assert find_item(stores, "gt-none", config) is None

"""Shared test fixtures for convoy tests."""

import copy
import logging
import shutil
import tempfile
from pathlib import Path

import pytest

from convoy.config import DEFAULTS, DEP_PARENT_CHILD
from convoy.store import open_stores, store_for
from fakes import FakeDispatcher


@pytest.fixture(autouse=True)
def reset_convoy_logger():
    """Drop handlers installed by setup_logging so captured streams do not leak."""
    yield
    logger = logging.getLogger("convoy")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def convoy_dir(temp_dir, monkeypatch):
    """Point CONVOY_DIR at a fresh .convoy directory."""
    path = temp_dir / ".convoy"
    path.mkdir(parents=True, exist_ok=True)
    monkeypatch.setenv("CONVOY_DIR", str(path))
    yield path


@pytest.fixture
def config(convoy_dir):
    """Two stores (hq, gastown) and routes for gt-, bd- and hq- prefixes.

    - gt-  -> target gastown, store gastown
    - bd-  -> target beads, items live in hq
    - hq-  -> town level (no target)
    """
    cfg = copy.deepcopy(DEFAULTS)
    cfg["stores"] = {
        "hq": {"path": "hq.db"},
        "gastown": {"path": "gastown.db"},
    }
    cfg["routes"] = [
        {"prefix": "gt-", "target": "gastown", "store": "gastown"},
        {"prefix": "bd-", "target": "beads", "store": "hq"},
        {"prefix": "hq-", "target": "."},
    ]
    cfg["targets"] = {"gastown": {}, "beads": {}}
    return cfg


@pytest.fixture
def stores(config):
    """Open, schema-initialized stores for the test config."""
    opened = open_stores(config)
    yield opened
    for store in opened.values():
        store.close()


@pytest.fixture
def add_item(stores, config):
    """Factory creating an item in its owning store with optional edges.

    Usage:
        add_item("gt-a", blocked_by=["gt-b"], parent="gt-epic")
    """
    def _add(
        item_id: str,
        type: str = "task",
        status: str = "open",
        title: str | None = None,
        assignee: str = "",
        blocked_by: list[str] | tuple = (),
        parent: str | None = None,
    ):
        store = store_for(stores, item_id, config)
        item = store.create_item(
            item_id,
            title=title if title is not None else f"Item {item_id}",
            type=type,
            status=status,
            assignee=assignee,
        )
        for blocker in blocked_by:
            store.add_dependency(item_id, blocker, "blocks")
        if parent:
            store.add_dependency(item_id, parent, DEP_PARENT_CHILD)
        return item

    return _add


@pytest.fixture
def dispatcher():
    return FakeDispatcher()

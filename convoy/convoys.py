"""Convoy operations and the convoy status state machine.

Convoys live in the hq store as items of type ``convoy``; the items a convoy
tracks are linked to it by ``tracks`` edges (convoy -> item). Tracked items
may live in any store and are resolved through the prefix route table.
"""

import logging
from typing import Any, Callable
from uuid import uuid4

from .config import (
    CONVOY_TRANSITIONS,
    DEP_TRACKS,
    HQ_STORE,
    STATUS_CLOSED,
    STATUS_OPEN,
    STAGED_STATUSES,
    TYPE_CONVOY,
)
from .exceptions import (
    ConvoyNotFoundError,
    InputError,
    InvalidTransitionError,
    MembershipConflictError,
    StoreError,
    StoreUnavailableError,
)
from .guards import FailOpenTracker, is_in_flight, is_item_blocked, is_ready_item
from .models import StrandedConvoy, WorkItem
from .routing import extract_item_id
from .store import find_item, store_for

logger = logging.getLogger(__name__)


def new_convoy_id() -> str:
    """Generate a fresh convoy id in the hq namespace."""
    return f"hq-cv-{uuid4().hex[:8]}"


def hq_store(stores: dict[str, Any]) -> Any:
    """Return the hq store, which holds every convoy.

    Raises:
        StoreUnavailableError: If the hq store is not open
    """
    hq = stores.get(HQ_STORE)
    if hq is None:
        raise StoreUnavailableError("hq store is not available")
    return hq


def status_lookup(stores: dict[str, Any], config: dict[str, Any] | None = None) -> Callable[[str], str | None]:
    """Build a resolver returning an item's status from whichever store has it."""
    def lookup(item_id: str) -> str | None:
        item = find_item(stores, item_id, config)
        return item.status if item else None
    return lookup


# ---------------------------------------------------------------------------
# Reading convoys
# ---------------------------------------------------------------------------


def get_convoy(hq: Any, convoy_id: str) -> WorkItem:
    """Load a convoy from the hq store.

    Raises:
        ConvoyNotFoundError: If the id does not exist or is not a convoy
    """
    item = hq.get_item(convoy_id)
    if item is None:
        raise ConvoyNotFoundError(f"convoy {convoy_id} not found")
    if item.type != TYPE_CONVOY:
        raise ConvoyNotFoundError(f"{convoy_id} is a {item.type or 'task'}, not a convoy")
    return item


def list_convoys(hq: Any, statuses: list[str] | None = None) -> list[WorkItem]:
    """List convoys, optionally filtered by status, sorted by id."""
    return hq.list_items(type=TYPE_CONVOY, statuses=statuses)


def tracked_item_ids(hq: Any, convoy_id: str) -> list[str]:
    """Return the sorted ids of items tracked by a convoy."""
    deps = hq.list_dependencies(convoy_id, direction="down", dep_type=DEP_TRACKS)
    return sorted({extract_item_id(d.depends_on_id) for d in deps})


def get_tracked_items(
    stores: dict[str, Any],
    convoy_id: str,
    config: dict[str, Any] | None = None,
) -> list[WorkItem]:
    """Resolve every tracked item of a convoy, sorted by id.

    Items that no store knows about are logged and left out.
    """
    items = []
    for item_id in tracked_item_ids(hq_store(stores), convoy_id):
        item = find_item(stores, item_id, config)
        if item is None:
            logger.warning("Convoy %s: tracked item %s not found in any store", convoy_id, item_id)
            continue
        items.append(item)
    return items


def get_tracking_convoys(hq: Any, item_id: str) -> list[WorkItem]:
    """Return every convoy that tracks the given item, sorted by id."""
    convoys = []
    for dep in hq.list_dependencies(item_id, direction="up", dep_type=DEP_TRACKS):
        convoy = hq.get_item(dep.item_id)
        if convoy is not None and convoy.type == TYPE_CONVOY:
            convoys.append(convoy)
    return sorted(convoys, key=lambda c: c.id)


def active_convoys_for_item(hq: Any, item_id: str, exclude: str | None = None) -> list[str]:
    """Ids of non-closed convoys tracking an item (optionally excluding one)."""
    return [
        c.id for c in get_tracking_convoys(hq, item_id)
        if c.status != STATUS_CLOSED and c.id != exclude
    ]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def validate_transition(convoy: WorkItem, new_status: str) -> None:
    """Check that a convoy may move from its current status to new_status.

    Raises:
        InvalidTransitionError: If the transition is not allowed. In
            particular open/closed convoys never return to a staged status.
    """
    allowed = CONVOY_TRANSITIONS.get(convoy.status, set())
    if new_status not in allowed:
        if new_status in STAGED_STATUSES and convoy.status in (STATUS_OPEN, STATUS_CLOSED):
            raise InvalidTransitionError(
                convoy.id, convoy.status, new_status,
                f"convoy {convoy.id} is {convoy.status}; a launched convoy cannot return to {new_status}",
            )
        raise InvalidTransitionError(convoy.id, convoy.status, new_status)


def set_convoy_status(hq: Any, convoy_id: str, new_status: str) -> WorkItem:
    """Transition a convoy to a new status after validating the move."""
    convoy = get_convoy(hq, convoy_id)
    validate_transition(convoy, new_status)
    if convoy.status == new_status:
        return convoy
    if new_status == STATUS_CLOSED:
        updated = hq.close_item(convoy_id)
    else:
        updated = hq.update_item(convoy_id, status=new_status)
    logger.info("Convoy %s: %s -> %s", convoy_id, convoy.status, new_status)
    return updated


# ---------------------------------------------------------------------------
# Direct creation and membership
# ---------------------------------------------------------------------------


def _check_membership(hq: Any, item_ids: list[str], exclude: str | None = None) -> None:
    conflicts = []
    for item_id in item_ids:
        for convoy_id in active_convoys_for_item(hq, item_id, exclude=exclude):
            conflicts.append(f"{item_id} (tracked by {convoy_id})")
    if conflicts:
        raise MembershipConflictError(
            "item(s) already tracked by an active convoy: " + ", ".join(conflicts)
        )


def _require_items(stores: dict[str, Any], item_ids: list[str], config: dict[str, Any] | None) -> None:
    missing = [i for i in item_ids if find_item(stores, i, config) is None]
    if missing:
        raise InputError(f"unknown item(s): {', '.join(missing)}")


def create_convoy(
    stores: dict[str, Any],
    title: str,
    item_ids: list[str],
    config: dict[str, Any] | None = None,
    status: str = STATUS_OPEN,
    description: str = "",
) -> WorkItem:
    """Create one convoy tracking all given items.

    A single call always creates exactly one convoy, whatever the number of
    items.

    Raises:
        InputError: If no items are given or an item does not exist
        MembershipConflictError: If any item is already tracked by an
            active convoy
    """
    item_ids = sorted(dict.fromkeys(extract_item_id(i) for i in item_ids))
    if not item_ids:
        raise InputError("a convoy needs at least one item")

    hq = hq_store(stores)
    _require_items(stores, item_ids, config)
    _check_membership(hq, item_ids)

    convoy_id = new_convoy_id()
    convoy = hq.create_item(
        convoy_id,
        title=title or f"Convoy: {len(item_ids)} items",
        type=TYPE_CONVOY,
        status=status,
        description=description,
    )
    for item_id in item_ids:
        hq.add_dependency(convoy_id, item_id, DEP_TRACKS)

    logger.info("Convoy %s: created (%s) tracking %d item(s)", convoy_id, status, len(item_ids))
    return convoy


def add_to_convoy(
    stores: dict[str, Any],
    convoy_id: str,
    item_ids: list[str],
    config: dict[str, Any] | None = None,
) -> int:
    """Add items to an existing convoy.

    Adding to a closed convoy reopens it. Items already tracked are not
    re-added.

    Returns:
        Number of newly tracked items
    """
    hq = hq_store(stores)
    convoy = get_convoy(hq, convoy_id)
    item_ids = sorted(dict.fromkeys(extract_item_id(i) for i in item_ids))
    if not item_ids:
        raise InputError("no items to add")

    _require_items(stores, item_ids, config)
    _check_membership(hq, item_ids, exclude=convoy_id)

    if convoy.status == STATUS_CLOSED:
        set_convoy_status(hq, convoy_id, STATUS_OPEN)

    added = 0
    for item_id in item_ids:
        if hq.add_dependency(convoy_id, item_id, DEP_TRACKS):
            added += 1
    logger.info("Convoy %s: added %d item(s)", convoy_id, added)
    return added


def close_convoy(stores: dict[str, Any], convoy_id: str, reason: str = "") -> WorkItem:
    """Close a convoy (complete or cancel)."""
    hq = hq_store(stores)
    convoy = get_convoy(hq, convoy_id)
    validate_transition(convoy, STATUS_CLOSED)
    closed = hq.close_item(convoy_id, reason=reason)
    logger.info("Convoy %s: closed%s", convoy_id, f" ({reason})" if reason else "")
    return closed


def reopen_convoy(stores: dict[str, Any], convoy_id: str) -> WorkItem:
    """Reopen a closed convoy."""
    return set_convoy_status(hq_store(stores), convoy_id, STATUS_OPEN)


def check_convoy(
    stores: dict[str, Any],
    convoy_id: str,
    config: dict[str, Any] | None = None,
) -> bool:
    """Auto-close an open convoy whose tracked work is complete.

    Closes when every tracked item is closed, or when the convoy tracks
    nothing. Staged and already-closed convoys are left alone.

    Returns:
        True if the convoy was closed by this call
    """
    hq = hq_store(stores)
    convoy = get_convoy(hq, convoy_id)
    if convoy.status != STATUS_OPEN:
        return False

    tracked = tracked_item_ids(hq, convoy_id)
    items = get_tracked_items(stores, convoy_id, config)
    if len(items) < len(tracked):
        # Unresolvable items count as unfinished
        return False
    if any(not item.is_closed for item in items):
        return False

    hq.close_item(convoy_id, reason="all tracked items closed")
    logger.info("Convoy %s: all %d tracked item(s) closed, convoy closed", convoy_id, len(items))
    return True


def convoy_status(
    stores: dict[str, Any],
    convoy_id: str,
    config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Summarise a convoy and its tracked items."""
    hq = hq_store(stores)
    convoy = get_convoy(hq, convoy_id)
    items = get_tracked_items(stores, convoy_id, config)
    completed = sum(1 for i in items if i.is_closed)
    return {
        "id": convoy.id,
        "title": convoy.title,
        "status": convoy.status,
        "description": convoy.description,
        "completed": completed,
        "total": len(items),
        "items": [i.to_dict() for i in items],
    }


# ---------------------------------------------------------------------------
# Stranded derivation
# ---------------------------------------------------------------------------


def find_stranded(
    stores: dict[str, Any],
    config: dict[str, Any] | None = None,
    tracker: FailOpenTracker | None = None,
) -> list[StrandedConvoy]:
    """Find open convoys with ready work and nothing in flight.

    Also reports open convoys with no unfinished tracked items
    (``ready_count`` 0) so the scanner can auto-close them.
    """
    hq = hq_store(stores)
    lookup = status_lookup(stores, config)
    stranded = []

    for convoy in list_convoys(hq, statuses=[STATUS_OPEN]):
        try:
            items = get_tracked_items(stores, convoy.id, config)
        except StoreError as e:
            logger.warning("Convoy %s: cannot read tracked items: %s", convoy.id, e)
            continue

        unfinished = [i for i in items if not i.is_closed]
        if not unfinished:
            stranded.append(StrandedConvoy(id=convoy.id, title=convoy.title))
            continue
        if any(is_in_flight(i) for i in unfinished):
            continue

        ready = [
            i.id for i in unfinished
            if is_ready_item(
                i,
                is_item_blocked(store_for(stores, i.id, config), i.id, lookup, tracker),
            )
        ]
        if ready:
            stranded.append(StrandedConvoy(
                id=convoy.id,
                title=convoy.title,
                ready_count=len(ready),
                ready_items=ready,
            ))

    return stranded
